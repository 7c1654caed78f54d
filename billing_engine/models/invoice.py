from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow

INVOICE_DRAFT = "draft"
INVOICE_OPEN = "open"
INVOICE_PAID = "paid"
INVOICE_VOID = "void"
INVOICE_UNCOLLECTIBLE = "uncollectible"
INVOICE_STATUSES = (INVOICE_DRAFT, INVOICE_OPEN, INVOICE_PAID, INVOICE_VOID, INVOICE_UNCOLLECTIBLE)


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    # No cascade: invoices outlive the subscription's cancellation
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    provider = db.Column(db.String(32), nullable=False)
    provider_invoice_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=INVOICE_OPEN)
    amount_total = db.Column(db.Integer, nullable=False, default=0)
    amount_paid = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    reason = db.Column(db.String(32), nullable=True)  # cycle | proration
    due_at = db.Column(UTCDateTime(), nullable=True)
    paid_at = db.Column(UTCDateTime(), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = db.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_immutable(self) -> bool:
        return self.status == INVOICE_PAID

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} subscription_id={self.subscription_id} status={self.status!r} total={self.amount_total}>"
