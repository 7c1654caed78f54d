from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow

PURCHASE_PENDING = "pending"
PURCHASE_OPEN = "open"
PURCHASE_PAID = "paid"
PURCHASE_FAILED = "failed"
PURCHASE_STATUSES = (PURCHASE_PENDING, PURCHASE_OPEN, PURCHASE_PAID, PURCHASE_FAILED)


class Purchase(db.Model):
    """One-time product bought by an organization, billed outside any subscription."""
    __tablename__ = "purchases"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)
    # Member who bought it, when the caller knows
    user_id = db.Column(db.String(64), nullable=True)
    product_id = db.Column(db.String(64), nullable=False)

    provider = db.Column(db.String(32), nullable=False)
    provider_customer_id = db.Column(db.String(128), nullable=False)
    provider_invoice_id = db.Column(db.String(128), nullable=True, unique=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=PURCHASE_PENDING)
    amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    paid_at = db.Column(UTCDateTime(), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = db.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status == PURCHASE_PAID

    def __repr__(self) -> str:
        return f"<Purchase id={self.id} org_id={self.org_id!r} product_id={self.product_id!r} status={self.status!r}>"
