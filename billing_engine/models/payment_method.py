from sqlalchemy import Index, UniqueConstraint, text
from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow


class PaymentMethod(db.Model):
    __tablename__ = "payment_methods"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_payment_method_id = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(32), nullable=False, default="card")

    # masked display fields only
    brand = db.Column(db.String(32), nullable=True)
    last4 = db.Column(db.String(4), nullable=True)
    exp_month = db.Column(db.Integer, nullable=True)
    exp_year = db.Column(db.Integer, nullable=True)

    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = db.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_method_id", name="uq_payment_methods_provider_pm"),
        Index(
            "uq_payment_methods_org_default",
            "org_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    def __repr__(self) -> str:
        return f"<PaymentMethod id={self.id} org_id={self.org_id!r} brand={self.brand!r} last4={self.last4!r} default={self.is_default}>"
