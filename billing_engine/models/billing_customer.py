from sqlalchemy import UniqueConstraint
from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow


class BillingCustomer(db.Model):
    __tablename__ = "billing_customers"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_customer_id = db.Column(db.String(128), nullable=False)
    billing_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = db.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_customer_id", name="uq_billing_customers_provider_customer"),
        UniqueConstraint("org_id", "provider", name="uq_billing_customers_org_provider"),
    )

    def __repr__(self) -> str:
        return f"<BillingCustomer id={self.id} org_id={self.org_id!r} {self.provider}:{self.provider_customer_id}>"
