from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow

KIND_BASE = "base"
KIND_SEAT = "seat"


class SubscriptionItem(db.Model):
    __tablename__ = "subscription_items"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = db.Column(db.String(16), nullable=False)  # base | seat
    provider_item_id = db.Column(db.String(128), nullable=True)
    price_id = db.Column(db.String(128), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_amount = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)

    subscription = db.relationship("Subscription", back_populates="items")

    def __repr__(self) -> str:
        return f"<SubscriptionItem id={self.id} kind={self.kind!r} price_id={self.price_id!r} qty={self.quantity}>"
