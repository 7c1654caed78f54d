from sqlalchemy import text, Index
from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow

STATUS_INCOMPLETE = "incomplete"
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_CHOICES = (STATUS_INCOMPLETE, STATUS_TRIALING, STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELED)

LIVE_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING)

_LIVE_WHERE = "status IN ('active','trialing')"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)

    # Pinned at creation; adapter selection is a lookup on this field
    provider = db.Column(db.String(32), nullable=False, index=True)
    provider_subscription_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    provider_customer_id = db.Column(db.String(128), nullable=True)
    checkout_url = db.Column(db.String(1024), nullable=True)

    plan_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, index=True, server_default=text("'incomplete'"))
    seats = db.Column(db.Integer, nullable=False, server_default=text("1"))

    amount = db.Column(db.Integer, nullable=False, server_default=text("0"))  # minor units
    currency = db.Column(db.String(3), nullable=False, server_default=text("'usd'"))
    interval = db.Column(db.String(8), nullable=False, server_default=text("'month'"))

    current_period_start = db.Column(UTCDateTime(), nullable=True)
    current_period_end = db.Column(UTCDateTime(), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(UTCDateTime(), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    grace_period_ends_at = db.Column(UTCDateTime(), nullable=True, index=True)

    # Deferred changes, applied on the next period rollover
    pending_plan_id = db.Column(db.String(64), nullable=True)
    pending_seats = db.Column(db.Integer, nullable=True)
    # Proration handed to the provider, settled by the next paid invoice (negative: credit)
    pending_proration_amount = db.Column(db.Integer, nullable=False, default=0)
    # Proration the provider has not accepted yet; the sweep keeps offering it
    unbilled_proration_amount = db.Column(db.Integer, nullable=False, default=0)

    # In-flight provider call marker
    pending_operation = db.Column(db.String(64), nullable=True)
    pending_operation_at = db.Column(UTCDateTime(), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = db.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionItem.id",
        lazy="selectin",
    )

    __table_args__ = (
        # At most one live (active/trialing) subscription per organization
        Index(
            "uq_subscriptions_org_live",
            "org_id",
            unique=True,
            postgresql_where=text(_LIVE_WHERE),
            sqlite_where=text(_LIVE_WHERE),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status == STATUS_CANCELED

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def items_total(self) -> int:
        return sum(i.quantity * i.unit_amount for i in self.items)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} org_id={self.org_id!r} status={self.status!r} plan_id={self.plan_id!r} seats={self.seats}>"
