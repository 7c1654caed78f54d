from sqlalchemy import UniqueConstraint
from billing_engine.extensions import db
from billing_engine.models.types import JSONType, UTCDateTime, utcnow


class WebhookEvent(db.Model):
    """Append-only inbound provider event log; only the processing bookkeeping columns change."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    payload = db.Column(JSONType, nullable=False, default=dict)
    subscription_ref = db.Column(db.String(128), nullable=True, index=True)

    processed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    processed_at = db.Column(UTCDateTime(), nullable=True)

    # Retry bookkeeping for the sweep
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(UTCDateTime(), nullable=True, index=True)
    last_error = db.Column(db.String(255), nullable=True)
    dead_lettered_at = db.Column(UTCDateTime(), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_events_provider_event"),
    )

    @property
    def is_dead_lettered(self) -> bool:
        return self.dead_lettered_at is not None

    def __repr__(self) -> str:
        return f"<WebhookEvent id={self.id} {self.provider}:{self.provider_event_id} type={self.event_type!r} processed={self.processed}>"
