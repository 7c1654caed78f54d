from sqlalchemy import UniqueConstraint
from billing_engine.extensions import db
from billing_engine.models.types import UTCDateTime, utcnow


class OrgMembership(db.Model):
    """
    Membership projection written by the identity service.
    Billing only reads it: members with removed_at IS NULL occupy a seat.
    """
    __tablename__ = "org_memberships"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="member")
    removed_at = db.Column(UTCDateTime(), nullable=True)

    created_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
    )
