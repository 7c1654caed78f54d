"""Seat invariants: 1 <= seats <= plan.max_seats and used seats never exceed seats."""
from dataclasses import dataclass

from sqlalchemy import func

from billing_engine.billing.plans import Plan
from billing_engine.errors import SeatLimitViolation, ValidationError
from billing_engine.extensions import db
from billing_engine.models import OrgMembership, Subscription

EFFECTIVE_IMMEDIATE = "immediate"
EFFECTIVE_PERIOD_END = "period_end"


@dataclass(frozen=True)
class SeatDecision:
    old_seats: int
    new_seats: int
    effective: str  # immediate | period_end

    @property
    def is_increase(self) -> bool:
        return self.new_seats > self.old_seats

    @property
    def is_noop(self) -> bool:
        return self.new_seats == self.old_seats


def used_seats(org_id: str) -> int:
    return (
        db.session.query(func.count(OrgMembership.id))
        .filter(OrgMembership.org_id == org_id, OrgMembership.removed_at.is_(None))
        .scalar()
        or 0
    )


def coerce_seats(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("seats must be an integer", field="seats")
    try:
        seats = int(value)
    except (TypeError, ValueError):
        raise ValidationError("seats must be an integer", field="seats")
    if str(value).strip() != str(seats):
        raise ValidationError("seats must be an integer", field="seats")
    return seats


def check_seat_count(seats: int, plan: Plan, org_id: str) -> int:
    """Raise SeatLimitViolation unless `seats` is allowed for this plan and org; returns used seats."""
    if seats < 1:
        raise SeatLimitViolation("At least one seat is required", seats=seats, reason="min_seats")
    if seats > plan.max_seats:
        raise SeatLimitViolation(
            f"Plan {plan.id} allows at most {plan.max_seats} seats",
            seats=seats, max_seats=plan.max_seats, reason="max_seats",
        )
    used = used_seats(org_id)
    if seats < used:
        raise SeatLimitViolation(
            "Remove members before reducing seats below current usage",
            seats=seats, used_seats=used, reason="below_usage",
        )
    return used


def decide_seat_change(sub: Subscription, plan: Plan, new_seats: int, *, force: bool = False) -> SeatDecision:
    """
    Increases apply immediately. Decreases wait for current_period_end unless
    forced, in which case they apply now and produce a prorated credit.
    """
    check_seat_count(new_seats, plan, sub.org_id)
    if new_seats >= sub.seats or force:
        return SeatDecision(sub.seats, new_seats, EFFECTIVE_IMMEDIATE)
    return SeatDecision(sub.seats, new_seats, EFFECTIVE_PERIOD_END)


def seat_summary(sub: Subscription) -> dict:
    used = used_seats(sub.org_id)
    return {
        "seats": sub.seats,
        "usedSeats": used,
        "availableSeats": max(0, sub.seats - used),
        "pendingSeats": sub.pending_seats,
    }
