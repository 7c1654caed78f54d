"""
Day-granularity proration.

    delta = (new_amount - old_amount) * remaining_days / total_days

rounded half-to-even to a whole minor unit, so that splitting and reversing
changes does not drift in either direction. Successive changes inside one
cycle are computed one at a time, each against the amount immediately before
it and its own remaining window; the caller sums the deltas.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN


@dataclass(frozen=True)
class Proration:
    old_amount: int
    new_amount: int
    remaining_days: int
    total_days: int
    amount: int

    def to_dict(self) -> dict:
        return {
            "oldAmount": self.old_amount,
            "newAmount": self.new_amount,
            "remainingDays": self.remaining_days,
            "totalDays": self.total_days,
            "amount": self.amount,
        }


def _days_between(start: datetime, end: datetime) -> int:
    return (end.date() - start.date()).days


def prorate_breakdown(old_amount: int, new_amount: int, cycle_start: datetime, cycle_end: datetime,
                      change_at: datetime) -> Proration:
    total_days = _days_between(cycle_start, cycle_end)
    if total_days <= 0:
        return Proration(old_amount, new_amount, 0, max(total_days, 0), 0)

    # Clamp into the cycle: before start is a full-cycle change, after end is nothing
    if change_at <= cycle_start:
        remaining = total_days
    elif change_at >= cycle_end:
        remaining = 0
    else:
        remaining = _days_between(change_at, cycle_end)

    raw = Decimal(new_amount - old_amount) * Decimal(remaining) / Decimal(total_days)
    amount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))
    return Proration(old_amount, new_amount, remaining, total_days, amount)


def prorate(old_amount: int, new_amount: int, cycle_start: datetime, cycle_end: datetime,
            change_at: datetime) -> int:
    return prorate_breakdown(old_amount, new_amount, cycle_start, cycle_end, change_at).amount
