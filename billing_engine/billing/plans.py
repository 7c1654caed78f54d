from dataclasses import dataclass, field
from typing import Dict, List

from flask import current_app

from billing_engine.errors import ValidationError

INTERVALS = ("month", "year")


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    interval: str
    currency: str
    base_amount: int
    included_seats: int = 1
    seat_amount: int = 0
    max_seats: int = 1
    trial_days: int = 0
    prices: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def amount_for(self, seats: int) -> int:
        """Total per-interval amount in minor units for the given seat count."""
        extra = max(0, seats - self.included_seats)
        return self.base_amount + extra * self.seat_amount

    def price_ids(self, provider: str) -> Dict[str, str]:
        return self.prices.get(provider) or {}

    def line_items(self, seats: int, provider: str) -> List[dict]:
        """
        Priced lines for a seat count: the base line and, when the plan
        prices extra seats, one add-on line. Sum of quantity*unit == amount_for(seats).
        """
        ids = self.price_ids(provider)
        lines = [{"kind": "base", "price_id": ids.get("base"), "quantity": 1, "unit_amount": self.base_amount}]
        extra = max(0, seats - self.included_seats)
        if self.seat_amount and extra:
            lines.append({"kind": "seat", "price_id": ids.get("seat"), "quantity": extra, "unit_amount": self.seat_amount})
        return lines


def _from_config(plan_id: str, raw: dict) -> Plan:
    interval = raw.get("interval", "month")
    if interval not in INTERVALS:
        raise ValueError(f"Plan {plan_id!r} has invalid interval {interval!r}")
    return Plan(
        id=plan_id,
        name=raw.get("name") or plan_id,
        interval=interval,
        currency=(raw.get("currency") or "usd").lower(),
        base_amount=int(raw["base_amount"]),
        included_seats=int(raw.get("included_seats", 1)),
        seat_amount=int(raw.get("seat_amount", 0)),
        max_seats=int(raw.get("max_seats", 1)),
        trial_days=int(raw.get("trial_days", 0)),
        prices=raw.get("prices") or {},
    )


def all_plans() -> Dict[str, Plan]:
    catalog = current_app.config.get("BILLING_PLANS") or {}
    return {pid: _from_config(pid, raw) for pid, raw in catalog.items()}


def get_plan(plan_id: str | None) -> Plan:
    if not plan_id:
        raise ValidationError("planId is required", field="planId")
    raw = (current_app.config.get("BILLING_PLANS") or {}).get(plan_id)
    if raw is None:
        raise ValidationError(f"Unknown plan {plan_id!r}", field="planId")
    return _from_config(plan_id, raw)


@dataclass(frozen=True)
class Product:
    """A one-time purchase: a fixed amount charged once, no billing period."""
    id: str
    name: str
    currency: str
    amount: int


def get_product(product_id: str | None) -> Product:
    if not product_id:
        raise ValidationError("productId is required", field="productId")
    raw = (current_app.config.get("BILLING_PRODUCTS") or {}).get(product_id)
    if raw is None:
        raise ValidationError(f"Unknown product {product_id!r}", field="productId")
    return Product(
        id=product_id,
        name=raw.get("name") or product_id,
        currency=(raw.get("currency") or "usd").lower(),
        amount=int(raw["amount"]),
    )
