"""
Subscription lifecycle manager.

State machine::

    incomplete -> trialing | active
    trialing   -> active | past_due | canceled
    active     -> past_due | canceled          (plan/seat changes: active -> active)
    past_due   -> active (recovery) | canceled (grace expiry)
    canceled   -> (terminal)

Every mutation runs under the per-subscription lock and re-reads the row
before deciding. Commands that need the payment provider do it in three
steps so the lock is never held across the network call:

1. lock, validate, record the intent (``pending_operation``), commit;
2. call the provider adapter (retrying ProviderUnavailable only);
3. lock again, re-read, and commit the provider-confirmed result.

A command that finds another command's fresh intent fails with
StateConflict. A command whose subscription became ``canceled`` while its
provider call was in flight fails with SubscriptionTerminated and commits
nothing but the cleared intent.
"""
import calendar
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_engine import signals
from billing_engine.billing.plans import Plan, get_plan
from billing_engine.billing.proration import Proration, prorate_breakdown
from billing_engine.errors import (
    BillingError,
    NotFound,
    ProviderUnavailable,
    StateConflict,
    SubscriptionTerminated,
    ValidationError,
)
from billing_engine.extensions import db
from billing_engine.models import Invoice, Subscription, SubscriptionItem
from billing_engine.models.invoice import INVOICE_OPEN, INVOICE_PAID
from billing_engine.models.subscription import (
    LIVE_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
)
from billing_engine.models.types import utcnow
from billing_engine.providers import get_adapter
from billing_engine.providers.base import (
    ChargeCommand,
    CreateSubscriptionCommand,
    EventKind,
    LineItem,
    NormalizedEvent,
    UpdateSubscriptionCommand,
    idempotency_key,
)
from billing_engine.services import payment_methods
from billing_engine.services import purchases
from billing_engine.services import seats as seat_rules
from billing_engine.services.locks import subscription_locks
from billing_engine.services.retry import call_with_retry

logger = logging.getLogger(__name__)

EFFECTIVE_IMMEDIATE = seat_rules.EFFECTIVE_IMMEDIATE
EFFECTIVE_PERIOD_END = seat_rules.EFFECTIVE_PERIOD_END

_INVOICE_KINDS = (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED)

_ALLOWED = {
    STATUS_INCOMPLETE: {STATUS_TRIALING, STATUS_ACTIVE, STATUS_CANCELED},
    STATUS_TRIALING: {STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELED},
    STATUS_ACTIVE: {STATUS_PAST_DUE, STATUS_CANCELED},
    STATUS_PAST_DUE: {STATUS_ACTIVE, STATUS_CANCELED},
    STATUS_CANCELED: set(),
}


@dataclass
class CommandResult:
    subscription: Subscription
    proration: Optional[Proration] = None
    effective: str = EFFECTIVE_IMMEDIATE
    checkout_url: Optional[str] = None
    invoice: Optional[Invoice] = None


# ---------------------------------------------------------------------------
# locking & intents
# ---------------------------------------------------------------------------

@contextmanager
def locked_subscription(subscription_id: int):
    """Hold the per-subscription lock around read-decide-write; commits on success."""
    with subscription_locks.hold(subscription_id):
        sub = db.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if sub is None:
            raise NotFound(f"Subscription {subscription_id} not found", subscription_id=subscription_id)
        try:
            yield sub
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def _intent_is_fresh(sub: Subscription) -> bool:
    if not sub.pending_operation or not sub.pending_operation_at:
        return False
    ttl = int(current_app.config.get("INTENT_STALE_SECONDS", 120))
    return utcnow() - sub.pending_operation_at < timedelta(seconds=ttl)


def _begin_intent(sub: Subscription, op: str) -> None:
    if _intent_is_fresh(sub):
        raise StateConflict(
            "Another change to this subscription is in progress",
            subscription_id=sub.id, pending_operation=sub.pending_operation,
        )
    sub.pending_operation = op
    sub.pending_operation_at = utcnow()


def _clear_intent(sub: Subscription) -> None:
    sub.pending_operation = None
    sub.pending_operation_at = None


def _release_intent(subscription_id: int, op: str) -> None:
    with locked_subscription(subscription_id) as sub:
        if sub.pending_operation == op:
            _clear_intent(sub)


def _provider_step(sub_id: int, provider: str, op: str, fn):
    """Phase 2: run the adapter call outside the lock; on failure drop the intent and re-raise."""
    try:
        return call_with_retry(fn, op=op, provider=provider)
    except Exception as exc:
        _release_intent(sub_id, op)
        logger.warning(
            "billing.provider_step_failed",
            extra={"subscription_id": sub_id, "provider": provider, "op": op,
                   "error": getattr(exc, "code", type(exc).__name__)},
        )
        raise


def _queue_invoice_item(adapter, charge: ChargeCommand, sub_id: int, provider: str) -> bool:
    """Put an amount on the provider's next invoice. False when the provider would not take it."""
    try:
        call_with_retry(lambda: adapter.add_invoice_item(charge), op="add_invoice_item", provider=provider)
    except BillingError as exc:
        logger.error(
            "billing.proration_unbilled",
            extra={"subscription_id": sub_id, "provider": provider, "amount": charge.amount, "error": exc.code},
        )
        return False
    return True


def _terminated(sub_id: int, op: str) -> SubscriptionTerminated:
    logger.warning("billing.command_lost_race", extra={"subscription_id": sub_id, "op": op})
    return SubscriptionTerminated(
        "Subscription was canceled while the change was in progress", subscription_id=sub_id
    )


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

def get_subscription(subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        raise NotFound(f"Subscription {subscription_id} not found", subscription_id=subscription_id)
    return sub


def add_interval(start: datetime, interval: str) -> datetime:
    """Calendar month/year after `start`, clamped to the last day of a short month."""
    months = 12 if interval == "year" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _ensure_not_terminal(sub: Subscription) -> None:
    if sub.is_terminal:
        raise SubscriptionTerminated(f"Subscription {sub.id} is canceled", subscription_id=sub.id)


def _ensure_live(sub: Subscription) -> None:
    _ensure_not_terminal(sub)
    if not sub.is_live:
        raise StateConflict(
            f"Subscription {sub.id} is {sub.status}; plan and seat changes need an active subscription",
            subscription_id=sub.id, status=sub.status,
        )


def _transition(sub: Subscription, status: str, now: datetime) -> bool:
    if status == sub.status:
        return False
    if status not in _ALLOWED[sub.status]:
        logger.warning(
            "billing.transition_rejected",
            extra={"subscription_id": sub.id, "from_status": sub.status, "to_status": status},
        )
        return False
    logger.info(
        "billing.transition",
        extra={"subscription_id": sub.id, "provider": sub.provider, "from_status": sub.status, "to_status": status},
    )
    sub.status = status
    if status == STATUS_CANCELED:
        sub.canceled_at = sub.canceled_at or now
        sub.cancel_at_period_end = False
        sub.grace_period_ends_at = None
        sub.pending_plan_id = None
        sub.pending_seats = None
    elif status in LIVE_STATUSES:
        sub.grace_period_ends_at = None
    return True


def _mark_past_due(sub: Subscription, now: datetime) -> bool:
    if not _transition(sub, STATUS_PAST_DUE, now):
        return False
    days = int(current_app.config.get("PAST_DUE_GRACE_DAYS", 3))
    sub.grace_period_ends_at = now + timedelta(days=days)
    return True


def _line_items(sub: Subscription, plan: Plan, seats: int) -> Tuple[List[LineItem], List[str]]:
    existing = {i.price_id: i.provider_item_id for i in sub.items if i.provider_item_id}
    lines = [
        LineItem(
            kind=raw["kind"],
            price_id=raw["price_id"],
            quantity=raw["quantity"],
            unit_amount=raw["unit_amount"],
            provider_item_id=existing.get(raw["price_id"]),
        )
        for raw in plan.line_items(seats, sub.provider)
    ]
    kept = {line.provider_item_id for line in lines if line.provider_item_id}
    removed = [item_id for item_id in existing.values() if item_id not in kept]
    return lines, removed


def _store_items(sub: Subscription, lines: List[LineItem], item_ids: dict | None = None) -> None:
    item_ids = item_ids or {}
    sub.items.clear()
    for line in lines:
        sub.items.append(SubscriptionItem(
            kind=line.kind,
            price_id=line.price_id,
            quantity=line.quantity,
            unit_amount=line.unit_amount,
            provider_item_id=item_ids.get(line.price_id) or line.provider_item_id,
        ))


def _apply_plan(sub: Subscription, plan: Plan, seats: int, lines: List[LineItem], item_ids: dict | None) -> None:
    sub.plan_id = plan.id
    sub.seats = seats
    sub.amount = plan.amount_for(seats)
    _store_items(sub, lines, item_ids)


def _proration(sub: Subscription, new_amount: int, now: datetime) -> Proration:
    # Nothing has been charged during a trial
    if sub.status == STATUS_TRIALING or not (sub.current_period_start and sub.current_period_end):
        return Proration(sub.amount, new_amount, 0, 0, 0)
    return prorate_breakdown(sub.amount, new_amount, sub.current_period_start, sub.current_period_end, now)


def _set_period(sub: Subscription, start: datetime | None, end: datetime | None, now: datetime) -> None:
    if start:
        sub.current_period_start = start
    elif sub.current_period_start is None:
        sub.current_period_start = now
    if end:
        sub.current_period_end = end
    elif sub.current_period_end is None:
        sub.current_period_end = add_interval(sub.current_period_start, sub.interval)


def _link_provider(sub: Subscription, provider_subscription_id: str | None, customer_id: str | None) -> None:
    if provider_subscription_id and not sub.provider_subscription_id:
        sub.provider_subscription_id = provider_subscription_id
    if customer_id:
        sub.provider_customer_id = customer_id
        payment_methods.upsert_customer(sub.org_id, sub.provider, customer_id)


def _flush_signals(pending: list) -> None:
    for signal, payload in pending:
        signals.emit(signal, current_app._get_current_object(), **payload)


def _sub_payload(sub: Subscription, **extra) -> dict:
    payload = {
        "subscription_id": sub.id,
        "org_id": sub.org_id,
        "provider": sub.provider,
        "status": sub.status,
        "plan_id": sub.plan_id,
        "seats": sub.seats,
    }
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# commands
# ---------------------------------------------------------------------------

def create_subscription(org_id: str, plan_id: str, seats, provider: str | None = None,
                        now: datetime | None = None) -> CommandResult:
    now = now or utcnow()
    org_id = (str(org_id).strip() if org_id is not None else "")
    if not org_id:
        raise ValidationError("organizationId is required", field="organizationId")
    plan = get_plan(plan_id)
    seat_count = seat_rules.coerce_seats(seats)
    seat_rules.check_seat_count(seat_count, plan, org_id)

    provider = provider or current_app.config.get("BILLING_DEFAULT_PROVIDER", "stripe")
    adapter = get_adapter(provider)
    if not plan.price_ids(provider).get("base"):
        raise ValidationError(f"Plan {plan.id} is not offered through {provider}", field="planId")

    # past_due can still recover to active, and an incomplete row the provider
    # already knows about can still activate
    blocking = Subscription.query.filter(
        Subscription.org_id == org_id,
        db.or_(
            Subscription.status.in_(LIVE_STATUSES + (STATUS_PAST_DUE,)),
            db.and_(Subscription.status == STATUS_INCOMPLETE,
                    Subscription.provider_subscription_id.isnot(None)),
        ),
    ).first()
    if blocking is None:
        blocking = next(
            (s for s in Subscription.query.filter_by(org_id=org_id, status=STATUS_INCOMPLETE) if _intent_is_fresh(s)),
            None,
        )
    if blocking:
        raise StateConflict("Organization already has an active subscription",
                            org_id=org_id, subscription_id=blocking.id, status=blocking.status)

    sub = Subscription(
        org_id=org_id,
        provider=provider,
        plan_id=plan.id,
        status=STATUS_INCOMPLETE,
        seats=seat_count,
        amount=plan.amount_for(seat_count),
        currency=plan.currency,
        interval=plan.interval,
        cancel_at_period_end=False,
        pending_proration_amount=0,
        unbilled_proration_amount=0,
    )
    lines, _ = _line_items(sub, plan, seat_count)
    _store_items(sub, lines)
    _begin_intent(sub, "create")
    db.session.add(sub)
    db.session.commit()

    customer_id = payment_methods.customer_id_for(org_id, provider)
    pm = payment_methods.default_payment_method(org_id, provider) if customer_id else None
    cmd = CreateSubscriptionCommand(
        subscription_id=sub.id,
        org_id=org_id,
        plan_id=plan.id,
        seats=seat_count,
        items=lines,
        currency=plan.currency,
        interval=plan.interval,
        trial_days=plan.trial_days,
        customer_id=customer_id,
        payment_method_id=pm.provider_payment_method_id if pm else None,
        idempotency_key=idempotency_key("create", sub.id, plan.id, seat_count),
    )
    # A rejected create leaves the row incomplete
    result = _provider_step(sub.id, provider, "create", lambda: adapter.create_subscription(cmd))

    pending = []
    try:
        with locked_subscription(sub.id) as locked:
            _clear_intent(locked)
            terminated = locked.is_terminal
            if not terminated:
                _link_provider(locked, result.provider_subscription_id, result.provider_customer_id)
                locked.checkout_url = result.checkout_url
                _store_items(locked, lines, result.item_ids)
                if result.status in LIVE_STATUSES:
                    _set_period(locked, result.current_period_start, result.current_period_end, now)
                    _transition(locked, result.status, now)
                pending.append((signals.subscription_created, _sub_payload(locked)))
    except IntegrityError as exc:
        raise StateConflict("Organization already has an active subscription", org_id=org_id) from exc
    if terminated:
        raise _terminated(sub.id, "create")
    _flush_signals(pending)
    logger.info("billing.subscription_created",
                extra={"subscription_id": sub.id, "org_id": org_id, "provider": provider, "status": sub.status})
    return CommandResult(subscription=sub, checkout_url=result.checkout_url)


def update_plan(subscription_id: int, plan_id: str, seats=None, *, force: bool = False,
                now: datetime | None = None) -> CommandResult:
    """
    Upgrade (new amount >= current): applied now, prorated for the rest of the
    cycle and invoiced immediately when the provider can charge on demand.
    Downgrade: recorded as pending and applied on the next period rollover.
    """
    now = now or utcnow()
    new_plan = get_plan(plan_id)
    pending = []

    with locked_subscription(subscription_id) as sub:
        _ensure_live(sub)
        target_seats = seat_rules.coerce_seats(seats) if seats is not None else sub.seats
        seat_rules.check_seat_count(target_seats, new_plan, sub.org_id)
        if new_plan.currency != sub.currency or new_plan.interval != sub.interval:
            raise ValidationError("Plan changes must keep the same currency and billing interval",
                                  field="planId", subscription_id=sub.id)
        if not new_plan.price_ids(sub.provider).get("base"):
            raise ValidationError(f"Plan {new_plan.id} is not offered through {sub.provider}", field="planId")

        new_amount = new_plan.amount_for(target_seats)
        if new_plan.id == sub.plan_id and target_seats == sub.seats:
            sub.pending_plan_id = None
            sub.pending_seats = None
            return CommandResult(subscription=sub, proration=_proration(sub, sub.amount, now))

        if new_amount < sub.amount and not (force and new_plan.id == sub.plan_id):
            sub.pending_plan_id = new_plan.id
            sub.pending_seats = target_seats if target_seats != sub.seats else None
            pending.append((signals.subscription_updated,
                            _sub_payload(sub, pending_plan_id=new_plan.id, effective=EFFECTIVE_PERIOD_END)))
            deferred = True
        else:
            deferred = False
            proration = _proration(sub, new_amount, now)
            lines, removed = _line_items(sub, new_plan, target_seats)
            adapter = get_adapter(sub.provider)
            charge_now = adapter.supports_immediate_charge and proration.amount > 0
            cmd = UpdateSubscriptionCommand(
                provider_subscription_id=sub.provider_subscription_id,
                plan_id=new_plan.id,
                seats=target_seats,
                items=lines,
                customer_id=sub.provider_customer_id,
                currency=sub.currency,
                proration_amount=0 if charge_now else proration.amount,
                proration_description=f"Plan change {sub.plan_id} -> {new_plan.id}",
                removed_item_ids=removed,
                idempotency_key=idempotency_key("plan", sub.id, new_plan.id, target_seats, now.isoformat()),
            )
            charge = ChargeCommand(
                provider_subscription_id=sub.provider_subscription_id,
                customer_id=sub.provider_customer_id,
                amount=proration.amount,
                currency=sub.currency,
                description=f"Prorated upgrade to {new_plan.name}",
                idempotency_key=idempotency_key("charge", sub.id, new_plan.id, now.isoformat()),
            )
            _begin_intent(sub, "update_plan")
            provider = sub.provider

    if deferred:
        _flush_signals(pending)
        logger.info("billing.plan_change_deferred",
                    extra={"subscription_id": subscription_id, "pending_plan_id": new_plan.id})
        return CommandResult(subscription=get_subscription(subscription_id), effective=EFFECTIVE_PERIOD_END)

    result = _provider_step(subscription_id, provider, "update_plan", lambda: adapter.update_subscription(cmd))
    provider_charge = None
    queued = not charge_now
    if charge_now:
        try:
            provider_charge = call_with_retry(lambda: adapter.charge_now(charge), op="charge_now", provider=provider)
        except BillingError as exc:
            # Plan already changed at the provider; bill the proration on the next invoice instead
            logger.warning(
                "billing.proration_charge_failed",
                extra={"subscription_id": subscription_id, "provider": provider, "amount": proration.amount,
                       "error": exc.code},
            )
            queued = _queue_invoice_item(adapter, charge, subscription_id, provider)

    invoice = None
    with locked_subscription(subscription_id) as sub:
        _clear_intent(sub)
        terminated = sub.is_terminal
        if not terminated:
            _apply_plan(sub, new_plan, target_seats, lines, result.item_ids)
            sub.pending_plan_id = None
            sub.pending_seats = None
            if provider_charge is not None:
                invoice = Invoice(
                    subscription_id=sub.id,
                    provider=sub.provider,
                    provider_invoice_id=provider_charge.provider_invoice_id,
                    status=provider_charge.status if provider_charge.status in (INVOICE_PAID, INVOICE_OPEN) else INVOICE_OPEN,
                    amount_total=provider_charge.amount_total,
                    amount_paid=provider_charge.amount_paid,
                    currency=sub.currency,
                    reason="proration",
                    paid_at=now if provider_charge.status == INVOICE_PAID else None,
                )
                db.session.add(invoice)
            elif proration.amount and queued:
                sub.pending_proration_amount = (sub.pending_proration_amount or 0) + proration.amount
            elif proration.amount:
                sub.unbilled_proration_amount = (sub.unbilled_proration_amount or 0) + proration.amount
            pending.append((signals.subscription_updated, _sub_payload(sub, amount=sub.amount)))
            if proration.amount:
                pending.append((signals.proration_recorded, _sub_payload(
                    sub, amount=proration.amount, invoiced=invoice is not None)))
    if terminated:
        raise _terminated(subscription_id, "update_plan")
    _flush_signals(pending)
    logger.info("billing.plan_changed",
                extra={"subscription_id": subscription_id, "provider": provider, "plan_id": new_plan.id,
                       "proration": proration.amount})
    return CommandResult(subscription=get_subscription(subscription_id), proration=proration, invoice=invoice)


def set_seats(subscription_id: int, seats, *, force: bool = False, now: datetime | None = None) -> CommandResult:
    now = now or utcnow()
    pending = []

    with locked_subscription(subscription_id) as sub:
        _ensure_live(sub)
        plan = get_plan(sub.plan_id)
        new_seats = seat_rules.coerce_seats(seats)
        decision = seat_rules.decide_seat_change(sub, plan, new_seats, force=force)

        if decision.is_noop:
            sub.pending_seats = None
            return CommandResult(subscription=sub, proration=_proration(sub, sub.amount, now))

        if decision.effective == EFFECTIVE_PERIOD_END:
            sub.pending_seats = new_seats
            pending.append((signals.subscription_updated,
                            _sub_payload(sub, pending_seats=new_seats, effective=EFFECTIVE_PERIOD_END)))
            deferred = True
        else:
            deferred = False
            new_amount = plan.amount_for(new_seats)
            proration = _proration(sub, new_amount, now)
            lines, removed = _line_items(sub, plan, new_seats)
            adapter = get_adapter(sub.provider)
            cmd = UpdateSubscriptionCommand(
                provider_subscription_id=sub.provider_subscription_id,
                plan_id=plan.id,
                seats=new_seats,
                items=lines,
                customer_id=sub.provider_customer_id,
                currency=sub.currency,
                proration_amount=proration.amount,
                proration_description=f"Seats {decision.old_seats} -> {new_seats}",
                removed_item_ids=removed,
                idempotency_key=idempotency_key("seats", sub.id, decision.old_seats, new_seats, now.isoformat()),
            )
            _begin_intent(sub, "set_seats")
            provider = sub.provider

    if deferred:
        _flush_signals(pending)
        return CommandResult(subscription=get_subscription(subscription_id), effective=EFFECTIVE_PERIOD_END)

    result = _provider_step(subscription_id, provider, "set_seats", lambda: adapter.update_subscription(cmd))

    with locked_subscription(subscription_id) as sub:
        _clear_intent(sub)
        terminated = sub.is_terminal
        if not terminated:
            _apply_plan(sub, plan, new_seats, lines, result.item_ids)
            sub.pending_seats = None
            sub.pending_proration_amount = (sub.pending_proration_amount or 0) + proration.amount
            pending.append((signals.subscription_updated, _sub_payload(sub, amount=sub.amount)))
            if proration.amount:
                pending.append((signals.proration_recorded, _sub_payload(sub, amount=proration.amount,
                                                                         invoiced=False)))
    if terminated:
        raise _terminated(subscription_id, "set_seats")
    _flush_signals(pending)
    logger.info("billing.seats_changed",
                extra={"subscription_id": subscription_id, "provider": provider, "seats": new_seats,
                       "proration": proration.amount})
    return CommandResult(subscription=get_subscription(subscription_id), proration=proration)


def cancel(subscription_id: int, at_period_end: bool = True, reason: str | None = None,
           now: datetime | None = None) -> CommandResult:
    now = now or utcnow()
    pending = []

    with locked_subscription(subscription_id) as sub:
        _ensure_not_terminal(sub)
        if at_period_end and sub.cancel_at_period_end:
            return CommandResult(subscription=sub, effective=EFFECTIVE_PERIOD_END)
        if not sub.provider_subscription_id:
            # Checkout never completed: nothing exists at the provider yet
            sub.cancel_reason = reason
            _transition(sub, STATUS_CANCELED, now)
            pending.append((signals.subscription_canceled, _sub_payload(sub, reason=reason)))
            local_only = True
        else:
            local_only = False
            _begin_intent(sub, "cancel")
            provider = sub.provider
            provider_subscription_id = sub.provider_subscription_id

    if local_only:
        _flush_signals(pending)
        return CommandResult(subscription=get_subscription(subscription_id))

    adapter = get_adapter(provider)
    _provider_step(subscription_id, provider, "cancel",
                   lambda: adapter.cancel_subscription(provider_subscription_id, at_period_end))

    with locked_subscription(subscription_id) as sub:
        _clear_intent(sub)
        terminated = sub.is_terminal
        if not terminated:
            sub.cancel_reason = reason
            if at_period_end:
                sub.cancel_at_period_end = True
                pending.append((signals.subscription_updated,
                                _sub_payload(sub, cancel_at_period_end=True, reason=reason)))
            else:
                _transition(sub, STATUS_CANCELED, now)
                pending.append((signals.subscription_canceled, _sub_payload(sub, reason=reason)))
    if terminated:
        raise _terminated(subscription_id, "cancel")
    _flush_signals(pending)
    logger.info("billing.cancel_requested",
                extra={"subscription_id": subscription_id, "provider": provider, "at_period_end": at_period_end})
    return CommandResult(
        subscription=get_subscription(subscription_id),
        effective=EFFECTIVE_PERIOD_END if at_period_end else EFFECTIVE_IMMEDIATE,
    )


# ---------------------------------------------------------------------------
# normalized provider events
# ---------------------------------------------------------------------------

def resolve_subscription_id(event: NormalizedEvent) -> int:
    sub = None
    if event.provider_subscription_id:
        sub = Subscription.query.filter_by(
            provider=event.provider, provider_subscription_id=event.provider_subscription_id
        ).first()
    if sub is None and event.subscription_id:
        sub = Subscription.query.filter_by(id=event.subscription_id, provider=event.provider).first()
    if sub is None:
        raise NotFound(
            "No subscription matches this event",
            provider=event.provider, event_id=event.event_id, subscription_ref=event.subscription_ref,
        )
    return sub.id


def apply_event(event: NormalizedEvent, now: datetime | None = None) -> str:
    """Apply one normalized provider event; returns a short outcome label."""
    now = now or utcnow()
    if event.kind is EventKind.IGNORED:
        return "ignored"
    if event.kind is EventKind.PAYMENT_METHOD_ATTACHED:
        return _on_payment_method(event)
    if event.kind in _INVOICE_KINDS and event.provider_invoice_id and not event.subscription_ref:
        # Invoice outside any subscription: a one-time purchase
        outcome = purchases.apply_invoice_event(event, now)
        logger.info(
            "billing.event_applied",
            extra={"provider": event.provider, "event_id": event.event_id, "kind": event.kind.value,
                   "outcome": outcome},
        )
        return outcome

    sub_id = resolve_subscription_id(event)
    handler = _HANDLERS[event.kind]
    outcome = handler(sub_id, event, now)
    logger.info(
        "billing.event_applied",
        extra={"subscription_id": sub_id, "provider": event.provider, "event_id": event.event_id,
               "kind": event.kind.value, "outcome": outcome},
    )
    return outcome


def _on_payment_method(event: NormalizedEvent) -> str:
    org_id = payment_methods.org_for_customer(event.provider, event.provider_customer_id)
    pm = event.payment_method or {}
    if not org_id or not pm.get("id"):
        return "ignored"
    payment_methods.record_payment_method(
        org_id, event.provider, pm["id"], type=pm.get("type") or "card", brand=pm.get("brand"),
        last4=pm.get("last4"), exp_month=pm.get("exp_month"), exp_year=pm.get("exp_year"),
    )
    db.session.commit()
    return "payment_method_recorded"


def _on_activated(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        _link_provider(sub, event.provider_subscription_id, event.provider_customer_id)
        if sub.is_terminal:
            return "ignored_terminal"
        outcome = "synced"
        if sub.status == STATUS_INCOMPLETE:
            plan = get_plan(sub.plan_id)
            target = event.status if event.status in LIVE_STATUSES else (
                STATUS_TRIALING if plan.trial_days else STATUS_ACTIVE)
            _set_period(sub, event.period_start, event.period_end, now)
            if _transition(sub, target, now):
                sub.checkout_url = None
                outcome = target
                pending.append((signals.subscription_updated, _sub_payload(sub)))
        elif event.period_end:
            _set_period(sub, event.period_start, event.period_end, now)
    _flush_signals(pending)
    return outcome


def _on_updated(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        _link_provider(sub, event.provider_subscription_id, event.provider_customer_id)
        if sub.is_terminal:
            return "ignored_terminal"
        rolled = bool(event.period_end and sub.current_period_end and event.period_end > sub.current_period_end)
        if not rolled:
            outcome = "synced"
            if event.cancel_at_period_end is not None:
                sub.cancel_at_period_end = event.cancel_at_period_end
            if event.status == STATUS_CANCELED:
                if _transition(sub, STATUS_CANCELED, now):
                    pending.append((signals.subscription_canceled, _sub_payload(sub)))
                    outcome = STATUS_CANCELED
            elif event.status == STATUS_PAST_DUE:
                if _mark_past_due(sub, now):
                    pending.append((signals.subscription_past_due, _sub_payload(
                        sub, grace_period_ends_at=sub.grace_period_ends_at.isoformat())))
                    outcome = STATUS_PAST_DUE
            elif event.status in LIVE_STATUSES and event.status != sub.status:
                was_past_due = sub.status == STATUS_PAST_DUE
                if sub.status == STATUS_INCOMPLETE:
                    _set_period(sub, event.period_start, event.period_end, now)
                if _transition(sub, event.status, now):
                    signal = signals.subscription_recovered if was_past_due else signals.subscription_updated
                    pending.append((signal, _sub_payload(sub)))
                    outcome = event.status
            if event.period_start or event.period_end:
                _set_period(sub, event.period_start, event.period_end, now)
    if rolled:
        # Period moved forward without an explicit rollover event
        return _on_period_ended(sub_id, event, now)
    _flush_signals(pending)
    return outcome


def _on_canceled(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        if not _transition(sub, STATUS_CANCELED, now):
            return "ignored_terminal" if sub.is_terminal else "unchanged"
        pending.append((signals.subscription_canceled, _sub_payload(sub)))
    _flush_signals(pending)
    return STATUS_CANCELED


def _upsert_invoice(sub: Subscription, event: NormalizedEvent, status: str, now: datetime) -> Optional[Invoice]:
    if not event.provider_invoice_id and event.amount_total is None:
        return None
    inv = None
    if event.provider_invoice_id:
        inv = Invoice.query.filter_by(provider_invoice_id=event.provider_invoice_id).first()
    if inv is not None and inv.is_immutable:
        return inv
    if inv is None:
        inv = Invoice(
            subscription_id=sub.id,
            provider=sub.provider,
            provider_invoice_id=event.provider_invoice_id,
            currency=(event.currency or sub.currency),
            reason="cycle",
        )
        db.session.add(inv)
    inv.status = status
    if event.amount_total is not None:
        inv.amount_total = event.amount_total
    if event.due_at:
        inv.due_at = event.due_at
    if status == INVOICE_PAID:
        inv.amount_paid = event.amount_paid if event.amount_paid is not None else inv.amount_total
        inv.paid_at = event.paid_at or now
    elif event.amount_paid is not None:
        inv.amount_paid = event.amount_paid
    return inv


def _on_payment_failed(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        _link_provider(sub, event.provider_subscription_id, event.provider_customer_id)
        inv = _upsert_invoice(sub, event, INVOICE_OPEN, now)
        if inv is not None and inv.status == INVOICE_PAID:
            # Failure reported after the invoice was settled
            return "ignored_paid_invoice"
        if inv is not None:
            pending.append((signals.invoice_recorded, _sub_payload(
                sub, provider_invoice_id=inv.provider_invoice_id, invoice_status=inv.status)))
        outcome = "unchanged"
        if sub.is_terminal:
            outcome = "ignored_terminal"
        elif _mark_past_due(sub, now):
            outcome = STATUS_PAST_DUE
            pending.append((signals.subscription_past_due, _sub_payload(
                sub, grace_period_ends_at=sub.grace_period_ends_at.isoformat())))
            logger.warning(
                "billing.payment_failed",
                extra={"subscription_id": sub.id, "provider": sub.provider, "event_id": event.event_id},
            )
    _flush_signals(pending)
    return outcome


def _on_payment_succeeded(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        _link_provider(sub, event.provider_subscription_id, event.provider_customer_id)
        existing = None
        if event.provider_invoice_id:
            existing = Invoice.query.filter_by(provider_invoice_id=event.provider_invoice_id).first()
        own_proration_invoice = existing is not None and existing.reason == "proration"
        inv = _upsert_invoice(sub, event, INVOICE_PAID, now)
        if inv is not None:
            pending.append((signals.invoice_recorded, _sub_payload(
                sub, provider_invoice_id=inv.provider_invoice_id, invoice_status=inv.status)))
            if not own_proration_invoice:
                # Recorded proration rides on the provider's next invoice
                sub.pending_proration_amount = 0
        outcome = "unchanged"
        if sub.is_terminal:
            outcome = "ignored_terminal"
        elif sub.status == STATUS_PAST_DUE:
            _transition(sub, STATUS_ACTIVE, now)
            outcome = "recovered"
            pending.append((signals.subscription_recovered, _sub_payload(sub)))
        elif sub.status == STATUS_INCOMPLETE:
            _set_period(sub, event.period_start, event.period_end, now)
            _transition(sub, STATUS_ACTIVE, now)
            outcome = STATUS_ACTIVE
            pending.append((signals.subscription_updated, _sub_payload(sub)))
    _flush_signals(pending)
    return outcome


def _on_period_ended(sub_id: int, event: NormalizedEvent, now: datetime) -> str:
    pending = []
    with locked_subscription(sub_id) as sub:
        _link_provider(sub, event.provider_subscription_id, event.provider_customer_id)
        if sub.is_terminal:
            return "ignored_terminal"
        start = event.period_start or sub.current_period_end or now
        end = event.period_end or add_interval(start, sub.interval)

        if sub.cancel_at_period_end:
            _transition(sub, STATUS_CANCELED, now)
            pending.append((signals.subscription_canceled, _sub_payload(sub, reason=sub.cancel_reason)))
            apply_pending = False
        elif not (sub.pending_plan_id or sub.pending_seats):
            apply_pending = False
        else:
            plan = get_plan(sub.pending_plan_id or sub.plan_id)
            seats = sub.pending_seats or sub.seats
            used = seat_rules.used_seats(sub.org_id)
            if seats < used:
                # Members joined since the decrease was scheduled; never drop below usage
                logger.warning("billing.pending_seats_raised",
                               extra={"subscription_id": sub.id, "pending_seats": seats, "used_seats": used})
                seats = used
            if seats > plan.max_seats:
                logger.error("billing.pending_change_dropped",
                             extra={"subscription_id": sub.id, "plan_id": plan.id, "seats": seats})
                sub.pending_plan_id = None
                sub.pending_seats = None
                apply_pending = False
            else:
                apply_pending = True
                lines, removed = _line_items(sub, plan, seats)
                adapter = get_adapter(sub.provider)
                cmd = UpdateSubscriptionCommand(
                    provider_subscription_id=sub.provider_subscription_id,
                    plan_id=plan.id,
                    seats=seats,
                    items=lines,
                    customer_id=sub.provider_customer_id,
                    currency=sub.currency,
                    removed_item_ids=removed,
                    idempotency_key=idempotency_key("rollover", sub.id, plan.id, seats, end.isoformat()),
                )
                _begin_intent(sub, "apply_pending")
                provider = sub.provider
        if not apply_pending:
            sub.current_period_start = start
            sub.current_period_end = end

    if not apply_pending:
        _flush_signals(pending)
        return STATUS_CANCELED if pending else "rolled"

    result = _provider_step(sub_id, provider, "apply_pending", lambda: adapter.update_subscription(cmd))
    with locked_subscription(sub_id) as sub:
        _clear_intent(sub)
        if sub.is_terminal:
            return "ignored_terminal"
        # The period only advances together with the applied change, so a
        # failed provider call leaves the rollover visible to a retry
        sub.current_period_start = start
        sub.current_period_end = end
        _apply_plan(sub, plan, seats, lines, result.item_ids)
        sub.pending_plan_id = None
        sub.pending_seats = None
        pending.append((signals.subscription_updated, _sub_payload(sub, amount=sub.amount)))
    _flush_signals(pending)
    return "pending_applied"


_HANDLERS = {
    EventKind.SUBSCRIPTION_ACTIVATED: _on_activated,
    EventKind.SUBSCRIPTION_UPDATED: _on_updated,
    EventKind.SUBSCRIPTION_CANCELED: _on_canceled,
    EventKind.INVOICE_PAYMENT_FAILED: _on_payment_failed,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.PERIOD_ENDED: _on_period_ended,
}


# ---------------------------------------------------------------------------
# scheduled grace re-check
# ---------------------------------------------------------------------------

def expire_grace_period(subscription_id: int, now: datetime | None = None) -> bool:
    """Cancel a past_due subscription whose grace window ended. Returns True when it was canceled."""
    now = now or utcnow()
    with locked_subscription(subscription_id) as sub:
        if sub.status != STATUS_PAST_DUE or not sub.grace_period_ends_at or sub.grace_period_ends_at > now:
            return False
        _begin_intent(sub, "grace_expiry")
        provider = sub.provider
        provider_subscription_id = sub.provider_subscription_id

    if provider_subscription_id:
        adapter = get_adapter(provider)
        _provider_step(subscription_id, provider, "grace_expiry",
                       lambda: adapter.cancel_subscription(provider_subscription_id, False))

    pending = []
    with locked_subscription(subscription_id) as sub:
        _clear_intent(sub)
        if sub.status != STATUS_PAST_DUE:
            logger.warning("billing.grace_expiry_raced",
                           extra={"subscription_id": sub.id, "status": sub.status})
            return False
        sub.cancel_reason = "payment_grace_expired"
        _transition(sub, STATUS_CANCELED, now)
        pending.append((signals.subscription_canceled, _sub_payload(sub, reason=sub.cancel_reason)))
    _flush_signals(pending)
    logger.warning("billing.grace_expired", extra={"subscription_id": subscription_id, "provider": provider})
    return True


def bill_unbilled_proration(subscription_id: int) -> bool:
    """Offer held-back proration to the provider again. Returns True when it was queued."""
    with locked_subscription(subscription_id) as sub:
        amount = sub.unbilled_proration_amount or 0
        if not amount or sub.is_terminal or not sub.provider_subscription_id:
            return False
        _begin_intent(sub, "bill_proration")
        provider = sub.provider
        charge = ChargeCommand(
            provider_subscription_id=sub.provider_subscription_id,
            customer_id=sub.provider_customer_id,
            amount=amount,
            currency=sub.currency,
            description="Proration adjustment",
            idempotency_key=idempotency_key("unbilled", sub.id, amount, sub.current_period_start),
        )

    adapter = get_adapter(provider)
    _provider_step(subscription_id, provider, "bill_proration", lambda: adapter.add_invoice_item(charge))

    with locked_subscription(subscription_id) as sub:
        _clear_intent(sub)
        # Only what was sent moves; anything recorded meanwhile waits for the next pass
        sub.unbilled_proration_amount = (sub.unbilled_proration_amount or 0) - amount
        sub.pending_proration_amount = (sub.pending_proration_amount or 0) + amount
    logger.info("billing.proration_queued",
                extra={"subscription_id": subscription_id, "provider": provider, "amount": amount})
    return True


def bill_unbilled_prorations() -> List[int]:
    due = [
        row.id
        for row in db.session.query(Subscription.id)
        .filter(Subscription.unbilled_proration_amount != 0, Subscription.status != STATUS_CANCELED)
        .all()
    ]
    billed = []
    for sub_id in due:
        try:
            if bill_unbilled_proration(sub_id):
                billed.append(sub_id)
        except ProviderUnavailable:
            logger.warning("billing.proration_deferred", extra={"subscription_id": sub_id})
        except BillingError:
            logger.exception("billing.proration_push_failed", extra={"subscription_id": sub_id})
    return billed


def expire_grace_periods(now: datetime | None = None) -> List[int]:
    now = now or utcnow()
    due = [
        row.id
        for row in db.session.query(Subscription.id)
        .filter(Subscription.status == STATUS_PAST_DUE, Subscription.grace_period_ends_at <= now)
        .all()
    ]
    canceled = []
    for sub_id in due:
        try:
            if expire_grace_period(sub_id, now):
                canceled.append(sub_id)
        except ProviderUnavailable:
            logger.warning("billing.grace_expiry_deferred", extra={"subscription_id": sub_id})
        except BillingError:
            logger.exception("billing.grace_expiry_failed", extra={"subscription_id": sub_id})
    return canceled
