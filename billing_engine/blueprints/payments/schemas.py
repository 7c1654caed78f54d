"""Request parsing and camelCase response shapes for the payments API."""
from typing import Any, Dict, Optional

from billing_engine.errors import ValidationError
from billing_engine.models import Invoice, Purchase, Subscription
from billing_engine.services.seats import coerce_seats, seat_summary
from billing_engine.utils.validators import clean_str, parse_bool, require_id


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def parse_create(payload: Any) -> Dict[str, Any]:
    data = _require_object(payload)
    provider = clean_str(data.get("provider"), max_len=32)
    return {
        "org_id": require_id(data.get("organizationId"), "organizationId"),
        "plan_id": require_id(data.get("planId"), "planId"),
        "seats": coerce_seats(data.get("seats")),
        "provider": provider.lower() if provider else None,
    }


def parse_update(payload: Any) -> Dict[str, Any]:
    data = _require_object(payload)
    plan_id = data.get("planId")
    seats = data.get("seats")
    if plan_id is None and seats is None:
        raise ValidationError("planId or seats is required")
    return {
        "plan_id": require_id(plan_id, "planId") if plan_id is not None else None,
        "seats": coerce_seats(seats) if seats is not None else None,
        "force": parse_bool(data.get("force"), "force"),
    }


def parse_seats(payload: Any) -> Dict[str, Any]:
    data = _require_object(payload)
    return {
        "seats": coerce_seats(data.get("seats")),
        "force": parse_bool(data.get("force"), "force"),
    }


def parse_cancel(payload: Any) -> Dict[str, Any]:
    data = _require_object(payload if payload is not None else {})
    return {
        "at_period_end": parse_bool(data.get("cancelAtPeriodEnd"), "cancelAtPeriodEnd", default=True),
        "reason": clean_str(data.get("reason"), max_len=255),
    }


def parse_purchase(payload: Any) -> Dict[str, Any]:
    data = _require_object(payload)
    provider = clean_str(data.get("provider"), max_len=32)
    user_id = data.get("userId")
    return {
        "org_id": require_id(data.get("organizationId"), "organizationId"),
        "product_id": require_id(data.get("productId"), "productId"),
        "user_id": require_id(user_id, "userId") if user_id is not None else None,
        "provider": provider.lower() if provider else None,
    }


def subscription_to_dict(sub: Subscription) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "organizationId": sub.org_id,
        "provider": sub.provider,
        "providerSubscriptionId": sub.provider_subscription_id,
        "planId": sub.plan_id,
        "status": sub.status,
        "seats": sub.seats,
        "amount": sub.amount,
        "currency": sub.currency,
        "interval": sub.interval,
        "currentPeriodStart": _iso(sub.current_period_start),
        "currentPeriodEnd": _iso(sub.current_period_end),
        "cancelAtPeriodEnd": bool(sub.cancel_at_period_end),
        "canceledAt": _iso(sub.canceled_at),
        "gracePeriodEndsAt": _iso(sub.grace_period_ends_at),
        "pendingPlanId": sub.pending_plan_id,
        "pendingSeats": sub.pending_seats,
        "pendingProrationAmount": sub.pending_proration_amount or 0,
        "items": [
            {
                "kind": item.kind,
                "priceId": item.price_id,
                "quantity": item.quantity,
                "unitAmount": item.unit_amount,
                "providerItemId": item.provider_item_id,
            }
            for item in sub.items
        ],
    }


def invoice_to_dict(inv: Invoice) -> Dict[str, Any]:
    return {
        "id": inv.id,
        "providerInvoiceId": inv.provider_invoice_id,
        "status": inv.status,
        "amountTotal": inv.amount_total,
        "amountPaid": inv.amount_paid,
        "currency": inv.currency,
        "reason": inv.reason,
        "dueAt": _iso(inv.due_at),
        "paidAt": _iso(inv.paid_at),
    }


def command_to_dict(result) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "subscription": subscription_to_dict(result.subscription),
        "effective": result.effective,
        "prorationAmount": result.proration.amount if result.proration else 0,
    }
    if result.proration is not None:
        body["proration"] = result.proration.to_dict()
    if result.checkout_url:
        body["checkoutUrl"] = result.checkout_url
    if result.invoice is not None:
        body["invoice"] = invoice_to_dict(result.invoice)
    return body


def seats_to_dict(sub: Subscription) -> Dict[str, Any]:
    summary = seat_summary(sub)
    summary["subscriptionId"] = sub.id
    return summary


def purchase_to_dict(purchase: Purchase) -> Dict[str, Any]:
    return {
        "id": purchase.id,
        "organizationId": purchase.org_id,
        "userId": purchase.user_id,
        "productId": purchase.product_id,
        "provider": purchase.provider,
        "providerInvoiceId": purchase.provider_invoice_id,
        "status": purchase.status,
        "amount": purchase.amount,
        "currency": purchase.currency,
        "paidAt": _iso(purchase.paid_at),
        "createdAt": _iso(purchase.created_at),
    }
