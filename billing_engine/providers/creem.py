from typing import Any, Dict, Mapping, Optional

from billing_engine.errors import ProviderRejected
from billing_engine.providers.base import (
    ChargeCommand,
    CreateSubscriptionCommand,
    EventKind,
    NormalizedEvent,
    ProviderCharge,
    ProviderSubscription,
    UpdateSubscriptionCommand,
    idempotency_key,
)
from billing_engine.providers.http_base import HttpProviderAdapter, parse_iso

_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "paid": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "scheduled_cancel": "active",
    "canceled": "canceled",
    "expired": "past_due",
}

_EVENT_MAP = {
    "checkout.completed": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.active": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.trialing": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.update": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.scheduled_cancel": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.paid": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "subscription.past_due": EventKind.INVOICE_PAYMENT_FAILED,
    "subscription.expired": EventKind.INVOICE_PAYMENT_FAILED,
    "subscription.canceled": EventKind.SUBSCRIPTION_CANCELED,
}


def _int_or_none(val) -> Optional[int]:
    try:
        return int(val) if val not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _id_of(val) -> Optional[str]:
    if isinstance(val, dict):
        return val.get("id")
    return val


class CreemAdapter(HttpProviderAdapter):
    name = "creem"
    supports_immediate_charge = False
    redirect_checkout = True

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": str(self._api_key), "Accept": "application/json"}

    def _to_result(self, sub: Dict[str, Any]) -> ProviderSubscription:
        item_ids = {}
        for item in sub.get("items") or []:
            if item.get("product_id") and item.get("id"):
                item_ids[item["product_id"]] = item["id"]
        return ProviderSubscription(
            provider_subscription_id=sub.get("id"),
            status=_STATUS_MAP.get(sub.get("status"), "incomplete"),
            provider_customer_id=_id_of(sub.get("customer")),
            current_period_start=parse_iso(sub.get("current_period_start_date")),
            current_period_end=parse_iso(sub.get("current_period_end_date")),
            cancel_at_period_end=sub.get("status") == "scheduled_cancel",
            item_ids=item_ids,
        )

    def create_subscription(self, cmd: CreateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        if base is None or not base.price_id:
            raise ProviderRejected("plan has no Creem product", provider=self.name)
        body = {
            "product_id": base.price_id,
            "units": cmd.seats,
            "request_id": cmd.idempotency_key or idempotency_key("create", cmd.subscription_id),
            "metadata": {"subscription_id": str(cmd.subscription_id), "org_id": cmd.org_id},
        }
        resp = self._request("POST", "/checkouts", json=body, op="create_checkout")
        return ProviderSubscription(provider_subscription_id=None, status="incomplete",
                                    checkout_url=resp.get("checkout_url"))

    def update_subscription(self, cmd: UpdateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        resp: Dict[str, Any] = {}
        if base and base.price_id and not base.provider_item_id:
            resp = self._request(
                "POST",
                f"/subscriptions/{cmd.provider_subscription_id}/upgrade",
                json={"product_id": base.price_id, "update_behavior": "proration-none"},
                op="upgrade",
            )
        if base and base.provider_item_id:
            resp = self._request(
                "POST",
                f"/subscriptions/{cmd.provider_subscription_id}",
                json={"items": [{"id": base.provider_item_id, "units": cmd.seats}],
                      "update_behavior": "proration-none"},
                op="update_units",
            )
        return self._to_result(resp or {"id": cmd.provider_subscription_id, "status": "active"})

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        resp = self._request(
            "POST",
            f"/subscriptions/{provider_subscription_id}/cancel",
            json={"mode": "scheduled" if at_period_end else "immediate"},
            op="cancel",
        )
        return self._to_result(resp)

    def charge_now(self, cmd: ChargeCommand) -> ProviderCharge:
        raise ProviderRejected("Creem does not support one-off charges", provider=self.name)

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        self._require_hex_signature(raw_body, headers.get("creem-signature"))

    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        ev_type = payload.get("eventType") or ""
        obj = payload.get("object") or {}
        kind = _EVENT_MAP.get(ev_type, EventKind.IGNORED)
        common = {
            "provider": self.name,
            "event_id": event_id or payload.get("id") or "",
            "event_type": ev_type,
            "occurred_at": parse_iso(payload.get("created_at")),
        }
        if kind is EventKind.IGNORED:
            return NormalizedEvent(kind=kind, **common)

        # checkout.completed wraps the subscription; subscription.* events are the subscription
        sub = obj.get("subscription") if ev_type == "checkout.completed" else obj
        sub = sub if isinstance(sub, dict) else {"id": sub}
        metadata = obj.get("metadata") or sub.get("metadata") or {}

        fields: Dict[str, Any] = dict(
            provider_subscription_id=sub.get("id"),
            subscription_id=_int_or_none(metadata.get("subscription_id")),
            provider_customer_id=_id_of(obj.get("customer") or sub.get("customer")),
            status=_STATUS_MAP.get(sub.get("status")),
            period_start=parse_iso(sub.get("current_period_start_date")),
            period_end=parse_iso(sub.get("current_period_end_date")),
            cancel_at_period_end=sub.get("status") == "scheduled_cancel",
        )
        if kind is EventKind.INVOICE_PAYMENT_SUCCEEDED:
            product = sub.get("product") if isinstance(sub.get("product"), dict) else {}
            fields.update(
                provider_invoice_id=sub.get("last_transaction_id"),
                amount_total=product.get("price"),
                amount_paid=product.get("price"),
                currency=(product.get("currency") or "").lower() or None,
                paid_at=parse_iso(sub.get("last_transaction_date")),
            )
        return NormalizedEvent(kind=kind, **fields, **common)
