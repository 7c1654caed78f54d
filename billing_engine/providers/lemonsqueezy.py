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
    payload_digest,
)
from billing_engine.providers.http_base import HttpProviderAdapter, parse_iso

# LemonSqueezy keeps "cancelled" subscriptions running until ends_at
_STATUS_MAP = {
    "on_trial": "trialing",
    "active": "active",
    "cancelled": "active",
    "paused": "past_due",
    "past_due": "past_due",
    "unpaid": "past_due",
    "expired": "canceled",
}

_EVENT_MAP = {
    "subscription_created": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription_updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": EventKind.SUBSCRIPTION_UPDATED,
    "subscription_resumed": EventKind.SUBSCRIPTION_UPDATED,
    "subscription_unpaused": EventKind.SUBSCRIPTION_UPDATED,
    "subscription_expired": EventKind.SUBSCRIPTION_CANCELED,
    "subscription_payment_success": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "subscription_payment_recovered": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "subscription_payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


def _int_or_none(val) -> Optional[int]:
    try:
        return int(val) if val not in (None, "") else None
    except (TypeError, ValueError):
        return None


class LemonSqueezyAdapter(HttpProviderAdapter):
    """LemonSqueezy (merchant of record) over its JSON:API REST interface."""

    name = "lemonsqueezy"
    supports_immediate_charge = False
    redirect_checkout = True

    def __init__(self, *, store_id: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self._store_id = store_id

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
        }

    def _to_result(self, body: Dict[str, Any]) -> ProviderSubscription:
        data = body.get("data") or {}
        attrs = data.get("attributes") or {}
        first_item = attrs.get("first_subscription_item") or {}
        item_ids = {}
        if first_item.get("id") and attrs.get("variant_id"):
            item_ids[str(attrs["variant_id"])] = str(first_item["id"])
        return ProviderSubscription(
            provider_subscription_id=str(data.get("id")) if data.get("id") else None,
            status=_STATUS_MAP.get(attrs.get("status"), "incomplete"),
            provider_customer_id=str(attrs["customer_id"]) if attrs.get("customer_id") else None,
            current_period_end=parse_iso(attrs.get("renews_at") or attrs.get("ends_at")),
            cancel_at_period_end=bool(attrs.get("cancelled")),
            item_ids=item_ids,
        )

    def create_subscription(self, cmd: CreateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        if base is None or not base.price_id:
            raise ProviderRejected("plan has no LemonSqueezy variant", provider=self.name)
        body = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": {
                        "custom": {"subscription_id": str(cmd.subscription_id), "org_id": cmd.org_id},
                        "variant_quantities": [{"variant_id": _int_or_none(base.price_id) or base.price_id,
                                                "quantity": cmd.seats}],
                    },
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self._store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(base.price_id)}},
                },
            }
        }
        resp = self._request("POST", "/checkouts", json=body, op="create_checkout")
        url = ((resp.get("data") or {}).get("attributes") or {}).get("url")
        return ProviderSubscription(provider_subscription_id=None, status="incomplete", checkout_url=url)

    def update_subscription(self, cmd: UpdateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        attrs: Dict[str, Any] = {"disable_prorations": True}
        if base and base.price_id:
            attrs["variant_id"] = _int_or_none(base.price_id) or base.price_id
        resp = self._request(
            "PATCH",
            f"/subscriptions/{cmd.provider_subscription_id}",
            json={"data": {"type": "subscriptions", "id": cmd.provider_subscription_id, "attributes": attrs}},
            op="update_subscription",
        )
        if base and base.provider_item_id:
            self._request(
                "PATCH",
                f"/subscription-items/{base.provider_item_id}",
                json={"data": {
                    "type": "subscription-items",
                    "id": base.provider_item_id,
                    "attributes": {"quantity": cmd.seats, "disable_prorations": True},
                }},
                op="update_quantity",
            )
        return self._to_result(resp)

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        # LemonSqueezy only cancels at period end; an immediate cancel ends access locally
        resp = self._request("DELETE", f"/subscriptions/{provider_subscription_id}", op="cancel")
        result = self._to_result(resp)
        if at_period_end:
            return result
        return ProviderSubscription(
            provider_subscription_id=result.provider_subscription_id,
            status="canceled",
            provider_customer_id=result.provider_customer_id,
            current_period_end=result.current_period_end,
        )

    def charge_now(self, cmd: ChargeCommand) -> ProviderCharge:
        raise ProviderRejected("LemonSqueezy does not support one-off charges", provider=self.name)

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        self._require_hex_signature(raw_body, headers.get("X-Signature"))

    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        meta = payload.get("meta") or {}
        data = payload.get("data") or {}
        attrs = data.get("attributes") or {}
        name = meta.get("event_name") or ""
        kind = _EVENT_MAP.get(name, EventKind.IGNORED)
        custom = meta.get("custom_data") or {}

        common = {
            "provider": self.name,
            "event_id": event_id or payload_digest(payload),
            "event_type": name,
            "subscription_id": _int_or_none(custom.get("subscription_id")),
            "provider_customer_id": str(attrs["customer_id"]) if attrs.get("customer_id") else None,
            "occurred_at": parse_iso(attrs.get("updated_at") or attrs.get("created_at")),
        }
        if kind is EventKind.IGNORED:
            return NormalizedEvent(kind=kind, **common)

        if data.get("type") == "subscription-invoices":
            return NormalizedEvent(
                kind=kind,
                provider_subscription_id=str(attrs.get("subscription_id")) if attrs.get("subscription_id") else None,
                provider_invoice_id=str(data.get("id")),
                amount_total=attrs.get("total"),
                amount_paid=attrs.get("total") if kind is EventKind.INVOICE_PAYMENT_SUCCEEDED else 0,
                currency=(attrs.get("currency") or "").lower() or None,
                paid_at=parse_iso(attrs.get("updated_at")) if kind is EventKind.INVOICE_PAYMENT_SUCCEEDED else None,
                billing_reason=attrs.get("billing_reason"),
                **common,
            )

        return NormalizedEvent(
            kind=kind,
            provider_subscription_id=str(data.get("id")) if data.get("id") else None,
            status=_STATUS_MAP.get(attrs.get("status")),
            period_end=parse_iso(attrs.get("renews_at") or attrs.get("ends_at")),
            cancel_at_period_end=bool(attrs.get("cancelled")),
            **common,
        )
