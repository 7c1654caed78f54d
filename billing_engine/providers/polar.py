import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional

from billing_engine.errors import ProviderRejected, SignatureInvalid
from billing_engine.providers.base import (
    ChargeCommand,
    CreateSubscriptionCommand,
    EventKind,
    NormalizedEvent,
    ProviderCharge,
    ProviderSubscription,
    UpdateSubscriptionCommand,
)
from billing_engine.providers.http_base import HttpProviderAdapter, parse_iso

SIGNATURE_TOLERANCE_SECONDS = 300

_STATUS_MAP = {
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
}

_EVENT_MAP = {
    "subscription.created": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.active": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.canceled": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.uncanceled": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.past_due": EventKind.INVOICE_PAYMENT_FAILED,
    "subscription.revoked": EventKind.SUBSCRIPTION_CANCELED,
    "order.paid": EventKind.INVOICE_PAYMENT_SUCCEEDED,
}


def _signing_key(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        return base64.b64decode(secret[len("whsec_"):])
    return secret.encode("utf-8")


def _int_or_none(val) -> Optional[int]:
    try:
        return int(val) if val not in (None, "") else None
    except (TypeError, ValueError):
        return None


class PolarAdapter(HttpProviderAdapter):
    """Polar.sh; webhooks follow the Standard Webhooks signing scheme."""

    name = "polar"
    supports_immediate_charge = False
    redirect_checkout = True

    def _to_result(self, sub: Dict[str, Any]) -> ProviderSubscription:
        return ProviderSubscription(
            provider_subscription_id=sub.get("id"),
            status=_STATUS_MAP.get(sub.get("status"), "incomplete"),
            provider_customer_id=sub.get("customer_id"),
            current_period_start=parse_iso(sub.get("current_period_start")),
            current_period_end=parse_iso(sub.get("current_period_end")),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        )

    def create_subscription(self, cmd: CreateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        if base is None or not base.price_id:
            raise ProviderRejected("plan has no Polar product", provider=self.name)
        body = {
            "products": [base.price_id],
            "external_customer_id": cmd.org_id,
            "metadata": {"subscription_id": str(cmd.subscription_id), "org_id": cmd.org_id},
            "seats": cmd.seats,
        }
        resp = self._request("POST", "/checkouts/", json=body, op="create_checkout")
        return ProviderSubscription(provider_subscription_id=None, status="incomplete", checkout_url=resp.get("url"))

    def update_subscription(self, cmd: UpdateSubscriptionCommand) -> ProviderSubscription:
        base = next((i for i in cmd.items if i.kind == "base"), None)
        body: Dict[str, Any] = {"seats": cmd.seats}
        if base and base.price_id:
            body["product_id"] = base.price_id
        resp = self._request("PATCH", f"/subscriptions/{cmd.provider_subscription_id}", json=body,
                             op="update_subscription")
        return self._to_result(resp)

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        if at_period_end:
            resp = self._request("PATCH", f"/subscriptions/{provider_subscription_id}",
                                 json={"cancel_at_period_end": True}, op="cancel_at_period_end")
        else:
            resp = self._request("DELETE", f"/subscriptions/{provider_subscription_id}", op="revoke")
        return self._to_result(resp)

    def charge_now(self, cmd: ChargeCommand) -> ProviderCharge:
        raise ProviderRejected("Polar does not support one-off charges", provider=self.name)

    def event_id_from_headers(self, headers: Mapping[str, str]) -> Optional[str]:
        return headers.get("webhook-id")

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        msg_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signatures = headers.get("webhook-signature") or ""
        if not (self._webhook_secret and msg_id and timestamp and signatures):
            raise SignatureInvalid("missing Standard Webhooks headers", provider=self.name)
        try:
            ts = int(timestamp)
        except ValueError as exc:
            raise SignatureInvalid("bad webhook timestamp", provider=self.name) from exc
        if abs(time.time() - ts) > SIGNATURE_TOLERANCE_SECONDS:
            raise SignatureInvalid("webhook timestamp outside tolerance", provider=self.name)

        signed = f"{msg_id}.{timestamp}.".encode("utf-8") + raw_body
        expected = base64.b64encode(
            hmac.new(_signing_key(self._webhook_secret), signed, hashlib.sha256).digest()
        ).decode("ascii")
        for part in signatures.split():
            version, _, sig = part.partition(",")
            if version == "v1" and hmac.compare_digest(expected, sig):
                return
        raise SignatureInvalid("invalid Polar signature", provider=self.name)

    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        ev_type = payload.get("type") or ""
        data = payload.get("data") or {}
        kind = _EVENT_MAP.get(ev_type, EventKind.IGNORED)
        common = {
            "provider": self.name,
            "event_id": event_id or data.get("id") or "",
            "event_type": ev_type,
            "occurred_at": parse_iso(payload.get("timestamp")),
        }
        if kind is EventKind.IGNORED:
            return NormalizedEvent(kind=kind, **common)

        if ev_type.startswith("order."):
            return NormalizedEvent(
                kind=kind,
                provider_subscription_id=data.get("subscription_id"),
                subscription_id=_int_or_none((data.get("metadata") or {}).get("subscription_id")),
                provider_customer_id=data.get("customer_id"),
                provider_invoice_id=data.get("id"),
                amount_total=data.get("total_amount"),
                amount_paid=data.get("total_amount"),
                currency=data.get("currency"),
                paid_at=parse_iso(data.get("created_at")),
                billing_reason=data.get("billing_reason"),
                **common,
            )

        status = _STATUS_MAP.get(data.get("status"))
        if ev_type == "subscription.updated" and status == "past_due":
            kind = EventKind.INVOICE_PAYMENT_FAILED
        return NormalizedEvent(
            kind=kind,
            provider_subscription_id=data.get("id"),
            subscription_id=_int_or_none((data.get("metadata") or {}).get("subscription_id")),
            provider_customer_id=data.get("customer_id"),
            status=status,
            period_start=parse_iso(data.get("current_period_start")),
            period_end=parse_iso(data.get("current_period_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            **common,
        )
