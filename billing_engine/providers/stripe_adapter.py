from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin

import stripe
from stripe import StripeClient

from billing_engine.errors import ProviderRejected, ProviderUnavailable, SignatureInvalid
from billing_engine.providers.base import (
    ChargeCommand,
    CreateSubscriptionCommand,
    EventKind,
    NormalizedEvent,
    ProviderAdapter,
    ProviderCharge,
    ProviderSubscription,
    UpdateSubscriptionCommand,
    idempotency_key,
)

_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "canceled": "canceled",
    "paused": "past_due",
}


def _to_dt(ts) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


def _as_dict(obj) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


def _id_of(val) -> Optional[str]:
    if isinstance(val, dict):
        return val.get("id")
    return val


def _period(sub_obj: Dict[str, Any]):
    """Billing period; newer API versions moved it from the subscription onto its items."""
    start, end = sub_obj.get("current_period_start"), sub_obj.get("current_period_end")
    if not start or not end:
        items = (sub_obj.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _to_dt(start), _to_dt(end)


def _internal_id(metadata: Optional[Dict[str, Any]]) -> Optional[int]:
    raw = (metadata or {}).get("subscription_id")
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


class StripeAdapter(ProviderAdapter):
    """Reference adapter: Stripe Billing through the official SDK."""

    name = "stripe"
    supports_immediate_charge = True
    redirect_checkout = False

    def __init__(self, *, secret_key: str | None, webhook_secret: str | None, base_url: str = "",
                 timeout: float = 5.0, enable_tax: bool = False):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._base_url = (base_url or "").rstrip("/") + "/"
        self._timeout = timeout
        self._enable_tax = enable_tax
        self._client: StripeClient | None = None

    # --- plumbing -------------------------------------------------------

    def _stripe(self) -> StripeClient:
        if not self._secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        if self._client is None:
            self._client = StripeClient(
                self._secret_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=0,  # retries are ours (ProviderUnavailable only)
            )
        return self._client

    def _absolute_url(self, path: str) -> str:
        return urljoin(self._base_url, path.lstrip("/"))

    def _call(self, op: str, fn):
        try:
            return fn()
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise ProviderUnavailable(str(exc.user_message or exc), provider=self.name, op=op) from exc
        except stripe.StripeError as exc:
            status = getattr(exc, "http_status", None) or 0
            if status >= 500:
                raise ProviderUnavailable(str(exc.user_message or exc), provider=self.name, op=op) from exc
            raise ProviderRejected(
                exc.user_message or str(exc), provider=self.name, op=op, provider_code=getattr(exc, "code", None)
            ) from exc

    def _to_result(self, sub_obj) -> ProviderSubscription:
        sub = _as_dict(sub_obj)
        start, end = _period(sub)
        item_ids = {}
        for item in (sub.get("items") or {}).get("data") or []:
            price_id = _id_of(item.get("price"))
            if price_id:
                item_ids[price_id] = item.get("id")
        return ProviderSubscription(
            provider_subscription_id=sub.get("id"),
            status=_STATUS_MAP.get(sub.get("status"), "incomplete"),
            provider_customer_id=_id_of(sub.get("customer")),
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            item_ids=item_ids,
        )

    # --- commands -------------------------------------------------------

    def create_subscription(self, cmd: CreateSubscriptionCommand) -> ProviderSubscription:
        client = self._stripe()
        metadata = {"subscription_id": str(cmd.subscription_id), "org_id": cmd.org_id}
        line_items = [{"price": i.price_id, "quantity": i.quantity} for i in cmd.items if i.price_id]
        idem = cmd.idempotency_key or idempotency_key("create", cmd.subscription_id, cmd.plan_id, cmd.seats)

        if cmd.customer_id and cmd.payment_method_id:
            # Payment method on file: create the subscription directly
            params: Dict[str, Any] = {
                "customer": cmd.customer_id,
                "items": line_items,
                "default_payment_method": cmd.payment_method_id,
                "metadata": metadata,
                "automatic_tax": {"enabled": self._enable_tax},
                "payment_behavior": "error_if_incomplete",
            }
            if cmd.trial_days:
                params["trial_period_days"] = cmd.trial_days
            sub = self._call("create_subscription", lambda: client.subscriptions.create(
                params=params, options={"idempotency_key": idem}))
            return self._to_result(sub)

        # Otherwise hand off to a hosted Checkout Session; activation arrives by webhook
        params = {
            "mode": "subscription",
            "line_items": line_items,
            "success_url": self._absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
            "cancel_url": self._absolute_url("billing/cancelled"),
            "client_reference_id": str(cmd.subscription_id),
            "automatic_tax": {"enabled": self._enable_tax},
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if cmd.customer_id:
            params["customer"] = cmd.customer_id
        if cmd.trial_days:
            params["subscription_data"]["trial_period_days"] = cmd.trial_days
        session = self._call("create_checkout", lambda: client.checkout.sessions.create(
            params=params, options={"idempotency_key": idem}))
        return ProviderSubscription(
            provider_subscription_id=None,
            status="incomplete",
            checkout_url=getattr(session, "url", None),
        )

    def update_subscription(self, cmd: UpdateSubscriptionCommand) -> ProviderSubscription:
        client = self._stripe()
        items: list = []
        for item in cmd.items:
            line: Dict[str, Any] = {"price": item.price_id, "quantity": item.quantity}
            if item.provider_item_id:
                line["id"] = item.provider_item_id
            items.append(line)
        items.extend({"id": item_id, "deleted": True} for item_id in cmd.removed_item_ids)

        idem = cmd.idempotency_key or idempotency_key("update", cmd.provider_subscription_id, cmd.plan_id, cmd.seats)
        sub = self._call("update_subscription", lambda: client.subscriptions.update(
            cmd.provider_subscription_id,
            params={"items": items, "proration_behavior": "none"},  # proration is computed locally
            options={"idempotency_key": idem},
        ))
        result = self._to_result(sub)

        if cmd.proration_amount:
            # Pending invoice item: lands on the next invoice (negative amounts are credits)
            customer = cmd.customer_id or result.provider_customer_id
            self._call("proration_item", lambda: client.invoice_items.create(
                params={
                    "customer": customer,
                    "subscription": cmd.provider_subscription_id,
                    "amount": cmd.proration_amount,
                    "currency": cmd.currency,
                    "description": cmd.proration_description or "Proration adjustment",
                },
                options={"idempotency_key": idem + ":proration"},
            ))
        return result

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        client = self._stripe()
        if at_period_end:
            sub = self._call("cancel_at_period_end", lambda: client.subscriptions.update(
                provider_subscription_id, params={"cancel_at_period_end": True}))
        else:
            sub = self._call("cancel_now", lambda: client.subscriptions.cancel(provider_subscription_id))
        return self._to_result(sub)

    def _invoice_item(self, cmd: ChargeCommand, idem: str) -> None:
        client = self._stripe()
        params: Dict[str, Any] = {
            "customer": cmd.customer_id,
            "amount": cmd.amount,
            "currency": cmd.currency,
            "description": cmd.description,
        }
        if cmd.provider_subscription_id:
            params["subscription"] = cmd.provider_subscription_id
        self._call("charge_item", lambda: client.invoice_items.create(
            params=params, options={"idempotency_key": idem + ":item"},
        ))

    def add_invoice_item(self, cmd: ChargeCommand) -> None:
        # Same key as charge_now's item, so a half-finished charge is not billed twice
        idem = cmd.idempotency_key or idempotency_key("charge", cmd.provider_subscription_id, cmd.amount)
        self._invoice_item(cmd, idem)

    def charge_now(self, cmd: ChargeCommand) -> ProviderCharge:
        client = self._stripe()
        idem = cmd.idempotency_key or idempotency_key("charge", cmd.provider_subscription_id, cmd.amount)
        self._invoice_item(cmd, idem)
        invoice_params: Dict[str, Any] = {
            "customer": cmd.customer_id,
            "pending_invoice_items_behavior": "include",
            "automatic_tax": {"enabled": self._enable_tax},
        }
        if cmd.provider_subscription_id:
            invoice_params["subscription"] = cmd.provider_subscription_id
        invoice = self._call("charge_invoice", lambda: client.invoices.create(
            params=invoice_params, options={"idempotency_key": idem + ":invoice"},
        ))
        try:
            paid = self._call("charge_pay", lambda: client.invoices.pay(invoice.id))
        except ProviderRejected:
            # Declined: the finalized invoice stays open and the provider keeps collecting it
            return ProviderCharge(
                provider_invoice_id=invoice.id,
                status="open",
                amount_total=int(getattr(invoice, "total", None) or cmd.amount),
                amount_paid=0,
            )
        inv = _as_dict(paid)
        return ProviderCharge(
            provider_invoice_id=inv.get("id"),
            status=inv.get("status") or "open",
            amount_total=int(inv.get("total") or cmd.amount),
            amount_paid=int(inv.get("amount_paid") or 0),
        )

    # --- webhooks -------------------------------------------------------

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self._webhook_secret:
            raise SignatureInvalid("Stripe webhook secret not configured", provider=self.name)
        try:
            stripe.Webhook.construct_event(
                payload=raw_body.decode("utf-8"),
                sig_header=headers.get("Stripe-Signature", ""),
                secret=self._webhook_secret,
            )
        except Exception as exc:
            raise SignatureInvalid("invalid Stripe signature", provider=self.name) from exc

    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        ev_type = payload.get("type") or ""
        data = payload.get("data") or {}
        obj = data.get("object") or {}
        base = {
            "provider": self.name,
            "event_id": event_id or payload.get("id") or "",
            "event_type": ev_type,
            "occurred_at": _to_dt(payload.get("created")),
        }

        if ev_type == "checkout.session.completed":
            return NormalizedEvent(
                kind=EventKind.SUBSCRIPTION_ACTIVATED,
                provider_subscription_id=_id_of(obj.get("subscription")),
                subscription_id=_internal_id(obj.get("metadata")) or _internal_id(
                    {"subscription_id": obj.get("client_reference_id")}),
                provider_customer_id=_id_of(obj.get("customer")),
                **base,
            )

        if ev_type.startswith("customer.subscription."):
            start, end = _period(obj)
            common = dict(
                provider_subscription_id=obj.get("id"),
                subscription_id=_internal_id(obj.get("metadata")),
                provider_customer_id=_id_of(obj.get("customer")),
                status=_STATUS_MAP.get(obj.get("status")),
                period_start=start,
                period_end=end,
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                **base,
            )
            if ev_type == "customer.subscription.deleted":
                return NormalizedEvent(kind=EventKind.SUBSCRIPTION_CANCELED, **common)
            previous = data.get("previous_attributes") or {}
            if ev_type == "customer.subscription.updated" and "current_period_start" in previous:
                return NormalizedEvent(kind=EventKind.PERIOD_ENDED, **common)
            if ev_type == "customer.subscription.created":
                return NormalizedEvent(kind=EventKind.SUBSCRIPTION_ACTIVATED, **common)
            return NormalizedEvent(kind=EventKind.SUBSCRIPTION_UPDATED, **common)

        if ev_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
            details = ((obj.get("parent") or {}).get("subscription_details") or {})
            transitions = obj.get("status_transitions") or {}
            kind = (EventKind.INVOICE_PAYMENT_FAILED if ev_type == "invoice.payment_failed"
                    else EventKind.INVOICE_PAYMENT_SUCCEEDED)
            return NormalizedEvent(
                kind=kind,
                provider_subscription_id=_id_of(obj.get("subscription")) or _id_of(details.get("subscription")),
                subscription_id=_internal_id((obj.get("subscription_details") or {}).get("metadata")
                                             or details.get("metadata")),
                provider_customer_id=_id_of(obj.get("customer")),
                provider_invoice_id=obj.get("id"),
                amount_total=obj.get("total"),
                amount_paid=obj.get("amount_paid"),
                currency=obj.get("currency"),
                due_at=_to_dt(obj.get("due_date")),
                paid_at=_to_dt(transitions.get("paid_at")),
                billing_reason=obj.get("billing_reason"),
                **base,
            )

        if ev_type == "payment_method.attached":
            card = obj.get("card") or {}
            return NormalizedEvent(
                kind=EventKind.PAYMENT_METHOD_ATTACHED,
                provider_customer_id=_id_of(obj.get("customer")),
                payment_method={
                    "id": obj.get("id"),
                    "type": obj.get("type") or "card",
                    "brand": card.get("brand"),
                    "last4": card.get("last4"),
                    "exp_month": card.get("exp_month"),
                    "exp_year": card.get("exp_year"),
                },
                **base,
            )

        return NormalizedEvent(kind=EventKind.IGNORED, **base)
