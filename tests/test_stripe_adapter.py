import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import stripe

from billing_engine.errors import ProviderRejected, ProviderUnavailable, SignatureInvalid
from billing_engine.providers.base import (
    ChargeCommand,
    CreateSubscriptionCommand,
    EventKind,
    LineItem,
    UpdateSubscriptionCommand,
)
from billing_engine.providers.stripe_adapter import StripeAdapter

SECRET = "whsec_test_secret"
T0 = 1775001600  # 2026-04-01T00:00:00Z
T1 = 1777593600  # 2026-05-01T00:00:00Z


class _Recorder:
    """Stands in for one StripeClient service (subscriptions, invoices, ...)."""

    def __init__(self, **returns):
        self.calls = []
        self._returns = returns
        self.raise_on = {}

    def __getattr__(self, method):
        def _call(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            if method in self.raise_on:
                raise self.raise_on[method]
            return self._returns.get(method)
        return _call


def _sub_obj(status="active", sub_id="sub_123"):
    return {
        "id": sub_id,
        "status": status,
        "customer": "cus_1",
        "cancel_at_period_end": False,
        "items": {"data": [
            {"id": "si_base", "price": {"id": "price_base"}, "current_period_start": T0, "current_period_end": T1},
            {"id": "si_seat", "price": "price_seat"},
        ]},
    }


@pytest.fixture()
def adapter():
    a = StripeAdapter(secret_key="sk_test_x", webhook_secret=SECRET, base_url="https://app.example.test")
    a._client = SimpleNamespace(
        subscriptions=_Recorder(create=_sub_obj(), update=_sub_obj(), cancel=_sub_obj("canceled")),
        checkout=SimpleNamespace(sessions=_Recorder(create=SimpleNamespace(url="https://checkout.stripe.test/s"))),
        invoice_items=_Recorder(),
        invoices=_Recorder(
            create=SimpleNamespace(id="in_1"),
            pay={"id": "in_1", "status": "paid", "total": 600, "amount_paid": 600},
        ),
    )
    return a


def _create_cmd(**overrides):
    fields = dict(
        subscription_id=42,
        org_id="org_1",
        plan_id="team_monthly",
        seats=5,
        currency="usd",
        interval="month",
        items=[LineItem("base", "price_base", 1, 3200), LineItem("seat", "price_seat", 2, 800)],
        customer_id="cus_1",
        payment_method_id="pm_1",
        trial_days=0,
    )
    fields.update(overrides)
    return CreateSubscriptionCommand(**fields)


def _sign(body: str, secret: str = SECRET, ts: int | None = None) -> dict:
    ts = ts or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}"}


# --- commands ---------------------------------------------------------------

def test_create_with_saved_card_creates_subscription(adapter):
    result = adapter.create_subscription(_create_cmd())

    method, _, kwargs = adapter._client.subscriptions.calls[0]
    assert method == "create"
    params = kwargs["params"]
    assert params["items"] == [{"price": "price_base", "quantity": 1}, {"price": "price_seat", "quantity": 2}]
    assert params["metadata"] == {"subscription_id": "42", "org_id": "org_1"}
    assert params["payment_behavior"] == "error_if_incomplete"
    assert "trial_period_days" not in params
    assert kwargs["options"]["idempotency_key"]

    assert result.provider_subscription_id == "sub_123"
    assert result.status == "active"
    assert result.current_period_start == datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert result.current_period_end == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert result.item_ids == {"price_base": "si_base", "price_seat": "si_seat"}


def test_create_without_card_returns_checkout_url(adapter):
    result = adapter.create_subscription(_create_cmd(customer_id=None, payment_method_id=None, trial_days=14))

    _, _, kwargs = adapter._client.checkout.sessions.calls[0]
    params = kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["client_reference_id"] == "42"
    assert params["subscription_data"]["trial_period_days"] == 14
    assert params["success_url"].startswith("https://app.example.test/billing/success")
    assert result.status == "incomplete"
    assert result.provider_subscription_id is None
    assert result.checkout_url == "https://checkout.stripe.test/s"


def test_update_swaps_items_and_adds_proration_item(adapter):
    cmd = UpdateSubscriptionCommand(
        provider_subscription_id="sub_123",
        plan_id="team_monthly",
        seats=5,
        currency="usd",
        items=[LineItem("base", "price_base", 1, 3200, provider_item_id="si_base"), LineItem("seat", "price_seat", 2, 800)],
        removed_item_ids=["si_old"],
        proration_amount=-250,
        customer_id="cus_1",
    )
    adapter.update_subscription(cmd)

    _, args, kwargs = adapter._client.subscriptions.calls[0]
    assert args == ("sub_123",)
    assert kwargs["params"]["proration_behavior"] == "none"
    assert kwargs["params"]["items"] == [
        {"price": "price_base", "quantity": 1, "id": "si_base"},
        {"price": "price_seat", "quantity": 2},
        {"id": "si_old", "deleted": True},
    ]
    _, _, item_kwargs = adapter._client.invoice_items.calls[0]
    assert item_kwargs["params"]["amount"] == -250
    assert item_kwargs["options"]["idempotency_key"].endswith(":proration")


def test_update_without_proration_adds_no_invoice_item(adapter):
    cmd = UpdateSubscriptionCommand(
        provider_subscription_id="sub_123", plan_id="starter_monthly", seats=1, currency="usd",
        items=[LineItem("base", "price_base", 1, 2000)],
    )
    adapter.update_subscription(cmd)
    assert adapter._client.invoice_items.calls == []


def test_cancel_modes(adapter):
    adapter.cancel_subscription("sub_123", at_period_end=True)
    adapter.cancel_subscription("sub_123", at_period_end=False)

    calls = adapter._client.subscriptions.calls
    assert calls[0][0] == "update"
    assert calls[0][2]["params"] == {"cancel_at_period_end": True}
    assert calls[1][0] == "cancel"


def test_charge_now_invoices_and_pays(adapter):
    charge = adapter.charge_now(ChargeCommand(
        provider_subscription_id="sub_123", customer_id="cus_1", amount=600, currency="usd",
        description="Upgrade proration",
    ))

    assert [c[0] for c in adapter._client.invoice_items.calls] == ["create"]
    assert [c[0] for c in adapter._client.invoices.calls] == ["create", "pay"]
    assert (charge.provider_invoice_id, charge.status, charge.amount_paid) == ("in_1", "paid", 600)


def test_declined_charge_leaves_invoice_open(adapter):
    adapter._client.invoices.raise_on["pay"] = stripe.CardError("card declined", None, "card_declined",
                                                                  http_status=402)
    charge = adapter.charge_now(ChargeCommand(
        provider_subscription_id="sub_123", customer_id="cus_1", amount=600, currency="usd",
        description="Upgrade proration",
    ))
    assert (charge.provider_invoice_id, charge.status, charge.amount_total, charge.amount_paid) == ("in_1", "open", 600, 0)


def test_queued_item_reuses_the_charge_item_key(adapter):
    cmd = ChargeCommand(
        provider_subscription_id="sub_123", customer_id="cus_1", amount=600, currency="usd",
        description="Upgrade proration", idempotency_key="billing:abc",
    )
    adapter.add_invoice_item(cmd)

    assert adapter._client.invoices.calls == []
    _, _, kwargs = adapter._client.invoice_items.calls[0]
    assert kwargs["options"]["idempotency_key"] == "billing:abc:item"
    assert kwargs["params"]["subscription"] == "sub_123"


def test_one_time_charge_is_not_tied_to_a_subscription(adapter):
    adapter.charge_now(ChargeCommand(
        provider_subscription_id=None, customer_id="cus_1", amount=4900, currency="usd", description="Report pack",
    ))
    _, _, item_kwargs = adapter._client.invoice_items.calls[0]
    _, _, invoice_kwargs = adapter._client.invoices.calls[0]
    assert "subscription" not in item_kwargs["params"]
    assert "subscription" not in invoice_kwargs["params"]


@pytest.mark.parametrize(
    "error, expected",
    [
        (stripe.APIConnectionError("connection reset"), ProviderUnavailable),
        (stripe.RateLimitError("slow down", http_status=429), ProviderUnavailable),
        (stripe.APIError("boom", http_status=500), ProviderUnavailable),
        (stripe.CardError("card declined", None, "card_declined", http_status=402), ProviderRejected),
        (stripe.InvalidRequestError("no such price", "price", http_status=400), ProviderRejected),
    ],
)
def test_sdk_errors_are_classified(adapter, error, expected):
    adapter._client.subscriptions.raise_on["create"] = error
    with pytest.raises(expected):
        adapter.create_subscription(_create_cmd())


def test_missing_secret_key_is_a_config_error():
    with pytest.raises(RuntimeError):
        StripeAdapter(secret_key=None, webhook_secret=SECRET).create_subscription(_create_cmd())


# --- webhooks ---------------------------------------------------------------

def test_signed_payload_is_verified_and_parsed(adapter):
    body = json.dumps({
        "id": "evt_1", "type": "customer.subscription.deleted", "created": T1,
        "data": {"object": {**_sub_obj("canceled"), "metadata": {"subscription_id": "42"}}},
    })

    ev = adapter.normalize_webhook(body.encode(), _sign(body))

    assert ev.event_id == "evt_1"
    assert ev.kind is EventKind.SUBSCRIPTION_CANCELED
    assert ev.provider_subscription_id == "sub_123"
    assert ev.subscription_id == 42
    assert ev.status == "canceled"


def test_tampered_payload_is_rejected(adapter):
    body = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})
    headers = _sign(body)
    with pytest.raises(SignatureInvalid):
        adapter.normalize_webhook(body.replace("evt_1", "evt_2").encode(), headers)


def test_wrong_secret_and_missing_header_are_rejected(adapter):
    body = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})
    with pytest.raises(SignatureInvalid):
        adapter.normalize_webhook(body.encode(), _sign(body, secret="whsec_other"))
    with pytest.raises(SignatureInvalid):
        adapter.normalize_webhook(body.encode(), {})


def test_unconfigured_webhook_secret_rejects_everything():
    a = StripeAdapter(secret_key="sk_test_x", webhook_secret=None)
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
    with pytest.raises(SignatureInvalid):
        a.normalize_webhook(body.encode(), _sign(body))


def test_parse_checkout_completed(adapter):
    ev = adapter.parse_event({
        "id": "evt_cs", "type": "checkout.session.completed",
        "data": {"object": {"subscription": "sub_9", "customer": "cus_9", "client_reference_id": "7"}},
    })
    assert ev.kind is EventKind.SUBSCRIPTION_ACTIVATED
    assert (ev.provider_subscription_id, ev.subscription_id, ev.provider_customer_id) == ("sub_9", 7, "cus_9")


def test_parse_subscription_updates(adapter):
    rolled = adapter.parse_event({
        "id": "evt_roll", "type": "customer.subscription.updated",
        "data": {"object": _sub_obj(), "previous_attributes": {"current_period_start": T0 - 86400}},
    })
    assert rolled.kind is EventKind.PERIOD_ENDED
    assert rolled.period_end == datetime(2026, 5, 1, tzinfo=timezone.utc)

    dunning = adapter.parse_event({
        "id": "evt_unpaid", "type": "customer.subscription.updated", "data": {"object": _sub_obj("unpaid")},
    })
    assert dunning.kind is EventKind.SUBSCRIPTION_UPDATED
    assert dunning.status == "past_due"


def test_parse_invoice_failure_uses_parent_details(adapter):
    ev = adapter.parse_event({
        "id": "evt_inv", "type": "invoice.payment_failed",
        "data": {"object": {
            "id": "in_77", "customer": "cus_1", "total": 2000, "amount_paid": 0, "currency": "usd",
            "billing_reason": "subscription_cycle",
            "parent": {"subscription_details": {"subscription": "sub_123", "metadata": {"subscription_id": "42"}}},
        }},
    })
    assert ev.kind is EventKind.INVOICE_PAYMENT_FAILED
    assert (ev.provider_subscription_id, ev.subscription_id) == ("sub_123", 42)
    assert (ev.provider_invoice_id, ev.amount_total, ev.amount_paid) == ("in_77", 2000, 0)


def test_parse_payment_method_and_unknown_events(adapter):
    pm = adapter.parse_event({
        "id": "evt_pm", "type": "payment_method.attached",
        "data": {"object": {"id": "pm_1", "customer": "cus_1", "type": "card",
                            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}}},
    })
    assert pm.kind is EventKind.PAYMENT_METHOD_ATTACHED
    assert pm.payment_method["last4"] == "4242"

    other = adapter.parse_event({"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
    assert other.kind is EventKind.IGNORED


def test_parse_one_time_invoice_has_no_subscription_ref(adapter):
    ev = adapter.parse_event({
        "id": "evt_once", "type": "invoice.paid",
        "data": {"object": {"id": "in_once", "customer": "cus_1", "total": 4900, "amount_paid": 4900,
                            "billing_reason": "manual", "status_transitions": {"paid_at": T1}}},
    })
    assert ev.kind is EventKind.INVOICE_PAYMENT_SUCCEEDED
    assert ev.subscription_ref is None
    assert (ev.provider_invoice_id, ev.paid_at) == ("in_once", datetime(2026, 5, 1, tzinfo=timezone.utc))
