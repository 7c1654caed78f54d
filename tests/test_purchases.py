import pytest

from billing_engine import signals
from billing_engine.errors import NotFound, ProviderRejected, StateConflict, ValidationError
from billing_engine.extensions import db
from billing_engine.models import Purchase
from billing_engine.providers.base import EventKind, NormalizedEvent
from billing_engine.services import lifecycle, payment_methods, purchases


@pytest.fixture()
def customer(app):
    with app.app_context():
        payment_methods.upsert_customer("org_1", "stripe", "cus_org_1")
        db.session.commit()
    return "cus_org_1"


def _invoice_event(kind, invoice_id, event_id="evt_purchase"):
    return NormalizedEvent(
        provider="stripe", event_id=event_id, kind=kind, event_type=kind.value, provider_invoice_id=invoice_id,
    )


def test_purchase_is_charged_outside_any_subscription(ctx, fake_adapter, customer):
    received = []
    with signals.purchase_recorded.connected_to(lambda sender, **kw: received.append(kw)):
        purchase = purchases.create_purchase("org_1", "report_pack", user_id="user_7")

    assert (purchase.status, purchase.amount, purchase.currency) == ("paid", 4900, "usd")
    assert purchase.user_id == "user_7"
    assert purchase.provider_invoice_id == "in_fake_1"
    assert purchase.paid_at is not None

    op, cmd = fake_adapter.calls[0]
    assert op == "charge"
    assert cmd.provider_subscription_id is None
    assert (cmd.customer_id, cmd.amount, cmd.description) == (customer, 4900, "Report pack")
    assert received[0]["status"] == "paid"


def test_declined_purchase_settles_by_webhook(ctx, fake_adapter, customer):
    fake_adapter.charge_status = "open"
    purchase = purchases.create_purchase("org_1", "report_pack")
    assert purchase.status == "open"

    outcome = lifecycle.apply_event(_invoice_event(EventKind.INVOICE_PAYMENT_SUCCEEDED, purchase.provider_invoice_id))
    assert outcome == "purchase_paid"
    purchase = purchases.get_purchase(purchase.id)
    assert purchase.status == "paid"
    assert purchase.paid_at is not None

    late = lifecycle.apply_event(_invoice_event(EventKind.INVOICE_PAYMENT_FAILED, purchase.provider_invoice_id,
                                                event_id="evt_late"))
    assert late == "ignored_paid_purchase"
    assert purchases.get_purchase(purchase.id).status == "paid"


def test_rejected_charge_marks_purchase_failed(ctx, fake_adapter, customer):
    fake_adapter.fail_ops["charge"] = [ProviderRejected("card_declined")]
    with pytest.raises(ProviderRejected):
        purchases.create_purchase("org_1", "report_pack")
    assert Purchase.query.one().status == "failed"


def test_purchase_needs_a_billing_customer(ctx, fake_adapter):
    with pytest.raises(StateConflict):
        purchases.create_purchase("org_1", "report_pack")
    assert Purchase.query.count() == 0
    assert fake_adapter.calls == []


def test_purchase_validation(ctx, fake_adapter, customer):
    with pytest.raises(ValidationError) as unknown:
        purchases.create_purchase("org_1", "gold_bars")
    assert unknown.value.context["field"] == "productId"

    fake_adapter.supports_immediate_charge = False
    with pytest.raises(ValidationError) as no_charge:
        purchases.create_purchase("org_1", "report_pack")
    assert no_charge.value.context["field"] == "provider"


def test_invoice_for_unrecorded_purchase_is_retried(ctx, fake_adapter):
    with pytest.raises(NotFound):
        lifecycle.apply_event(_invoice_event(EventKind.INVOICE_PAYMENT_SUCCEEDED, "in_not_yet_recorded"))


# --- HTTP -------------------------------------------------------------------

def test_purchase_endpoints(client, fake_adapter, customer):
    resp = client.post("/payments/purchases",
                       json={"organizationId": "org_1", "productId": "onboarding_session", "userId": "user_7"})

    assert resp.status_code == 201
    body = resp.get_json()["purchase"]
    assert body["productId"] == "onboarding_session"
    assert (body["status"], body["amount"], body["userId"]) == ("paid", 15000, "user_7")

    fetched = client.get(f"/payments/purchases/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["purchase"]["providerInvoiceId"] == body["providerInvoiceId"]

    assert client.get("/payments/purchases/9999").status_code == 404


@pytest.mark.parametrize(
    "payload, status, field",
    [
        ({"productId": "report_pack"}, 400, "organizationId"),
        ({"organizationId": "org_1"}, 400, "productId"),
        ({"organizationId": "org_1", "productId": "gold_bars"}, 400, "productId"),
    ],
)
def test_purchase_request_errors(client, fake_adapter, customer, payload, status, field):
    resp = client.post("/payments/purchases", json=payload)
    assert resp.status_code == status
    assert resp.get_json()["field"] == field


def test_purchase_without_customer_conflicts(client, fake_adapter):
    resp = client.post("/payments/purchases", json={"organizationId": "org_9", "productId": "report_pack"})
    assert resp.status_code == 409
