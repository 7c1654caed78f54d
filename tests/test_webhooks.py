from datetime import timedelta

import pytest

from billing_engine import signals
from billing_engine.errors import ProviderUnavailable, StateConflict
from billing_engine.extensions import db
from billing_engine.models import Invoice, Subscription, WebhookEvent
from billing_engine.models.types import utcnow
from billing_engine.services import lifecycle
from billing_engine.services import webhooks as webhook_service

from conftest import PERIOD_END, PERIOD_START, signed

URL = "/payments/webhooks/stripe"


def _create_sub(app, org="org_1"):
    with app.app_context():
        return lifecycle.create_subscription(org, "starter_monthly", 3, now=PERIOD_START).subscription.id


def _ingest(payload, now=None):
    body, headers = signed(payload)
    return webhook_service.ingest("stripe", body.encode("utf-8"), headers, now=now)


def _orphan_event(event_id="evt_orphan"):
    # References a provider subscription nobody has linked yet
    return {"id": event_id, "kind": "invoice_payment_succeeded", "subscription": "sub_unknown",
            "invoice": "in_orphan", "amount": 2000, "amount_paid": 2000}


# --- HTTP endpoint ----------------------------------------------------------

def test_webhook_applies_payment_failure(app, client, fake_adapter):
    sub_id = _create_sub(app)
    body, headers = signed({
        "id": "evt_1", "kind": "invoice_payment_failed", "type": "invoice.payment_failed",
        "subscription": f"sub_fake_{sub_id}", "invoice": "in_1", "amount": 2000,
    })

    resp = client.post(URL, data=body, headers=headers)

    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "processed": True}
    with app.app_context():
        assert db.session.get(Subscription, sub_id).status == "past_due"
        ev = WebhookEvent.query.one()
        assert ev.processed is True
        assert ev.event_type == "invoice.payment_failed"
        assert ev.subscription_ref == f"sub_fake_{sub_id}"
        assert ev.payload["invoice"] == "in_1"


def test_duplicate_delivery_is_acknowledged_once(app, client, fake_adapter):
    sub_id = _create_sub(app)
    body, headers = signed({
        "id": "evt_dup", "kind": "invoice_payment_failed",
        "subscription": f"sub_fake_{sub_id}", "invoice": "in_1", "amount": 2000,
    })

    first = client.post(URL, data=body, headers=headers)
    second = client.post(URL, data=body, headers=headers)

    assert first.get_json() == {"received": True, "processed": True}
    assert second.status_code == 200
    assert second.get_json() == {"received": True, "processed": True, "duplicate": True}
    with app.app_context():
        assert WebhookEvent.query.count() == 1
        assert Invoice.query.count() == 1


def test_bad_signature_is_rejected_and_not_stored(app, client, fake_adapter):
    body, _ = signed({"id": "evt_forged", "kind": "subscription_canceled", "subscription": "sub_x"})

    resp = client.post(URL, data=body, headers={"X-Fake-Signature": "nope", "Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "signature_invalid"
    with app.app_context():
        assert WebhookEvent.query.count() == 0


def test_unknown_provider_is_rejected(client):
    resp = client.post("/payments/webhooks/paddle", data="{}", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "validation_error"


def test_unmatched_event_is_acknowledged_and_scheduled(app, client, fake_adapter):
    body, headers = signed(_orphan_event())

    resp = client.post(URL, data=body, headers=headers)

    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "processed": False}
    with app.app_context():
        ev = WebhookEvent.query.one()
        assert ev.processed is False
        assert ev.attempts == 1
        assert ev.last_error.startswith("not_found")
        assert ev.next_attempt_at > ev.created_at
        assert ev.dead_lettered_at is None


def test_ignored_event_kinds_are_marked_processed(app, client, fake_adapter):
    body, headers = signed({"id": "evt_noise", "kind": "ignored", "type": "customer.created"})
    resp = client.post(URL, data=body, headers=headers)
    assert resp.get_json() == {"received": True, "processed": True}


# --- processing & sweep -----------------------------------------------------

def test_out_of_order_event_succeeds_on_retry(ctx, fake_adapter):
    fake_adapter.create_status = "incomplete"
    sub_id = lifecycle.create_subscription("org_1", "starter_monthly", 3, now=PERIOD_START).subscription.id
    received_at = utcnow()

    # Payment lands before checkout completion links the provider id
    paid = _ingest({"id": "evt_paid", "kind": "invoice_payment_succeeded", "subscription": "sub_hosted",
                    "invoice": "in_1", "amount": 2000, "amount_paid": 2000})
    assert paid.processed is False

    activated = _ingest({
        "id": "evt_activated", "kind": "subscription_activated", "subscription": "sub_hosted",
        "subscription_id": sub_id, "status": "active",
        "period_start": PERIOD_START.isoformat(), "period_end": PERIOD_END.isoformat(),
    })
    assert activated.processed is True

    summary = webhook_service.sweep(now=received_at + timedelta(minutes=5))

    assert summary == {"retried": 1, "processed": 1, "graceCanceled": 0, "prorationsQueued": 0}
    ev = WebhookEvent.query.filter_by(provider_event_id="evt_paid").one()
    assert ev.processed is True
    assert ev.last_error is None
    inv = Invoice.query.filter_by(provider_invoice_id="in_1").one()
    assert (inv.status, inv.amount_paid) == ("paid", 2000)


def test_deferred_downgrade_survives_failed_rollover(app, ctx, fake_adapter):
    fake_adapter.create_status = "active"
    sub_id = lifecycle.create_subscription("org_1", "team_monthly", 3, now=PERIOD_START).subscription.id
    lifecycle.update_plan(sub_id, "starter_monthly", now=PERIOD_START + timedelta(days=10))
    next_end = PERIOD_END + timedelta(days=31)
    received_at = utcnow()

    fake_adapter.errors = [ProviderUnavailable("down")] * app.config["PROVIDER_MAX_ATTEMPTS"]
    rolled = _ingest({
        "id": "evt_renewed", "kind": "subscription_updated", "subscription": f"sub_fake_{sub_id}",
        "status": "active", "period_start": PERIOD_END.isoformat(), "period_end": next_end.isoformat(),
    })

    assert rolled.processed is False
    db.session.expire_all()
    sub = db.session.get(Subscription, sub_id)
    assert (sub.plan_id, sub.pending_plan_id) == ("team_monthly", "starter_monthly")
    assert sub.current_period_end == PERIOD_END
    assert sub.pending_operation is None

    summary = webhook_service.sweep(now=received_at + timedelta(minutes=5))

    assert summary["processed"] == 1
    db.session.expire_all()
    sub = db.session.get(Subscription, sub_id)
    assert (sub.plan_id, sub.pending_plan_id, sub.amount) == ("starter_monthly", None, 2000)
    assert (sub.current_period_start, sub.current_period_end) == (PERIOD_END, next_end)


def test_recovery_is_not_blocked_by_a_second_subscription(ctx, fake_adapter):
    sub_id = lifecycle.create_subscription("org_1", "starter_monthly", 3, now=PERIOD_START).subscription.id
    _ingest({"id": "evt_failed", "kind": "invoice_payment_failed", "subscription": f"sub_fake_{sub_id}",
             "invoice": "in_1", "amount": 2000})
    assert db.session.get(Subscription, sub_id).status == "past_due"

    with pytest.raises(StateConflict):
        lifecycle.create_subscription("org_1", "starter_monthly", 3, now=PERIOD_START)

    recovered = _ingest({"id": "evt_paid", "kind": "invoice_payment_succeeded", "subscription": f"sub_fake_{sub_id}",
                         "invoice": "in_1", "amount": 2000, "amount_paid": 2000})
    assert recovered.processed is True
    db.session.expire_all()
    assert db.session.get(Subscription, sub_id).status == "active"
    assert Subscription.query.count() == 1


def test_sweep_honours_min_age_and_backoff(ctx, fake_adapter):
    _ingest(_orphan_event())
    received_at = utcnow()

    # Too fresh: the inline attempt may still be running
    assert webhook_service.sweep(now=received_at)["retried"] == 0
    # Old enough, but the first backoff step (60s) has not elapsed
    assert webhook_service.sweep(now=received_at + timedelta(seconds=45))["retried"] == 0

    later = received_at + timedelta(minutes=2)
    assert webhook_service.sweep(now=later) == {"retried": 1, "processed": 0, "graceCanceled": 0, "prorationsQueued": 0}

    ev = WebhookEvent.query.one()
    assert ev.attempts == 2
    assert ev.next_attempt_at == later + timedelta(seconds=120)


def test_crash_inside_handler_is_scheduled_not_raised(ctx, fake_adapter, monkeypatch):
    sub_id = lifecycle.create_subscription("org_1", "starter_monthly", 3, now=PERIOD_START).subscription.id

    def _boom(event, now=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(lifecycle, "apply_event", _boom)
    result = _ingest({"id": "evt_crash", "kind": "subscription_canceled", "subscription": f"sub_fake_{sub_id}"})

    assert result.processed is False
    ev = WebhookEvent.query.one()
    assert ev.last_error == "RuntimeError: boom"
    assert db.session.get(Subscription, sub_id).status == "active"


def test_event_is_dead_lettered_after_max_attempts(app, ctx, fake_adapter, monkeypatch):
    monkeypatch.setitem(app.config, "WEBHOOK_MAX_ATTEMPTS", 2)
    dead = []

    def _on_dead(sender, **payload):
        dead.append(payload)

    with signals.webhook_dead_lettered.connected_to(_on_dead):
        _ingest(_orphan_event())
        received_at = utcnow()
        webhook_service.sweep(now=received_at + timedelta(hours=2))

    ev = WebhookEvent.query.one()
    assert ev.attempts == 2
    assert ev.is_dead_lettered
    assert ev.next_attempt_at is None
    assert dead and dead[0]["event_id"] == "evt_orphan"
    assert webhook_service.list_dead_letters() == [ev]

    # Dead letters are left alone by later sweeps
    assert webhook_service.sweep(now=received_at + timedelta(hours=4))["retried"] == 0

    webhook_service.requeue_event(ev.id)
    ev = db.session.get(WebhookEvent, ev.id)
    assert (ev.attempts, ev.dead_lettered_at, ev.next_attempt_at) == (0, None, None)
    assert webhook_service.list_dead_letters() == []


def test_requeue_unknown_event(ctx):
    from billing_engine.errors import NotFound

    with pytest.raises(NotFound):
        webhook_service.requeue_event(999)


def test_sweep_cancels_expired_grace_periods(ctx, fake_adapter):
    sub_id = lifecycle.create_subscription("org_1", "starter_monthly", 3, now=PERIOD_START).subscription.id
    _ingest(
        {"id": "evt_failed", "kind": "invoice_payment_failed", "subscription": f"sub_fake_{sub_id}",
         "invoice": "in_1", "amount": 2000},
        now=PERIOD_END,
    )
    assert db.session.get(Subscription, sub_id).status == "past_due"

    summary = webhook_service.sweep(now=PERIOD_END + timedelta(days=4))

    assert summary["graceCanceled"] == 1
    db.session.expire_all()
    sub = db.session.get(Subscription, sub_id)
    assert sub.status == "canceled"
    assert sub.cancel_reason == "payment_grace_expired"
    assert fake_adapter.calls[-1] == ("cancel", (f"sub_fake_{sub_id}", False))


# --- CLI --------------------------------------------------------------------

def test_cli_sweep_reports_summary(app):
    result = app.test_cli_runner().invoke(args=["billing", "sweep"])
    assert result.exit_code == 0
    assert "sweep retried=0 processed=0 grace_canceled=0 prorations_queued=0" in result.output


def test_cli_dead_letters_and_requeue(app, fake_adapter, monkeypatch):
    monkeypatch.setitem(app.config, "WEBHOOK_MAX_ATTEMPTS", 1)
    with app.app_context():
        _ingest(_orphan_event("evt_cli"))
        ev_id = WebhookEvent.query.one().id

    runner = app.test_cli_runner()
    listed = runner.invoke(args=["billing", "dead-letters"])
    assert listed.exit_code == 0
    assert "evt_cli" in listed.output
    assert "attempts=1" in listed.output

    requeued = runner.invoke(args=["billing", "requeue", str(ev_id)])
    assert requeued.exit_code == 0
    assert f"Requeued event {ev_id}" in requeued.output
    assert "No dead-lettered events" in runner.invoke(args=["billing", "dead-letters"]).output

    missing = runner.invoke(args=["billing", "requeue", "4242"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_cli_lists_plans(app):
    result = app.test_cli_runner().invoke(args=["billing", "plans"])
    assert result.exit_code == 0
    assert "starter_monthly" in result.output
    assert "team_annual" in result.output
