import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import pytest

from billing_engine import create_app
from billing_engine.errors import SignatureInvalid
from billing_engine.extensions import db
from billing_engine.providers.base import (
    EventKind,
    NormalizedEvent,
    ProviderAdapter,
    ProviderCharge,
    ProviderSubscription,
)

PERIOD_START = datetime(2026, 4, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 5, 1, tzinfo=timezone.utc)  # 30-day cycle


def _dt(val):
    return datetime.fromisoformat(val) if val else None


class FakeAdapter(ProviderAdapter):
    """
    In-memory stand-in for a payment processor. Records every call; tests can
    queue errors or run a hook in the middle of a provider call.
    """

    name = "stripe"
    supports_immediate_charge = True
    redirect_checkout = False

    def __init__(self):
        self.calls = []
        self.errors = []
        # op name -> errors raised by that op only
        self.fail_ops = {}
        self.on_call = None
        self.charge_status = "paid"
        self.create_status = None
        self.period_start = PERIOD_START
        self.period_end = PERIOD_END
        self._seq = 0

    def _enter(self, op, cmd):
        self.calls.append((op, cmd))
        if self.on_call is not None:
            hook, self.on_call = self.on_call, None
            hook(op, cmd)
        if self.fail_ops.get(op):
            raise self.fail_ops[op].pop(0)
        if self.errors:
            raise self.errors.pop(0)

    def ops(self):
        return [op for op, _ in self.calls]

    def create_subscription(self, cmd):
        self._enter("create", cmd)
        status = self.create_status or ("trialing" if cmd.trial_days else "active")
        if status == "incomplete":
            # Hosted checkout: the subscription only exists once the customer pays
            return ProviderSubscription(
                provider_subscription_id=None,
                status=status,
                checkout_url=f"https://pay.example.test/c/{cmd.subscription_id}",
            )
        return ProviderSubscription(
            provider_subscription_id=f"sub_fake_{cmd.subscription_id}",
            status=status,
            provider_customer_id=f"cus_{cmd.org_id}",
            current_period_start=self.period_start,
            current_period_end=self.period_end,
            item_ids={line.price_id: f"si_{line.kind}_{cmd.subscription_id}" for line in cmd.items if line.price_id},
        )

    def update_subscription(self, cmd):
        self._enter("update", cmd)
        self._seq += 1
        return ProviderSubscription(
            provider_subscription_id=cmd.provider_subscription_id,
            status="active",
            item_ids={
                line.price_id: line.provider_item_id or f"si_{line.kind}_u{self._seq}"
                for line in cmd.items if line.price_id
            },
        )

    def cancel_subscription(self, provider_subscription_id, at_period_end):
        self._enter("cancel", (provider_subscription_id, at_period_end))
        return ProviderSubscription(
            provider_subscription_id=provider_subscription_id,
            status="active" if at_period_end else "canceled",
            cancel_at_period_end=at_period_end,
        )

    def charge_now(self, cmd):
        self._enter("charge", cmd)
        self._seq += 1
        paid = self.charge_status == "paid"
        return ProviderCharge(
            provider_invoice_id=f"in_fake_{self._seq}",
            status=self.charge_status,
            amount_total=cmd.amount,
            amount_paid=cmd.amount if paid else 0,
        )

    def add_invoice_item(self, cmd):
        self._enter("pending_item", cmd)

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if headers.get("X-Fake-Signature") != "ok":
            raise SignatureInvalid("bad fake signature", provider=self.name)

    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        return NormalizedEvent(
            provider=self.name,
            event_id=event_id or payload["id"],
            kind=EventKind(payload.get("kind", "ignored")),
            event_type=payload.get("type", "fake"),
            provider_subscription_id=payload.get("subscription"),
            subscription_id=payload.get("subscription_id"),
            provider_customer_id=payload.get("customer"),
            status=payload.get("status"),
            period_start=_dt(payload.get("period_start")),
            period_end=_dt(payload.get("period_end")),
            cancel_at_period_end=payload.get("cancel_at_period_end"),
            provider_invoice_id=payload.get("invoice"),
            amount_total=payload.get("amount"),
            amount_paid=payload.get("amount_paid"),
            payment_method=payload.get("payment_method"),
        )


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        APP_BASE_URL="http://example.test",
        STRIPE_SECRET_KEY="sk_test_x",
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def fake_adapter(app):
    adapter = FakeAdapter()
    cache = app.extensions.setdefault("billing.adapters", {})
    cache["stripe"] = adapter
    yield adapter
    cache.pop("stripe", None)


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


def signed(payload: dict):
    """Body + headers the fake adapter accepts."""
    return json.dumps(payload), {"X-Fake-Signature": "ok", "Content-Type": "application/json"}
