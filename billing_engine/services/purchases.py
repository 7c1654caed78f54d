"""
One-time purchases: a catalog product charged once against the
organization's saved billing customer, with no subscription or period.

Same shape as the subscription commands: the purchase row is committed as
``pending`` before the provider call, the charge runs with no lock held,
and the result is written back under the purchase lock. Invoice webhooks
that carry no subscription reference settle purchases by invoice id.
"""
import logging
from contextlib import contextmanager
from datetime import datetime

from flask import current_app
from sqlalchemy import select

from billing_engine import signals
from billing_engine.billing.plans import get_product
from billing_engine.errors import BillingError, NotFound, StateConflict, ValidationError
from billing_engine.extensions import db
from billing_engine.models import Purchase
from billing_engine.models.purchase import PURCHASE_FAILED, PURCHASE_OPEN, PURCHASE_PAID
from billing_engine.models.types import utcnow
from billing_engine.providers import get_adapter
from billing_engine.providers.base import ChargeCommand, EventKind, NormalizedEvent, idempotency_key
from billing_engine.services import payment_methods
from billing_engine.services.locks import purchase_locks
from billing_engine.services.retry import call_with_retry

logger = logging.getLogger(__name__)


@contextmanager
def locked_purchase(purchase_id: int):
    with purchase_locks.hold(purchase_id):
        purchase = db.session.execute(
            select(Purchase)
            .where(Purchase.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if purchase is None:
            raise NotFound(f"Purchase {purchase_id} not found", purchase_id=purchase_id)
        try:
            yield purchase
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def get_purchase(purchase_id: int) -> Purchase:
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFound(f"Purchase {purchase_id} not found", purchase_id=purchase_id)
    return purchase


def _emit(purchase: Purchase) -> None:
    signals.emit(
        signals.purchase_recorded,
        current_app._get_current_object(),
        purchase_id=purchase.id,
        org_id=purchase.org_id,
        product_id=purchase.product_id,
        provider=purchase.provider,
        status=purchase.status,
        amount=purchase.amount,
    )


def create_purchase(org_id: str, product_id: str, user_id: str | None = None, provider: str | None = None,
                    now: datetime | None = None) -> Purchase:
    now = now or utcnow()
    org_id = (str(org_id).strip() if org_id is not None else "")
    if not org_id:
        raise ValidationError("organizationId is required", field="organizationId")
    product = get_product(product_id)

    provider = provider or current_app.config.get("BILLING_DEFAULT_PROVIDER", "stripe")
    adapter = get_adapter(provider)
    if not adapter.supports_immediate_charge:
        raise ValidationError(f"{provider} does not sell one-time products", field="provider")
    customer_id = payment_methods.customer_id_for(org_id, provider)
    if not customer_id:
        raise StateConflict(f"Organization has no billing customer with {provider}", org_id=org_id)

    purchase = Purchase(
        org_id=org_id,
        user_id=user_id,
        product_id=product.id,
        provider=provider,
        provider_customer_id=customer_id,
        amount=product.amount,
        currency=product.currency,
    )
    db.session.add(purchase)
    db.session.commit()
    purchase_id = purchase.id

    charge = ChargeCommand(
        provider_subscription_id=None,
        customer_id=customer_id,
        amount=product.amount,
        currency=product.currency,
        description=product.name,
        idempotency_key=idempotency_key("purchase", purchase_id),
    )
    try:
        result = call_with_retry(lambda: adapter.charge_now(charge), op="charge_now", provider=provider)
    except BillingError as exc:
        with locked_purchase(purchase_id) as locked:
            locked.status = PURCHASE_FAILED
        logger.warning(
            "billing.purchase_failed",
            extra={"purchase_id": purchase_id, "org_id": org_id, "provider": provider, "error": exc.code},
        )
        raise

    with locked_purchase(purchase_id) as locked:
        locked.provider_invoice_id = result.provider_invoice_id
        # A webhook may have settled it already
        if not locked.is_settled:
            locked.status = PURCHASE_PAID if result.status == PURCHASE_PAID else PURCHASE_OPEN
            locked.paid_at = now if locked.status == PURCHASE_PAID else None
    purchase = get_purchase(purchase_id)
    _emit(purchase)
    logger.info(
        "billing.purchase_created",
        extra={"purchase_id": purchase_id, "org_id": org_id, "product_id": product.id, "status": purchase.status},
    )
    return purchase


def apply_invoice_event(event: NormalizedEvent, now: datetime | None = None) -> str:
    """Settle or fail the purchase billed by this invoice. NotFound until the charge is recorded."""
    now = now or utcnow()
    row = Purchase.query.filter_by(provider=event.provider, provider_invoice_id=event.provider_invoice_id).first()
    if row is None:
        raise NotFound(
            "No subscription or purchase matches this event",
            provider=event.provider, event_id=event.event_id, provider_invoice_id=event.provider_invoice_id,
        )
    with locked_purchase(row.id) as purchase:
        if purchase.is_settled:
            return "ignored_paid_purchase"
        if event.kind is EventKind.INVOICE_PAYMENT_SUCCEEDED:
            purchase.status = PURCHASE_PAID
            purchase.paid_at = event.paid_at or now
        else:
            purchase.status = PURCHASE_OPEN
        outcome = f"purchase_{purchase.status}"
    _emit(get_purchase(row.id))
    return outcome
