import logging

from billing_engine.extensions import db
from billing_engine.models import BillingCustomer, PaymentMethod

logger = logging.getLogger(__name__)


def upsert_customer(org_id: str, provider: str, provider_customer_id: str | None) -> BillingCustomer | None:
    if not provider_customer_id:
        return None
    bc = BillingCustomer.query.filter_by(provider=provider, provider_customer_id=provider_customer_id).first()
    if bc:
        return bc
    bc = BillingCustomer.query.filter_by(org_id=org_id, provider=provider).first()
    if bc:
        bc.provider_customer_id = provider_customer_id
    else:
        bc = BillingCustomer(org_id=org_id, provider=provider, provider_customer_id=provider_customer_id)
        db.session.add(bc)
    return bc


def customer_id_for(org_id: str, provider: str) -> str | None:
    bc = BillingCustomer.query.filter_by(org_id=org_id, provider=provider).first()
    return bc.provider_customer_id if bc else None


def org_for_customer(provider: str, provider_customer_id: str | None) -> str | None:
    if not provider_customer_id:
        return None
    bc = BillingCustomer.query.filter_by(provider=provider, provider_customer_id=provider_customer_id).first()
    return bc.org_id if bc else None


def default_payment_method(org_id: str, provider: str) -> PaymentMethod | None:
    return PaymentMethod.query.filter_by(org_id=org_id, provider=provider, is_default=True).first()


def record_payment_method(org_id: str, provider: str, provider_payment_method_id: str, *, type: str = "card",
                          brand: str | None = None, last4: str | None = None, exp_month: int | None = None,
                          exp_year: int | None = None, make_default: bool = False) -> PaymentMethod:
    """
    Upsert by provider id. The org's first method, or one recorded with
    make_default, becomes the single default. Caller commits.
    """
    pm = PaymentMethod.query.filter_by(
        provider=provider, provider_payment_method_id=provider_payment_method_id
    ).first()
    if pm is None:
        pm = PaymentMethod(org_id=org_id, provider=provider, provider_payment_method_id=provider_payment_method_id)
        db.session.add(pm)
    pm.type = type or "card"
    pm.brand = brand
    pm.last4 = (last4 or "")[-4:] or None
    pm.exp_month = exp_month
    pm.exp_year = exp_year
    db.session.flush()

    has_other_default = PaymentMethod.query.filter(
        PaymentMethod.org_id == org_id, PaymentMethod.is_default.is_(True), PaymentMethod.id != pm.id
    ).count()
    if make_default or not has_other_default:
        set_default(pm)
    logger.info("billing.payment_method_recorded",
                extra={"org_id": org_id, "provider": provider, "default": pm.is_default})
    return pm


def set_default(pm: PaymentMethod) -> None:
    # Clear the old default first so the partial unique index never sees two
    (
        PaymentMethod.query
        .filter(PaymentMethod.org_id == pm.org_id, PaymentMethod.is_default.is_(True), PaymentMethod.id != pm.id)
        .update({PaymentMethod.is_default: False}, synchronize_session="fetch")
    )
    db.session.flush()
    pm.is_default = True
    db.session.flush()
