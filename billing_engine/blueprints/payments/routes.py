from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import BillingError
from billing_engine.extensions import limiter
from billing_engine.models import Invoice
from billing_engine.services import lifecycle, purchases
from billing_engine.blueprints.payments import schemas

payments_bp = Blueprint("payments", __name__)


@payments_bp.errorhandler(BillingError)
def handle_billing_error(exc: BillingError):
    log = current_app.logger.error if exc.retryable else current_app.logger.warning
    log(
        "payments.command_failed",
        extra={"error": exc.code, "path": request.path, "http_status": exc.status_code, **exc.context},
    )
    return jsonify(exc.to_dict()), exc.status_code


@payments_bp.post("/subscriptions")
@limiter.limit("10/minute")
def create_subscription():
    args = schemas.parse_create(request.get_json(silent=True))
    result = lifecycle.create_subscription(
        args["org_id"], args["plan_id"], args["seats"], provider=args["provider"]
    )
    return jsonify(schemas.command_to_dict(result)), 201


@payments_bp.get("/subscriptions/<int:subscription_id>")
@limiter.limit("120/minute")
def get_subscription(subscription_id: int):
    sub = lifecycle.get_subscription(subscription_id)
    return jsonify({"subscription": schemas.subscription_to_dict(sub)})


@payments_bp.put("/subscriptions/<int:subscription_id>")
@limiter.limit("30/minute")
def update_subscription(subscription_id: int):
    args = schemas.parse_update(request.get_json(silent=True))
    if args["plan_id"] is None:
        result = lifecycle.set_seats(subscription_id, args["seats"], force=args["force"])
    else:
        result = lifecycle.update_plan(subscription_id, args["plan_id"], args["seats"], force=args["force"])
    return jsonify(schemas.command_to_dict(result))


@payments_bp.put("/subscriptions/<int:subscription_id>/seats")
@limiter.limit("30/minute")
def update_seats(subscription_id: int):
    args = schemas.parse_seats(request.get_json(silent=True))
    result = lifecycle.set_seats(subscription_id, args["seats"], force=args["force"])
    return jsonify(schemas.command_to_dict(result))


@payments_bp.get("/subscriptions/<int:subscription_id>/seats")
@limiter.limit("120/minute")
def get_seats(subscription_id: int):
    sub = lifecycle.get_subscription(subscription_id)
    return jsonify(schemas.seats_to_dict(sub))


@payments_bp.post("/subscriptions/<int:subscription_id>/cancel")
@limiter.limit("10/minute")
def cancel_subscription(subscription_id: int):
    args = schemas.parse_cancel(request.get_json(silent=True))
    result = lifecycle.cancel(subscription_id, at_period_end=args["at_period_end"], reason=args["reason"])
    return jsonify(schemas.command_to_dict(result))


@payments_bp.get("/subscriptions/<int:subscription_id>/invoices")
@limiter.limit("60/minute")
def list_invoices(subscription_id: int):
    sub = lifecycle.get_subscription(subscription_id)
    rows = (
        Invoice.query.filter_by(subscription_id=sub.id)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .all()
    )
    return jsonify({"subscriptionId": sub.id, "invoices": [schemas.invoice_to_dict(inv) for inv in rows]})


@payments_bp.post("/purchases")
@limiter.limit("10/minute")
def create_purchase():
    args = schemas.parse_purchase(request.get_json(silent=True))
    purchase = purchases.create_purchase(
        args["org_id"], args["product_id"], user_id=args["user_id"], provider=args["provider"]
    )
    return jsonify({"purchase": schemas.purchase_to_dict(purchase)}), 201


@payments_bp.get("/purchases/<int:purchase_id>")
@limiter.limit("120/minute")
def get_purchase(purchase_id: int):
    purchase = purchases.get_purchase(purchase_id)
    return jsonify({"purchase": schemas.purchase_to_dict(purchase)})
