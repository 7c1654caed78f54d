from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import BillingError, SignatureInvalid
from billing_engine.extensions import limiter
from billing_engine.services import webhooks as webhook_service

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.errorhandler(BillingError)
def handle_webhook_error(exc: BillingError):
    if isinstance(exc, SignatureInvalid):
        # Nothing is persisted for an unverified delivery
        current_app.logger.warning(
            "webhook.signature_invalid",
            extra={"provider": request.view_args.get("provider") if request.view_args else None,
                   "remote_addr": request.remote_addr, "reason": exc.message},
        )
    else:
        current_app.logger.error("webhook.rejected", extra={"error": exc.code, **exc.context})
    return jsonify(exc.to_dict()), exc.status_code


@webhooks_bp.post("/<provider>")
@limiter.limit("600/minute")
def receive(provider: str):
    """
    Provider → /payments/webhooks/<provider>
    Verifies the signature, records the event once, applies it. Downstream
    failures are retried by the sweep, so a verified delivery always gets 200.
    """
    raw = request.get_data(cache=False, as_text=False) or b""
    result = webhook_service.ingest(provider.lower(), raw, request.headers)
    body = {"received": True, "processed": bool(result.processed)}
    if result.duplicate:
        body["duplicate"] = True
    return jsonify(body), 200
