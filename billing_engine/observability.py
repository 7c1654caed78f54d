import logging
import os
import uuid
from logging.config import dictConfig

import sentry_sdk
from flask import g, has_request_context, request
from sentry_sdk.integrations.flask import FlaskIntegration

# Never ship these to Sentry: webhook signatures and provider credentials
_SCRUB_HEADERS = {
    "authorization", "x-api-key", "stripe-signature", "x-signature", "creem-signature",
    "webhook-signature", "cookie",
}


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current request id ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = "-"
        if has_request_context():
            rid = getattr(g, "request_id", None) or "-"
        record.request_id = rid
        return True


def init_logging(app):
    """Structured logs (JSON) in staging/prod; keep default console in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = app.config.get("LOG_LEVEL", "INFO")
    if app_env in ("staging", "production"):
        fmt = "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s"
        dictConfig({
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_id": {"()": RequestIdFilter}},
            "formatters": {"json": {"()": "pythonjsonlogger.json.JsonFormatter", "fmt": fmt}},
            "handlers": {"wsgi": {"class": "logging.StreamHandler", "formatter": "json", "filters": ["request_id"]}},
            "root": {"level": level, "handlers": ["wsgi"]},
        })
    else:
        app.logger.setLevel(level)
        logging.getLogger("billing_engine").setLevel(level)

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers.setdefault("X-Request-ID", rid)
        return resp


def _scrub_event(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers")
    if isinstance(headers, dict):
        req["headers"] = {k: ("[scrubbed]" if k.lower() in _SCRUB_HEADERS else v) for k, v in headers.items()}
    # Webhook bodies carry customer and card details
    if "/webhooks/" in (req.get("url") or ""):
        req.pop("data", None)
    return event


def init_sentry(app):
    """Wire Sentry if DSN present; safe no-op otherwise."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            profiles_sample_rate=float(os.getenv("SENTRY_PROFILES", "0.0")),
            environment=os.getenv("APP_ENV", "development"),
            send_default_pii=False,
            before_send=_scrub_event,
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)
