import os

from flask import Flask, jsonify, request

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, limiter
from .security import init_security
from .observability import init_logging, init_sentry

# Credentials the configured default provider cannot run without
_PROVIDER_REQUIREMENTS = {
    "stripe": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "lemonsqueezy": ("LEMONSQUEEZY_API_KEY", "LEMONSQUEEZY_STORE_ID", "LEMONSQUEEZY_WEBHOOK_SECRET"),
    "polar": ("POLAR_ACCESS_TOKEN", "POLAR_WEBHOOK_SECRET"),
    "creem": ("CREEM_API_KEY", "CREEM_WEBHOOK_SECRET"),
}


def create_app(config_object=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())
    app.config["APP_ENV"] = app_env

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        provider = app.config.get("BILLING_DEFAULT_PROVIDER", "stripe")
        if provider not in _PROVIDER_REQUIREMENTS:
            raise RuntimeError(f"Unknown BILLING_DEFAULT_PROVIDER: {provider}")
        for name in _PROVIDER_REQUIREMENTS[provider]:
            _require(name)

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # HTTPS, HSTS & CSP only in staging/production
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(app.root_path), "migrations"))
    limiter.init_app(app)

    from . import models  # noqa: F401  (register tables on the metadata)

    # Blueprints
    from .blueprints.payments.routes import payments_bp
    from .blueprints.webhooks.routes import webhooks_bp

    # Webhooks first: /payments/webhooks/<provider> must not fall under the API routes
    app.register_blueprint(webhooks_bp, url_prefix="/payments/webhooks")
    app.register_blueprint(payments_bp, url_prefix="/payments")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # Error handlers: the service only speaks JSON
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "code": 404}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "code": 405}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "code": 500}), 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        app.logger.warning("rate_limited", extra={"path": request.path, "remote_addr": request.remote_addr})
        return jsonify(payload), 429, headers

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app
