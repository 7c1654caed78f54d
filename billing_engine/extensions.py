from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()


def _rate_limit_key():
    # Calls come from the org/UI layer (tagged with an org header) or from provider webhook senders
    from flask import request
    org = (request.headers.get("X-Org-Id") or "").strip()
    if org:
        return f"org:{org}"
    return get_remote_address()

# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)
