import json
import os


def _env_bool(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).lower() == "true"


# Built-in catalog for dev/test; BILLING_PLANS_JSON replaces it per environment.
DEFAULT_PLANS = {
    "starter_monthly": {
        "name": "Starter",
        "interval": "month",
        "currency": "usd",
        "base_amount": 2000,
        "included_seats": 3,
        "seat_amount": 500,
        "max_seats": 10,
        "trial_days": 0,
        "prices": {
            "stripe": {"base": "price_starter_monthly", "seat": "price_starter_seat_monthly"},
            "lemonsqueezy": {"base": "variant_starter_monthly"},
            "polar": {"base": "prod_starter_monthly"},
            "creem": {"base": "prod_starter_monthly"},
        },
    },
    "team_monthly": {
        "name": "Team",
        "interval": "month",
        "currency": "usd",
        "base_amount": 3200,
        "included_seats": 3,
        "seat_amount": 800,
        "max_seats": 50,
        "trial_days": 14,
        "prices": {
            "stripe": {"base": "price_team_monthly", "seat": "price_team_seat_monthly"},
            "lemonsqueezy": {"base": "variant_team_monthly"},
            "polar": {"base": "prod_team_monthly"},
            "creem": {"base": "prod_team_monthly"},
        },
    },
    "team_annual": {
        "name": "Team (annual)",
        "interval": "year",
        "currency": "usd",
        "base_amount": 32000,
        "included_seats": 3,
        "seat_amount": 8000,
        "max_seats": 50,
        "trial_days": 14,
        "prices": {
            "stripe": {"base": "price_team_annual", "seat": "price_team_seat_annual"},
        },
    },
}


def _load_plans():
    raw = os.getenv("BILLING_PLANS_JSON")
    if not raw:
        return DEFAULT_PLANS
    return json.loads(raw)

# One-time products; BILLING_PRODUCTS_JSON replaces them per environment.
DEFAULT_PRODUCTS = {
    "report_pack": {
        "name": "Report pack",
        "currency": "usd",
        "amount": 4900,
    },
    "onboarding_session": {
        "name": "Onboarding session",
        "currency": "usd",
        "amount": 15000,
    },
}


def _load_products():
    raw = os.getenv("BILLING_PRODUCTS_JSON")
    if not raw:
        return DEFAULT_PRODUCTS
    return json.loads(raw)


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Billing engine ---
    BILLING_DEFAULT_PROVIDER = os.getenv("BILLING_DEFAULT_PROVIDER", "stripe")
    BILLING_PLANS = _load_plans()
    BILLING_PRODUCTS = _load_products()
    PAST_DUE_GRACE_DAYS = int(os.getenv("PAST_DUE_GRACE_DAYS", "3"))
    INTENT_STALE_SECONDS = int(os.getenv("INTENT_STALE_SECONDS", "120"))

    # Outbound provider calls
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "5"))
    PROVIDER_MAX_ATTEMPTS = int(os.getenv("PROVIDER_MAX_ATTEMPTS", "3"))
    PROVIDER_RETRY_BASE_DELAY = float(os.getenv("PROVIDER_RETRY_BASE_DELAY", "0.5"))

    # Webhook retry sweep
    WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "8"))
    WEBHOOK_RETRY_BASE_SECONDS = int(os.getenv("WEBHOOK_RETRY_BASE_SECONDS", "60"))
    WEBHOOK_RETRY_MAX_SECONDS = int(os.getenv("WEBHOOK_RETRY_MAX_SECONDS", "3600"))
    WEBHOOK_RETRY_MIN_AGE_SECONDS = int(os.getenv("WEBHOOK_RETRY_MIN_AGE_SECONDS", "30"))
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

    # Taxes: computed by the provider (Stripe Tax); we only pass the flag through
    ENABLE_PROVIDER_TAX = _env_bool("ENABLE_PROVIDER_TAX", "true")

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # --- LemonSqueezy ---
    LEMONSQUEEZY_API_KEY = os.getenv("LEMONSQUEEZY_API_KEY")
    LEMONSQUEEZY_STORE_ID = os.getenv("LEMONSQUEEZY_STORE_ID")
    LEMONSQUEEZY_WEBHOOK_SECRET = os.getenv("LEMONSQUEEZY_WEBHOOK_SECRET")
    LEMONSQUEEZY_API_BASE = os.getenv("LEMONSQUEEZY_API_BASE", "https://api.lemonsqueezy.com/v1")

    # --- Polar ---
    POLAR_ACCESS_TOKEN = os.getenv("POLAR_ACCESS_TOKEN")
    POLAR_WEBHOOK_SECRET = os.getenv("POLAR_WEBHOOK_SECRET")
    POLAR_API_BASE = os.getenv("POLAR_API_BASE", "https://api.polar.sh/v1")

    # --- Creem ---
    CREEM_API_KEY = os.getenv("CREEM_API_KEY")
    CREEM_WEBHOOK_SECRET = os.getenv("CREEM_WEBHOOK_SECRET")
    CREEM_API_BASE = os.getenv("CREEM_API_BASE", "https://api.creem.io/v1")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ["SECRET_KEY"] if os.getenv("APP_ENV") == "production" else BaseConfig.SECRET_KEY
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", BaseConfig.SQLALCHEMY_DATABASE_URI)


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    BILLING_PLANS = DEFAULT_PLANS
    BILLING_PRODUCTS = DEFAULT_PRODUCTS
    PROVIDER_RETRY_BASE_DELAY = 0.0
    ENABLE_PROVIDER_TAX = False
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "staging": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
