"""
Adapter registry. Selection is a pure lookup keyed by the provider name pinned
on each Subscription; adapters are built lazily from config and cached per app.
"""
from flask import current_app

from billing_engine.errors import ValidationError
from billing_engine.providers.base import EventKind, NormalizedEvent, ProviderAdapter

PROVIDERS = ("stripe", "lemonsqueezy", "polar", "creem")

_EXTENSION_KEY = "billing.adapters"


def _build(name: str) -> ProviderAdapter:
    cfg = current_app.config
    timeout = float(cfg.get("PROVIDER_TIMEOUT_SECONDS", 5))
    if name == "stripe":
        from billing_engine.providers.stripe_adapter import StripeAdapter
        return StripeAdapter(
            secret_key=cfg.get("STRIPE_SECRET_KEY"),
            webhook_secret=cfg.get("STRIPE_WEBHOOK_SECRET"),
            base_url=cfg.get("APP_BASE_URL", ""),
            timeout=timeout,
            enable_tax=bool(cfg.get("ENABLE_PROVIDER_TAX", False)),
        )
    if name == "lemonsqueezy":
        from billing_engine.providers.lemonsqueezy import LemonSqueezyAdapter
        return LemonSqueezyAdapter(
            api_base=cfg.get("LEMONSQUEEZY_API_BASE"),
            api_key=cfg.get("LEMONSQUEEZY_API_KEY"),
            webhook_secret=cfg.get("LEMONSQUEEZY_WEBHOOK_SECRET"),
            store_id=cfg.get("LEMONSQUEEZY_STORE_ID"),
            timeout=timeout,
        )
    if name == "polar":
        from billing_engine.providers.polar import PolarAdapter
        return PolarAdapter(
            api_base=cfg.get("POLAR_API_BASE"),
            api_key=cfg.get("POLAR_ACCESS_TOKEN"),
            webhook_secret=cfg.get("POLAR_WEBHOOK_SECRET"),
            timeout=timeout,
        )
    if name == "creem":
        from billing_engine.providers.creem import CreemAdapter
        return CreemAdapter(
            api_base=cfg.get("CREEM_API_BASE"),
            api_key=cfg.get("CREEM_API_KEY"),
            webhook_secret=cfg.get("CREEM_WEBHOOK_SECRET"),
            timeout=timeout,
        )
    raise ValidationError(f"Unknown provider {name!r}", field="provider")


def get_adapter(name: str) -> ProviderAdapter:
    cache = current_app.extensions.setdefault(_EXTENSION_KEY, {})
    adapter = cache.get(name)
    if adapter is None:
        if name not in PROVIDERS:
            raise ValidationError(f"Unknown provider {name!r}", field="provider")
        adapter = cache[name] = _build(name)
    return adapter


__all__ = ["PROVIDERS", "get_adapter", "EventKind", "NormalizedEvent", "ProviderAdapter"]
