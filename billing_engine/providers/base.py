"""
Provider adapter contract.

Adapters are a pure translation layer between normalized billing commands and
one payment processor's API. They hold no local state and never touch the
database; the lifecycle manager owns every state change.
"""
import enum
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional


class EventKind(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    PERIOD_ENDED = "period_ended"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"
    IGNORED = "ignored"


@dataclass(frozen=True)
class NormalizedEvent:
    provider: str
    event_id: str
    kind: EventKind
    event_type: str  # provider-native type, kept for logs/audit
    provider_subscription_id: Optional[str] = None
    subscription_id: Optional[int] = None  # internal id echoed back through provider metadata
    provider_customer_id: Optional[str] = None
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    provider_invoice_id: Optional[str] = None
    amount_total: Optional[int] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    billing_reason: Optional[str] = None
    payment_method: Optional[Dict[str, Any]] = None
    occurred_at: Optional[datetime] = None

    @property
    def subscription_ref(self) -> Optional[str]:
        return self.provider_subscription_id or (str(self.subscription_id) if self.subscription_id else None)


@dataclass(frozen=True)
class LineItem:
    kind: str
    price_id: Optional[str]
    quantity: int
    unit_amount: int
    provider_item_id: Optional[str] = None


@dataclass(frozen=True)
class CreateSubscriptionCommand:
    subscription_id: int
    org_id: str
    plan_id: str
    seats: int
    items: List[LineItem]
    currency: str
    interval: str
    trial_days: int = 0
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class UpdateSubscriptionCommand:
    provider_subscription_id: str
    plan_id: str
    seats: int
    items: List[LineItem]
    customer_id: Optional[str] = None
    currency: str = "usd"
    # Recorded proration to put on the next provider invoice (negative = credit)
    proration_amount: int = 0
    proration_description: Optional[str] = None
    # Provider item ids no longer priced after this change
    removed_item_ids: List[str] = field(default_factory=list)
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ChargeCommand:
    # None for a one-time purchase outside any subscription
    provider_subscription_id: Optional[str]
    customer_id: Optional[str]
    amount: int
    currency: str
    description: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ProviderSubscription:
    provider_subscription_id: Optional[str]
    status: str
    checkout_url: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    # price_id -> provider item id, for SubscriptionItem bookkeeping
    item_ids: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderCharge:
    provider_invoice_id: Optional[str]
    status: str
    amount_total: int
    amount_paid: int


class ProviderAdapter(ABC):
    name: str = ""
    # Can bill an arbitrary amount right now (otherwise proration waits for the next invoice)
    supports_immediate_charge: bool = False
    # Creation hands back a hosted checkout URL and activation arrives by webhook
    redirect_checkout: bool = True

    @abstractmethod
    def create_subscription(self, cmd: CreateSubscriptionCommand) -> ProviderSubscription:
        ...

    @abstractmethod
    def update_subscription(self, cmd: UpdateSubscriptionCommand) -> ProviderSubscription:
        ...

    @abstractmethod
    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        ...

    @abstractmethod
    def charge_now(self, cmd: ChargeCommand) -> ProviderCharge:
        ...

    def add_invoice_item(self, cmd: ChargeCommand) -> None:
        """Queue an amount onto the subscription's next provider invoice."""
        from billing_engine.errors import ProviderRejected

        raise ProviderRejected(f"{self.name} cannot queue invoice items", provider=self.name, op="add_invoice_item")

    @abstractmethod
    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Raise SignatureInvalid unless the payload was signed by the provider."""

    @abstractmethod
    def parse_event(self, payload: Dict[str, Any], event_id: Optional[str] = None) -> NormalizedEvent:
        """Map an already-trusted provider envelope onto a NormalizedEvent."""

    def event_id_from_headers(self, headers: Mapping[str, str]) -> Optional[str]:
        return None

    def normalize_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        from billing_engine.errors import SignatureInvalid

        self.verify_signature(raw_body, headers)
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise SignatureInvalid("payload is not valid JSON", provider=self.name) from exc
        if not isinstance(payload, dict):
            raise SignatureInvalid("payload is not a JSON object", provider=self.name)
        return self.parse_event(payload, event_id=self.event_id_from_headers(headers))


def payload_digest(payload: Dict[str, Any]) -> str:
    """Stable id for providers whose envelopes carry no event id."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "billing:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
