"""
Billing error taxonomy.

Every error carries a machine-readable ``code`` and the HTTP status used when
it reaches a caller. ``retryable`` marks the transient class that the provider
retry helper and the webhook sweep are allowed to retry.
"""
from typing import Any, Dict


class BillingError(Exception):
    code = "billing_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.code.replace("_", " ")
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        payload.update({k: v for k, v in self.context.items() if v is not None})
        return payload


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class ProviderRejected(BillingError):
    """4xx business rejection from the payment processor. Never retried."""
    code = "provider_rejected"
    status_code = 402


class ProviderUnavailable(BillingError):
    """Network failure, timeout or 5xx from the payment processor."""
    code = "provider_unavailable"
    status_code = 503
    retryable = True


class SignatureInvalid(BillingError):
    code = "signature_invalid"
    status_code = 400


class SeatLimitViolation(BillingError):
    code = "seat_limit_violation"
    status_code = 422


class SubscriptionTerminated(BillingError):
    code = "subscription_terminated"
    status_code = 409


class StateConflict(BillingError):
    code = "state_conflict"
    status_code = 409


class IdempotentDuplicate(BillingError):
    """Raised by the webhook store on a repeated (provider, provider_event_id); callers treat it as success."""
    code = "duplicate_event"
    status_code = 200

    def __init__(self, event, **context: Any):
        self.event = event
        super().__init__("event already recorded", **context)
