import logging
from typing import Callable, TypeVar

from flask import current_app
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_engine.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Capped exponential backoff: base, 2*base, 4*base, ... never above cap."""
    if base <= 0:
        return 0.0
    return min(base * (2 ** max(attempt - 1, 0)), cap)


def call_with_retry(fn: Callable[[], T], *, op: str, provider: str) -> T:
    """
    Run an outbound provider call, retrying only ProviderUnavailable.
    ProviderRejected and everything else propagate on the first failure.
    """
    cfg = current_app.config
    attempts = max(1, int(cfg.get("PROVIDER_MAX_ATTEMPTS", 3)))
    base = float(cfg.get("PROVIDER_RETRY_BASE_DELAY", 0.5))
    cap = max(base, float(cfg.get("PROVIDER_TIMEOUT_SECONDS", 5)))

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception()
        logger.warning(
            "provider.call_retry",
            extra={
                "provider": provider,
                "op": op,
                "attempt": state.attempt_number,
                "delay": state.next_action.sleep if state.next_action else 0,
                "error": getattr(exc, "message", str(exc)),
            },
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base, min=base, max=cap),
        retry=retry_if_exception_type(ProviderUnavailable),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return retrying(fn)
    except ProviderUnavailable as exc:
        logger.error(
            "provider.call_exhausted",
            extra={"provider": provider, "op": op, "attempts": attempts, "error": exc.message},
        )
        raise
