"""
Webhook store and processor.

Inbound provider events are verified, recorded once per
(provider, provider_event_id) and applied through the lifecycle manager.
An event that fails to apply stays unprocessed with a backoff schedule;
the sweep retries it and dead-letters it after WEBHOOK_MAX_ATTEMPTS.
Providers always get a 200 once the event is recorded.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from billing_engine import signals
from billing_engine.errors import BillingError, IdempotentDuplicate, NotFound, ValidationError
from billing_engine.extensions import db
from billing_engine.models import WebhookEvent
from billing_engine.models.types import utcnow
from billing_engine.providers import get_adapter
from billing_engine.providers.base import NormalizedEvent
from billing_engine.services import lifecycle
from billing_engine.services.retry import backoff_delay

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    event: WebhookEvent
    processed: bool
    duplicate: bool = False


def ingest(provider: str, raw_body: bytes, headers: Mapping[str, str], now: datetime | None = None) -> IngestResult:
    """Verify, record and apply one delivery. SignatureInvalid propagates and nothing is stored."""
    adapter = get_adapter(provider)
    normalized = adapter.normalize_webhook(raw_body, headers)
    payload = json.loads(raw_body)
    try:
        record = record_event(normalized, payload)
    except IdempotentDuplicate as dup:
        logger.info(
            "webhook.duplicate",
            extra={"provider": provider, "event_id": normalized.event_id, "processed": dup.event.processed},
        )
        return IngestResult(event=dup.event, processed=dup.event.processed, duplicate=True)

    processed = process_event(record, normalized, now=now)
    return IngestResult(event=record, processed=processed)


def record_event(event: NormalizedEvent, payload: dict) -> WebhookEvent:
    if not event.event_id:
        raise ValidationError("webhook event has no id", provider=event.provider)

    existing = WebhookEvent.query.filter_by(provider=event.provider, provider_event_id=event.event_id).first()
    if existing is not None:
        raise IdempotentDuplicate(existing, provider=event.provider, event_id=event.event_id)

    record = WebhookEvent(
        provider=event.provider,
        provider_event_id=event.event_id,
        event_type=event.event_type or event.kind.value,
        payload=payload,
        subscription_ref=event.subscription_ref,
        processed=False,
        attempts=0,
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        db.session.rollback()
        existing = WebhookEvent.query.filter_by(provider=event.provider, provider_event_id=event.event_id).one()
        raise IdempotentDuplicate(existing, provider=event.provider, event_id=event.event_id)

    logger.info(
        "webhook.recorded",
        extra={"provider": record.provider, "event_id": record.provider_event_id, "event_type": record.event_type},
    )
    return record


def process_event(record: WebhookEvent, event: Optional[NormalizedEvent] = None, now: datetime | None = None) -> bool:
    """Apply a recorded event. Returns True once it is processed; failures are scheduled for retry."""
    if record.processed:
        return True
    if record.is_dead_lettered:
        return False

    record_id = record.id
    try:
        if event is None:
            event = get_adapter(record.provider).parse_event(record.payload, event_id=record.provider_event_id)
        outcome = lifecycle.apply_event(event, now=now)
    except BillingError as exc:
        db.session.rollback()
        _schedule_retry(record_id, exc.code, exc.message, now)
        return False
    except Exception as exc:
        db.session.rollback()
        logger.exception("webhook.apply_crashed", extra={"webhook_event_id": record_id})
        _schedule_retry(record_id, type(exc).__name__, str(exc), now)
        return False

    record = db.session.get(WebhookEvent, record_id)
    record.processed = True
    record.processed_at = utcnow()
    record.next_attempt_at = None
    record.last_error = None
    db.session.commit()
    logger.info(
        "webhook.processed",
        extra={"provider": record.provider, "event_id": record.provider_event_id, "outcome": outcome},
    )
    return True


def _schedule_retry(record_id: int, code: str, message: str, now: datetime | None) -> None:
    now = now or utcnow()
    cfg = current_app.config
    record = db.session.get(WebhookEvent, record_id)
    record.attempts = (record.attempts or 0) + 1
    record.last_error = f"{code}: {message}"[:255]

    if record.attempts >= int(cfg.get("WEBHOOK_MAX_ATTEMPTS", 8)):
        record.dead_lettered_at = now
        record.next_attempt_at = None
        db.session.commit()
        logger.error(
            "webhook.dead_lettered",
            extra={"provider": record.provider, "event_id": record.provider_event_id,
                   "attempts": record.attempts, "error": record.last_error},
        )
        signals.emit(
            signals.webhook_dead_lettered,
            current_app._get_current_object(),
            webhook_event_id=record.id,
            provider=record.provider,
            event_id=record.provider_event_id,
            error=record.last_error,
        )
        return

    delay = backoff_delay(
        record.attempts,
        float(cfg.get("WEBHOOK_RETRY_BASE_SECONDS", 60)),
        float(cfg.get("WEBHOOK_RETRY_MAX_SECONDS", 3600)),
    )
    record.next_attempt_at = now + timedelta(seconds=delay)
    db.session.commit()
    logger.warning(
        "webhook.apply_failed",
        extra={"provider": record.provider, "event_id": record.provider_event_id, "attempts": record.attempts,
               "retry_in": delay, "error": record.last_error},
    )


def due_events(now: datetime | None = None, limit: int = 100) -> List[WebhookEvent]:
    now = now or utcnow()
    min_age = timedelta(seconds=int(current_app.config.get("WEBHOOK_RETRY_MIN_AGE_SECONDS", 30)))
    return (
        WebhookEvent.query
        .filter(
            WebhookEvent.processed.is_(False),
            WebhookEvent.dead_lettered_at.is_(None),
            WebhookEvent.created_at <= now - min_age,
            db.or_(WebhookEvent.next_attempt_at.is_(None), WebhookEvent.next_attempt_at <= now),
        )
        .order_by(WebhookEvent.created_at, WebhookEvent.id)
        .limit(limit)
        .all()
    )


def sweep(now: datetime | None = None, limit: int = 100) -> dict:
    """
    One pass of the background reconciliation job: retry due webhook events,
    cancel past_due subscriptions whose grace period ran out, then offer
    held-back proration to the provider again.
    """
    now = now or utcnow()
    retried = processed = 0
    for record in due_events(now, limit=limit):
        retried += 1
        if process_event(record, now=now):
            processed += 1
    canceled = lifecycle.expire_grace_periods(now)
    queued = lifecycle.bill_unbilled_prorations()
    summary = {
        "retried": retried,
        "processed": processed,
        "graceCanceled": len(canceled),
        "prorationsQueued": len(queued),
    }
    logger.info("billing.sweep", extra=summary)
    return summary


def requeue_event(event_id: int) -> WebhookEvent:
    record = db.session.get(WebhookEvent, event_id)
    if record is None:
        raise NotFound(f"Webhook event {event_id} not found", webhook_event_id=event_id)
    if record.processed:
        return record
    record.dead_lettered_at = None
    record.attempts = 0
    record.next_attempt_at = None
    db.session.commit()
    logger.info("webhook.requeued", extra={"provider": record.provider, "event_id": record.provider_event_id})
    return record


def list_dead_letters(limit: int = 100) -> List[WebhookEvent]:
    return (
        WebhookEvent.query
        .filter(WebhookEvent.dead_lettered_at.isnot(None))
        .order_by(WebhookEvent.dead_lettered_at.desc())
        .limit(limit)
        .all()
    )
