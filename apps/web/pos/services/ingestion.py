"""
Webhook ingestion store - durable, deduplicated record of deliveries.

A delivery is recorded once per (provider, event_id). The unique constraint
is the dedup point: a concurrent or repeated insert of the same event hits
IntegrityError inside a savepoint and is reported as a duplicate.
"""

import logging
from dataclasses import dataclass
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.web.pos.models import WebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    """Outcome of recording a delivery."""

    stored: bool
    event: WebhookEvent

    @property
    def duplicate(self) -> bool:
        return not self.stored


def record_webhook_event(
    provider: str,
    event_id: str,
    event_type: str,
    payload: dict[str, Any],
    signature: str = "",
) -> RecordResult:
    """
    Record a webhook delivery, idempotent on (provider, event_id).

    Args:
        provider: POS provider name.
        event_id: Provider event ID (or payload fingerprint).
        event_type: Canonical event type.
        payload: Raw JSON payload.
        signature: Signature header value, kept for audit.

    Returns:
        RecordResult with stored=False when the event was already recorded.
    """
    try:
        with transaction.atomic():
            event = WebhookEvent.objects.create(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                signature=signature[:500],
            )
    except IntegrityError:
        existing = WebhookEvent.objects.get(provider=provider, event_id=event_id)
        logger.info("Duplicate %s webhook %s ignored", provider, event_id)
        return RecordResult(stored=False, event=existing)

    logger.info("Recorded %s webhook %s (%s)", provider, event_id, event_type)
    return RecordResult(stored=True, event=event)


def _set_status(event: WebhookEvent, status: str, error: str = "") -> None:
    event.status = status
    event.processed_at = timezone.now()
    event.error = error
    event.save(update_fields=["status", "processed_at", "error"])


def mark_event_processed(event: WebhookEvent) -> None:
    _set_status(event, WebhookEventStatus.PROCESSED)


def mark_event_ignored(event: WebhookEvent, reason: str = "") -> None:
    """Mark an event that needs no action (unknown type, unknown location)."""
    logger.info(
        "Ignoring %s webhook %s: %s", event.provider, event.event_id, reason or "-"
    )
    _set_status(event, WebhookEventStatus.IGNORED, reason)


def mark_event_failed(event: WebhookEvent, error: str) -> None:
    _set_status(event, WebhookEventStatus.FAILED, error)
