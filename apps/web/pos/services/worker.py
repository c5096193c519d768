"""
Webhook worker - drains the job queue.

One pass per invocation (cron HTTP trigger or management command):
1. Requeue stale processing jobs
2. Claim due jobs
3. Process each job within the pass time budget
4. Release jobs the budget did not reach
"""

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime

from django.conf import settings
from django.db import transaction
from tableside_schemas import (
    CanonicalOrder,
    CanonicalOrderStatus,
    OrderWebhookEvent,
    PaymentWebhookEvent,
    UnknownWebhookEvent,
)

from apps.web.pos.adapters import POSAdapter
from apps.web.pos.exceptions import POSConfigurationError, POSError, POSRateLimitError
from apps.web.pos.models import KitchenTicket, Order, POSLocation, TicketStatus, WebhookJob
from apps.web.pos.registry import AdapterRegistry
from apps.web.pos.services.ingestion import (
    mark_event_failed,
    mark_event_ignored,
    mark_event_processed,
)
from apps.web.pos.services.orders import upsert_order
from apps.web.pos.services.queue import (
    claim_jobs,
    mark_job_succeeded,
    record_job_failure,
    release_job,
    reset_stale_jobs,
)
from apps.web.pos.services.tickets import sync_ticket_from_order, transition_ticket

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
RETRIED = "retried"
FAILED = "failed"


@dataclass
class WorkerSummary:
    """Counts for one worker pass."""

    reset: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "reset": self.reset,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "released": self.released,
        }


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def _fetch_order(adapter: POSAdapter, order_id: str) -> CanonicalOrder | None:
    try:
        return await adapter.fetch_order(order_id)
    finally:
        await adapter.close()


def _resolve_location(provider: str, location_id: str | None) -> POSLocation | None:
    if not location_id:
        return None
    return (
        POSLocation.objects.select_related("client")
        .filter(provider=provider, external_id=location_id, is_active=True)
        .first()
    )


def _cancel_stored_order(provider: str, order_id: str) -> bool:
    """Cancel a stored order and its ticket; False if the order is unknown."""
    with transaction.atomic():
        order = (
            Order.objects.select_for_update()
            .filter(provider=provider, external_id=order_id)
            .first()
        )
        if order is None:
            return False
        if order.status != CanonicalOrderStatus.CANCELED.value:
            order.status = CanonicalOrderStatus.CANCELED.value
            order.save(update_fields=["status", "updated_at"])
        ticket = KitchenTicket.objects.filter(order=order).first()
        if ticket is not None and ticket.status != TicketStatus.CANCELED:
            transition_ticket(ticket, TicketStatus.CANCELED, actor=f"worker:{provider}")
    logger.info("Canceled %s order %s no longer returned by the provider", provider, order_id)
    return True


def _apply(job: WebhookJob, registry: AdapterRegistry) -> None:
    """Normalize the job's event and apply it; raises on failure."""
    event = job.webhook_event
    adapter = registry.webhook_adapter(job.provider)
    canonical_event = adapter.normalize_webhook(event.payload)

    if isinstance(canonical_event, UnknownWebhookEvent):
        mark_event_ignored(event, canonical_event.reason)
        return

    order_id: str | None
    if isinstance(canonical_event, OrderWebhookEvent):
        order_id = canonical_event.order_id
    elif isinstance(canonical_event, PaymentWebhookEvent):
        order_id = canonical_event.order_id
    else:
        order_id = None
    if not order_id:
        mark_event_ignored(event, "event carries no order")
        return

    embedded = getattr(canonical_event, "order", None)
    location_id = canonical_event.location_id or (embedded.location_id if embedded else None)
    location = _resolve_location(job.provider, location_id)
    if location is None:
        mark_event_ignored(event, f"unknown location {location_id!r}")
        return

    canonical = embedded
    if canonical is None:
        api_adapter = registry.adapter_for_location(location)
        if api_adapter is None:
            raise POSConfigurationError(
                f"No {job.provider} credentials for location {location.external_id}",
                provider=job.provider,
            )
        canonical = asyncio.run(_fetch_order(api_adapter, order_id))
        if canonical is None:
            # Deleted orders 404 at the provider; the cancel still applies
            if canonical_event.event_type == "order.canceled" and _cancel_stored_order(
                job.provider, order_id
            ):
                mark_event_processed(event)
                return
            mark_event_ignored(event, f"order {order_id} not found")
            return

    with transaction.atomic():
        result = upsert_order(location, canonical)
        if result.applied:
            sync_ticket_from_order(result.order, canonical, actor=f"worker:{job.provider}")
        mark_event_processed(event)


def process_job(job: WebhookJob, registry: AdapterRegistry) -> str:
    """
    Run one claimed job to completion.

    Non-retryable errors (auth, configuration) fail the job immediately;
    rate limits are retried no sooner than the provider asked; anything
    else is retried with backoff until the attempt ceiling.

    Returns:
        "succeeded", "retried" or "failed".
    """
    try:
        _apply(job, registry)
    except POSError as e:
        retry_after = e.retry_after if isinstance(e, POSRateLimitError) else None
        rescheduled = record_job_failure(
            job, str(e), retryable=e.retryable, retry_after=retry_after
        )
    except Exception as e:
        logger.exception("Unexpected error processing job %s:%s", job.provider, job.event_id)
        rescheduled = record_job_failure(job, f"{type(e).__name__}: {e}")
    else:
        mark_job_succeeded(job)
        return SUCCEEDED

    if rescheduled:
        return RETRIED
    mark_event_failed(job.webhook_event, job.last_error)
    return FAILED


def run_worker_pass(
    registry: AdapterRegistry,
    limit: int = 20,
    provider: str | None = None,
    locked_by: str | None = None,
    now: datetime | None = None,
    budget_seconds: float | None = None,
) -> WorkerSummary:
    """
    Run one worker pass over the queue.

    Args:
        registry: Adapter registry.
        limit: Maximum jobs to claim.
        provider: Only process this provider's jobs.
        locked_by: Worker identifier (defaults to host:pid).
        now: Clock override for claiming (tests).
        budget_seconds: Wall-clock budget; defaults to POS_WORKER_BUDGET_SECONDS.

    Returns:
        WorkerSummary with counts for the pass.
    """
    if budget_seconds is None:
        budget_seconds = float(getattr(settings, "POS_WORKER_BUDGET_SECONDS", 50))
    deadline = time.monotonic() + budget_seconds

    summary = WorkerSummary()
    summary.reset = reset_stale_jobs(now=now)
    jobs = claim_jobs(
        limit=limit,
        locked_by=locked_by or default_worker_id(),
        provider=provider,
        now=now,
    )
    summary.claimed = len(jobs)

    for index, job in enumerate(jobs):
        if time.monotonic() >= deadline:
            for remaining in jobs[index:]:
                release_job(remaining)
            summary.released = len(jobs) - index
            logger.warning(
                "Worker budget of %.0fs exhausted; released %d jobs",
                budget_seconds,
                summary.released,
            )
            break

        outcome = process_job(job, registry)
        if outcome == SUCCEEDED:
            summary.succeeded += 1
        elif outcome == RETRIED:
            summary.retried += 1
        else:
            summary.failed += 1

    if summary.claimed or summary.reset:
        logger.info("Worker pass: %s", summary.as_dict())
    return summary
