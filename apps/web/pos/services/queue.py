"""
Webhook job queue.

Jobs are rows in WebhookJob, one per (provider, event_id). Workers claim
jobs with SELECT ... FOR UPDATE SKIP LOCKED and a compare-and-set update
guarded on status=queued, so two workers never run the same job.

Lifecycle:
    queued -> processing -> succeeded
                         -> queued (retry, run_after pushed back)
                         -> failed (non-retryable or out of attempts)
"""

import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.web.pos.models import (
    WebhookEvent,
    WebhookEventStatus,
    WebhookJob,
    WebhookJobStatus,
)

logger = logging.getLogger(__name__)

# Delay before attempt n+1, indexed by attempts already made (capped at the end)
BACKOFF_SCHEDULE_SECONDS = [5, 30, 120, 600, 3600]

STALE_LOCK_AFTER = timedelta(minutes=5)


def compute_backoff(attempts: int) -> timedelta:
    """Backoff after the given number of attempts; strictly increasing, capped."""
    index = min(max(attempts, 1), len(BACKOFF_SCHEDULE_SECONDS)) - 1
    return timedelta(seconds=BACKOFF_SCHEDULE_SECONDS[index])


def max_attempts() -> int:
    return int(getattr(settings, "POS_JOB_MAX_ATTEMPTS", 5))


# =============================================================================
# Enqueue / claim
# =============================================================================


def enqueue_job(event: WebhookEvent) -> tuple[WebhookJob, bool]:
    """
    Create the job for an event if it does not exist.

    Existing jobs are left untouched whatever their status; only
    replay_job puts a finished job back in the queue.

    Returns:
        (job, created)
    """
    job, created = WebhookJob.objects.get_or_create(
        provider=event.provider,
        event_id=event.event_id,
        defaults={"webhook_event": event},
    )
    if created:
        logger.info("Enqueued job for %s:%s", event.provider, event.event_id)
    return job, created


def claim_jobs(
    limit: int = 20,
    locked_by: str = "",
    provider: str | None = None,
    now: datetime | None = None,
) -> list[WebhookJob]:
    """
    Claim up to ``limit`` due jobs for this worker.

    Each job moves queued -> processing with attempts incremented. A job
    whose compare-and-set update matches no row was taken by someone else
    and is skipped.

    Args:
        limit: Maximum jobs to claim.
        locked_by: Worker identifier stored on the job.
        provider: Only claim jobs for this provider.
        now: Clock override (tests).

    Returns:
        Claimed jobs, refreshed from the database.
    """
    now = now or timezone.now()
    claimed: list[WebhookJob] = []

    with transaction.atomic():
        due = WebhookJob.objects.select_for_update(skip_locked=True).filter(
            status=WebhookJobStatus.QUEUED,
            run_after__lte=now,
        )
        if provider:
            due = due.filter(provider=provider)

        for job in due.order_by("run_after", "id")[:limit]:
            updated = WebhookJob.objects.filter(
                pk=job.pk,
                status=WebhookJobStatus.QUEUED,
            ).update(
                status=WebhookJobStatus.PROCESSING,
                attempts=F("attempts") + 1,
                locked_at=now,
                locked_by=locked_by,
                updated_at=now,
            )
            if updated:
                job.refresh_from_db()
                claimed.append(job)

    if claimed:
        logger.info("Claimed %d webhook jobs (%s)", len(claimed), locked_by or "-")
    return claimed


# =============================================================================
# Completion
# =============================================================================


def mark_job_succeeded(job: WebhookJob) -> None:
    job.status = WebhookJobStatus.SUCCEEDED
    job.locked_at = None
    job.locked_by = ""
    job.last_error = ""
    job.save(update_fields=["status", "locked_at", "locked_by", "last_error", "updated_at"])


def record_job_failure(
    job: WebhookJob,
    error: str,
    retryable: bool = True,
    retry_after: int | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Record a failed attempt and either reschedule or fail the job.

    Args:
        job: The claimed job.
        error: Error message persisted as last_error.
        retryable: False fails the job immediately.
        retry_after: Provider-requested delay in seconds (rate limits).
        now: Clock override (tests).

    Returns:
        True if the job was rescheduled, False if it is now failed.
    """
    now = now or timezone.now()
    job.last_error = error[:2000]
    job.locked_at = None
    job.locked_by = ""

    if retryable and job.attempts < max_attempts():
        delay = compute_backoff(job.attempts)
        if retry_after is not None:
            delay = max(delay, timedelta(seconds=retry_after))
        job.status = WebhookJobStatus.QUEUED
        job.run_after = now + delay
        logger.warning(
            "Job %s:%s attempt %d failed, retrying in %ds: %s",
            job.provider,
            job.event_id,
            job.attempts,
            int(delay.total_seconds()),
            error,
        )
        rescheduled = True
    else:
        job.status = WebhookJobStatus.FAILED
        logger.error(
            "Job %s:%s failed after %d attempts: %s",
            job.provider,
            job.event_id,
            job.attempts,
            error,
        )
        rescheduled = False

    job.save(
        update_fields=[
            "status",
            "run_after",
            "locked_at",
            "locked_by",
            "last_error",
            "updated_at",
        ]
    )
    return rescheduled


def release_job(job: WebhookJob) -> None:
    """Return a claimed but unstarted job to the queue, undoing the attempt."""
    WebhookJob.objects.filter(pk=job.pk, status=WebhookJobStatus.PROCESSING).update(
        status=WebhookJobStatus.QUEUED,
        attempts=F("attempts") - 1,
        locked_at=None,
        locked_by="",
    )


def reset_stale_jobs(
    older_than: timedelta = STALE_LOCK_AFTER,
    now: datetime | None = None,
) -> int:
    """
    Recover processing jobs whose worker went away.

    A stale job already at the attempt ceiling is failed along with its
    webhook event; the rest are requeued.

    Returns:
        Number of jobs requeued.
    """
    now = now or timezone.now()
    stale = WebhookJob.objects.filter(
        status=WebhookJobStatus.PROCESSING,
        locked_at__lt=now - older_than,
    )
    error = "worker lost the job after the last allowed attempt"
    exhausted = list(
        stale.filter(attempts__gte=max_attempts()).values_list("pk", "webhook_event_id")
    )
    if exhausted:
        with transaction.atomic():
            WebhookJob.objects.filter(pk__in=[pk for pk, _ in exhausted]).update(
                status=WebhookJobStatus.FAILED,
                locked_at=None,
                locked_by="",
                last_error=error,
            )
            WebhookEvent.objects.filter(pk__in=[event_pk for _, event_pk in exhausted]).update(
                status=WebhookEventStatus.FAILED,
                processed_at=now,
                error=error,
            )
        logger.error("Failed %d stale webhook jobs at the attempt ceiling", len(exhausted))

    count = stale.filter(attempts__lt=max_attempts()).update(
        status=WebhookJobStatus.QUEUED,
        locked_at=None,
        locked_by="",
        run_after=now,
    )
    if count:
        logger.warning("Reset %d stale webhook jobs", count)
    return count


# =============================================================================
# Replay
# =============================================================================


def replay_job(
    provider: str | None = None,
    event_id: str | None = None,
    job_id: int | None = None,
    now: datetime | None = None,
) -> WebhookJob:
    """
    Put a job back in the queue from scratch.

    Resets attempts, clears the error and makes the job due now; the webhook
    event goes back to received. Creates the job when only the event exists.

    Raises:
        WebhookEvent.DoesNotExist: If no event matches.
        WebhookJob.DoesNotExist: If job_id matches no job.
        ValueError: If neither job_id nor provider/event_id is given.
    """
    now = now or timezone.now()

    with transaction.atomic():
        if job_id is not None:
            job = WebhookJob.objects.select_for_update().get(pk=job_id)
            event = job.webhook_event
        elif provider and event_id:
            event = WebhookEvent.objects.get(provider=provider, event_id=event_id)
            job, _ = WebhookJob.objects.select_for_update().get_or_create(
                provider=provider,
                event_id=event_id,
                defaults={"webhook_event": event},
            )
        else:
            raise ValueError("replay_job needs job_id or provider and event_id")

        job.status = WebhookJobStatus.QUEUED
        job.attempts = 0
        job.run_after = now
        job.locked_at = None
        job.locked_by = ""
        job.last_error = ""
        job.save()

        event.status = WebhookEventStatus.RECEIVED
        event.processed_at = None
        event.error = ""
        event.save(update_fields=["status", "processed_at", "error"])

    logger.info("Replayed job %s:%s", job.provider, job.event_id)
    return job
