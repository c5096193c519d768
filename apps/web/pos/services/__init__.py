"""POS services - webhook ingestion, job queue, order sync and kitchen tickets."""

from apps.web.pos.services.ingestion import (
    RecordResult,
    mark_event_failed,
    mark_event_ignored,
    mark_event_processed,
    record_webhook_event,
)
from apps.web.pos.services.orders import UpsertResult, upsert_order
from apps.web.pos.services.queue import (
    claim_jobs,
    compute_backoff,
    enqueue_job,
    mark_job_succeeded,
    record_job_failure,
    release_job,
    replay_job,
    reset_stale_jobs,
)
from apps.web.pos.services.reconcile import (
    ReconcileSummary,
    reconcile_location,
    reconcile_locations,
)
from apps.web.pos.services.tickets import (
    ensure_ticket,
    sync_ticket_from_order,
    target_status_for_order,
    transition_ticket,
    update_ticket_status,
)
from apps.web.pos.services.worker import WorkerSummary, process_job, run_worker_pass

__all__ = [
    "ReconcileSummary",
    "RecordResult",
    "UpsertResult",
    "WorkerSummary",
    "claim_jobs",
    "compute_backoff",
    "enqueue_job",
    "ensure_ticket",
    "mark_event_failed",
    "mark_event_ignored",
    "mark_event_processed",
    "mark_job_succeeded",
    "process_job",
    "reconcile_location",
    "reconcile_locations",
    "record_job_failure",
    "record_webhook_event",
    "release_job",
    "replay_job",
    "reset_stale_jobs",
    "run_worker_pass",
    "sync_ticket_from_order",
    "target_status_for_order",
    "transition_ticket",
    "update_ticket_status",
]
