"""
Put a webhook job back in the queue.

Usage:
    uv run python apps/web/manage.py replay_webhook_job --job-id 42
    uv run python apps/web/manage.py replay_webhook_job --provider square --event-id evt_123
"""

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from apps.web.pos.models import WebhookEvent, WebhookJob
from apps.web.pos.services import replay_job


class Command(BaseCommand):
    help = "Requeue a POS webhook job with attempts reset"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument("--job-id", type=int, help="WebhookJob primary key")
        parser.add_argument(
            "--provider",
            choices=["square", "toast", "clover"],
            help="Provider of the event to replay",
        )
        parser.add_argument("--event-id", help="Provider event ID to replay")

    def handle(self, *_args: Any, **options: Any) -> None:
        job_id = options["job_id"]
        provider = options["provider"]
        event_id = options["event_id"]

        if job_id is None and not (provider and event_id):
            raise CommandError("Pass --job-id, or --provider and --event-id")

        try:
            job = replay_job(provider=provider, event_id=event_id, job_id=job_id)
        except WebhookJob.DoesNotExist as e:
            raise CommandError(f"No webhook job with id {job_id}") from e
        except WebhookEvent.DoesNotExist as e:
            raise CommandError(f"No {provider} webhook event {event_id}") from e

        self.stdout.write(
            self.style.SUCCESS(
                f"Requeued job {job.pk} ({job.provider}:{job.event_id})"
            )
        )
