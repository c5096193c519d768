"""
Tests for the POS management commands.
"""

from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError

import httpx
import pytest
import respx
from tableside_schemas import POSProvider

from apps.web.pos.adapters import SquareAdapter
from apps.web.pos.models import WebhookEventStatus, WebhookJobStatus

from .factories import POSLocationFactory, WebhookEventFactory, WebhookJobFactory


@pytest.mark.django_db
class TestProcessWebhookJobs:
    """Tests for the process_webhook_jobs management command."""

    def test_once_drains_due_jobs(self) -> None:
        """An unmapped event is acknowledged and its job succeeds."""
        job = WebhookJobFactory(
            webhook_event__payload={"type": "inventory.count.updated", "event_id": "evt_inv"}
        )
        out = StringIO()

        call_command("process_webhook_jobs", "--once", stdout=out)

        job.refresh_from_db()
        assert job.status == WebhookJobStatus.SUCCEEDED
        assert job.webhook_event.status == WebhookEventStatus.IGNORED
        output = out.getvalue()
        assert "Starting POS webhook worker..." in output
        assert "Claimed 1: 1 succeeded, 0 retried, 0 failed, 0 released" in output

    def test_once_with_empty_queue(self) -> None:
        out = StringIO()

        call_command("process_webhook_jobs", "--once", stdout=out)

        assert "Claimed 0: 0 succeeded" in out.getvalue()

    def test_provider_filter(self) -> None:
        square = WebhookJobFactory(webhook_event__payload={"type": "x", "event_id": "a"})
        toast = WebhookJobFactory(
            webhook_event__provider="toast",
            webhook_event__payload={"eventType": "x", "eventId": "b"},
        )

        call_command("process_webhook_jobs", "--once", "--provider", "toast", stdout=StringIO())

        square.refresh_from_db()
        toast.refresh_from_db()
        assert square.status == WebhookJobStatus.QUEUED
        assert toast.status == WebhookJobStatus.SUCCEEDED


@pytest.mark.django_db
class TestReplayWebhookJob:
    """Tests for the replay_webhook_job management command."""

    def test_replay_by_job_id(self) -> None:
        job = WebhookJobFactory(status=WebhookJobStatus.FAILED, attempts=5, last_error="boom")
        out = StringIO()

        call_command("replay_webhook_job", "--job-id", str(job.pk), stdout=out)

        job.refresh_from_db()
        assert job.status == WebhookJobStatus.QUEUED
        assert job.attempts == 0
        assert job.last_error == ""
        assert f"Requeued job {job.pk} (square:{job.event_id})" in out.getvalue()

    def test_replay_by_event(self) -> None:
        job = WebhookJobFactory(status=WebhookJobStatus.FAILED, attempts=5)

        call_command(
            "replay_webhook_job",
            "--provider",
            "square",
            "--event-id",
            job.event_id,
            stdout=StringIO(),
        )

        job.refresh_from_db()
        assert job.status == WebhookJobStatus.QUEUED

    def test_replay_event_without_job(self) -> None:
        """An event whose job was never created gets one."""
        event = WebhookEventFactory(event_id="evt_orphan")
        out = StringIO()

        call_command(
            "replay_webhook_job", "--provider", "square", "--event-id", "evt_orphan", stdout=out
        )

        assert event.jobs.get().status == WebhookJobStatus.QUEUED
        assert "(square:evt_orphan)" in out.getvalue()

    def test_requires_arguments(self) -> None:
        with pytest.raises(CommandError, match="Pass --job-id"):
            call_command("replay_webhook_job")

    def test_provider_without_event_id(self) -> None:
        with pytest.raises(CommandError, match="Pass --job-id"):
            call_command("replay_webhook_job", "--provider", "square")

    def test_unknown_job(self) -> None:
        with pytest.raises(CommandError, match="No webhook job with id 999999"):
            call_command("replay_webhook_job", "--job-id", "999999")

    def test_unknown_event(self) -> None:
        with pytest.raises(CommandError, match="No clover webhook event O:NOPE_1"):
            call_command(
                "replay_webhook_job", "--provider", "clover", "--event-id", "O:NOPE_1"
            )


@pytest.mark.django_db
class TestReconcilePOSOrders:
    """Tests for the reconcile_pos_orders management command."""

    @respx.mock
    def test_reconciles_location(self, pos_env) -> None:
        POSLocationFactory(provider=POSProvider.SQUARE, external_id="L1")
        route = respx.post(f"{SquareAdapter.SANDBOX_BASE_URL}/v2/orders/search").mock(
            return_value=httpx.Response(200, json={"orders": []})
        )
        out = StringIO()

        call_command("reconcile_pos_orders", "--since-minutes", "30", stdout=out)

        assert route.call_count == 1
        assert "square L1: 0 fetched, 0 created, 0 applied, 0 stale" in out.getvalue()

    def test_location_error_reported(self, no_pos_env) -> None:
        POSLocationFactory(provider=POSProvider.SQUARE, external_id="L1")
        err = StringIO()

        call_command("reconcile_pos_orders", stdout=StringIO(), stderr=err)

        assert "square L1:" in err.getvalue()
        assert "credentials" in err.getvalue()

    def test_no_locations(self) -> None:
        out = StringIO()

        call_command("reconcile_pos_orders", "--provider", "toast", stdout=out)

        assert "No active locations to reconcile" in out.getvalue()

    def test_rejects_empty_window(self) -> None:
        with pytest.raises(CommandError, match="at least 1"):
            call_command("reconcile_pos_orders", "--since-minutes", "0")
