"""
Poll POS providers for orders whose webhooks were missed.

Usage:
    uv run python apps/web/manage.py reconcile_pos_orders
    uv run python apps/web/manage.py reconcile_pos_orders --since-minutes 120
    uv run python apps/web/manage.py reconcile_pos_orders --provider square --location-id L1
"""

from datetime import timedelta
from typing import Any

from django.apps import apps
from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from apps.web.pos.services import reconcile_locations


class Command(BaseCommand):
    help = "Reconcile recent POS orders against the provider APIs"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument(
            "--since-minutes",
            type=int,
            default=settings.POS_RECONCILE_MINUTES_BACK,
            help="How far back to look, in minutes (default: POS_RECONCILE_MINUTES_BACK)",
        )
        parser.add_argument(
            "--provider",
            choices=["square", "toast", "clover"],
            help="Only reconcile this provider's locations",
        )
        parser.add_argument(
            "--location-id",
            help="Only reconcile the location with this provider location ID",
        )

    def handle(self, *_args: Any, **options: Any) -> None:
        if options["since_minutes"] < 1:
            raise CommandError("--since-minutes must be at least 1")

        registry = apps.get_app_config("pos").registry  # type: ignore[attr-defined]
        since = timezone.now() - timedelta(minutes=options["since_minutes"])
        summaries = reconcile_locations(
            registry,
            since,
            provider=options["provider"],
            location_id=options["location_id"],
        )

        if not summaries:
            self.stdout.write("No active locations to reconcile")
            return

        for summary in summaries:
            label = f"{summary.provider} {summary.location_id}"
            if summary.error:
                self.stderr.write(f"{label}: {summary.error}")
                continue
            self.stdout.write(
                f"{label}: {summary.fetched} fetched, {summary.created} created, "
                f"{summary.applied} applied, {summary.stale} stale"
            )
