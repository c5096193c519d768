"""
Drain the POS webhook job queue.

Usage:
    uv run python apps/web/manage.py process_webhook_jobs --once
    uv run python apps/web/manage.py process_webhook_jobs --interval 10
    uv run python apps/web/manage.py process_webhook_jobs --once --provider square
"""

import logging
import time
from typing import Any

from django.apps import apps
from django.core.management.base import BaseCommand

from apps.web.pos.services import run_worker_pass

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Process queued POS webhook jobs"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run one worker pass and exit (default: poll)",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=30,
            help="Polling interval in seconds (default: 30)",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=20,
            help="Maximum jobs claimed per pass (default: 20)",
        )
        parser.add_argument(
            "--provider",
            choices=["square", "toast", "clover"],
            help="Only process jobs for this provider",
        )

    def handle(self, *_args: Any, **options: Any) -> None:
        registry = apps.get_app_config("pos").registry  # type: ignore[attr-defined]

        self.stdout.write("Starting POS webhook worker...")
        while True:
            summary = run_worker_pass(
                registry,
                limit=options["limit"],
                provider=options["provider"],
            )
            if summary.claimed or summary.reset or options["once"]:
                self.stdout.write(
                    f"Claimed {summary.claimed}: {summary.succeeded} succeeded, "
                    f"{summary.retried} retried, {summary.failed} failed, "
                    f"{summary.released} released ({summary.reset} stale reset)"
                )

            if options["once"]:
                break

            time.sleep(options["interval"])
