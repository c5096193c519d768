"""
Order reconciliation - repairs orders whose webhook never arrived.

Polls each location's recently updated orders from the provider and applies
them the same way the worker applies a webhook. Running alongside the worker
is safe: stored orders never move backwards and ticket moves are monotonic.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from django.db import transaction
from tableside_schemas import CanonicalOrder

from apps.web.pos.adapters import POSAdapter
from apps.web.pos.exceptions import POSConfigurationError, POSError
from apps.web.pos.models import POSLocation
from apps.web.pos.registry import AdapterRegistry
from apps.web.pos.services.orders import upsert_order
from apps.web.pos.services.tickets import sync_ticket_from_order

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    """Counts for one location's reconcile run."""

    provider: str
    location_id: str
    fetched: int = 0
    created: int = 0
    applied: int = 0
    stale: int = 0
    error: str = ""

    def as_dict(self) -> dict[str, str | int]:
        return {
            "provider": self.provider,
            "location_id": self.location_id,
            "fetched": self.fetched,
            "created": self.created,
            "applied": self.applied,
            "stale": self.stale,
            "error": self.error,
        }


async def _search_orders(
    adapter: POSAdapter,
    location_id: str,
    since: datetime,
    until: datetime | None,
) -> list[CanonicalOrder]:
    try:
        return await adapter.search_orders(location_id, since, until)
    finally:
        await adapter.close()


def reconcile_location(
    location: POSLocation,
    since: datetime,
    registry: AdapterRegistry,
    until: datetime | None = None,
) -> ReconcileSummary:
    """
    Pull a location's orders updated in [since, until] and apply them.

    Args:
        location: Location to reconcile.
        since: Start of the provider updated_at window.
        registry: Adapter registry.
        until: End of the window (defaults to now).

    Returns:
        ReconcileSummary for the location.

    Raises:
        POSConfigurationError: If the location has no credentials.
        POSError: If the provider search fails.
    """
    adapter = registry.adapter_for_location(location)
    if adapter is None:
        raise POSConfigurationError(
            f"No {location.provider} credentials for location {location.external_id}",
            provider=location.provider,
        )

    orders = asyncio.run(_search_orders(adapter, location.external_id, since, until))
    summary = ReconcileSummary(
        provider=location.provider,
        location_id=location.external_id,
        fetched=len(orders),
    )
    actor = f"reconcile:{location.provider}"

    for canonical in orders:
        with transaction.atomic():
            result = upsert_order(location, canonical)
            if result.applied:
                sync_ticket_from_order(result.order, canonical, actor=actor)
        if result.created:
            summary.created += 1
        elif result.applied:
            summary.applied += 1
        else:
            summary.stale += 1

    logger.info(
        "Reconciled %s location %s: %d fetched, %d created, %d applied, %d stale",
        location.provider,
        location.external_id,
        summary.fetched,
        summary.created,
        summary.applied,
        summary.stale,
    )
    return summary


def reconcile_locations(
    registry: AdapterRegistry,
    since: datetime,
    provider: str | None = None,
    location_id: str | None = None,
) -> list[ReconcileSummary]:
    """
    Reconcile every active location, optionally narrowed by provider or ID.

    A provider failure at one location is recorded on its summary and the
    run moves on to the next location.
    """
    locations = POSLocation.objects.select_related("client").filter(is_active=True)
    if provider:
        locations = locations.filter(provider=provider)
    if location_id:
        locations = locations.filter(external_id=location_id)

    summaries = []
    for location in locations:
        try:
            summaries.append(reconcile_location(location, since, registry))
        except POSError as e:
            logger.warning(
                "Reconcile failed for %s location %s: %s",
                location.provider,
                location.external_id,
                e,
            )
            summaries.append(
                ReconcileSummary(
                    provider=location.provider,
                    location_id=location.external_id,
                    error=str(e),
                )
            )
    return summaries
