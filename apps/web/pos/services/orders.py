"""Canonical order store - upserts POS orders, never moving backwards in time."""

import logging
from dataclasses import dataclass
from typing import Any

from tableside_schemas import CanonicalOrder

from apps.web.pos.models import Order, POSLocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of applying a canonical order."""

    order: Order
    created: bool
    applied: bool


def _order_fields(canonical: CanonicalOrder) -> dict[str, Any]:
    """Model fields derived from the canonical order (all but the reference)."""
    return {
        "source": canonical.source.value,
        "status": canonical.status.value,
        "items": [item.model_dump(mode="json") for item in canonical.items],
        "subtotal_cents": canonical.subtotal_cents,
        "tax_cents": canonical.tax_cents,
        "discount_cents": canonical.discount_cents,
        "adjustment_cents": canonical.adjustment_cents,
        "total_cents": canonical.total_cents,
        "currency": canonical.currency,
        "customer_name": canonical.customer_name or "",
        "customer_email": canonical.customer_email or "",
        "customer_phone": canonical.customer_phone or "",
        "fulfillment_type": canonical.fulfillment_type.value
        if canonical.fulfillment_type
        else "",
        "fulfillment_status": canonical.fulfillment_status.value
        if canonical.fulfillment_status
        else "",
        "provider_updated_at": canonical.updated_at,
        "raw": canonical.raw,
    }


def upsert_order(location: POSLocation, canonical: CanonicalOrder) -> UpsertResult:
    """
    Create or update the stored order for a canonical order.

    Keyed on (provider, external_id). The stored provider_updated_at never
    decreases: a canonical order older than what is stored is not applied.
    The reference is set on create and never changes. Call inside a
    transaction; the row is locked for the update.

    Args:
        location: Location the order belongs to.
        canonical: Normalized provider order.

    Returns:
        UpsertResult(order, created, applied).
    """
    fields = _order_fields(canonical)
    existing = (
        Order.objects.select_for_update()
        .filter(provider=canonical.provider.value, external_id=canonical.external_id)
        .first()
    )

    if existing is None:
        order = Order.objects.create(
            client=location.client,
            location=location,
            reference=canonical.id or f"{canonical.provider.value}:{canonical.external_id}",
            provider=canonical.provider.value,
            external_id=canonical.external_id,
            placed_at=canonical.created_at,
            **fields,
        )
        logger.info(
            "Created order %s (%s:%s, %s)",
            order.reference,
            order.provider,
            order.external_id,
            order.status,
        )
        return UpsertResult(order=order, created=True, applied=True)

    if canonical.updated_at < existing.provider_updated_at:
        logger.info(
            "Skipping stale update for order %s: %s < %s",
            existing.reference,
            canonical.updated_at.isoformat(),
            existing.provider_updated_at.isoformat(),
        )
        return UpsertResult(order=existing, created=False, applied=False)

    for name, value in fields.items():
        setattr(existing, name, value)
    existing.save()
    return UpsertResult(order=existing, created=False, applied=True)
