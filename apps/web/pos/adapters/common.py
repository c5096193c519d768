"""Helpers shared by the provider adapters."""

import hashlib
import json
import logging
import secrets
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from tableside_schemas import OrderSource, POSProvider, UnknownWebhookEvent

from apps.web.pos.adapters.base import PLATFORM_REFERENCE_PREFIX

logger = logging.getLogger(__name__)


def new_reference_id() -> str:
    """Generate a platform order reference, e.g. ``ts_3f9a0c1b2d4e5f60``."""
    return f"{PLATFORM_REFERENCE_PREFIX}{secrets.token_hex(8)}"


def order_source(reference_id: str | None) -> OrderSource:
    """Platform orders carry our reference prefix; everything else is POS."""
    if reference_id and reference_id.startswith(PLATFORM_REFERENCE_PREFIX):
        return OrderSource.PLATFORM_ONLINE
    return OrderSource.POS


def get_header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
        return ""
    return value


def unsigned_webhook_allowed(provider: POSProvider, allow_unsigned: bool) -> bool:
    """Decide what to do with a webhook when no signing secret is configured."""
    if allow_unsigned:
        logger.warning(
            "%s webhook signing secret not configured; accepting unsigned delivery",
            provider.value,
        )
        return True
    logger.error(
        "%s webhook signing secret not configured; rejecting delivery",
        provider.value,
    )
    return False


def payload_fingerprint(payload: dict[str, Any]) -> str:
    """Deterministic ID for deliveries that carry no provider event ID."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return f"sha256_{hashlib.sha256(encoded).hexdigest()[:32]}"


def unknown_event(
    provider: POSProvider,
    payload: dict[str, Any],
    reason: str,
    event_id: str = "",
    provider_event_type: str = "",
    occurred_at: datetime | None = None,
    location_id: str | None = None,
) -> UnknownWebhookEvent:
    """Build the explicit unknown variant, keeping the raw payload."""
    return UnknownWebhookEvent(
        provider=provider,
        event_id=event_id or payload_fingerprint(payload),
        occurred_at=occurred_at or datetime.now(UTC),
        location_id=location_id,
        raw=payload,
        provider_event_type=provider_event_type,
        reason=reason,
    )


def whole_quantity(value: Any) -> int:
    """Round a provider quantity half-up to a whole unit, never below one."""
    amount = Decimal(str(value or 1))
    return max(1, int(amount.to_integral_value(rounding=ROUND_HALF_UP)))
