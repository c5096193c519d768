"""Base POS adapter protocol - interface for all POS integrations."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from tableside_schemas import (
    CanonicalCatalogItem,
    CanonicalLocation,
    CanonicalOrder,
    CanonicalWebhookEvent,
    CheckoutInput,
    CheckoutResult,
    POSProvider,
)

# Prefix on reference IDs of orders created through our checkout. Normalization
# uses it to tell platform orders apart from orders rung up at the terminal.
PLATFORM_REFERENCE_PREFIX = "ts_"


@runtime_checkable
class POSAdapter(Protocol):
    """
    Protocol defining the interface for POS system integrations.

    All POS adapters (Square, Toast, Clover) must implement this interface.
    Network methods are async to support non-blocking I/O with external APIs;
    webhook verification and normalization are pure and synchronous.
    """

    @property
    def provider(self) -> POSProvider:
        """The POS provider this adapter connects to."""
        ...

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        ...

    # =========================================================================
    # Catalog
    # =========================================================================

    async def fetch_catalog(self, location_id: str) -> list[CanonicalCatalogItem]:
        """
        Fetch the full sellable catalog for a location.

        Follows pagination to completion. Archived, deleted and hidden
        records are filtered out before mapping.

        Raises:
            POSAPIError: If the API request fails.
        """
        ...

    # =========================================================================
    # Orders
    # =========================================================================

    async def fetch_order(self, order_id: str) -> CanonicalOrder | None:
        """
        Fetch one order.

        Returns:
            The canonical order, or None when the provider reports not found.

        Raises:
            POSAuthError, POSRateLimitError, POSAPIError: On other failures.
        """
        ...

    async def search_orders(
        self,
        location_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[CanonicalOrder]:
        """Return all orders updated in [since, until], following every page."""
        ...

    async def create_checkout(self, checkout: CheckoutInput) -> CheckoutResult:
        """
        Create a provider-hosted checkout for canonical line items.

        The provider order is tagged with a PLATFORM_REFERENCE_PREFIX
        reference so later webhooks normalize to source=platform_online.

        Raises:
            POSOrderError: If the provider response is missing the order.
            POSAPIError: If the API request fails.
        """
        ...

    # =========================================================================
    # Locations
    # =========================================================================

    async def fetch_locations(self) -> list[CanonicalLocation]:
        """List merchant locations visible to the credential."""
        ...

    async def fetch_location(self, location_id: str) -> CanonicalLocation | None:
        """Fetch one location, or None when it does not exist."""
        ...

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Verify the provider signature on a webhook delivery.

        When no signing secret is configured, the delivery is accepted only
        if the adapter was built with allow_unsigned_webhooks.
        """
        ...

    def normalize_webhook(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        """
        Map a provider webhook payload to a canonical event.

        Never raises on malformed input; unmappable payloads become
        UnknownWebhookEvent with the raw payload attached.
        """
        ...
