"""Clover POS adapter - integration with Clover's merchant platform."""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx
from tableside_schemas import (
    Address,
    CanonicalCatalogItem,
    CanonicalLocation,
    CanonicalModifier,
    CanonicalModifierGroup,
    CanonicalOrder,
    CanonicalOrderItem,
    CanonicalOrderItemModifier,
    CanonicalOrderStatus,
    CanonicalWebhookEvent,
    CheckoutInput,
    CheckoutResult,
    OrderWebhookEvent,
    PaymentWebhookEvent,
    POSCredentials,
    POSProvider,
)

from apps.web.pos.adapters.common import (
    get_header,
    new_reference_id,
    order_source,
    unknown_event,
    unsigned_webhook_allowed,
    whole_quantity,
)
from apps.web.pos.adapters.http import (
    DEFAULT_TIMEOUT_SECONDS,
    RateLimiter,
    build_client,
    parse_timestamp,
    send,
)
from apps.web.pos.exceptions import POSNotFoundError, POSOrderError
from apps.web.pos.money import cents, reconcile_totals

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Clover-Signature"

# Clover quantities are expressed in thousandths of a unit
UNIT_QTY_SCALE = 1000
# Payment results that mean the money never landed
VOIDED_PAYMENT_RESULTS = frozenset({"VOIDED", "VOIDING"})

_ORDER_ACTIONS = {
    "CREATE": "order.created",
    "UPDATE": "order.updated",
    "DELETE": "order.canceled",
}
_PAYMENT_ACTIONS = {
    "CREATE": "payment.created",
    "UPDATE": "payment.updated",
}


class CloverAdapter:
    """
    Clover POS adapter implementing the POSAdapter protocol.

    Integrates with Clover's merchant platform for:
    - Inventory items (catalog)
    - Orders and platform-originated orders
    - Webhook verification and normalization

    Clover amounts are integer cents. One Clover merchant is one location;
    the credential's location_id is the merchant ID.

    API Reference: https://docs.clover.com/reference
    """

    SANDBOX_BASE_URL = "https://sandbox.dev.clover.com/v3"
    PROD_BASE_URL = "https://api.clover.com/v3"
    CHECKOUT_BASE_URL = "https://www.clover.com/pay"

    REQUESTS_PER_SECOND = 10.0
    PAGE_SIZE = 100
    CHECKOUT_TTL = timedelta(hours=24)

    def __init__(
        self,
        credentials: POSCredentials,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the Clover adapter.

        Args:
            credentials: Clover credentials; location_id is the merchant ID.
            http_client: Optional HTTP client for dependency injection (testing).
            timeout: Per-request timeout in seconds when we own the client.
        """
        self._credentials = credentials
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._base_url = (
            self.SANDBOX_BASE_URL if credentials.sandbox else self.PROD_BASE_URL
        )
        self._rate_limiter = RateLimiter(self.REQUESTS_PER_SECOND)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def provider(self) -> POSProvider:
        """The POS provider this adapter connects to."""
        return POSProvider.CLOVER

    @property
    def merchant_id(self) -> str:
        return self._credentials.location_id

    # =========================================================================
    # HTTP Helpers
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        merchant_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a rate-limited request under /merchants/{mId}."""
        if self._client is None:
            self._client = build_client(self._timeout)

        merchant = merchant_id or self.merchant_id
        headers = {
            "Authorization": f"Bearer {self._credentials.access_token}",
            "Content-Type": "application/json",
        }
        await self._rate_limiter.acquire()
        return await send(
            self._client,
            method,
            f"{self._base_url}/merchants/{merchant}{path}",
            "clover",
            headers=headers,
            **kwargs,
        )

    async def _paginate(
        self,
        path: str,
        params: list[tuple[str, Any]],
        merchant_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Follow limit/offset pagination until a short page."""
        elements: list[dict[str, Any]] = []
        offset = 0
        while True:
            page_params = [*params, ("limit", self.PAGE_SIZE), ("offset", offset)]
            response = await self._request(
                "GET", path, merchant_id=merchant_id, params=page_params
            )
            page = response.json().get("elements", [])
            elements.extend(page)
            if len(page) < self.PAGE_SIZE:
                return elements
            offset += self.PAGE_SIZE

    # =========================================================================
    # Catalog
    # =========================================================================

    async def fetch_catalog(self, location_id: str) -> list[CanonicalCatalogItem]:
        """
        Fetch all sellable inventory items for a merchant.

        Hidden, deleted and unavailable items are skipped.

        Args:
            location_id: Clover merchant ID.

        Returns:
            Canonical catalog items.
        """
        raw_items = await self._paginate(
            "/items",
            [("expand", "modifierGroups.modifiers,categories")],
            merchant_id=location_id,
        )
        return [
            self._parse_item(raw)
            for raw in raw_items
            if not raw.get("hidden")
            and not raw.get("deleted")
            and raw.get("available") is not False
        ]

    def _parse_item(self, raw: dict[str, Any]) -> CanonicalCatalogItem:
        categories = (raw.get("categories") or {}).get("elements", [])
        return CanonicalCatalogItem(
            id=raw["id"],
            external_id=raw["id"],
            provider=POSProvider.CLOVER,
            name=raw.get("name", "") or "Unknown Item",
            description=raw.get("alternateName", "") or "",
            price_cents=max(0, cents(raw.get("price"))),
            currency="USD",
            is_available=True,
            category_id=categories[0].get("id") if categories else None,
            modifier_groups=[
                self._parse_modifier_group(group)
                for group in (raw.get("modifierGroups") or {}).get("elements", [])
            ],
        )

    def _parse_modifier_group(self, raw: dict[str, Any]) -> CanonicalModifierGroup:
        min_selected = raw.get("minRequired", 0) or 0
        return CanonicalModifierGroup(
            id=raw.get("id", ""),
            external_id=raw.get("id", ""),
            name=raw.get("name", ""),
            required=min_selected > 0,
            min_selected=min_selected,
            max_selected=raw.get("maxAllowed") or None,
            modifiers=[
                CanonicalModifier(
                    id=mod.get("id", ""),
                    name=mod.get("name", ""),
                    price_cents=max(0, cents(mod.get("price"))),
                )
                for mod in (raw.get("modifiers") or {}).get("elements", [])
                if mod.get("available") is not False
            ],
        )

    # =========================================================================
    # Orders
    # =========================================================================

    async def fetch_order(self, order_id: str) -> CanonicalOrder | None:
        """
        Fetch a Clover order with line items, payments and customers expanded.

        Returns:
            Canonical order, or None if Clover reports 404.
        """
        try:
            response = await self._request(
                "GET",
                f"/orders/{order_id}",
                params={"expand": "lineItems,lineItems.modifications,payments,customers"},
            )
        except POSNotFoundError:
            logger.info("Clover order %s not found", order_id)
            return None
        return self.map_order(response.json())

    async def search_orders(
        self,
        location_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[CanonicalOrder]:
        """List orders modified in [since, until], following every page."""
        until = until or datetime.now(UTC)
        raw_orders = await self._paginate(
            "/orders",
            [
                ("expand", "lineItems,lineItems.modifications,payments"),
                ("filter", f"modifiedTime>={_epoch_ms(since)}"),
                ("filter", f"modifiedTime<={_epoch_ms(until)}"),
                ("orderBy", "modifiedTime ASC"),
            ],
            merchant_id=location_id,
        )
        return [self.map_order(order) for order in raw_orders]

    def map_order(self, order: dict[str, Any]) -> CanonicalOrder:
        """Convert a Clover order to a CanonicalOrder."""
        items = [
            self._map_line_item(line)
            for line in (order.get("lineItems") or {}).get("elements", [])
            if not line.get("refunded") and not line.get("exchanged")
        ]
        payments = (order.get("payments") or {}).get("elements", [])
        successful = [p for p in payments if p.get("result") == "SUCCESS"]
        tax = sum(cents(p.get("taxAmount")) for p in successful)

        subtotal = sum(item.total_price_cents for item in items)
        totals = reconcile_totals(
            subtotal_cents=subtotal,
            tax_cents=tax,
            provider_total_cents=cents(order["total"]) if "total" in order else None,
            provider="clover",
            order_id=order.get("id", ""),
        )

        customers = (order.get("customers") or {}).get("elements", [])
        customer = customers[0] if customers else {}
        emails = (customer.get("emailAddresses") or {}).get("elements", [])
        phones = (customer.get("phoneNumbers") or {}).get("elements", [])
        name = " ".join(
            part for part in (customer.get("firstName"), customer.get("lastName")) if part
        )

        external_ref = order.get("externalReferenceId")
        created_at = parse_timestamp(order.get("createdTime")) or datetime.now(UTC)
        merchant = (order.get("merchant") or {}).get("id") or self.merchant_id

        return CanonicalOrder(
            id=external_ref or order.get("id", ""),
            external_id=order.get("id", ""),
            provider=POSProvider.CLOVER,
            location_id=merchant,
            source=order_source(external_ref),
            status=_map_order_status(order, payments),
            items=items,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            discount_cents=totals.discount_cents,
            adjustment_cents=totals.adjustment_cents,
            total_cents=totals.total_cents,
            currency=order.get("currency") or "USD",
            created_at=created_at,
            updated_at=parse_timestamp(order.get("modifiedTime")) or created_at,
            customer_name=name or None,
            customer_email=emails[0].get("emailAddress") if emails else None,
            customer_phone=phones[0].get("phoneNumber") if phones else None,
            metadata={
                k: str(v)
                for k, v in {
                    "clover_order_id": order.get("id"),
                    "clover_state": order.get("state"),
                    "title": order.get("title"),
                }.items()
                if v
            },
            raw=order,
        )

    def _map_line_item(self, line: dict[str, Any]) -> CanonicalOrderItem:
        unit_qty = Decimal(line.get("unitQty") or UNIT_QTY_SCALE)
        quantity = whole_quantity(unit_qty / UNIT_QTY_SCALE)
        modifiers = [
            CanonicalOrderItemModifier(
                id=(mod.get("modifier") or {}).get("id") or mod.get("id"),
                name=mod.get("name", ""),
                price_cents=cents(mod.get("amount")),
            )
            for mod in (line.get("modifications") or {}).get("elements", [])
        ]
        unit_price = cents(line.get("price")) + sum(m.price_cents for m in modifiers)
        return CanonicalOrderItem(
            external_id=line.get("id", ""),
            catalog_item_id=(line.get("item") or {}).get("id"),
            name=line.get("name", "") or "Unknown Item",
            quantity=quantity,
            unit_price_cents=unit_price,
            total_price_cents=unit_price * quantity,
            modifiers=modifiers,
            notes=line.get("note", "") or "",
        )

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout(self, checkout: CheckoutInput) -> CheckoutResult:
        """
        Create a Clover order, add its line items and return the pay URL.

        The order carries the platform reference as ``externalReferenceId``.

        Raises:
            POSOrderError: If Clover does not return an order ID.
            POSAPIError: If any API request fails.
        """
        reference_id = checkout.reference_id or new_reference_id()
        merchant = checkout.location_id or self.merchant_id

        response = await self._request(
            "POST",
            "/orders",
            merchant_id=merchant,
            json={
                "state": "open",
                "manualTransaction": False,
                "groupLineItems": True,
                "title": checkout.customer_name or "",
                "note": checkout.metadata.get("note", ""),
                "externalReferenceId": reference_id,
            },
        )
        order_id = (response.json() or {}).get("id")
        if not order_id:
            raise POSOrderError("Clover did not return an order ID", provider="clover")

        for item in checkout.items:
            line: dict[str, Any] = {
                "item": {"id": item.catalog_item_id},
                "unitQty": item.quantity * UNIT_QTY_SCALE,
            }
            if item.note:
                line["note"] = item.note
            line_response = await self._request(
                "POST",
                f"/orders/{order_id}/line_items",
                merchant_id=merchant,
                json=line,
            )
            line_id = (line_response.json() or {}).get("id")
            for mod in item.modifiers:
                await self._request(
                    "POST",
                    f"/orders/{order_id}/line_items/{line_id}/modifications",
                    merchant_id=merchant,
                    json={"modifier": {"id": mod.id}},
                )

        checkout_url = (
            f"{self.CHECKOUT_BASE_URL}/{merchant}?orderId={order_id}"
            f"&redirect={quote(checkout.redirect_url, safe='')}"
        )
        logger.info(
            "Created Clover order %s for checkout (reference %s)",
            order_id,
            reference_id,
        )
        return CheckoutResult(
            checkout_url=checkout_url,
            order_id=order_id,
            reference_id=reference_id,
            expires_at=datetime.now(UTC) + self.CHECKOUT_TTL,
        )

    # =========================================================================
    # Locations
    # =========================================================================

    async def fetch_locations(self) -> list[CanonicalLocation]:
        """A Clover credential maps to exactly one merchant."""
        location = await self.fetch_location(self.merchant_id)
        return [location] if location else []

    async def fetch_location(self, location_id: str) -> CanonicalLocation | None:
        """Fetch the configured merchant, or None for any other ID."""
        if location_id != self.merchant_id:
            return None
        try:
            response = await self._request(
                "GET", "", params={"expand": "address"}
            )
        except POSNotFoundError:
            return None
        merchant = response.json()
        address = merchant.get("address") or {}
        return CanonicalLocation(
            id=merchant.get("id", "") or location_id,
            provider=POSProvider.CLOVER,
            name=merchant.get("name", "") or "Unknown Location",
            address=Address(
                line1=address.get("address1", "") or "",
                line2=address.get("address2", "") or "",
                city=address.get("city", "") or "",
                state=address.get("state", "") or "",
                postal_code=address.get("zip", "") or "",
                country=address.get("country", "") or "",
            )
            if address
            else None,
            phone=merchant.get("phoneNumber", "") or "",
            timezone=merchant.get("timezone", "") or "",
            currency=merchant.get("defaultCurrency") or "USD",
        )

    # =========================================================================
    # Webhook Handling
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Verify the hex HMAC-SHA256 of the raw body in X-Clover-Signature."""
        secret = self._credentials.webhook_secret
        if not secret:
            return unsigned_webhook_allowed(
                POSProvider.CLOVER, self._credentials.allow_unsigned_webhooks
            )

        signature = get_header(headers, SIGNATURE_HEADER)
        if not signature:
            return False

        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.lower(), expected)

    def normalize_webhook(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        """
        Map a Clover webhook batch to one canonical event.

        Clover groups notifications per merchant:
        ``{"appId": ..., "merchants": {mId: [{"type", "objectId", "ts"}]}}``.
        The representative event is the one with the latest ``ts`` (ties
        broken by objectId); the worker re-fetches the order anyway, so the
        latest notification carries all the information we need. The event
        ID is ``{objectId}_{ts}``.
        """
        try:
            return self._normalize(payload)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Malformed Clover webhook payload: %s", e)
            return unknown_event(POSProvider.CLOVER, payload, f"malformed payload: {e}")

    def _normalize(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        candidates: list[tuple[int, str, str, dict[str, Any]]] = []
        for merchant_id, events in (payload.get("merchants") or {}).items():
            for event in events or []:
                if event.get("objectId") and event.get("ts") is not None:
                    candidates.append(
                        (int(event["ts"]), str(event["objectId"]), merchant_id, event)
                    )

        if not candidates:
            return unknown_event(POSProvider.CLOVER, payload, "empty webhook batch")

        ts, object_id, merchant_id, event = max(candidates, key=lambda c: (c[0], c[1]))
        if len(candidates) > 1:
            logger.debug(
                "Clover batch of %d notifications; using %s at %d",
                len(candidates),
                object_id,
                ts,
            )

        kind, action, bare_id = _split_event(str(event.get("type", "")), object_id)
        event_id = f"{object_id}_{ts}"
        occurred_at = datetime.fromtimestamp(ts / 1000, tz=UTC)

        if kind == "O" and action in _ORDER_ACTIONS:
            return OrderWebhookEvent(
                provider=POSProvider.CLOVER,
                event_type=_ORDER_ACTIONS[action],
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=merchant_id,
                order_id=bare_id,
                raw=payload,
            )
        if kind == "P" and action in _PAYMENT_ACTIONS:
            return PaymentWebhookEvent(
                provider=POSProvider.CLOVER,
                event_type=_PAYMENT_ACTIONS[action],
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=merchant_id,
                payment_id=bare_id,
                raw=payload,
            )

        return unknown_event(
            POSProvider.CLOVER,
            payload,
            f"unsupported event {event.get('type')!r} on {object_id!r}",
            event_id=event_id,
            provider_event_type=str(event.get("type", "")),
            occurred_at=occurred_at,
            location_id=merchant_id,
        )


def _split_event(event_type: str, object_id: str) -> tuple[str, str, str]:
    """
    Return (object kind, action, bare object ID).

    Clover sends either ``type="CREATE"`` with ``objectId="O:ABC"`` or
    ``type="O:CREATE"`` with a bare ``objectId``.
    """
    kind = ""
    bare_id = object_id
    if ":" in object_id:
        kind, bare_id = object_id.split(":", 1)
    action = event_type
    if ":" in event_type:
        type_kind, action = event_type.split(":", 1)
        kind = kind or type_kind
    return kind.upper(), action.upper(), bare_id


def _map_order_status(
    order: dict[str, Any], payments: list[dict[str, Any]]
) -> CanonicalOrderStatus:
    state = (order.get("state") or "").lower()
    if order.get("deleted") or state in ("deleted", "voided"):
        return CanonicalOrderStatus.CANCELED
    results = {p.get("result") for p in payments}
    paid = "SUCCESS" in results
    if not paid and results & VOIDED_PAYMENT_RESULTS:
        return CanonicalOrderStatus.CANCELED
    if state == "locked" and paid:
        return CanonicalOrderStatus.COMPLETED
    if paid:
        return CanonicalOrderStatus.PAID
    return CanonicalOrderStatus.OPEN


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
