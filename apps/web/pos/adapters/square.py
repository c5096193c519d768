"""Square POS adapter - integration with Square's commerce platform."""

import base64
import hashlib
import hmac
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

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
    FulfillmentStatus,
    FulfillmentType,
    LocationStatus,
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

# Square API version - update periodically
SQUARE_API_VERSION = "2024-01-18"

SIGNATURE_HEADER = "x-square-hmacsha256-signature"

_ORDER_EVENT_TYPES = {
    "order.created": "order.created",
    "order.updated": "order.updated",
    "order.fulfillment.updated": "order.updated",
}
_PAYMENT_EVENT_TYPES = {"payment.created", "payment.updated"}

_FULFILLMENT_TYPES = {
    "PICKUP": FulfillmentType.PICKUP,
    "DELIVERY": FulfillmentType.DELIVERY,
    "SHIPMENT": FulfillmentType.DELIVERY,
    "DINE_IN": FulfillmentType.DINE_IN,
}

_FULFILLMENT_STATES = {
    "PROPOSED": FulfillmentStatus.PENDING,
    "RESERVED": FulfillmentStatus.PREPARING,
    "PREPARED": FulfillmentStatus.READY,
    "COMPLETED": FulfillmentStatus.COMPLETED,
    "CANCELED": FulfillmentStatus.CANCELED,
    "FAILED": FulfillmentStatus.CANCELED,
}


class SquareAdapter:
    """
    Square POS adapter implementing the POSAdapter protocol.

    Integrates with Square's commerce platform for:
    - Catalog listing (Catalog API, one canonical item per variation)
    - Orders (Orders API) and hosted checkout (Payment Links)
    - Webhook verification and normalization

    Square amounts are integer minor units and pass through unchanged.

    API Reference: https://developer.squareup.com/reference/square
    """

    SANDBOX_BASE_URL = "https://connect.squareupsandbox.com"
    PROD_BASE_URL = "https://connect.squareup.com"

    # Square rate limits are per-endpoint, generally generous
    REQUESTS_PER_SECOND = 10.0

    # Pagination limits
    CATALOG_PAGE_SIZE = 100
    ORDER_SEARCH_PAGE_SIZE = 100

    def __init__(
        self,
        credentials: POSCredentials,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the Square adapter.

        Args:
            credentials: Resolved Square credentials (access token, webhook key).
            http_client: Optional HTTP client for dependency injection (testing).
            timeout: Per-request timeout in seconds when we own the client.
        """
        self._credentials = credentials
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._sandbox = credentials.sandbox
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
        return POSProvider.SQUARE

    # =========================================================================
    # HTTP Helpers
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Make a rate-limited, authenticated request to the Square API."""
        if self._client is None:
            self._client = build_client(self._timeout)

        headers = {
            "Authorization": f"Bearer {self._credentials.access_token}",
            "Square-Version": SQUARE_API_VERSION,
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        await self._rate_limiter.acquire()
        return await send(
            self._client,
            method,
            f"{self._base_url}{path}",
            "square",
            headers=headers,
            **kwargs,
        )

    # =========================================================================
    # Catalog
    # =========================================================================

    async def fetch_catalog(self, location_id: str) -> list[CanonicalCatalogItem]:
        """
        Fetch all sellable variations for a Square location.

        Square items carry one or more variations with their own price; each
        variation becomes one canonical item with id ``{item}_{variation}``.
        Deleted objects and objects not present at the location are skipped.
        A location override with ``sold_out`` marks the variation unavailable.

        Args:
            location_id: Square location ID.

        Returns:
            Canonical catalog items.

        Raises:
            POSAPIError: If the API request fails.
        """
        items: list[dict[str, Any]] = []
        modifier_lists: dict[str, dict[str, Any]] = {}
        cursor: str | None = None

        while True:
            body: dict[str, Any] = {
                "object_types": ["ITEM"],
                "include_related_objects": True,
                "limit": self.CATALOG_PAGE_SIZE,
            }
            if cursor:
                body["cursor"] = cursor

            response = await self._request("POST", "/v2/catalog/search", json=body)
            data: dict[str, Any] = response.json()

            items.extend(data.get("objects", []))
            for related in data.get("related_objects", []):
                if related.get("type") == "MODIFIER_LIST":
                    modifier_lists[related["id"]] = related

            cursor = data.get("cursor")
            if not cursor:
                break

        catalog: list[CanonicalCatalogItem] = []
        for obj in items:
            if obj.get("type") != "ITEM" or not _present_at(obj, location_id):
                continue
            catalog.extend(self._parse_item(obj, location_id, modifier_lists))
        return catalog

    def _parse_item(
        self,
        obj: dict[str, Any],
        location_id: str,
        modifier_lists: dict[str, dict[str, Any]],
    ) -> list[CanonicalCatalogItem]:
        """Convert one Square ITEM into canonical items, one per variation."""
        item_data = obj.get("item_data", {})
        variations = [
            v for v in item_data.get("variations", []) if _present_at(v, location_id)
        ]
        groups = self._parse_modifier_groups(item_data, modifier_lists)

        parsed: list[CanonicalCatalogItem] = []
        for variation in variations:
            var_data = variation.get("item_variation_data", {})
            price_money = var_data.get("price_money") or {}

            sold_out = any(
                override.get("location_id") == location_id and override.get("sold_out")
                for override in var_data.get("location_overrides", [])
            )

            name = item_data.get("name", "") or "Unknown Item"
            var_name = var_data.get("name", "")
            if len(variations) > 1 and var_name:
                name = f"{name} - {var_name}"

            parsed.append(
                CanonicalCatalogItem(
                    id=f"{obj['id']}_{variation['id']}",
                    external_id=obj["id"],
                    variation_id=variation["id"],
                    provider=POSProvider.SQUARE,
                    name=name,
                    description=item_data.get("description", "") or "",
                    price_cents=max(0, cents(price_money.get("amount"))),
                    currency=price_money.get("currency", "USD"),
                    is_available=not sold_out,
                    category_id=item_data.get("category_id"),
                    modifier_groups=groups,
                )
            )
        return parsed

    def _parse_modifier_groups(
        self,
        item_data: dict[str, Any],
        modifier_lists: dict[str, dict[str, Any]],
    ) -> list[CanonicalModifierGroup]:
        """Convert Square modifier lists attached to an item."""
        groups: list[CanonicalModifierGroup] = []
        for info in item_data.get("modifier_list_info", []):
            if info.get("enabled") is False:
                continue
            list_id = info.get("modifier_list_id", "")
            mod_list = modifier_lists.get(list_id)
            if mod_list is None or mod_list.get("is_deleted"):
                continue

            list_data = mod_list.get("modifier_list_data", {})
            modifiers = [
                CanonicalModifier(
                    id=mod.get("id", ""),
                    name=mod.get("modifier_data", {}).get("name", ""),
                    price_cents=max(
                        0,
                        cents(
                            (mod.get("modifier_data", {}).get("price_money") or {}).get(
                                "amount"
                            )
                        ),
                    ),
                )
                for mod in list_data.get("modifiers", [])
                if not mod.get("is_deleted")
            ]

            # Square uses -1 for "no explicit limit"
            min_selected = max(0, info.get("min_selected_modifiers", 0) or 0)
            max_selected = info.get("max_selected_modifiers")
            if max_selected is not None and max_selected < 0:
                max_selected = None

            groups.append(
                CanonicalModifierGroup(
                    id=list_id,
                    external_id=list_id,
                    name=list_data.get("name", ""),
                    required=min_selected > 0,
                    min_selected=min_selected,
                    max_selected=max_selected,
                    modifiers=modifiers,
                )
            )
        return groups

    # =========================================================================
    # Orders
    # =========================================================================

    async def fetch_order(self, order_id: str) -> CanonicalOrder | None:
        """
        Fetch a Square order by ID.

        Args:
            order_id: Square order ID.

        Returns:
            Canonical order, or None if Square reports 404.

        Raises:
            POSAPIError: If the API request fails for any other reason.
        """
        try:
            response = await self._request("GET", f"/v2/orders/{order_id}")
        except POSNotFoundError:
            logger.info("Square order %s not found", order_id)
            return None

        order = response.json().get("order")
        if not order:
            return None
        return self.map_order(order)

    async def search_orders(
        self,
        location_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[CanonicalOrder]:
        """
        Search orders updated within a time range, following the cursor.

        Args:
            location_id: Square location ID.
            since: Start of the updated_at range.
            until: End of the range (defaults to now).

        Returns:
            Canonical orders in ascending updated_at order.
        """
        until = until or datetime.now(UTC)
        orders: list[CanonicalOrder] = []
        cursor: str | None = None

        while True:
            body: dict[str, Any] = {
                "location_ids": [location_id],
                "limit": self.ORDER_SEARCH_PAGE_SIZE,
                "query": {
                    "filter": {
                        "date_time_filter": {
                            "updated_at": {
                                "start_at": since.isoformat(),
                                "end_at": until.isoformat(),
                            }
                        }
                    },
                    "sort": {"sort_field": "UPDATED_AT", "sort_order": "ASC"},
                },
            }
            if cursor:
                body["cursor"] = cursor

            response = await self._request("POST", "/v2/orders/search", json=body)
            data = response.json()
            orders.extend(self.map_order(order) for order in data.get("orders", []))

            cursor = data.get("cursor")
            if not cursor:
                break

        return orders

    def map_order(self, order: dict[str, Any]) -> CanonicalOrder:
        """Convert a Square order object to a CanonicalOrder."""
        items = [self._map_line_item(line) for line in order.get("line_items", [])]
        metadata = {str(k): str(v) for k, v in (order.get("metadata") or {}).items()}
        reference_id = metadata.get("ts_reference_id") or order.get("reference_id")

        subtotal = sum(item.total_price_cents for item in items)
        totals = reconcile_totals(
            subtotal_cents=subtotal,
            tax_cents=cents((order.get("total_tax_money") or {}).get("amount")),
            discount_cents=cents(
                (order.get("total_discount_money") or {}).get("amount")
            ),
            provider_total_cents=cents(order["total_money"].get("amount"))
            if order.get("total_money")
            else None,
            provider="square",
            order_id=order.get("id", ""),
        )

        fulfillment = (order.get("fulfillments") or [{}])[0]
        now = datetime.now(UTC)
        created_at = parse_timestamp(order.get("created_at")) or now

        return CanonicalOrder(
            id=reference_id or order.get("id", ""),
            external_id=order.get("id", ""),
            provider=POSProvider.SQUARE,
            location_id=order.get("location_id", ""),
            source=order_source(reference_id),
            status=self._map_order_status(order),
            items=items,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            discount_cents=totals.discount_cents,
            adjustment_cents=totals.adjustment_cents,
            total_cents=totals.total_cents,
            currency=(order.get("total_money") or {}).get("currency", "USD"),
            created_at=created_at,
            updated_at=parse_timestamp(order.get("updated_at")) or created_at,
            customer_name=_recipient(fulfillment).get("display_name"),
            customer_email=_recipient(fulfillment).get("email_address"),
            customer_phone=_recipient(fulfillment).get("phone_number"),
            fulfillment_type=_FULFILLMENT_TYPES.get(fulfillment.get("type", "")),
            fulfillment_status=_FULFILLMENT_STATES.get(fulfillment.get("state", "")),
            scheduled_pickup_at=parse_timestamp(
                (fulfillment.get("pickup_details") or {}).get("pickup_at")
            ),
            metadata=metadata,
            raw=order,
        )

    def _map_line_item(self, line: dict[str, Any]) -> CanonicalOrderItem:
        quantity = whole_quantity(line.get("quantity"))
        unit_price = cents((line.get("base_price_money") or {}).get("amount"))
        modifiers = [
            CanonicalOrderItemModifier(
                id=mod.get("catalog_object_id") or mod.get("uid"),
                name=mod.get("name", ""),
                price_cents=cents((mod.get("base_price_money") or {}).get("amount")),
            )
            for mod in line.get("modifiers", [])
        ]
        gross = line.get("gross_sales_money")
        if gross is not None:
            line_total = cents(gross.get("amount"))
        else:
            line_total = (unit_price + sum(m.price_cents for m in modifiers)) * quantity

        return CanonicalOrderItem(
            external_id=line.get("uid") or line.get("catalog_object_id", ""),
            catalog_item_id=line.get("catalog_object_id"),
            name=line.get("name", "") or "Unknown Item",
            quantity=quantity,
            unit_price_cents=unit_price,
            total_price_cents=line_total,
            modifiers=modifiers,
            notes=line.get("note", "") or "",
        )

    def _map_order_status(self, order: dict[str, Any]) -> CanonicalOrderStatus:
        state = order.get("state", "")
        if state == "COMPLETED":
            return CanonicalOrderStatus.COMPLETED
        if state == "CANCELED":
            return CanonicalOrderStatus.CANCELED
        if state == "OPEN" and order.get("tenders"):
            due = (order.get("net_amount_due_money") or {}).get("amount")
            if due is None or cents(due) == 0:
                return CanonicalOrderStatus.PAID
        return CanonicalOrderStatus.OPEN

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout(self, checkout: CheckoutInput) -> CheckoutResult:
        """
        Create a Square hosted payment link for the given line items.

        The order is tagged with a platform reference in both
        ``reference_id`` and ``metadata.ts_reference_id``.

        Args:
            checkout: Canonical checkout request.

        Returns:
            Checkout URL and Square order ID. Square links do not expire.

        Raises:
            POSOrderError: If Square returns no payment link.
            POSAPIError: If the API request fails.
        """
        reference_id = checkout.reference_id or new_reference_id()
        line_items = []
        for item in checkout.items:
            line: dict[str, Any] = {
                "quantity": str(item.quantity),
                "catalog_object_id": item.variation_id or item.catalog_item_id,
            }
            if item.modifiers:
                line["modifiers"] = [{"catalog_object_id": m.id} for m in item.modifiers]
            if item.note:
                line["note"] = item.note
            line_items.append(line)

        fulfillment: dict[str, Any] = {"type": "PICKUP", "state": "PROPOSED"}
        pickup_details: dict[str, Any] = {
            "recipient": {
                "display_name": checkout.customer_name or "Guest",
                **(
                    {"email_address": checkout.customer_email}
                    if checkout.customer_email
                    else {}
                ),
                **(
                    {"phone_number": checkout.customer_phone}
                    if checkout.customer_phone
                    else {}
                ),
            }
        }
        if checkout.scheduled_pickup_at:
            pickup_details["schedule_type"] = "SCHEDULED"
            pickup_details["pickup_at"] = checkout.scheduled_pickup_at.isoformat()
        else:
            pickup_details["schedule_type"] = "ASAP"
        fulfillment["pickup_details"] = pickup_details

        body: dict[str, Any] = {
            "idempotency_key": str(uuid.uuid4()),
            "order": {
                "location_id": checkout.location_id,
                "reference_id": reference_id,
                "line_items": line_items,
                "fulfillments": [fulfillment],
                "metadata": {
                    **checkout.metadata,
                    "ts_reference_id": reference_id,
                    "ts_source": "platform_online",
                },
            },
            "checkout_options": {
                "redirect_url": checkout.redirect_url,
                "ask_for_shipping_address": False,
            },
        }
        prepopulated: dict[str, str] = {}
        if checkout.customer_email:
            prepopulated["buyer_email"] = checkout.customer_email
        if checkout.customer_phone:
            prepopulated["buyer_phone_number"] = checkout.customer_phone
        if prepopulated:
            body["pre_populated_data"] = prepopulated

        response = await self._request(
            "POST", "/v2/online-checkout/payment-links", json=body
        )
        link = response.json().get("payment_link") or {}
        if not link.get("url") or not link.get("order_id"):
            raise POSOrderError(
                "Square did not return a payment link",
                provider="square",
            )

        logger.info(
            "Created Square payment link for order %s (reference %s)",
            link["order_id"],
            reference_id,
        )
        return CheckoutResult(
            checkout_url=link["url"],
            order_id=link["order_id"],
            reference_id=reference_id,
            expires_at=None,
        )

    # =========================================================================
    # Locations
    # =========================================================================

    async def fetch_locations(self) -> list[CanonicalLocation]:
        """List all Square locations for the merchant."""
        response = await self._request("GET", "/v2/locations")
        return [self._map_location(loc) for loc in response.json().get("locations", [])]

    async def fetch_location(self, location_id: str) -> CanonicalLocation | None:
        """Fetch one Square location, or None when it does not exist."""
        try:
            response = await self._request("GET", f"/v2/locations/{location_id}")
        except POSNotFoundError:
            return None
        location = response.json().get("location")
        return self._map_location(location) if location else None

    def _map_location(self, location: dict[str, Any]) -> CanonicalLocation:
        address = location.get("address")
        return CanonicalLocation(
            id=location.get("id", ""),
            provider=POSProvider.SQUARE,
            name=location.get("name", "") or "Unknown Location",
            address=Address(
                line1=address.get("address_line_1", ""),
                line2=address.get("address_line_2", ""),
                city=address.get("locality", ""),
                state=address.get("administrative_district_level_1", ""),
                postal_code=address.get("postal_code", ""),
                country=address.get("country", ""),
            )
            if address
            else None,
            phone=location.get("phone_number", "") or "",
            timezone=location.get("timezone", "") or "",
            currency=location.get("currency", "USD") or "USD",
            status=LocationStatus.ACTIVE
            if location.get("status") == "ACTIVE"
            else LocationStatus.INACTIVE,
        )

    # =========================================================================
    # Webhook Handling
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Verify a Square webhook signature.

        Square signs HMAC-SHA256(signature_key, notification_url + body) and
        sends it base64-encoded in x-square-hmacsha256-signature.

        Args:
            headers: Request headers.
            raw_body: Raw request body bytes.

        Returns:
            True if the signature is valid (or unsigned deliveries are allowed
            and no key is configured).
        """
        secret = self._credentials.webhook_secret
        if not secret:
            return unsigned_webhook_allowed(
                POSProvider.SQUARE, self._credentials.allow_unsigned_webhooks
            )

        signature = get_header(headers, SIGNATURE_HEADER)
        if not signature:
            return False

        combined = self._credentials.notification_url.encode() + raw_body
        expected = base64.b64encode(
            hmac.new(secret.encode(), combined, hashlib.sha256).digest()
        ).decode()
        return hmac.compare_digest(signature, expected)

    def normalize_webhook(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        """
        Map a Square webhook payload to a canonical event.

        Square event types:
        - order.created / order.updated / order.fulfillment.updated
        - payment.created / payment.updated

        Order bodies live in data.object.{order_created,order_updated,
        order_fulfillment_updated}; a full order in data.object.order is
        embedded in the canonical event.
        """
        try:
            return self._normalize(payload)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Malformed Square webhook payload: %s", e)
            return unknown_event(POSProvider.SQUARE, payload, f"malformed payload: {e}")

    def _normalize(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        event_type = str(payload.get("type", "") or "")
        event_id = str(payload.get("event_id", "") or "")
        occurred_at = parse_timestamp(payload.get("created_at")) or datetime.now(UTC)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}

        if not event_id:
            return unknown_event(
                POSProvider.SQUARE,
                payload,
                "missing event_id",
                provider_event_type=event_type,
                occurred_at=occurred_at,
            )

        if event_type in _ORDER_EVENT_TYPES:
            full_order = obj.get("order") if isinstance(obj.get("order"), dict) else None
            summary = (
                obj.get("order_created")
                or obj.get("order_updated")
                or obj.get("order_fulfillment_updated")
                or {}
            )
            order_id = (
                summary.get("order_id")
                or (full_order or {}).get("id")
                or data.get("id")
            )
            location_id = summary.get("location_id") or (full_order or {}).get(
                "location_id"
            )
            if not order_id:
                return unknown_event(
                    POSProvider.SQUARE,
                    payload,
                    "order event without order id",
                    event_id=event_id,
                    provider_event_type=event_type,
                    occurred_at=occurred_at,
                )

            canonical_type = _ORDER_EVENT_TYPES[event_type]
            state = summary.get("state") or (full_order or {}).get("state")
            if canonical_type == "order.updated" and state == "COMPLETED":
                canonical_type = "order.completed"
            elif canonical_type == "order.updated" and state == "CANCELED":
                canonical_type = "order.canceled"

            embedded = None
            if full_order:
                try:
                    embedded = self.map_order(full_order)
                except ValueError as e:
                    logger.warning(
                        "Square webhook %s carried an unmappable order: %s",
                        event_id,
                        e,
                    )

            return OrderWebhookEvent(
                provider=POSProvider.SQUARE,
                event_type=canonical_type,
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=location_id,
                order_id=order_id,
                order=embedded,
                raw=payload,
            )

        if event_type in _PAYMENT_EVENT_TYPES:
            payment = obj.get("payment") if isinstance(obj.get("payment"), dict) else {}
            payment_id = payment.get("id") or data.get("id")
            if not payment_id:
                return unknown_event(
                    POSProvider.SQUARE,
                    payload,
                    "payment event without payment id",
                    event_id=event_id,
                    provider_event_type=event_type,
                    occurred_at=occurred_at,
                )
            return PaymentWebhookEvent(
                provider=POSProvider.SQUARE,
                event_type=event_type,
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=payment.get("location_id"),
                payment_id=payment_id,
                order_id=payment.get("order_id"),
                payment_status=payment.get("status"),
                raw=payload,
            )

        return unknown_event(
            POSProvider.SQUARE,
            payload,
            f"unsupported event type {event_type!r}",
            event_id=event_id,
            provider_event_type=event_type,
            occurred_at=occurred_at,
        )


def _present_at(obj: dict[str, Any], location_id: str) -> bool:
    """Whether a catalog object is live (not deleted) at the location."""
    if obj.get("is_deleted"):
        return False
    if location_id in obj.get("absent_at_location_ids", []):
        return False
    if obj.get("present_at_all_locations", True):
        return True
    return location_id in obj.get("present_at_location_ids", [])


def _recipient(fulfillment: dict[str, Any]) -> dict[str, Any]:
    details = (
        fulfillment.get("pickup_details")
        or fulfillment.get("delivery_details")
        or fulfillment.get("shipment_details")
        or {}
    )
    recipient: dict[str, Any] = details.get("recipient") or {}
    return recipient
