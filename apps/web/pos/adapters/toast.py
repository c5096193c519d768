"""Toast POS adapter - integration with Toast's restaurant platform."""

import base64
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
    FulfillmentStatus,
    FulfillmentType,
    LocationStatus,
    OrderWebhookEvent,
    PaymentWebhookEvent,
    POSCredentials,
    POSProvider,
    POSSession,
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
from apps.web.pos.exceptions import (
    POSAuthError,
    POSNotFoundError,
    POSOrderError,
)
from apps.web.pos.money import dollars_to_cents, reconcile_totals

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Toast-Signature"

# Visibility values that expose an item to online ordering
_ONLINE_VISIBILITY = {"ALL", "ONLINE", "TOAST_ONLINE_ORDERING", "ORDERING_PARTNERS"}

_DINING_BEHAVIORS = {
    "TAKE_OUT": FulfillmentType.PICKUP,
    "DELIVERY": FulfillmentType.DELIVERY,
    "DINE_IN": FulfillmentType.DINE_IN,
}


class ToastAdapter:
    """
    Toast POS adapter implementing the POSAdapter protocol.

    Integrates with Toast's restaurant platform for:
    - Menu listing (Menus API v2)
    - Orders (Orders API v2) and platform-originated orders
    - Webhook verification and normalization

    Toast amounts are decimal dollars; they are converted to cents with
    ROUND_HALF_UP at this boundary.

    API Reference: https://doc.toasttab.com/
    """

    SANDBOX_BASE_URL = "https://ws-sandbox-api.toasttab.com"
    PROD_BASE_URL = "https://ws-api.toasttab.com"
    AUTH_PATH = "/authentication/v1/authentication/login"
    CHECKOUT_BASE_URL = "https://www.toasttab.com/checkout"

    REQUESTS_PER_SECOND = 5.0

    # Re-authenticate this long before the token actually expires
    TOKEN_REFRESH_MARGIN = timedelta(seconds=60)

    ORDERS_PAGE_SIZE = 100
    CHECKOUT_TTL = timedelta(hours=2)

    def __init__(
        self,
        credentials: POSCredentials,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the Toast adapter.

        Args:
            credentials: Toast machine-client credentials; location_id is the
                restaurant GUID.
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
        self._session: POSSession | None = None
        self._rate_limiter = RateLimiter(self.REQUESTS_PER_SECOND)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def provider(self) -> POSProvider:
        """The POS provider this adapter connects to."""
        return POSProvider.TOAST

    @property
    def restaurant_guid(self) -> str:
        return self._credentials.location_id

    # =========================================================================
    # Authentication
    # =========================================================================

    async def authenticate(self) -> POSSession:
        """
        Authenticate with Toast using client credentials.

        Toast uses a machine client flow - no refresh tokens, just
        re-authenticate when the access token expires. The session is cached
        on the adapter.

        Returns:
            Authenticated session with access token.

        Raises:
            POSAuthError: If authentication fails.
        """
        if self._client is None:
            self._client = build_client(self._timeout)

        try:
            response = await send(
                self._client,
                "POST",
                f"{self._base_url}{self.AUTH_PATH}",
                "toast",
                json={
                    "clientId": self._credentials.client_id,
                    "clientSecret": self._credentials.client_secret,
                    "userAccessType": "TOAST_MACHINE_CLIENT",
                },
            )
        except POSNotFoundError as e:
            raise POSAuthError(
                "Toast authentication endpoint not found",
                provider="toast",
            ) from e

        token_data = response.json().get("token", {})
        access_token = token_data.get("accessToken")
        expires_in = token_data.get("expiresIn", 86400)  # Default 24h

        if not access_token:
            raise POSAuthError(
                "No access token in Toast response",
                provider="toast",
            )

        self._session = POSSession(
            provider=POSProvider.TOAST,
            access_token=access_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )
        return self._session

    async def _ensure_session(self) -> POSSession:
        """Return the cached session, re-authenticating near expiry."""
        session = self._session
        if session and datetime.now(UTC) < session.expires_at - self.TOKEN_REFRESH_MARGIN:
            return session
        return await self.authenticate()

    # =========================================================================
    # HTTP Helpers
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Make a rate-limited, authenticated request to the Toast API."""
        session = await self._ensure_session()
        if self._client is None:
            self._client = build_client(self._timeout)

        headers = {
            "Authorization": f"Bearer {session.access_token}",
            "Toast-Restaurant-External-ID": self.restaurant_guid,
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        await self._rate_limiter.acquire()
        try:
            return await send(
                self._client,
                method,
                f"{self._base_url}{path}",
                "toast",
                headers=headers,
                **kwargs,
            )
        except POSAuthError:
            # Drop the cached token so the next attempt logs in again
            self._session = None
            raise

    # =========================================================================
    # Catalog
    # =========================================================================

    async def fetch_catalog(self, location_id: str) -> list[CanonicalCatalogItem]:
        """
        Fetch all online-visible menu items for a Toast restaurant.

        Walks menus -> menu groups (including nested groups) -> items. Deleted
        or inactive items and items hidden from online ordering are skipped.

        Args:
            location_id: Toast restaurant GUID.

        Returns:
            Canonical catalog items (deduplicated by item GUID).
        """
        response = await self._request(
            "GET",
            "/menus/v2/menus",
            headers={"Toast-Restaurant-External-ID": location_id},
        )
        data = response.json()
        menus = data.get("menus", []) if isinstance(data, dict) else data

        seen: set[str] = set()
        catalog: list[CanonicalCatalogItem] = []
        for menu in menus:
            for group in menu.get("menuGroups", []):
                for raw, group_guid in _walk_group(group):
                    guid = raw.get("guid", "")
                    if not guid or guid in seen or not _is_online_item(raw):
                        continue
                    seen.add(guid)
                    catalog.append(self._parse_item(raw, group_guid))
        return catalog

    def _parse_item(self, raw: dict[str, Any], group_guid: str) -> CanonicalCatalogItem:
        """Convert Toast menu item to a canonical item."""
        return CanonicalCatalogItem(
            id=raw["guid"],
            external_id=raw["guid"],
            provider=POSProvider.TOAST,
            name=raw.get("name", "") or "Unknown Item",
            description=raw.get("description", "") or "",
            price_cents=max(0, dollars_to_cents(_extract_price(raw))),
            currency="USD",
            is_available=not raw.get("outOfStock", False),
            category_id=group_guid or None,
            image_url=raw.get("imageUrl", "") or raw.get("image", "") or "",
            modifier_groups=[
                self._parse_modifier_group(mg) for mg in raw.get("modifierGroups", [])
            ],
        )

    def _parse_modifier_group(self, raw: dict[str, Any]) -> CanonicalModifierGroup:
        """Convert Toast modifier group to canonical format."""
        min_selected = raw.get("minSelections", 0) or 0
        return CanonicalModifierGroup(
            id=raw.get("guid", ""),
            external_id=raw.get("guid", ""),
            name=raw.get("name", ""),
            required=min_selected > 0,
            min_selected=min_selected,
            max_selected=raw.get("maxSelections"),
            modifiers=[
                CanonicalModifier(
                    id=mod.get("guid", ""),
                    name=mod.get("name", ""),
                    price_cents=max(0, dollars_to_cents(mod.get("price"))),
                )
                for mod in raw.get("modifiers", [])
                if not mod.get("isDeleted")
            ],
        )

    # =========================================================================
    # Orders
    # =========================================================================

    async def fetch_order(self, order_id: str) -> CanonicalOrder | None:
        """
        Fetch a Toast order by GUID.

        Voided and deleted orders are returned with status canceled so the
        kitchen ticket can follow them.

        Returns:
            Canonical order, or None if Toast reports 404.
        """
        try:
            response = await self._request("GET", f"/orders/v2/orders/{order_id}")
        except POSNotFoundError:
            logger.info("Toast order %s not found", order_id)
            return None
        order = response.json()
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
        List orders modified within a time range via ordersBulk.

        Pages are requested until Toast returns a short page.
        """
        until = until or datetime.now(UTC)
        orders: list[CanonicalOrder] = []
        page = 1

        while True:
            response = await self._request(
                "GET",
                "/orders/v2/ordersBulk",
                params={
                    "startDate": _toast_timestamp(since),
                    "endDate": _toast_timestamp(until),
                    "page": page,
                    "pageSize": self.ORDERS_PAGE_SIZE,
                },
                headers={"Toast-Restaurant-External-ID": location_id},
            )
            batch = response.json() or []
            orders.extend(self.map_order(order) for order in batch)
            if len(batch) < self.ORDERS_PAGE_SIZE:
                break
            page += 1

        return orders

    def map_order(self, order: dict[str, Any]) -> CanonicalOrder:
        """Convert a Toast order to a CanonicalOrder."""
        checks = [c for c in order.get("checks", []) if not c.get("voided")]

        items: list[CanonicalOrderItem] = []
        statuses: list[str] = []
        discount_total = Decimal("0")
        tax_total = Decimal("0")
        provider_total = Decimal("0")
        has_paid = bool(order.get("paidDate"))

        for check in checks:
            tax_total += Decimal(str(check.get("taxAmount") or 0))
            provider_total += Decimal(str(check.get("totalAmount") or 0))
            for discount in check.get("appliedDiscounts", []):
                discount_total += Decimal(str(discount.get("discountAmount") or 0))
            if any(p.get("paidDate") for p in check.get("payments", [])):
                has_paid = True
            if check.get("paymentStatus") in ("PAID", "CLOSED"):
                has_paid = True

            for sel in check.get("selections", []):
                if sel.get("voided"):
                    continue
                for discount in sel.get("appliedDiscounts", []):
                    discount_total += Decimal(str(discount.get("discountAmount") or 0))
                if sel.get("fulfillmentStatus"):
                    statuses.append(sel["fulfillmentStatus"])
                items.append(self._map_selection(sel))

        subtotal = sum(item.total_price_cents for item in items)
        totals = reconcile_totals(
            subtotal_cents=subtotal,
            tax_cents=dollars_to_cents(tax_total),
            discount_cents=dollars_to_cents(discount_total),
            provider_total_cents=dollars_to_cents(provider_total) if checks else None,
            provider="toast",
            order_id=order.get("guid", ""),
        )

        customer = order.get("customer") or (checks[0].get("customer") if checks else None)
        customer = customer or {}
        name = " ".join(
            part for part in (customer.get("firstName"), customer.get("lastName")) if part
        )
        behavior = (order.get("diningOption") or {}).get("behavior", "")
        external_ref = order.get("externalId")
        created_at = parse_timestamp(order.get("openedDate") or order.get("createdDate"))
        created_at = created_at or datetime.now(UTC)

        return CanonicalOrder(
            id=external_ref or order.get("guid", ""),
            external_id=order.get("guid", ""),
            provider=POSProvider.TOAST,
            location_id=order.get("restaurantGuid") or self.restaurant_guid,
            source=order_source(external_ref),
            status=self._map_order_status(order, has_paid),
            items=items,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            discount_cents=totals.discount_cents,
            adjustment_cents=totals.adjustment_cents,
            total_cents=totals.total_cents,
            currency="USD",
            created_at=created_at,
            updated_at=parse_timestamp(order.get("modifiedDate")) or created_at,
            customer_name=name or None,
            customer_email=customer.get("email"),
            customer_phone=customer.get("phone"),
            fulfillment_type=_DINING_BEHAVIORS.get(behavior),
            fulfillment_status=_fulfillment_status(statuses),
            scheduled_pickup_at=parse_timestamp(order.get("promisedDate")),
            metadata={
                k: str(v)
                for k, v in {
                    "toast_order_guid": order.get("guid"),
                    "display_number": order.get("displayNumber"),
                    "dining_option": (order.get("diningOption") or {}).get("name"),
                }.items()
                if v
            },
            raw=order,
        )

    def _map_selection(self, sel: dict[str, Any]) -> CanonicalOrderItem:
        quantity_raw = Decimal(str(sel.get("quantity") or 1))
        quantity = whole_quantity(quantity_raw)
        pre_discount = sel.get("preDiscountPrice")
        if pre_discount is None:
            pre_discount = sel.get("price") or 0
        line_total = Decimal(str(pre_discount))
        return CanonicalOrderItem(
            external_id=sel.get("guid", ""),
            catalog_item_id=(sel.get("item") or {}).get("guid") or sel.get("itemGuid"),
            name=sel.get("displayName", "") or "Unknown Item",
            quantity=quantity,
            unit_price_cents=dollars_to_cents(line_total / quantity_raw)
            if quantity_raw
            else 0,
            total_price_cents=dollars_to_cents(line_total),
            modifiers=[
                CanonicalOrderItemModifier(
                    id=mod.get("guid"),
                    name=mod.get("displayName", ""),
                    price_cents=dollars_to_cents(mod.get("price")),
                )
                for mod in sel.get("modifiers", [])
            ],
            notes=sel.get("specialRequest", "") or "",
        )

    def _map_order_status(
        self, order: dict[str, Any], has_paid: bool
    ) -> CanonicalOrderStatus:
        if order.get("voided") or order.get("deleted"):
            return CanonicalOrderStatus.CANCELED
        if order.get("closedDate") and has_paid:
            return CanonicalOrderStatus.COMPLETED
        if has_paid:
            return CanonicalOrderStatus.PAID
        return CanonicalOrderStatus.OPEN

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout(self, checkout: CheckoutInput) -> CheckoutResult:
        """
        Create a Toast order and return Toast's hosted checkout URL.

        The order carries the platform reference as ``externalId``.

        Raises:
            POSOrderError: If Toast does not return an order GUID.
            POSAPIError: If the API request fails.
        """
        reference_id = checkout.reference_id or new_reference_id()
        selections = []
        for item in checkout.items:
            selection: dict[str, Any] = {
                "entityType": "MenuItemSelection",
                "item": {"entityType": "MenuItem", "guid": item.catalog_item_id},
                "quantity": item.quantity,
                "modifiers": [
                    {"entityType": "MenuItemSelection", "item": {"guid": mod.id}}
                    for mod in item.modifiers
                ],
            }
            if item.note:
                selection["specialRequest"] = item.note
            selections.append(selection)

        first, _, last = (checkout.customer_name or "").partition(" ")
        body: dict[str, Any] = {
            "entityType": "Order",
            "externalId": reference_id,
            "source": "Tableside",
            "diningOption": {"behavior": "TAKE_OUT"},
            "checks": [{"entityType": "Check", "selections": selections}],
        }
        customer = {
            k: v
            for k, v in {
                "firstName": first,
                "lastName": last,
                "email": checkout.customer_email,
                "phone": checkout.customer_phone,
            }.items()
            if v
        }
        if customer:
            body["customer"] = customer
        if checkout.scheduled_pickup_at:
            body["promisedDate"] = _toast_timestamp(checkout.scheduled_pickup_at)

        response = await self._request(
            "POST",
            "/orders/v2/orders",
            json=body,
            headers={"Toast-Restaurant-External-ID": checkout.location_id},
        )
        order_guid = (response.json() or {}).get("guid")
        if not order_guid:
            raise POSOrderError(
                "Toast did not return an order GUID",
                provider="toast",
            )

        checkout_url = (
            f"{self.CHECKOUT_BASE_URL}/{checkout.location_id}/{order_guid}"
            f"?redirect={quote(checkout.redirect_url, safe='')}"
        )
        logger.info(
            "Created Toast order %s for checkout (reference %s)",
            order_guid,
            reference_id,
        )
        return CheckoutResult(
            checkout_url=checkout_url,
            order_id=order_guid,
            reference_id=reference_id,
            expires_at=datetime.now(UTC) + self.CHECKOUT_TTL,
        )

    # =========================================================================
    # Locations
    # =========================================================================

    async def fetch_locations(self) -> list[CanonicalLocation]:
        """Toast credentials are scoped to one restaurant; return it."""
        location = await self.fetch_location(self.restaurant_guid)
        return [location] if location else []

    async def fetch_location(self, location_id: str) -> CanonicalLocation | None:
        """Fetch the configured Toast restaurant, or None for any other GUID."""
        if location_id != self.restaurant_guid:
            return None
        try:
            response = await self._request(
                "GET", f"/restaurants/v1/restaurants/{location_id}"
            )
        except POSNotFoundError:
            return None
        return self._map_restaurant(response.json())

    def _map_restaurant(self, raw: dict[str, Any]) -> CanonicalLocation:
        general = raw.get("general") or {}
        location = raw.get("location") or {}
        return CanonicalLocation(
            id=raw.get("guid", "") or self.restaurant_guid,
            provider=POSProvider.TOAST,
            name=general.get("name") or raw.get("name") or "Unknown Location",
            address=Address(
                line1=location.get("address1", "") or "",
                line2=location.get("address2", "") or "",
                city=location.get("city", "") or "",
                state=location.get("stateCode", "") or location.get("state", "") or "",
                postal_code=location.get("zipCode", "") or "",
                country=location.get("country", "") or "",
            )
            if location
            else None,
            phone=location.get("phone", "") or "",
            timezone=general.get("timeZone") or raw.get("timeZone") or "",
            currency=general.get("currencyCode") or raw.get("currencyCode") or "USD",
            status=LocationStatus.INACTIVE
            if general.get("archived")
            else LocationStatus.ACTIVE,
        )

    # =========================================================================
    # Webhook Handling
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Verify a Toast webhook signature.

        Toast signs the raw body with HMAC-SHA256 and sends the base64 digest
        in the Toast-Signature header.
        """
        secret = self._credentials.webhook_secret
        if not secret:
            return unsigned_webhook_allowed(
                POSProvider.TOAST, self._credentials.allow_unsigned_webhooks
            )

        signature = get_header(headers, SIGNATURE_HEADER)
        if not signature:
            return False

        expected = base64.b64encode(
            hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
        ).decode()
        return hmac.compare_digest(signature, expected)

    def normalize_webhook(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        """
        Map a Toast webhook payload to a canonical event.

        Payload shape: ``eventType``, ``eventId``, ``eventTime``,
        ``restaurantGuid`` and ``data.orderGuid`` / ``data.paymentGuid``.
        Event types are matched on their ORDER/PAYMENT and action keywords.
        """
        try:
            return self._normalize(payload)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Malformed Toast webhook payload: %s", e)
            return unknown_event(POSProvider.TOAST, payload, f"malformed payload: {e}")

    def _normalize(self, payload: dict[str, Any]) -> CanonicalWebhookEvent:
        event_type = str(payload.get("eventType", "") or "")
        event_id = str(payload.get("eventId", "") or payload.get("eventGuid", "") or "")
        occurred_at = parse_timestamp(payload.get("eventTime")) or datetime.now(UTC)
        location_id = payload.get("restaurantGuid")
        data = payload.get("data") or payload.get("details") or {}

        if not event_id:
            return unknown_event(
                POSProvider.TOAST,
                payload,
                "missing eventId",
                provider_event_type=event_type,
                occurred_at=occurred_at,
                location_id=location_id,
            )

        canonical_type = _map_event_type(event_type)
        if canonical_type and canonical_type.startswith("order.") and data.get("orderGuid"):
            return OrderWebhookEvent(
                provider=POSProvider.TOAST,
                event_type=canonical_type,
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=location_id,
                order_id=data["orderGuid"],
                raw=payload,
            )
        if canonical_type and canonical_type.startswith("payment.") and data.get(
            "paymentGuid"
        ):
            return PaymentWebhookEvent(
                provider=POSProvider.TOAST,
                event_type=canonical_type,
                event_id=event_id,
                occurred_at=occurred_at,
                location_id=location_id,
                payment_id=data["paymentGuid"],
                order_id=data.get("orderGuid"),
                payment_status=data.get("paymentStatus"),
                raw=payload,
            )

        return unknown_event(
            POSProvider.TOAST,
            payload,
            f"unsupported or incomplete event {event_type!r}",
            event_id=event_id,
            provider_event_type=event_type,
            occurred_at=occurred_at,
            location_id=location_id,
        )


def _map_event_type(event_type: str) -> str | None:
    upper = event_type.upper()
    if "ORDER" in upper:
        if any(word in upper for word in ("VOID", "CANCEL", "DELETE")):
            return "order.canceled"
        if "CREATE" in upper:
            return "order.created"
        if "COMPLETE" in upper or "CLOSE" in upper:
            return "order.completed"
        if "UPDATE" in upper:
            return "order.updated"
    if "PAYMENT" in upper:
        if "CREATE" in upper:
            return "payment.created"
        if "UPDATE" in upper:
            return "payment.updated"
    return None


def _walk_group(group: dict[str, Any]) -> list[tuple[dict[str, Any], str]]:
    """Flatten a menu group and its nested subgroups into (item, group) pairs."""
    pairs = [(item, group.get("guid", "")) for item in group.get("menuItems", [])]
    for child in group.get("menuGroups", []):
        pairs.extend(_walk_group(child))
    return pairs


def _is_online_item(raw: dict[str, Any]) -> bool:
    if raw.get("isDeleted") or raw.get("isActive") is False:
        return False
    visibility = raw.get("visibility")
    if visibility is None:
        return True
    if isinstance(visibility, str):
        visibility = [visibility]
    return bool(_ONLINE_VISIBILITY.intersection(visibility))


def _extract_price(raw: dict[str, Any]) -> Any:
    """Extract price from Toast item, handling flat and nested formats."""
    if raw.get("price") is not None:
        return raw["price"]
    if raw.get("prices"):
        return raw["prices"][0].get("price", 0)
    return 0


def _fulfillment_status(statuses: list[str]) -> FulfillmentStatus | None:
    """Aggregate selection fulfillment statuses to one order-level status."""
    if not statuses:
        return None
    if all(status == "READY" for status in statuses):
        return FulfillmentStatus.READY
    if any(status in ("SENT", "READY") for status in statuses):
        return FulfillmentStatus.PREPARING
    return FulfillmentStatus.PENDING


def _toast_timestamp(value: datetime) -> str:
    """Format a datetime the way Toast expects (yyyy-MM-dd'T'HH:mm:ss.SSSZ)."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000+0000")
