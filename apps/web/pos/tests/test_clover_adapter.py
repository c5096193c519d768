"""Tests for CloverAdapter - mocked API tests."""

import hashlib
import hmac
import json
from datetime import UTC, datetime

import httpx
import pytest
import respx
from tableside_schemas import (
    CanonicalOrderStatus,
    CheckoutInput,
    CheckoutLineItem,
    CheckoutModifier,
    OrderSource,
    OrderWebhookEvent,
    PaymentWebhookEvent,
    POSCredentials,
    POSProvider,
    UnknownWebhookEvent,
)

from apps.web.pos.adapters import CloverAdapter, POSAdapter
from apps.web.pos.exceptions import POSAPIError, POSOrderError

MERCHANT_ID = "MERCHANT1"
SIGNING_KEY = "clover-signing-key"

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def credentials() -> POSCredentials:
    """Create test Clover credentials."""
    return POSCredentials(
        provider=POSProvider.CLOVER,
        access_token="clover-token",
        location_id=MERCHANT_ID,
        webhook_secret=SIGNING_KEY,
        sandbox=True,
    )


@pytest.fixture
def adapter(credentials: POSCredentials) -> CloverAdapter:
    """Create a Clover adapter for testing."""
    return CloverAdapter(credentials)


@pytest.fixture
def merchant_url(adapter: CloverAdapter) -> str:
    return f"{adapter._base_url}/merchants/{MERCHANT_ID}"


@pytest.fixture
def clover_items_response() -> dict:
    """Sample Clover inventory items response."""
    return {
        "elements": [
            {
                "id": "ITEM1",
                "name": "Burger",
                "price": 1299,
                "categories": {"elements": [{"id": "CAT1", "name": "Mains"}]},
                "modifierGroups": {
                    "elements": [
                        {
                            "id": "MG1",
                            "name": "Add-ons",
                            "minRequired": 0,
                            "maxAllowed": 3,
                            "modifiers": {
                                "elements": [
                                    {"id": "MOD1", "name": "Bacon", "price": 200},
                                    {"id": "MOD2", "name": "Truffle", "price": 500, "available": False},
                                ]
                            },
                        }
                    ]
                },
            },
            {"id": "ITEM2", "name": "Secret Menu", "price": 999, "hidden": True},
            {"id": "ITEM3", "name": "Seasonal", "price": 899, "available": False},
            {"id": "ITEM4", "name": "Fries", "price": 499},
        ]
    }


def clover_order(**overrides) -> dict:
    """A Clover order for one $12.99 item with 8% tax, paid."""
    order = {
        "id": "CLOVER_ORDER_1",
        "merchant": {"id": MERCHANT_ID},
        "externalReferenceId": "ts_0123456789abcdef",
        "currency": "USD",
        "total": 1403,
        "state": "open",
        "title": "Ada",
        "createdTime": 1772366400000,
        "modifiedTime": 1772366700000,
        "lineItems": {
            "elements": [
                {
                    "id": "LINE1",
                    "item": {"id": "ITEM1"},
                    "name": "Burger",
                    "price": 1299,
                    "unitQty": 1000,
                }
            ]
        },
        "payments": {
            "elements": [
                {"id": "PAY1", "amount": 1403, "taxAmount": 104, "result": "SUCCESS"}
            ]
        },
    }
    order.update(overrides)
    return order


def sign(body: bytes, key: str = SIGNING_KEY) -> str:
    return hmac.new(key.encode(), body, hashlib.sha256).hexdigest()


# =============================================================================
# Protocol Compliance
# =============================================================================


class TestCloverProtocol:
    def test_implements_protocol(self, adapter):
        assert isinstance(adapter, POSAdapter)
        assert adapter.provider == POSProvider.CLOVER

    def test_base_urls(self, adapter, credentials):
        prod = CloverAdapter(credentials.model_copy(update={"sandbox": False}))

        assert adapter._base_url == "https://sandbox.dev.clover.com/v3"
        assert prod._base_url == "https://api.clover.com/v3"


# =============================================================================
# Catalog Tests
# =============================================================================


class TestCloverCatalog:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_catalog_skips_hidden_and_unavailable(
        self, adapter, merchant_url, clover_items_response
    ):
        route = respx.get(f"{merchant_url}/items").mock(
            return_value=httpx.Response(200, json=clover_items_response)
        )

        catalog = await adapter.fetch_catalog(MERCHANT_ID)

        assert [item.id for item in catalog] == ["ITEM1", "ITEM4"]
        assert catalog[0].price_cents == 1299
        assert catalog[0].category_id == "CAT1"
        assert route.calls[0].request.headers["Authorization"] == "Bearer clover-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_modifier_groups(self, adapter, merchant_url, clover_items_response):
        respx.get(f"{merchant_url}/items").mock(
            return_value=httpx.Response(200, json=clover_items_response)
        )

        catalog = await adapter.fetch_catalog(MERCHANT_ID)
        group = catalog[0].modifier_groups[0]

        assert group.required is False
        assert group.max_selected == 3
        assert [m.id for m in group.modifiers] == ["MOD1"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_pagination_follows_offset(self, adapter, merchant_url):
        full_page = {"elements": [{"id": f"I{i}", "name": f"Item {i}", "price": 100} for i in range(100)]}
        last_page = {"elements": [{"id": "I100", "name": "Item 100", "price": 100}]}
        route = respx.get(f"{merchant_url}/items").mock(
            side_effect=[
                httpx.Response(200, json=full_page),
                httpx.Response(200, json=last_page),
            ]
        )

        catalog = await adapter.fetch_catalog(MERCHANT_ID)

        assert len(catalog) == 101
        assert route.calls[0].request.url.params["offset"] == "0"
        assert route.calls[1].request.url.params["offset"] == "100"


# =============================================================================
# Order Tests
# =============================================================================


class TestCloverOrders:
    """Tests for order fetching and mapping."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_order_totals(self, adapter, merchant_url):
        """Integer cents pass through: 1299 + 104 = 1403."""
        route = respx.get(f"{merchant_url}/orders/CLOVER_ORDER_1").mock(
            return_value=httpx.Response(200, json=clover_order())
        )

        order = await adapter.fetch_order("CLOVER_ORDER_1")

        assert order is not None
        assert order.subtotal_cents == 1299
        assert order.tax_cents == 104
        assert order.total_cents == 1403
        assert order.adjustment_cents == 0
        assert order.id == "ts_0123456789abcdef"
        assert order.external_id == "CLOVER_ORDER_1"
        assert order.location_id == MERCHANT_ID
        assert order.source == OrderSource.PLATFORM_ONLINE
        assert order.status == CanonicalOrderStatus.PAID
        assert order.created_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert "lineItems" in route.calls[0].request.url.params["expand"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_order_not_found(self, adapter, merchant_url):
        respx.get(f"{merchant_url}/orders/NOPE").mock(return_value=httpx.Response(404))

        assert await adapter.fetch_order("NOPE") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_retryable(self, adapter, merchant_url):
        respx.get(f"{merchant_url}/orders/CLOVER_ORDER_1").mock(
            return_value=httpx.Response(500, text="boom")
        )

        with pytest.raises(POSAPIError) as exc_info:
            await adapter.fetch_order("CLOVER_ORDER_1")

        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable is True

    def test_quantity_and_modifications(self, adapter):
        line = {
            "id": "LINE1",
            "name": "Burger",
            "price": 1000,
            "unitQty": 2000,
            "modifications": {"elements": [{"id": "M1", "name": "Bacon", "amount": 200}]},
        }
        order = adapter.map_order(
            clover_order(lineItems={"elements": [line]}, payments={"elements": []}, total=2400)
        )

        item = order.items[0]
        assert item.quantity == 2
        assert item.unit_price_cents == 1200
        assert item.total_price_cents == 2400
        assert order.status == CanonicalOrderStatus.OPEN

    def test_half_unit_quantity_rounds_up(self, adapter):
        line = {"id": "LINE1", "name": "Burger", "price": 1000, "unitQty": 2500}
        order = adapter.map_order(
            clover_order(lineItems={"elements": [line]}, payments={"elements": []}, total=3000)
        )

        assert order.items[0].quantity == 3
        assert order.items[0].total_price_cents == 3000

    def test_failed_payments_ignored(self, adapter):
        payments = {"elements": [{"id": "P1", "taxAmount": 104, "result": "FAIL"}]}

        order = adapter.map_order(clover_order(payments=payments, total=1299))

        assert order.tax_cents == 0
        assert order.status == CanonicalOrderStatus.OPEN

    def test_locked_paid_is_completed(self, adapter):
        assert adapter.map_order(clover_order(state="locked")).status == CanonicalOrderStatus.COMPLETED

    def test_deleted_is_canceled(self, adapter):
        assert adapter.map_order(clover_order(deleted=True)).status == CanonicalOrderStatus.CANCELED

    @pytest.mark.parametrize("result", ["VOIDED", "VOIDING"])
    def test_voided_payment_is_canceled(self, adapter, result):
        payments = {"elements": [{"id": "P1", "taxAmount": 104, "result": result}]}

        order = adapter.map_order(clover_order(state="locked", payments=payments, total=1299))

        assert order.status == CanonicalOrderStatus.CANCELED

    def test_voided_then_repaid_is_not_canceled(self, adapter):
        payments = {
            "elements": [
                {"id": "P1", "taxAmount": 104, "result": "VOIDED"},
                {"id": "P2", "taxAmount": 104, "result": "SUCCESS"},
            ]
        }

        order = adapter.map_order(clover_order(state="locked", payments=payments))

        assert order.status == CanonicalOrderStatus.COMPLETED

    def test_tip_booked_as_adjustment(self, adapter):
        order = adapter.map_order(clover_order(total=1603))

        assert order.adjustment_cents == 200
        assert order.total_cents == 1603

    @pytest.mark.asyncio
    @respx.mock
    async def test_search_orders_filters_by_modified_time(self, adapter, merchant_url):
        route = respx.get(f"{merchant_url}/orders").mock(
            return_value=httpx.Response(200, json={"elements": [clover_order()]})
        )
        since = datetime(2026, 3, 1, tzinfo=UTC)
        until = datetime(2026, 3, 2, tzinfo=UTC)

        orders = await adapter.search_orders(MERCHANT_ID, since=since, until=until)

        assert len(orders) == 1
        filters = route.calls[0].request.url.params.get_list("filter")
        assert f"modifiedTime>={int(since.timestamp() * 1000)}" in filters
        assert f"modifiedTime<={int(until.timestamp() * 1000)}" in filters


# =============================================================================
# Checkout Tests
# =============================================================================


class TestCloverCheckout:
    @pytest.mark.asyncio
    @respx.mock
    async def test_create_checkout_builds_order(self, adapter, merchant_url):
        create = respx.post(f"{merchant_url}/orders").mock(
            return_value=httpx.Response(200, json={"id": "CLOVER_ORDER_9"})
        )
        add_line = respx.post(f"{merchant_url}/orders/CLOVER_ORDER_9/line_items").mock(
            return_value=httpx.Response(200, json={"id": "LINE9"})
        )
        add_mod = respx.post(
            f"{merchant_url}/orders/CLOVER_ORDER_9/line_items/LINE9/modifications"
        ).mock(return_value=httpx.Response(200, json={"id": "MODN"}))

        result = await adapter.create_checkout(
            CheckoutInput(
                location_id=MERCHANT_ID,
                items=[
                    CheckoutLineItem(
                        catalog_item_id="ITEM1",
                        quantity=2,
                        modifiers=[CheckoutModifier(id="MOD1")],
                    )
                ],
                redirect_url="https://tableside.test/thanks",
            )
        )

        assert result.order_id == "CLOVER_ORDER_9"
        assert result.reference_id.startswith("ts_")
        assert result.checkout_url.startswith(
            f"https://www.clover.com/pay/{MERCHANT_ID}?orderId=CLOVER_ORDER_9&redirect="
        )
        assert json.loads(create.calls[0].request.content)["externalReferenceId"] == (
            result.reference_id
        )
        assert json.loads(add_line.calls[0].request.content)["unitQty"] == 2000
        assert json.loads(add_mod.calls[0].request.content) == {"modifier": {"id": "MOD1"}}

    @pytest.mark.asyncio
    @respx.mock
    async def test_create_checkout_without_order_id(self, adapter, merchant_url):
        respx.post(f"{merchant_url}/orders").mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(POSOrderError):
            await adapter.create_checkout(
                CheckoutInput(
                    location_id=MERCHANT_ID,
                    items=[CheckoutLineItem(catalog_item_id="ITEM1")],
                    redirect_url="https://tableside.test/thanks",
                )
            )


# =============================================================================
# Location Tests
# =============================================================================


class TestCloverLocations:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_merchant(self, adapter, merchant_url):
        respx.get(merchant_url).mock(
            return_value=httpx.Response(
                200,
                json={
                    "id": MERCHANT_ID,
                    "name": "Clover Cafe",
                    "address": {"address1": "3 Oak Ave", "city": "Denver", "zip": "80202"},
                },
            )
        )

        locations = await adapter.fetch_locations()

        assert [loc.name for loc in locations] == ["Clover Cafe"]
        assert locations[0].address.postal_code == "80202"

    @pytest.mark.asyncio
    async def test_other_merchant_is_none(self, adapter):
        assert await adapter.fetch_location("OTHER") is None


# =============================================================================
# Webhook Tests
# =============================================================================


class TestCloverWebhooks:
    """Tests for webhook verification and batch normalization."""

    def test_verify_valid_signature(self, adapter):
        body = b'{"merchants": {}}'

        assert adapter.verify_webhook({"X-Clover-Signature": sign(body)}, body) is True

    def test_verify_uppercase_hex(self, adapter):
        body = b'{"merchants": {}}'

        assert adapter.verify_webhook({"x-clover-signature": sign(body).upper()}, body) is True

    def test_verify_bad_signature(self, adapter):
        assert adapter.verify_webhook({"X-Clover-Signature": "00"}, b"{}") is False

    def test_normalize_prefixed_object_id(self, adapter):
        event = adapter.normalize_webhook(
            {
                "appId": "APP1",
                "merchants": {
                    MERCHANT_ID: [{"objectId": "O:CLOVER_ORDER_1", "type": "UPDATE", "ts": 1772366700000}]
                },
            }
        )

        assert isinstance(event, OrderWebhookEvent)
        assert event.event_type == "order.updated"
        assert event.order_id == "CLOVER_ORDER_1"
        assert event.location_id == MERCHANT_ID
        assert event.event_id == "O:CLOVER_ORDER_1_1772366700000"

    def test_normalize_prefixed_type(self, adapter):
        event = adapter.normalize_webhook(
            {"merchants": {MERCHANT_ID: [{"objectId": "CLOVER_ORDER_1", "type": "O:DELETE", "ts": 1}]}}
        )

        assert event.event_type == "order.canceled"
        assert event.order_id == "CLOVER_ORDER_1"

    def test_normalize_payment(self, adapter):
        event = adapter.normalize_webhook(
            {"merchants": {MERCHANT_ID: [{"objectId": "P:PAY1", "type": "CREATE", "ts": 5}]}}
        )

        assert isinstance(event, PaymentWebhookEvent)
        assert event.payment_id == "PAY1"

    def test_batch_selects_latest_and_keeps_raw(self, adapter):
        """Two notifications for one merchant: the latest wins, both stay in raw."""
        payload = {
            "appId": "APP1",
            "merchants": {
                MERCHANT_ID: [
                    {"objectId": "O:ORDER_B", "type": "UPDATE", "ts": 2000},
                    {"objectId": "O:ORDER_A", "type": "CREATE", "ts": 1000},
                ]
            },
        }
        reordered = {
            "appId": "APP1",
            "merchants": {MERCHANT_ID: list(reversed(payload["merchants"][MERCHANT_ID]))},
        }

        event = adapter.normalize_webhook(payload)
        same = adapter.normalize_webhook(reordered)

        assert event.order_id == "ORDER_B"
        assert event.event_id == same.event_id == "O:ORDER_B_2000"
        assert event.raw["merchants"][MERCHANT_ID][1]["objectId"] == "O:ORDER_A"

    def test_batch_tie_broken_by_object_id(self, adapter):
        event = adapter.normalize_webhook(
            {
                "merchants": {
                    MERCHANT_ID: [
                        {"objectId": "O:AAA", "type": "UPDATE", "ts": 10},
                        {"objectId": "O:ZZZ", "type": "UPDATE", "ts": 10},
                    ]
                }
            }
        )

        assert event.order_id == "ZZZ"

    def test_empty_batch_is_unknown(self, adapter):
        event = adapter.normalize_webhook({"appId": "APP1", "merchants": {}})

        assert isinstance(event, UnknownWebhookEvent)
        assert event.event_id.startswith("sha256_")

    def test_unsupported_object_kind(self, adapter):
        event = adapter.normalize_webhook(
            {"merchants": {MERCHANT_ID: [{"objectId": "I:ITEM1", "type": "UPDATE", "ts": 7}]}}
        )

        assert isinstance(event, UnknownWebhookEvent)
        assert event.event_id == "I:ITEM1_7"
        assert event.location_id == MERCHANT_ID
