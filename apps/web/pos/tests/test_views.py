"""Tests for the POS API views."""

import base64
import hashlib
import hmac
import json
import uuid

import httpx
import pytest
import respx
from django.test import Client as TestClient
from django.urls import reverse
from tableside_schemas import POSProvider

from apps.web.pos.adapters import SquareAdapter
from apps.web.pos.models import (
    KitchenTicket,
    Order,
    TicketStatus,
    WebhookEvent,
    WebhookJob,
    WebhookJobStatus,
)
from apps.web.pos.services import run_worker_pass
from apps.web.pos.tests.factories import (
    ClientFactory,
    KitchenTicketFactory,
    POSLocationFactory,
    WebhookJobFactory,
)
from apps.web.pos.views import get_registry

SQUARE_BASE = SquareAdapter.SANDBOX_BASE_URL


def square_signature(body: bytes, env: dict[str, str]) -> str:
    key = env["SQUARE_WEBHOOK_SIGNATURE_KEY"].encode()
    message = env["SQUARE_WEBHOOK_NOTIFICATION_URL"].encode() + body
    return base64.b64encode(hmac.new(key, message, hashlib.sha256).digest()).decode()


def square_order_created(event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "merchant_id": "M1",
            "type": "order.created",
            "event_id": event_id,
            "created_at": "2026-03-01T12:00:00Z",
            "data": {
                "type": "order",
                "id": "SQ_ORDER_1",
                "object": {
                    "order": {
                        "id": "SQ_ORDER_1",
                        "location_id": "L1",
                        "reference_id": "ts_0123456789abcdef",
                        "state": "OPEN",
                        "created_at": "2026-03-01T12:00:00Z",
                        "updated_at": "2026-03-01T12:00:00Z",
                        "line_items": [
                            {
                                "uid": "LINE_1",
                                "name": "Burger",
                                "quantity": "1",
                                "base_price_money": {"amount": 1299, "currency": "USD"},
                            }
                        ],
                        "total_tax_money": {"amount": 104, "currency": "USD"},
                        "total_money": {"amount": 1403, "currency": "USD"},
                    }
                },
            },
        }
    ).encode()


# =============================================================================
# Webhook intake
# =============================================================================


@pytest.mark.django_db
class TestPOSWebhook:
    """POST /api/pos/webhooks/{provider}"""

    def _post(self, client: TestClient, provider: str, body: bytes, headers: dict | None = None):
        return client.post(
            reverse("pos:webhook", args=[provider]),
            data=body,
            content_type="application/json",
            headers=headers or {},
        )

    def test_valid_delivery_recorded_and_enqueued(self, client, pos_env):
        body = square_order_created()

        response = self._post(
            client,
            "square",
            body,
            {"X-Square-HmacSha256-Signature": square_signature(body, pos_env)},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "duplicate": False, "event_id": "evt_1"}
        event = WebhookEvent.objects.get()
        assert event.event_type == "order.created"
        assert event.payload["event_id"] == "evt_1"
        assert WebhookJob.objects.get().status == WebhookJobStatus.QUEUED

    def test_duplicate_delivery_creates_one_ticket(self, client, pos_env, client_tenant):
        """Two identical order.created deliveries: one event, one job, one ticket."""
        POSLocationFactory(client=client_tenant, provider=POSProvider.SQUARE, external_id="L1")
        body = square_order_created()
        headers = {"X-Square-HmacSha256-Signature": square_signature(body, pos_env)}

        first = self._post(client, "square", body, headers)
        second = self._post(client, "square", body, headers)
        run_worker_pass(get_registry())

        assert first.status_code == second.status_code == 200
        assert second.json()["duplicate"] is True
        assert WebhookEvent.objects.count() == 1
        assert WebhookJob.objects.count() == 1
        ticket = KitchenTicket.objects.get()
        assert ticket.status == TicketStatus.PLACED
        assert ticket.client == client_tenant

    def test_invalid_signature(self, client, pos_env):
        response = self._post(
            client,
            "square",
            square_order_created(),
            {"X-Square-HmacSha256-Signature": "bm90LXRoZS1zaWduYXR1cmU="},
        )

        assert response.status_code == 401
        assert response.json()["ok"] is False
        assert not WebhookEvent.objects.exists()

    def test_unsigned_rejected_without_secret(self, client, no_pos_env):
        response = self._post(client, "square", square_order_created())

        assert response.status_code == 401

    def test_unknown_provider(self, client, pos_env):
        response = self._post(client, "lightspeed", b"{}")

        assert response.status_code == 404

    def test_invalid_json(self, client, pos_env):
        body = b"not json"

        response = self._post(
            client,
            "square",
            body,
            {"X-Square-HmacSha256-Signature": square_signature(body, pos_env)},
        )

        assert response.status_code == 400

    def test_non_object_payload(self, client, pos_env):
        body = b"[1, 2, 3]"

        response = self._post(
            client,
            "square",
            body,
            {"X-Square-HmacSha256-Signature": square_signature(body, pos_env)},
        )

        assert response.status_code == 400

    def test_unknown_event_still_recorded(self, client, pos_env):
        body = json.dumps({"type": "inventory.count.updated", "event_id": "evt_inv"}).encode()

        response = self._post(
            client,
            "square",
            body,
            {"X-Square-HmacSha256-Signature": square_signature(body, pos_env)},
        )

        assert response.status_code == 200
        assert WebhookEvent.objects.get().event_type == "unknown"

    def test_clover_batch(self, client, pos_env):
        body = json.dumps(
            {
                "appId": "APP1",
                "merchants": {
                    "M1": [
                        {"objectId": "O:A", "type": "CREATE", "ts": 1000},
                        {"objectId": "O:B", "type": "UPDATE", "ts": 2000},
                    ]
                },
            }
        ).encode()
        signature = hmac.new(
            pos_env["CLOVER_WEBHOOK_SIGNING_KEY"].encode(), body, hashlib.sha256
        ).hexdigest()

        response = self._post(client, "clover", body, {"X-Clover-Signature": signature})

        assert response.status_code == 200
        assert response.json()["event_id"] == "O:B_2000"
        # The other notification stays in the stored payload
        stored = WebhookEvent.objects.get().payload
        assert [n["objectId"] for n in stored["merchants"]["M1"]] == ["O:A", "O:B"]

    def test_get_not_allowed(self, client, pos_env):
        response = client.get(reverse("pos:webhook", args=["square"]))

        assert response.status_code == 405


# =============================================================================
# Worker trigger
# =============================================================================


@pytest.fixture
def worker_secret(settings) -> str:
    settings.POS_WORKER_SECRET = "cron-secret"
    return settings.POS_WORKER_SECRET


@pytest.mark.django_db
@pytest.mark.usefixtures("worker_secret")
class TestProcessJobs:
    """GET|POST /api/pos/jobs/process"""

    def test_requires_secret(self, client):
        response = client.post(reverse("pos:process_jobs"))

        assert response.status_code == 401

    def test_wrong_secret(self, client):
        response = client.post(
            reverse("pos:process_jobs"), headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"headers": {"Authorization": "Bearer cron-secret"}},
            {"headers": {"X-Cron-Authorization": "cron-secret"}},
            {"data": {"secret": "cron-secret"}},
        ],
    )
    def test_runs_pass(self, client, pos_env, kwargs):
        WebhookJobFactory(
            webhook_event__payload={"type": "inventory.count.updated", "event_id": "x"}
        )

        response = client.get(reverse("pos:process_jobs"), **kwargs)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["claimed"] == 1
        assert body["succeeded"] == 1

    def test_limit_clamped(self, client, pos_env):
        for _ in range(3):
            WebhookJobFactory(webhook_event__payload={"type": "x", "event_id": "x"})

        response = client.get(
            reverse("pos:process_jobs"),
            {"limit": "0"},
            headers={"Authorization": "Bearer cron-secret"},
        )

        assert response.json()["claimed"] == 1

    def test_bad_limit(self, client):
        response = client.get(
            reverse("pos:process_jobs"),
            {"limit": "many"},
            headers={"Authorization": "Bearer cron-secret"},
        )

        assert response.status_code == 400

    def test_unconfigured_secret_refuses(self, client, settings):
        settings.POS_WORKER_SECRET = ""

        response = client.get(reverse("pos:process_jobs"), {"secret": ""})

        assert response.status_code == 401


@pytest.mark.django_db
@pytest.mark.usefixtures("worker_secret")
class TestReconcileOrders:
    """GET|POST /api/pos/jobs/reconcile"""

    def test_requires_secret(self, client):
        response = client.post(reverse("pos:reconcile"))

        assert response.status_code == 401

    @respx.mock
    def test_reconciles_active_locations(self, client, pos_env, client_tenant):
        POSLocationFactory(client=client_tenant, provider=POSProvider.SQUARE, external_id="L1")
        order = json.loads(square_order_created())["data"]["object"]["order"]
        route = respx.post(f"{SQUARE_BASE}/v2/orders/search").mock(
            return_value=httpx.Response(200, json={"orders": [order]})
        )

        response = client.get(
            reverse("pos:reconcile"),
            {"minutes": "30"},
            headers={"Authorization": "Bearer cron-secret"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["errors"] == 0
        assert body["locations"][0]["location_id"] == "L1"
        assert body["locations"][0]["created"] == 1
        assert route.call_count == 1
        assert Order.objects.get().external_id == "SQ_ORDER_1"
        assert KitchenTicket.objects.get().status == TicketStatus.PLACED

    def test_location_errors_reported(self, client, no_pos_env, client_tenant):
        POSLocationFactory(client=client_tenant, provider=POSProvider.SQUARE, external_id="L1")

        response = client.post(
            reverse("pos:reconcile"), headers={"X-Cron-Authorization": "cron-secret"}
        )

        body = response.json()
        assert response.status_code == 200
        assert body["errors"] == 1
        assert "credentials" in body["locations"][0]["error"]

    def test_bad_minutes(self, client):
        response = client.get(
            reverse("pos:reconcile"),
            {"minutes": "lots"},
            headers={"Authorization": "Bearer cron-secret"},
        )

        assert response.status_code == 400


# =============================================================================
# Checkout
# =============================================================================


@pytest.mark.django_db
class TestCreateCheckout:
    """POST /api/pos/locations/{id}/checkout"""

    @pytest.fixture
    def location(self, client_tenant):
        return POSLocationFactory(client=client_tenant, provider=POSProvider.SQUARE, external_id="L1")

    def _post(self, client: TestClient, location_id: int, payload: dict, key: str | None = None):
        headers = {"Idempotency-Key": key if key is not None else str(uuid.uuid4())}
        if key == "":
            headers = {}
        return client.post(
            reverse("pos:checkout", args=[location_id]),
            data=json.dumps(payload),
            content_type="application/json",
            headers=headers,
        )

    def _payload(self) -> dict:
        return {
            "items": [{"catalog_item_id": "ITEM_BURGER", "variation_id": "VAR_SINGLE"}],
            "redirect_url": "https://tableside.test/thanks",
            "customer_email": "ada@example.com",
        }

    def _mock_link(self, status_code: int = 200, **kwargs) -> respx.Route:
        return respx.post(f"{SQUARE_BASE}/v2/online-checkout/payment-links").mock(
            return_value=httpx.Response(
                status_code,
                json={"payment_link": {"url": "https://square.link/u/abc", "order_id": "SQ_ORDER_1"}},
                **kwargs,
            )
        )

    @respx.mock
    def test_creates_checkout(self, client, pos_env, location):
        route = self._mock_link()

        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 201
        body = response.json()
        assert body["checkout_url"] == "https://square.link/u/abc"
        assert body["order_id"] == "SQ_ORDER_1"
        assert body["reference_id"].startswith("ts_")
        sent = json.loads(route.calls[0].request.content)
        assert sent["order"]["location_id"] == "L1"

    @respx.mock
    def test_idempotent_replay(self, client, pos_env, location):
        route = self._mock_link()
        key = str(uuid.uuid4())

        first = self._post(client, location.pk, self._payload(), key=key)
        second = self._post(client, location.pk, self._payload(), key=key)

        assert first.json() == second.json()
        assert second.status_code == 201
        assert second["Idempotent-Replayed"] == "true"
        assert route.call_count == 1

    @respx.mock
    def test_same_key_other_location(self, client, pos_env, client_tenant, location):
        route = self._mock_link()
        other = POSLocationFactory(
            client=client_tenant, provider=POSProvider.SQUARE, external_id="L2"
        )
        key = str(uuid.uuid4())

        self._post(client, location.pk, self._payload(), key=key)
        response = self._post(client, other.pk, self._payload(), key=key)

        assert response.status_code == 201
        assert route.call_count == 2

    def test_requires_idempotency_key(self, client, pos_env, location):
        response = self._post(client, location.pk, self._payload(), key="")

        assert response.status_code == 400

    def test_unknown_location(self, client, pos_env):
        response = self._post(client, 999999, self._payload())

        assert response.status_code == 404

    def test_inactive_location(self, client, pos_env, location):
        location.is_active = False
        location.save()

        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 404

    def test_validation_error(self, client, pos_env, location):
        response = self._post(client, location.pk, {"items": [], "redirect_url": "x"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert any(detail["field"] == "items" for detail in body["details"])

    def test_missing_credentials(self, client, no_pos_env, location):
        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 503

    @respx.mock
    def test_rate_limited(self, client, pos_env, location):
        respx.post(f"{SQUARE_BASE}/v2/online-checkout/payment-links").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "30"})
        )

        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 429
        assert response["Retry-After"] == "30"

    @respx.mock
    def test_provider_auth_failure(self, client, pos_env, location):
        respx.post(f"{SQUARE_BASE}/v2/online-checkout/payment-links").mock(
            return_value=httpx.Response(401)
        )

        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 502

    @respx.mock
    def test_provider_server_error(self, client, pos_env, location):
        respx.post(f"{SQUARE_BASE}/v2/online-checkout/payment-links").mock(
            return_value=httpx.Response(500)
        )

        response = self._post(client, location.pk, self._payload())

        assert response.status_code == 502


# =============================================================================
# Kitchen display
# =============================================================================


@pytest.mark.django_db
class TestTicketStatus:
    """POST /api/pos/tickets/{id}/status"""

    def _post(self, client: TestClient, ticket_id: int, body: dict | str):
        data = body if isinstance(body, str) else json.dumps(body)
        return client.post(
            reverse("pos:ticket_status", args=[ticket_id]),
            data=data,
            content_type="application/json",
        )

    @pytest.fixture
    def ticket(self, client_tenant):
        return KitchenTicketFactory(order__location__client=client_tenant)

    def test_moves_ticket(self, client, user, ticket):
        client.force_login(user)

        response = self._post(client, ticket.pk, {"status": "ready"})

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "id": ticket.pk,
            "shortcode": ticket.shortcode,
            "status": "ready",
        }
        ticket.refresh_from_db()
        assert ticket.status == TicketStatus.READY
        assert ticket.last_updated_by == "user:testuser"

    def test_backwards_move_conflicts(self, client, user, client_tenant):
        ticket = KitchenTicketFactory(
            order__location__client=client_tenant, status=TicketStatus.READY
        )
        client.force_login(user)

        response = self._post(client, ticket.pk, {"status": "preparing"})

        assert response.status_code == 409
        assert response.json()["current_status"] == "ready"

    def test_invalid_status(self, client, user, ticket):
        client.force_login(user)

        response = self._post(client, ticket.pk, {"status": "plated"})

        assert response.status_code == 400

    def test_invalid_json(self, client, user, ticket):
        client.force_login(user)

        response = self._post(client, ticket.pk, "{not json")

        assert response.status_code == 400

    def test_other_tenant_ticket_not_found(self, client, user):
        other = KitchenTicketFactory(order__location__client=ClientFactory())
        client.force_login(user)

        response = self._post(client, other.pk, {"status": "ready"})

        assert response.status_code == 404
        other.refresh_from_db()
        assert other.status == TicketStatus.PLACED

    def test_requires_login(self, client, ticket):
        response = self._post(client, ticket.pk, {"status": "ready"})

        assert response.status_code == 302
        ticket.refresh_from_db()
        assert ticket.status == TicketStatus.PLACED

    def test_viewer_cannot_move_tickets(self, client, user, ticket):
        user.role = "viewer"
        user.save()
        client.force_login(user)

        response = self._post(client, ticket.pk, {"status": "ready"})

        assert response.status_code == 403
        ticket.refresh_from_db()
        assert ticket.status == TicketStatus.PLACED

    def test_client_header_cannot_switch_tenant(self, client, user):
        other_tenant = ClientFactory()
        other = KitchenTicketFactory(order__location__client=other_tenant)
        client.force_login(user)

        response = client.post(
            reverse("pos:ticket_status", args=[other.pk]),
            data=json.dumps({"status": "ready"}),
            content_type="application/json",
            headers={"X-Client-ID": other_tenant.slug},
        )

        assert response.status_code == 404
        other.refresh_from_db()
        assert other.status == TicketStatus.PLACED
