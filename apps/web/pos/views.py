"""
POS API views.

- Webhook intake: verify, record, enqueue, ack
- Worker and reconcile triggers for cron
- Hosted checkout for a location
- Kitchen display status updates
"""

import asyncio
import hmac
import json
import logging
from datetime import timedelta
from typing import Any

from django.apps import apps
from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.db import transaction
from django.http import Http404, HttpRequest, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods, require_POST
from pydantic import ValidationError as PydanticValidationError
from tableside_schemas import CheckoutInput, CheckoutResult

from apps.web.core.decorators import idempotency_key_required
from apps.web.pos.adapters import POSAdapter, clover, square, toast
from apps.web.pos.exceptions import (
    POSAuthError,
    POSError,
    POSNotFoundError,
    POSRateLimitError,
)
from apps.web.pos.models import KitchenTicket, POSLocation, TicketStatus
from apps.web.pos.registry import AdapterRegistry
from apps.web.pos.services import (
    enqueue_job,
    reconcile_locations,
    record_webhook_event,
    run_worker_pass,
    update_ticket_status,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "square": square.SIGNATURE_HEADER,
    "toast": toast.SIGNATURE_HEADER,
    "clover": clover.SIGNATURE_HEADER,
}


def get_registry() -> AdapterRegistry:
    registry: AdapterRegistry = apps.get_app_config("pos").registry  # type: ignore[attr-defined]
    return registry


def _error(message: str, status: int, **extra: Any) -> JsonResponse:
    return JsonResponse({"ok": False, "error": message, **extra}, status=status)


# =============================================================================
# Webhooks
# =============================================================================


@csrf_exempt
@require_POST
def pos_webhook(request: HttpRequest, provider: str) -> JsonResponse:
    """
    POST /api/pos/webhooks/{provider}

    Verifies the provider signature, records the delivery and enqueues a
    job. Responds 200 only once the event is durably recorded; the work
    itself happens in the worker. A redelivery of a known event is
    acknowledged with duplicate=true.
    """
    registry = get_registry()
    if not registry.is_registered(provider):
        raise Http404(f"Unknown POS provider: {provider}")

    adapter = registry.webhook_adapter(provider)
    if not adapter.verify_webhook(request.headers, request.body):
        logger.warning("Rejected %s webhook: invalid signature", provider)
        return _error("invalid signature", status=401)

    try:
        payload = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Rejected %s webhook: invalid JSON", provider)
        return _error("invalid JSON", status=400)
    if not isinstance(payload, dict):
        return _error("payload must be a JSON object", status=400)

    event = adapter.normalize_webhook(payload)

    with transaction.atomic():
        result = record_webhook_event(
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            payload=payload,
            signature=request.headers.get(SIGNATURE_HEADERS[provider], ""),
        )
        enqueue_job(result.event)

    return JsonResponse(
        {"ok": True, "duplicate": result.duplicate, "event_id": event.event_id}
    )


# =============================================================================
# Cron triggers
# =============================================================================


def _worker_authorized(request: HttpRequest) -> bool:
    secret = settings.POS_WORKER_SECRET
    if not secret:
        logger.error("POS_WORKER_SECRET is not configured; refusing worker trigger")
        return False

    authorization = request.headers.get("Authorization", "")
    candidates = [
        authorization.removeprefix("Bearer ").strip()
        if authorization.startswith("Bearer ")
        else "",
        request.headers.get("X-Cron-Authorization", ""),
        request.GET.get("secret", ""),
    ]
    return any(
        candidate and hmac.compare_digest(candidate, secret) for candidate in candidates
    )


@csrf_exempt
@require_http_methods(["GET", "POST"])
def process_jobs(request: HttpRequest) -> JsonResponse:
    """
    GET|POST /api/pos/jobs/process

    Runs one worker pass. Authorized with POS_WORKER_SECRET via
    ``Authorization: Bearer``, ``X-Cron-Authorization`` or ``?secret=``.
    Optional ``limit`` and ``provider`` query parameters.
    """
    if not _worker_authorized(request):
        return _error("unauthorized", status=401)

    try:
        limit = int(request.GET.get("limit", 20))
    except ValueError:
        return _error("limit must be an integer", status=400)
    provider = request.GET.get("provider") or None

    summary = run_worker_pass(
        get_registry(),
        limit=max(1, min(limit, 100)),
        provider=provider,
    )
    return JsonResponse({"ok": True, **summary.as_dict()})


@csrf_exempt
@require_http_methods(["GET", "POST"])
def reconcile_orders(request: HttpRequest) -> JsonResponse:
    """
    GET|POST /api/pos/jobs/reconcile

    Polls active locations for orders updated in the last ``minutes``
    (default POS_RECONCILE_MINUTES_BACK) and applies any the webhooks
    missed. Same authorization as the worker trigger; optional ``provider``.
    """
    if not _worker_authorized(request):
        return _error("unauthorized", status=401)

    try:
        minutes = int(request.GET.get("minutes", settings.POS_RECONCILE_MINUTES_BACK))
    except ValueError:
        return _error("minutes must be an integer", status=400)
    minutes = max(1, min(minutes, 24 * 60))
    provider = request.GET.get("provider") or None

    since = timezone.now() - timedelta(minutes=minutes)
    summaries = reconcile_locations(get_registry(), since, provider=provider)
    return JsonResponse(
        {
            "ok": True,
            "since": since.isoformat(),
            "locations": [s.as_dict() for s in summaries],
            "errors": sum(1 for s in summaries if s.error),
        }
    )


# =============================================================================
# Checkout
# =============================================================================


async def _create_checkout(adapter: POSAdapter, checkout: CheckoutInput) -> CheckoutResult:
    try:
        return await adapter.create_checkout(checkout)
    finally:
        await adapter.close()


@csrf_exempt
@require_POST
@idempotency_key_required
def create_checkout(request: HttpRequest, location_id: int) -> JsonResponse:
    """
    POST /api/pos/locations/{location_id}/checkout

    Create a provider-hosted checkout for the location.

    Request body: CheckoutInput (location_id is taken from the URL)
    Response: {checkout_url, order_id, reference_id, expires_at}
    """
    try:
        location = POSLocation.objects.get(pk=location_id, is_active=True)
    except POSLocation.DoesNotExist as exc:
        raise Http404(f"Location {location_id} not found") from exc

    try:
        body = json.loads(request.body)
        if not isinstance(body, dict):
            return _error("Request body must be a JSON object", status=400)
        checkout = CheckoutInput.model_validate(
            {**body, "location_id": location.external_id}
        )
    except json.JSONDecodeError:
        return _error("Invalid JSON in request body", status=400)
    except PydanticValidationError as e:
        return _error(
            "validation_error",
            status=400,
            details=[
                {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        )

    adapter = get_registry().adapter_for_location(location)
    if adapter is None:
        return _error("POS credentials not configured for this location", status=503)

    try:
        result = asyncio.run(_create_checkout(adapter, checkout))
    except POSRateLimitError as e:
        response = _error("POS rate limit exceeded", status=429)
        response["Retry-After"] = str(e.retry_after)
        return response
    except POSAuthError as e:
        logger.error("Checkout auth failure for location %s: %s", location.pk, e)
        return _error("POS rejected our credentials", status=502)
    except POSNotFoundError as e:
        return _error(e.message, status=404)
    except POSError as e:
        logger.error("Checkout failed for location %s: %s", location.pk, e)
        return _error(e.message, status=502)

    return JsonResponse(result.model_dump(mode="json"), status=201)


# =============================================================================
# Kitchen display
# =============================================================================


@csrf_exempt
@require_POST
@login_required
def ticket_status(request: HttpRequest, ticket_id: int) -> JsonResponse:
    """
    POST /api/pos/tickets/{ticket_id}/status

    Operator action from the kitchen display, e.g. {"status": "ready"}.
    The ticket must belong to the request's client.
    """
    if getattr(request, "client", None) is None:
        raise Http404("Client not found")
    if not getattr(request.user, "can_update_tickets", False):
        return _error("not allowed to update tickets", status=403)

    try:
        body = json.loads(request.body)
        status = TicketStatus(body["status"])
    except json.JSONDecodeError:
        return _error("Invalid JSON in request body", status=400)
    except (KeyError, TypeError, ValueError):
        valid = ", ".join(TicketStatus.values)
        return _error(f"status must be one of: {valid}", status=400)

    try:
        ticket, changed = update_ticket_status(
            ticket_id,
            status,
            actor=f"user:{request.user.get_username()}",
            queryset=KitchenTicket.objects.for_client(request),
        )
    except KitchenTicket.DoesNotExist as exc:
        raise Http404(f"Ticket {ticket_id} not found") from exc

    if not changed:
        return _error(
            f"cannot move ticket from {ticket.status} to {status}",
            status=409,
            current_status=ticket.status,
        )
    return JsonResponse(
        {"ok": True, "id": ticket.pk, "shortcode": ticket.shortcode, "status": ticket.status}
    )
