"""
Decorators for request handling and validation.
"""

import json
from collections.abc import Callable
from functools import wraps
from typing import Any

from django.core.cache import cache
from django.http import HttpRequest, JsonResponse

IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60
REPLAY_HEADER = "Idempotent-Replayed"


def idempotency_key_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Require an Idempotency-Key header and replay the first successful response.

    Keys are scoped to the request path, so the same key sent to two
    locations' checkout endpoints creates two checkouts. Error responses
    are not cached; the client may retry them with the same key. Replayed
    responses carry ``Idempotent-Replayed: true``.

    Usage:
        @idempotency_key_required
        def create_checkout(request, location_id):
            ...
    """

    @wraps(view_func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        key = request.headers.get("Idempotency-Key", "").strip()
        if not key:
            return JsonResponse(
                {"ok": False, "error": "Idempotency-Key header is required"},
                status=400,
            )

        cache_key = f"idempotency:{request.path}:{key}"
        cached = cache.get(cache_key)
        if cached:
            response = JsonResponse(cached["data"], status=cached["status"])
            response[REPLAY_HEADER] = "true"
            return response

        response = view_func(request, *args, **kwargs)

        if response.status_code < 400:
            cache.set(
                cache_key,
                {"data": json.loads(response.content), "status": response.status_code},
                timeout=IDEMPOTENCY_TTL_SECONDS,
            )
        return response

    return wrapper
