"""
Client middleware - resolves the restaurant tenant for a request.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING

from django.http import HttpRequest, HttpResponse

if TYPE_CHECKING:
    from .models import Client

# Paths that never carry a tenant: provider webhooks and the cron trigger
# resolve the tenant from the event's location instead.
TENANTLESS_PREFIXES = ("/admin/", "/api/pos/webhooks/", "/api/pos/jobs/")


class ClientMiddleware:
    """
    Attach ``request.client`` for tenant-scoped views.

    Client is determined by (in order):
    1. X-Client-ID header with the client slug (kitchen display devices)
    2. Subdomain (``{slug}.tableside.app``)
    3. The logged-in user's client

    An unknown or inactive client resolves to None; views that need one
    answer 404 themselves.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        if request.path.startswith(TENANTLESS_PREFIXES):
            request.client = None  # type: ignore[attr-defined]
        else:
            request.client = self._get_client(request)  # type: ignore[attr-defined]
        return self.get_response(request)

    def _get_client(self, request: HttpRequest) -> "Client | None":
        from .models import Client  # noqa: PLC0415

        slug = request.headers.get("X-Client-ID")
        if not slug:
            host = request.get_host().split(":")[0]
            if host.count(".") >= 2:
                slug = host.split(".")[0]

        client = None
        if slug:
            client = Client.objects.filter(slug=slug, is_active=True).first()

        user = request.user
        if client is None and user.is_authenticated:
            client = getattr(user, "client", None)

        # A device header must not widen a user's access to another tenant
        if (
            client is not None
            and user.is_authenticated
            and not user.is_superuser
            and getattr(user, "client_id", None) != client.pk
        ):
            return None
        return client
