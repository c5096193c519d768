"""
Tenant-scoped querysets.
"""

from typing import TYPE_CHECKING, Any, TypeVar

from django.db import models

if TYPE_CHECKING:
    from django.http import HttpRequest

    from .models import ClientScopedModel

_T = TypeVar("_T", bound="ClientScopedModel")


class ClientScopedManager(models.Manager[_T]):
    """
    Manager for models owned by a Client.

    Views go through for_client() so a ticket id from another tenant is
    indistinguishable from a missing one:
        ticket = KitchenTicket.objects.for_client(request).get(pk=ticket_id)
    """

    def for_client(self, request: "HttpRequest") -> models.QuerySet[_T]:
        """
        Rows belonging to the client ClientMiddleware attached to the request.

        Raises:
            ValueError: If request has no client attached
        """
        client: Any = getattr(request, "client", None)
        if client is None:
            msg = "Request has no client attached. Is ClientMiddleware enabled?"
            raise ValueError(msg)
        return self.filter(client=client)
