"""
Core models - restaurant tenants and their staff.

Locations, orders and kitchen tickets inherit from ClientScopedModel;
webhook events and jobs are global because a delivery is only tied to a
tenant once its location has been resolved.
"""

from django.contrib.auth.models import AbstractUser
from django.db import models

from .managers import ClientScopedManager


class Client(models.Model):
    """
    Tenant - a restaurant operator with one or more POS locations.
    """

    slug = models.SlugField(unique=True, help_text="Subdomain and X-Client-ID value")
    name = models.CharField(max_length=200)
    email = models.EmailField()
    phone = models.CharField(max_length=20, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class User(AbstractUser):
    """
    Staff member of one Client; superusers have none.
    """

    client = models.ForeignKey(
        Client,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="users",
        help_text="Null for superusers",
    )

    class Role(models.TextChoices):
        OWNER = "owner", "Owner"
        MANAGER = "manager", "Manager"
        KITCHEN = "kitchen", "Kitchen"
        VIEWER = "viewer", "Viewer"

    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.KITCHEN,
    )

    class Meta:
        ordering = ["username"]

    def __str__(self) -> str:
        if self.client:
            return f"{self.username} ({self.client.slug})"
        return self.username

    @property
    def can_update_tickets(self) -> bool:
        """Viewers watch the kitchen display but cannot move tickets."""
        return self.role != self.Role.VIEWER


class ClientScopedModel(models.Model):
    """
    Abstract base for tenant-scoped models.

    Adds the client FK (reverse name ``client.<model>s``, e.g.
    ``client.kitchentickets``), timestamps and ClientScopedManager.
    """

    client = models.ForeignKey(
        Client,
        on_delete=models.CASCADE,
        related_name="%(class)ss",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ClientScopedManager()

    class Meta:
        abstract = True
