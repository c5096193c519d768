"""
POS models - locations, webhook ingestion, job queue, orders and tickets.

Webhook events and jobs are global (a delivery is recorded before we know
which tenant it belongs to). Locations, orders and kitchen tickets are
tenant-scoped through ClientScopedModel.
"""

from django.db import models
from django.utils import timezone

from apps.web.core.models import ClientScopedModel


class POSProvider(models.TextChoices):
    """Supported POS providers."""

    SQUARE = "square", "Square"
    TOAST = "toast", "Toast"
    CLOVER = "clover", "Clover"


class OrderSource(models.TextChoices):
    """Where an order was placed."""

    PLATFORM_ONLINE = "platform_online", "Platform Online"
    POS = "pos", "POS"


# =============================================================================
# Locations
# =============================================================================


class POSLocation(ClientScopedModel):
    """
    A tenant's location at a POS provider.

    Resolves a webhook's provider location ID (Square location, Toast
    restaurant GUID, Clover merchant ID) to a tenant.
    """

    provider = models.CharField(max_length=20, choices=POSProvider.choices)
    external_id = models.CharField(
        max_length=255,
        help_text="Provider location / restaurant GUID / merchant ID",
    )
    name = models.CharField(max_length=200)
    credential_ref = models.CharField(
        max_length=100,
        blank=True,
        help_text="Suffix for per-location credential env vars",
    )
    timezone = models.CharField(max_length=64, blank=True)
    currency = models.CharField(max_length=3, default="USD")
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "external_id"],
                name="unique_pos_location",
            )
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.provider}:{self.external_id})"


# =============================================================================
# Webhook ingestion
# =============================================================================


class WebhookEventStatus(models.TextChoices):
    """Webhook event processing status."""

    RECEIVED = "received", "Received"
    IGNORED = "ignored", "Ignored"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class WebhookEvent(models.Model):
    """
    Durable record of a webhook delivery.

    (provider, event_id) is unique; a redelivery of the same event is
    detected by the constraint and not stored twice.
    """

    provider = models.CharField(max_length=20, choices=POSProvider.choices)
    event_id = models.CharField(max_length=255)
    event_type = models.CharField(max_length=100)
    payload = models.JSONField(help_text="Raw webhook payload")
    signature = models.CharField(max_length=500, blank=True)

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.RECEIVED,
    )
    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    error = models.TextField(blank=True)

    class Meta:
        ordering = ["-received_at"]
        indexes = [
            models.Index(fields=["status", "received_at"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_id"],
                name="unique_webhook_event",
            )
        ]

    def __str__(self) -> str:
        return f"{self.provider}:{self.event_id} {self.event_type} ({self.status})"


class WebhookJobStatus(models.TextChoices):
    """Job queue status."""

    QUEUED = "queued", "Queued"
    PROCESSING = "processing", "Processing"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class WebhookJob(models.Model):
    """
    Unit of work for one webhook event.

    queued -> processing -> succeeded | queued (retry) | failed.
    """

    provider = models.CharField(max_length=20, choices=POSProvider.choices)
    event_id = models.CharField(max_length=255)
    webhook_event = models.ForeignKey(
        WebhookEvent,
        on_delete=models.CASCADE,
        related_name="jobs",
    )

    status = models.CharField(
        max_length=20,
        choices=WebhookJobStatus.choices,
        default=WebhookJobStatus.QUEUED,
    )
    attempts = models.PositiveIntegerField(default=0)
    run_after = models.DateTimeField(default=timezone.now)
    locked_at = models.DateTimeField(null=True, blank=True)
    locked_by = models.CharField(max_length=100, blank=True)
    last_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["run_after"]
        indexes = [
            models.Index(fields=["status", "run_after"]),
            models.Index(fields=["status", "locked_at"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_id"],
                name="unique_webhook_job",
            )
        ]

    def __str__(self) -> str:
        return f"job {self.provider}:{self.event_id} ({self.status}, {self.attempts})"


# =============================================================================
# Orders
# =============================================================================


class Order(ClientScopedModel):
    """Canonical order record synced from the POS."""

    reference = models.CharField(
        max_length=255,
        unique=True,
        help_text="Tenant-facing order reference, stable across retries",
    )
    location = models.ForeignKey(
        POSLocation,
        on_delete=models.CASCADE,
        related_name="orders",
    )
    provider = models.CharField(max_length=20, choices=POSProvider.choices)
    external_id = models.CharField(max_length=255)
    source = models.CharField(max_length=20, choices=OrderSource.choices)
    status = models.CharField(max_length=20)

    items = models.JSONField(default=list)
    subtotal_cents = models.IntegerField(default=0)
    tax_cents = models.IntegerField(default=0)
    discount_cents = models.IntegerField(default=0)
    adjustment_cents = models.IntegerField(default=0)
    total_cents = models.IntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")

    customer_name = models.CharField(max_length=200, blank=True)
    customer_email = models.EmailField(blank=True)
    customer_phone = models.CharField(max_length=40, blank=True)
    fulfillment_type = models.CharField(max_length=20, blank=True)
    fulfillment_status = models.CharField(max_length=20, blank=True)

    placed_at = models.DateTimeField()
    provider_updated_at = models.DateTimeField(
        help_text="Latest provider updated_at applied; never moves backwards",
    )
    raw = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-placed_at"]
        indexes = [
            models.Index(fields=["client", "status"]),
            models.Index(fields=["location", "placed_at"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "external_id"],
                name="unique_pos_order",
            )
        ]

    def __str__(self) -> str:
        return f"{self.reference} ({self.status})"


# =============================================================================
# Kitchen tickets
# =============================================================================


class TicketStatus(models.TextChoices):
    """Kitchen ticket status, independent of the POS order status."""

    PLACED = "placed", "Placed"
    PREPARING = "preparing", "Preparing"
    READY = "ready", "Ready"
    COMPLETED = "completed", "Completed"
    CANCELED = "canceled", "Canceled"


class KitchenTicket(ClientScopedModel):
    """
    Operational ticket for the kitchen display.

    The shortcode is generated once at creation and is unique per location.
    Status only changes through services.tickets.transition_ticket.
    """

    order = models.OneToOneField(
        Order,
        on_delete=models.CASCADE,
        related_name="ticket",
    )
    location = models.ForeignKey(
        POSLocation,
        on_delete=models.CASCADE,
        related_name="tickets",
    )
    source = models.CharField(max_length=20, choices=OrderSource.choices)
    status = models.CharField(
        max_length=20,
        choices=TicketStatus.choices,
        default=TicketStatus.PLACED,
    )
    shortcode = models.CharField(max_length=8, help_text="Pickup code")

    placed_at = models.DateTimeField(default=timezone.now)
    preparing_at = models.DateTimeField(null=True, blank=True)
    ready_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    last_updated_by = models.CharField(max_length=100, blank=True)
    last_updated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["placed_at"]
        indexes = [
            models.Index(fields=["location", "status"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["location", "shortcode"],
                name="unique_ticket_shortcode",
            )
        ]

    def __str__(self) -> str:
        return f"#{self.shortcode} ({self.status})"
