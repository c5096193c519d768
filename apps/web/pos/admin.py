"""Admin registration for POS models."""

from django.contrib import admin

from apps.web.pos.models import (
    KitchenTicket,
    Order,
    POSLocation,
    WebhookEvent,
    WebhookJob,
)


@admin.register(POSLocation)
class POSLocationAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    list_display = ["name", "client", "provider", "external_id", "is_active"]
    list_filter = ["provider", "is_active"]
    search_fields = ["name", "external_id", "client__name"]


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    """Admin for POS webhook events."""

    list_display = [
        "id",
        "provider",
        "event_id",
        "event_type",
        "status",
        "received_at",
        "processed_at",
    ]
    list_filter = ["provider", "event_type", "status"]
    search_fields = ["event_id"]
    readonly_fields = ["received_at", "processed_at"]
    ordering = ["-received_at"]
    date_hierarchy = "received_at"


@admin.register(WebhookJob)
class WebhookJobAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    """Admin for the webhook job queue."""

    list_display = [
        "id",
        "provider",
        "event_id",
        "status",
        "attempts",
        "run_after",
        "locked_by",
    ]
    list_filter = ["provider", "status"]
    search_fields = ["event_id", "last_error"]
    readonly_fields = ["created_at", "updated_at", "locked_at"]
    ordering = ["run_after"]


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    list_display = [
        "reference",
        "client",
        "provider",
        "source",
        "status",
        "total_cents",
        "placed_at",
    ]
    list_filter = ["provider", "source", "status"]
    search_fields = ["reference", "external_id", "customer_name", "customer_email"]
    readonly_fields = ["provider_updated_at", "raw"]
    date_hierarchy = "placed_at"


@admin.register(KitchenTicket)
class KitchenTicketAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    """Tickets are read-only here; status moves go through the state machine."""

    list_display = ["shortcode", "location", "status", "source", "placed_at"]
    list_filter = ["status", "source"]
    search_fields = ["shortcode", "order__reference"]
    readonly_fields = [
        "status",
        "shortcode",
        "placed_at",
        "preparing_at",
        "ready_at",
        "completed_at",
        "canceled_at",
        "last_updated_by",
        "last_updated_at",
    ]
