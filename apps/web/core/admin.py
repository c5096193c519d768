"""Admin registrations for tenants and staff."""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.db.models import Count

from .models import Client, User


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):  # type: ignore[type-arg]
    list_display = ["name", "slug", "email", "location_count", "is_active"]
    list_filter = ["is_active"]
    search_fields = ["name", "slug", "email"]
    prepopulated_fields = {"slug": ("name",)}
    readonly_fields = ["created_at", "updated_at"]

    def get_queryset(self, request):  # type: ignore[no-untyped-def]
        return super().get_queryset(request).annotate(_location_count=Count("poslocations"))

    @admin.display(description="Locations", ordering="_location_count")
    def location_count(self, obj: Client) -> int:
        return obj._location_count  # type: ignore[attr-defined]


@admin.register(User)
class UserAdmin(BaseUserAdmin):  # type: ignore[type-arg]
    list_display = ["username", "email", "client", "role", "is_active"]
    list_filter = ["role", "is_active", "client"]
    search_fields = ["username", "email", "client__name"]
    fieldsets = (
        *BaseUserAdmin.fieldsets,  # type: ignore[misc]
        ("Restaurant", {"fields": ("client", "role")}),
    )
    add_fieldsets = (
        *BaseUserAdmin.add_fieldsets,
        ("Restaurant", {"fields": ("client", "role")}),
    )
