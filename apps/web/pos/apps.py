"""Django app configuration for POS integration."""

from django.apps import AppConfig


class PosConfig(AppConfig):
    """POS integration app configuration."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.web.pos"
    label = "pos"
    verbose_name = "POS Integration"

    def ready(self) -> None:
        from apps.web.pos.registry import build_registry  # noqa: PLC0415

        self.registry = build_registry()
