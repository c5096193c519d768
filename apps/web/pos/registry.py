"""
Adapter registry - resolves provider credentials and builds adapters.

The registry is built once at app start (see PosConfig.ready) and passed
explicitly to the code that needs it. Credentials are read from the
environment per location:

    SQUARE_ACCESS_TOKEN_{REF}  -> SQUARE_ACCESS_TOKEN
    TOAST_CLIENT_ID_{REF}      -> TOAST_CLIENT_ID  (and TOAST_CLIENT_SECRET)
    CLOVER_ACCESS_TOKEN_{REF}  -> CLOVER_ACCESS_TOKEN

where REF is the location's credential_ref upper-cased with anything outside
[A-Z0-9_] replaced by an underscore.
"""

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import environ  # type: ignore[import-untyped]
import httpx
from tableside_schemas import POSCredentials, POSProvider

from apps.web.pos.adapters import CloverAdapter, POSAdapter, SquareAdapter, ToastAdapter
from apps.web.pos.adapters.http import DEFAULT_TIMEOUT_SECONDS
from apps.web.pos.exceptions import POSConfigurationError

if TYPE_CHECKING:
    from apps.web.pos.models import POSLocation

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., POSAdapter]

SANDBOX = "sandbox"
PRODUCTION = "production"

DEFAULT_FACTORIES: dict[POSProvider, AdapterFactory] = {
    POSProvider.SQUARE: SquareAdapter,
    POSProvider.TOAST: ToastAdapter,
    POSProvider.CLOVER: CloverAdapter,
}

_REF_UNSAFE = re.compile(r"[^A-Z0-9_]")


def credential_suffix(credential_ref: str | None) -> str:
    """Normalize a credential_ref into an env var suffix."""
    if not credential_ref:
        return ""
    return _REF_UNSAFE.sub("_", credential_ref.upper())


class AdapterRegistry:
    """Explicit provider -> adapter factory map plus credential resolution."""

    def __init__(
        self,
        factories: dict[POSProvider, AdapterFactory],
        env: environ.Env | None = None,
        environment: str = SANDBOX,
        allow_unsigned: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if environment not in (SANDBOX, PRODUCTION):
            raise POSConfigurationError(
                f"POS_ENVIRONMENT must be '{SANDBOX}' or '{PRODUCTION}', got {environment!r}"
            )
        self._factories = dict(factories)
        self._env = env or environ.Env()
        self.environment = environment
        self.allow_unsigned = allow_unsigned
        self.timeout = timeout

    @property
    def providers(self) -> list[POSProvider]:
        return list(self._factories)

    @property
    def sandbox(self) -> bool:
        return self.environment == SANDBOX

    def is_registered(self, provider: POSProvider | str) -> bool:
        try:
            return POSProvider(provider) in self._factories
        except ValueError:
            return False

    # =========================================================================
    # Credentials
    # =========================================================================

    def _lookup(self, name: str, suffix: str = "") -> str:
        """Read NAME_{suffix} first, then NAME; empty string when unset."""
        if suffix:
            value = self._env.str(f"{name}_{suffix}", default="")
            if value:
                return value
        return self._env.str(name, default="")

    def _webhook_credentials(self, provider: POSProvider) -> dict[str, Any]:
        if provider == POSProvider.SQUARE:
            return {
                "webhook_secret": self._lookup("SQUARE_WEBHOOK_SIGNATURE_KEY"),
                "notification_url": self._lookup("SQUARE_WEBHOOK_NOTIFICATION_URL"),
            }
        if provider == POSProvider.TOAST:
            return {"webhook_secret": self._lookup("TOAST_WEBHOOK_SECRET")}
        return {"webhook_secret": self._lookup("CLOVER_WEBHOOK_SIGNING_KEY")}

    def resolve_credentials(
        self,
        provider: POSProvider | str,
        credential_ref: str | None = None,
        location_id: str = "",
    ) -> POSCredentials | None:
        """
        Resolve credentials for a provider/location from the environment.

        Args:
            provider: POS provider.
            credential_ref: Location's credential reference, if any.
            location_id: Provider location ID (Toast restaurant GUID,
                Clover merchant ID).

        Returns:
            Credentials, or None when the API credential is not configured.
        """
        provider = POSProvider(provider)
        suffix = credential_suffix(credential_ref)
        api: dict[str, str] = {}

        if provider == POSProvider.SQUARE:
            api["access_token"] = self._lookup("SQUARE_ACCESS_TOKEN", suffix)
            if not api["access_token"]:
                return None
        elif provider == POSProvider.TOAST:
            api["client_id"] = self._lookup("TOAST_CLIENT_ID", suffix)
            api["client_secret"] = self._lookup("TOAST_CLIENT_SECRET", suffix)
            if not api["client_id"] or not api["client_secret"]:
                return None
        else:
            api["access_token"] = self._lookup("CLOVER_ACCESS_TOKEN", suffix)
            if not api["access_token"]:
                return None

        return POSCredentials(
            provider=provider,
            location_id=location_id,
            sandbox=self.sandbox,
            allow_unsigned_webhooks=self.allow_unsigned,
            **api,
            **self._webhook_credentials(provider),
        )

    # =========================================================================
    # Adapters
    # =========================================================================

    def _factory(self, provider: POSProvider | str) -> AdapterFactory:
        try:
            return self._factories[POSProvider(provider)]
        except (KeyError, ValueError) as e:
            raise POSConfigurationError(
                f"No adapter registered for provider {provider!r}",
                provider=str(provider),
            ) from e

    def get_adapter(
        self,
        provider: POSProvider | str,
        credential_ref: str | None = None,
        location_id: str = "",
        http_client: httpx.AsyncClient | None = None,
    ) -> POSAdapter | None:
        """
        Build an API-capable adapter.

        Returns:
            The adapter, or None when credentials are missing.

        Raises:
            POSConfigurationError: If the provider is not registered.
        """
        factory = self._factory(provider)
        credentials = self.resolve_credentials(provider, credential_ref, location_id)
        if credentials is None:
            logger.warning(
                "No %s credentials configured (credential_ref=%r)",
                provider,
                credential_ref,
            )
            return None
        return factory(credentials, http_client=http_client, timeout=self.timeout)

    def adapter_for_location(
        self,
        location: "POSLocation",
        http_client: httpx.AsyncClient | None = None,
    ) -> POSAdapter | None:
        """Build the adapter for a stored POS location."""
        return self.get_adapter(
            location.provider,
            credential_ref=location.credential_ref or None,
            location_id=location.external_id,
            http_client=http_client,
        )

    def webhook_adapter(self, provider: POSProvider | str) -> POSAdapter:
        """
        Build an adapter carrying only webhook secrets.

        Used for signature verification and normalization, which never call
        the provider API.

        Raises:
            POSConfigurationError: If the provider is not registered.
        """
        factory = self._factory(provider)
        provider = POSProvider(provider)
        credentials = POSCredentials(
            provider=provider,
            sandbox=self.sandbox,
            allow_unsigned_webhooks=self.allow_unsigned,
            **self._webhook_credentials(provider),
        )
        return factory(credentials, timeout=self.timeout)


def build_registry(
    factories: dict[POSProvider, AdapterFactory] | None = None,
) -> AdapterRegistry:
    """Build the registry from Django settings."""
    from django.conf import settings  # noqa: PLC0415

    return AdapterRegistry(
        factories or DEFAULT_FACTORIES,
        environment=settings.POS_ENVIRONMENT,
        allow_unsigned=settings.POS_ALLOW_UNSIGNED_WEBHOOKS,
        timeout=settings.POS_HTTP_TIMEOUT_SECONDS,
    )
