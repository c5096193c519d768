"""
Pytest configuration for Django app tests.
"""

from django.contrib.auth import get_user_model

import environ  # type: ignore[import-untyped]
import pytest

from apps.web.core.models import Client
from apps.web.pos.registry import DEFAULT_FACTORIES, AdapterRegistry

# Provider credentials the registry reads from the environment
POS_ENV_VARS = {
    "SQUARE_ACCESS_TOKEN": "square-token",
    "SQUARE_WEBHOOK_SIGNATURE_KEY": "square-signature-key",
    "SQUARE_WEBHOOK_NOTIFICATION_URL": "https://tableside.test/api/pos/webhooks/square",
    "TOAST_CLIENT_ID": "toast-client-id",
    "TOAST_CLIENT_SECRET": "toast-client-secret",
    "TOAST_WEBHOOK_SECRET": "toast-webhook-secret",
    "CLOVER_ACCESS_TOKEN": "clover-token",
    "CLOVER_WEBHOOK_SIGNING_KEY": "clover-signing-key",
}


@pytest.fixture
def client_tenant() -> Client:
    """Create a test client (tenant)."""
    return Client.objects.create(
        slug="test-client",
        name="Test Client",
        email="test@example.com",
    )


@pytest.fixture
def user(client_tenant: Client) -> get_user_model():
    """Create a test user associated with the client tenant."""
    User = get_user_model()
    return User.objects.create_user(
        username="testuser",
        email="testuser@example.com",
        password="testpass123",
        client=client_tenant,
    )


@pytest.fixture
def pos_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Provider credentials and webhook secrets for every provider."""
    for name, value in POS_ENV_VARS.items():
        monkeypatch.setenv(name, value)
    return dict(POS_ENV_VARS)


@pytest.fixture
def no_pos_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make sure no provider credentials leak in from the outer environment."""
    for name in POS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def registry(pos_env: dict[str, str]) -> AdapterRegistry:
    """Sandbox registry over the real adapters."""
    return AdapterRegistry(DEFAULT_FACTORIES, env=environ.Env(), environment="sandbox")
