"""API-specific test fixtures."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.api.routes import webhooks as webhooks_route
from app.main import create_app
from app.services.reconciliation import WebhookReconciler


@pytest.fixture
def reconciler(session_factory, settings, frozen_clock) -> WebhookReconciler:
    gateway = AsyncMock()
    return WebhookReconciler(session_factory, gateway, settings, clock=frozen_clock)


@pytest.fixture
def fastapi_app(reconciler, settings, monkeypatch):
    """App wired to the SQLite session factory and test signing secrets.

    httpx's ASGITransport does not run the lifespan, so init_db/init_redis are
    never called; the reconciler dependency is overridden instead.
    """
    monkeypatch.setattr(webhooks_route, "get_settings", lambda: settings)
    monkeypatch.setattr(webhooks_route, "get_redis", lambda: None)

    app = create_app()
    app.dependency_overrides[webhooks_route.get_reconciler] = lambda: reconciler
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def api_client(fastapi_app):
    """Async HTTP client bound to the pytest-asyncio event loop."""
    with (
        patch("app.services.reconciliation.emit_business_event", new_callable=AsyncMock),
        patch("app.api.routes.webhooks.emit_webhook_outcome", new_callable=AsyncMock),
    ):
        transport = httpx.ASGITransport(app=fastapi_app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
