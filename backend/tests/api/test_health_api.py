"""Tests for health/readiness endpoints and startup configuration checks."""

import pytest

import app.db.base as db_base
from app.main import validate_stripe_config

pytestmark = pytest.mark.unit


async def test_health(api_client):
    response = await api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "jds-payments"}


async def test_health_returns_503_while_draining(api_client, fastapi_app):
    fastapi_app.state.shutting_down = True

    response = await api_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


async def test_ready_with_database(api_client, session_factory, monkeypatch):
    monkeypatch.setattr(db_base, "get_session_factory", lambda: session_factory)

    response = await api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"database": True}}


async def test_ready_degraded_without_database(api_client):
    response = await api_client.get("/api/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["database"] is False


class TestValidateStripeConfig:
    def test_skipped_outside_production(self, settings):
        settings.stripe_live_webhook_secret = ""
        validate_stripe_config(settings)

    def test_production_requires_live_credentials(self, settings):
        settings.environment = "production"
        settings.stripe_live_secret_key = ""

        with pytest.raises(RuntimeError, match="stripe_live_secret_key"):
            validate_stripe_config(settings)

    def test_production_with_credentials(self, settings):
        settings.environment = "production"
        validate_stripe_config(settings)
