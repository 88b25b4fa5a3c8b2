"""Shared test fixtures for all test groups."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db.base import Base

TEST_WEBHOOK_SECRET = "whsec_test_secret"
LIVE_WEBHOOK_SECRET = "whsec_live_secret"

# Fixed delivery time used as the reconciler's clock
FROZEN_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        stripe_test_webhook_secret=TEST_WEBHOOK_SECRET,
        stripe_live_webhook_secret=LIVE_WEBHOOK_SECRET,
        stripe_secret_key="sk_test_dummy",
        stripe_live_secret_key="sk_live_dummy",
        redis_url="",
        metrics_enabled=False,
    )


@pytest.fixture
async def engine():
    """In-memory SQLite engine shared across sessions via StaticPool."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import all models so metadata is populated
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def frozen_now() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def frozen_clock():
    return lambda: FROZEN_NOW


def make_stripe_event(
    event_id: str,
    event_type: str,
    obj: dict,
    livemode: bool = False,
) -> dict:
    """Build a minimal Stripe-style event dict."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "created": 1772366400,
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """stripe-signature header value using Stripe's v1 HMAC-SHA256 scheme."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stripe_event():
    return make_stripe_event


@pytest.fixture
def signed_request():
    """Return (body, headers) for a Stripe event signed with the given secret."""

    def _build(event: dict, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None):
        body = json.dumps(event).encode()
        return body, {
            "stripe-signature": sign_payload(body, secret, timestamp),
            "content-type": "application/json",
        }

    return _build


@pytest.fixture
def course_checkout_session():
    """checkout.session.completed object for a new course purchase."""

    def _build(session_id: str = "cs_test_1", **metadata_overrides):
        metadata = {"userId": "user_1", "courseId": "course_1", "daysOfAccess": "30"}
        metadata.update(metadata_overrides)
        metadata = {k: v for k, v in metadata.items() if v is not None}
        return {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "paid",
            "customer": "cus_1",
            "metadata": metadata,
        }

    return _build
