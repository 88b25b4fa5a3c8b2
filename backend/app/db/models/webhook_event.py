"""WebhookEvent model: idempotency ledger for Stripe webhook deliveries."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base


class WebhookEvent(Base):
    """One row per Stripe event ID ever received.

    is_processed flips to True at most once, after every side effect of the
    event has committed. Rows are never deleted here; failed events keep
    is_processed=False with error_message/retry_count for manual replay.
    """

    __tablename__ = "webhook_events"

    stripe_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(255), nullable=False, index=True)

    # Linkage (either may be absent depending on event type)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)

    is_livemode = Column(Boolean, nullable=False, default=False)
    raw_event = Column(JSON, nullable=False)

    is_processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
