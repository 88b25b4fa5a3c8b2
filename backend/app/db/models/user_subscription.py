"""UserSubscription model: local replica of a Stripe subscription."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String, Uuid

from app.db.base import Base


class UserSubscription(Base):
    """Mirrors the latest Stripe-reported state of one subscription.

    status and period bounds are copied verbatim from Stripe; this row is never
    an independent source of truth.
    """

    __tablename__ = "user_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    status = Column(String(50), nullable=False)  # active, past_due, trialing, canceled, ...
    tier = Column(String(50), nullable=False, default="unlimited")
    interval = Column(String(20), nullable=True)  # month, year

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
