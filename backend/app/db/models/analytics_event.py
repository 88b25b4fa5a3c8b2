"""AnalyticsEvent model: append-only business facts (purchases, renewals)."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, String, Uuid

from app.db.base import Base


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type = Column(String(100), nullable=False, index=True)  # course_purchase, course_renewal, ...
    user_id = Column(String(255), nullable=False, index=True)
    properties = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
