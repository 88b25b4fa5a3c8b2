"""CourseEnrollment model: time-boxed access to one course for one user."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Uuid

from app.db.base import Base


class CourseEnrollment(Base):
    """Access grant created by a course purchase and extended by renewals.

    expires_at is always the anchor (enrolled_at or renewed_at) plus the
    purchased days of access. payment_id is unique so a replayed purchase
    cannot create a second row.
    """

    __tablename__ = "course_enrollments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    course_id = Column(String(255), nullable=False, index=True)

    status = Column(String(50), nullable=False, default="active")  # active, canceled, expired
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Checkout session ID or payment intent ID of the original purchase
    payment_id = Column(String(255), unique=True, nullable=False)

    # Renewal
    renewed_at = Column(DateTime(timezone=True), nullable=True)
    renewal_payment_id = Column(String(255), nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    notification_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("ix_course_enrollments_user_course", "user_id", "course_id"),)
