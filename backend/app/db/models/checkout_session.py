"""CheckoutSession model: checkout/payment-intent tracking rows.

Created by the checkout flow when a Checkout Session or embedded PaymentIntent
is started. The webhook only flips the completion fields.
"""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # cs_... for hosted checkout, pi_... for embedded payment intents
    stripe_session_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    checkout_type = Column(String(50), nullable=True)  # course_purchase, course_renewal, subscription
    course_id = Column(String(255), nullable=True)
    session_metadata = Column("metadata", JSON, nullable=True)

    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
