"""Re-export all models so Base.metadata sees them."""

from app.db.models.analytics_event import AnalyticsEvent
from app.db.models.checkout_session import CheckoutSession
from app.db.models.course_enrollment import CourseEnrollment
from app.db.models.user_subscription import UserSubscription
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "AnalyticsEvent",
    "CheckoutSession",
    "CourseEnrollment",
    "UserSubscription",
    "WebhookEvent",
]
