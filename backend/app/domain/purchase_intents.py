"""Purchase intent classification for Stripe checkout sessions and payment intents.

Pure domain functions: no DB access, no Stripe calls. Each intent carries only
the fields its mutator needs, so a branch can never run with a missing field.
Metadata that cannot produce a complete intent raises MetadataValidationError.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from app.core.exceptions import MetadataValidationError

DEFAULT_DAYS_OF_ACCESS = 30
DEFAULT_SUBSCRIPTION_TIER = "unlimited"
DEFAULT_SOURCE = "checkout"


class MetadataKey(StrEnum):
    """Metadata keys written by the checkout flow and round-tripped through Stripe."""

    USER_ID = "userId"
    COURSE_ID = "courseId"
    IS_RENEWAL = "isRenewal"
    DAYS_OF_ACCESS = "daysOfAccess"
    SUBSCRIPTION_TIER = "subscriptionTier"
    INTERVAL = "interval"
    PURCHASE_TYPE = "purchaseType"
    SOURCE = "source"
    IS_UPGRADE = "isUpgrade"
    PRICE_ID = "price_id"


@dataclass(frozen=True)
class NewCoursePurchase:
    user_id: str
    course_id: str
    days_of_access: int
    payment_id: str
    source: str
    embedded: bool = False


@dataclass(frozen=True)
class CourseRenewal:
    user_id: str
    course_id: str
    days_of_access: int
    payment_id: str
    source: str
    embedded: bool = False


@dataclass(frozen=True)
class SubscriptionCheckout:
    """Hosted checkout that already created a Stripe subscription."""

    user_id: str
    subscription_id: str
    customer_id: str | None
    tier: str
    is_upgrade: bool
    session_id: str
    source: str


@dataclass(frozen=True)
class EmbeddedSubscriptionPurchase:
    """In-page payment whose subscription must be created from the payment method."""

    user_id: str
    customer_id: str
    payment_method_id: str
    price_id: str
    tier: str
    interval: str
    payment_id: str
    source: str


PurchaseIntent = NewCoursePurchase | CourseRenewal | SubscriptionCheckout | EmbeddedSubscriptionPurchase


def _present(metadata: dict[str, Any], key: str) -> bool:
    return metadata.get(key) not in (None, "")


def _is_true(metadata: dict[str, Any], key: str) -> bool:
    return str(metadata.get(key, "")).lower() == "true"


def require_metadata(metadata: dict[str, Any] | None, keys: list[str], purpose: str) -> None:
    """Raise MetadataValidationError naming every required key that is missing or null."""
    metadata = metadata or {}
    missing = [key for key in keys if not _present(metadata, key)]
    if missing:
        raise MetadataValidationError(f"Missing required metadata for {purpose}: {', '.join(missing)}")


def stripe_id(value: Any) -> str | None:
    """Return the ID of a Stripe reference that may be a bare ID or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def parse_days_of_access(raw: Any, default: int = DEFAULT_DAYS_OF_ACCESS) -> int:
    """Parse the daysOfAccess metadata value.

    Absent values (including the literal "undefined" some clients send) fall
    back to the default. Anything else must be a positive integer.
    """
    if raw is None or raw == "" or raw == "undefined":
        return default
    try:
        days = int(str(raw).strip())
    except ValueError:
        raise MetadataValidationError(f"Invalid daysOfAccess in metadata: {raw!r}") from None
    if days <= 0:
        raise MetadataValidationError(f"Invalid daysOfAccess in metadata: {raw!r}")
    return days


def compute_expires_at(anchor: datetime, days_of_access: int) -> datetime:
    return anchor + timedelta(days=days_of_access)


def compute_renewal_expiry(
    now: datetime,
    days_of_access: int,
    current_expires_at: datetime | None = None,
    extend_from_expiry: bool = False,
) -> datetime:
    """Expiry granted by a renewal.

    Renewals grant a fresh window from the renewal time. With
    extend_from_expiry, an unexpired enrollment is extended from its current
    expiry instead.
    """
    anchor = now
    if extend_from_expiry and current_expires_at is not None:
        if current_expires_at.tzinfo is None:
            current_expires_at = current_expires_at.replace(tzinfo=UTC)
        anchor = max(now, current_expires_at)
    return compute_expires_at(anchor, days_of_access)


def _course_intent(
    metadata: dict[str, Any],
    payment_id: str,
    default_days: int,
    embedded: bool,
) -> NewCoursePurchase | CourseRenewal:
    is_renewal = _is_true(metadata, MetadataKey.IS_RENEWAL)
    purpose = "course renewal" if is_renewal else "course purchase"
    require_metadata(metadata, [MetadataKey.USER_ID, MetadataKey.COURSE_ID], purpose)

    intent_cls = CourseRenewal if is_renewal else NewCoursePurchase
    return intent_cls(
        user_id=str(metadata[MetadataKey.USER_ID]),
        course_id=str(metadata[MetadataKey.COURSE_ID]),
        days_of_access=parse_days_of_access(metadata.get(MetadataKey.DAYS_OF_ACCESS), default_days),
        payment_id=payment_id,
        source=metadata.get(MetadataKey.SOURCE) or DEFAULT_SOURCE,
        embedded=embedded,
    )


def _looks_like_course_purchase(metadata: dict[str, Any]) -> bool:
    return (
        metadata.get(MetadataKey.PURCHASE_TYPE) == "course"
        or _present(metadata, MetadataKey.DAYS_OF_ACCESS)
        or _present(metadata, MetadataKey.IS_RENEWAL)
    )


def classify_checkout_session(
    session: dict[str, Any],
    default_days: int = DEFAULT_DAYS_OF_ACCESS,
) -> PurchaseIntent | None:
    """Resolve a completed Checkout Session into the purchase it paid for.

    Returns None when the session carries neither a course nor a subscription.
    """
    metadata = session.get("metadata") or {}
    session_id = session["id"]

    if _present(metadata, MetadataKey.COURSE_ID):
        return _course_intent(metadata, session_id, default_days, embedded=False)

    subscription_id = stripe_id(session.get("subscription"))
    if subscription_id:
        require_metadata(metadata, [MetadataKey.USER_ID], "subscription")
        return SubscriptionCheckout(
            user_id=str(metadata[MetadataKey.USER_ID]),
            subscription_id=subscription_id,
            customer_id=stripe_id(session.get("customer")),
            tier=metadata.get(MetadataKey.SUBSCRIPTION_TIER) or DEFAULT_SUBSCRIPTION_TIER,
            is_upgrade=_is_true(metadata, MetadataKey.IS_UPGRADE),
            session_id=session_id,
            source=metadata.get(MetadataKey.SOURCE) or DEFAULT_SOURCE,
        )

    if _looks_like_course_purchase(metadata):
        # A course checkout whose courseId was lost on the way through Stripe
        return _course_intent(metadata, session_id, default_days, embedded=False)

    return None


def classify_payment_intent(
    payment_intent: dict[str, Any],
    default_days: int = DEFAULT_DAYS_OF_ACCESS,
) -> PurchaseIntent | None:
    """Resolve a succeeded PaymentIntent from the embedded checkout.

    Returns None for payment intents whose metadata describes no known purchase,
    including the ones hosted checkout creates with no metadata at all.
    """
    metadata = payment_intent.get("metadata") or {}
    payment_id = payment_intent["id"]
    purchase_type = metadata.get(MetadataKey.PURCHASE_TYPE)
    if purchase_type not in ("course", "subscription"):
        return None

    require_metadata(metadata, [MetadataKey.USER_ID], "payment intent")

    if purchase_type == "course":
        return _course_intent(metadata, payment_id, default_days, embedded=True)

    if (
        purchase_type == "subscription"
        and _present(metadata, MetadataKey.SUBSCRIPTION_TIER)
        and _present(metadata, MetadataKey.INTERVAL)
    ):
        customer_id = stripe_id(payment_intent.get("customer"))
        if not customer_id:
            raise MetadataValidationError("No customer ID found in payment intent")
        payment_method_id = stripe_id(payment_intent.get("payment_method"))
        if not payment_method_id:
            raise MetadataValidationError("No payment method found in payment intent")
        require_metadata(metadata, [MetadataKey.PRICE_ID], "embedded subscription")
        return EmbeddedSubscriptionPurchase(
            user_id=str(metadata[MetadataKey.USER_ID]),
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            price_id=str(metadata[MetadataKey.PRICE_ID]),
            tier=str(metadata[MetadataKey.SUBSCRIPTION_TIER]),
            interval=str(metadata[MetadataKey.INTERVAL]),
            payment_id=payment_id,
            source=metadata.get(MetadataKey.SOURCE) or DEFAULT_SOURCE,
        )

    return None


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription an invoice belongs to, across Stripe API versions."""
    subscription_id = stripe_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return stripe_id(details.get("subscription"))
