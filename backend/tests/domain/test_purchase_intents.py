"""Tests for purchase intent classification and access window arithmetic."""

from datetime import UTC, datetime, timedelta

import pytest

from app.core.exceptions import MetadataValidationError
from app.domain.purchase_intents import (
    CourseRenewal,
    EmbeddedSubscriptionPurchase,
    NewCoursePurchase,
    SubscriptionCheckout,
    classify_checkout_session,
    classify_payment_intent,
    compute_expires_at,
    compute_renewal_expiry,
    invoice_subscription_id,
    parse_days_of_access,
    require_metadata,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _session(metadata: dict, **fields) -> dict:
    return {"id": "cs_test_1", "metadata": metadata, **fields}


def _payment_intent(metadata: dict, **fields) -> dict:
    return {"id": "pi_test_1", "metadata": metadata, **fields}


class TestParseDaysOfAccess:
    @pytest.mark.parametrize("raw", [None, "", "undefined"])
    def test_absent_values_use_default(self, raw):
        assert parse_days_of_access(raw) == 30

    def test_custom_default(self):
        assert parse_days_of_access(None, default=14) == 14

    def test_string_integer(self):
        assert parse_days_of_access("90") == 90

    def test_native_integer(self):
        assert parse_days_of_access(365) == 365

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", "3.5"])
    def test_invalid_values_raise(self, raw):
        with pytest.raises(MetadataValidationError, match="daysOfAccess"):
            parse_days_of_access(raw)


class TestRequireMetadata:
    def test_names_every_missing_key(self):
        with pytest.raises(MetadataValidationError) as exc:
            require_metadata({"userId": ""}, ["userId", "courseId"], "course purchase")
        assert str(exc.value) == "Missing required metadata for course purchase: userId, courseId"

    def test_none_metadata_is_all_missing(self):
        with pytest.raises(MetadataValidationError, match="userId"):
            require_metadata(None, ["userId"], "subscription")

    def test_present_keys_pass(self):
        require_metadata({"userId": "u1"}, ["userId"], "subscription")


class TestExpiry:
    def test_expires_at_is_anchor_plus_days(self):
        assert compute_expires_at(NOW, 30) == NOW + timedelta(days=30)

    def test_renewal_anchors_on_now_by_default(self):
        current = NOW + timedelta(days=10)
        assert compute_renewal_expiry(NOW, 30, current_expires_at=current) == NOW + timedelta(days=30)

    def test_renewal_extends_unexpired_enrollment_when_enabled(self):
        current = NOW + timedelta(days=10)
        result = compute_renewal_expiry(NOW, 30, current_expires_at=current, extend_from_expiry=True)
        assert result == current + timedelta(days=30)

    def test_renewal_of_expired_enrollment_starts_now_when_enabled(self):
        current = NOW - timedelta(days=3)
        result = compute_renewal_expiry(NOW, 30, current_expires_at=current, extend_from_expiry=True)
        assert result == NOW + timedelta(days=30)

    def test_naive_current_expiry_is_treated_as_utc(self):
        current = (NOW + timedelta(days=5)).replace(tzinfo=None)
        result = compute_renewal_expiry(NOW, 1, current_expires_at=current, extend_from_expiry=True)
        assert result == NOW + timedelta(days=6)


class TestClassifyCheckoutSession:
    def test_new_course_purchase(self):
        intent = classify_checkout_session(
            _session({"userId": "u1", "courseId": "c1", "daysOfAccess": "60", "source": "catalog"})
        )
        assert intent == NewCoursePurchase(
            user_id="u1", course_id="c1", days_of_access=60, payment_id="cs_test_1", source="catalog"
        )

    def test_renewal_flag(self):
        intent = classify_checkout_session(_session({"userId": "u1", "courseId": "c1", "isRenewal": "true"}))
        assert isinstance(intent, CourseRenewal)
        assert intent.days_of_access == 30
        assert intent.source == "checkout"

    def test_renewal_flag_other_than_true_is_new_purchase(self):
        intent = classify_checkout_session(_session({"userId": "u1", "courseId": "c1", "isRenewal": "false"}))
        assert isinstance(intent, NewCoursePurchase)

    def test_course_purchase_without_user_raises(self):
        with pytest.raises(MetadataValidationError, match="course purchase: userId"):
            classify_checkout_session(_session({"courseId": "c1"}))

    def test_missing_course_id_on_course_shaped_metadata_raises(self):
        with pytest.raises(MetadataValidationError) as exc:
            classify_checkout_session(_session({"userId": "u1", "daysOfAccess": "30"}))
        assert str(exc.value) == "Missing required metadata for course purchase: courseId"

    def test_subscription_checkout(self):
        intent = classify_checkout_session(
            _session(
                {"userId": "u1", "subscriptionTier": "premium", "isUpgrade": "true"},
                subscription="sub_1",
                customer={"id": "cus_1"},
            )
        )
        assert intent == SubscriptionCheckout(
            user_id="u1",
            subscription_id="sub_1",
            customer_id="cus_1",
            tier="premium",
            is_upgrade=True,
            session_id="cs_test_1",
            source="checkout",
        )

    def test_subscription_checkout_defaults_tier(self):
        intent = classify_checkout_session(_session({"userId": "u1"}, subscription="sub_1"))
        assert intent.tier == "unlimited"
        assert intent.is_upgrade is False

    def test_subscription_checkout_requires_user(self):
        with pytest.raises(MetadataValidationError, match="subscription: userId"):
            classify_checkout_session(_session({}, subscription="sub_1"))

    def test_unrelated_session_has_no_intent(self):
        assert classify_checkout_session(_session({"campaign": "spring"})) is None

    def test_missing_metadata_has_no_intent(self):
        assert classify_checkout_session({"id": "cs_test_1", "metadata": None}) is None


class TestClassifyPaymentIntent:
    def test_requires_user_id(self):
        with pytest.raises(MetadataValidationError, match="payment intent: userId"):
            classify_payment_intent(_payment_intent({"purchaseType": "course", "courseId": "c1"}))

    def test_embedded_course_purchase(self):
        intent = classify_payment_intent(
            _payment_intent({"userId": "u1", "purchaseType": "course", "courseId": "c1", "daysOfAccess": "7"})
        )
        assert isinstance(intent, NewCoursePurchase)
        assert intent.embedded is True
        assert intent.payment_id == "pi_test_1"
        assert intent.days_of_access == 7

    def test_embedded_course_renewal(self):
        intent = classify_payment_intent(
            _payment_intent({"userId": "u1", "purchaseType": "course", "courseId": "c1", "isRenewal": "true"})
        )
        assert isinstance(intent, CourseRenewal)

    def test_embedded_subscription(self):
        intent = classify_payment_intent(
            _payment_intent(
                {
                    "userId": "u1",
                    "purchaseType": "subscription",
                    "subscriptionTier": "unlimited",
                    "interval": "month",
                    "price_id": "price_1",
                },
                customer="cus_1",
                payment_method="pm_1",
            )
        )
        assert intent == EmbeddedSubscriptionPurchase(
            user_id="u1",
            customer_id="cus_1",
            payment_method_id="pm_1",
            price_id="price_1",
            tier="unlimited",
            interval="month",
            payment_id="pi_test_1",
            source="checkout",
        )

    def test_embedded_subscription_without_customer(self):
        metadata = {"userId": "u1", "purchaseType": "subscription", "subscriptionTier": "t", "interval": "month"}
        with pytest.raises(MetadataValidationError, match="No customer ID found in payment intent"):
            classify_payment_intent(_payment_intent(metadata, payment_method="pm_1"))

    def test_embedded_subscription_without_payment_method(self):
        metadata = {"userId": "u1", "purchaseType": "subscription", "subscriptionTier": "t", "interval": "month"}
        with pytest.raises(MetadataValidationError, match="No payment method found in payment intent"):
            classify_payment_intent(_payment_intent(metadata, customer="cus_1"))

    def test_embedded_subscription_without_price(self):
        metadata = {"userId": "u1", "purchaseType": "subscription", "subscriptionTier": "t", "interval": "month"}
        with pytest.raises(MetadataValidationError, match="embedded subscription: price_id"):
            classify_payment_intent(_payment_intent(metadata, customer="cus_1", payment_method="pm_1"))

    def test_subscription_without_interval_has_no_intent(self):
        metadata = {"userId": "u1", "purchaseType": "subscription", "subscriptionTier": "t"}
        assert classify_payment_intent(_payment_intent(metadata)) is None

    def test_unknown_purchase_type_has_no_intent(self):
        assert classify_payment_intent(_payment_intent({"userId": "u1", "purchaseType": "gift"})) is None

    @pytest.mark.parametrize("metadata", [{}, {"userId": "u1"}, {"source": "hosted"}])
    def test_payment_intent_without_purchase_type_has_no_intent(self, metadata):
        assert classify_payment_intent(_payment_intent(metadata)) is None

    def test_missing_metadata_object_has_no_intent(self):
        assert classify_payment_intent({"id": "pi_hosted", "metadata": None}) is None


class TestInvoiceSubscriptionId:
    def test_top_level_subscription(self):
        assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"

    def test_parent_subscription_details(self):
        invoice = {"parent": {"subscription_details": {"subscription": "sub_2"}}}
        assert invoice_subscription_id(invoice) == "sub_2"

    def test_one_off_invoice(self):
        assert invoice_subscription_id({"id": "in_1"}) is None
