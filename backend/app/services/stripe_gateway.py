"""Stripe access for the webhook: signature verification and subscription calls.

verify_webhook is pure verification over the raw request bytes. StripeGateway
wraps the subscription calls the reconciler makes, choosing the API key by
the event's mode and returning plain dicts so callers never depend on
StripeObject internals.
"""

import json
from typing import Any

import stripe
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import Settings
from app.core.exceptions import InvalidPayloadError, InvalidSignatureError, WebhookConfigurationError
from app.schemas.webhooks import StripeEventEnvelope

logger = structlog.get_logger(__name__)

_TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def peek_livemode(payload: bytes) -> bool:
    """Read the livemode flag from the unverified body.

    Only used to pick which signing secret to verify with. A wrong answer makes
    verification fail, never pass.
    """
    try:
        raw = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidPayloadError("Invalid JSON payload") from None
    if not isinstance(raw, dict):
        raise InvalidPayloadError("Invalid JSON payload")
    return raw.get("livemode") is True


def verify_webhook(payload: bytes, sig_header: str | None, settings: Settings) -> StripeEventEnvelope:
    """Verify a webhook body against the signing secret for its declared mode.

    Raises:
        InvalidSignatureError: header missing or signature does not verify
        InvalidPayloadError: body is not a JSON event envelope
        WebhookConfigurationError: no signing secret configured for the mode
    """
    if not sig_header:
        raise InvalidSignatureError("No signature found")

    livemode = peek_livemode(payload)
    secret = settings.webhook_secret_for(livemode)
    if not secret:
        logger.error("stripe_webhook_secret_missing", livemode=livemode)
        raise WebhookConfigurationError("Configuration error")

    try:
        stripe.Webhook.construct_event(
            payload,
            sig_header,
            secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_signature_verification_failed", livemode=livemode, error=str(e))
        raise InvalidSignatureError("Invalid signature") from None
    except ValueError:
        raise InvalidPayloadError("Invalid JSON payload") from None

    try:
        return StripeEventEnvelope.model_validate_json(payload)
    except ValueError as e:
        raise InvalidPayloadError(f"Invalid event envelope: {e}") from None


def _to_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Subscription reads and writes against the Stripe API."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def _request_options(self, livemode: bool) -> dict[str, str]:
        api_key = self._settings.api_key_for(livemode)
        if not api_key:
            raise WebhookConfigurationError(f"Missing Stripe API key for {'live' if livemode else 'test'} mode")
        return {"api_key": api_key, "stripe_version": self._settings.stripe_api_version}

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_STRIPE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "stripe_call_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def retrieve_subscription(self, subscription_id: str, livemode: bool) -> dict[str, Any]:
        """Fetch the authoritative subscription object."""
        subscription = await stripe.Subscription.retrieve_async(
            subscription_id,
            **self._request_options(livemode),
        )
        return _to_dict(subscription)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_STRIPE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "stripe_call_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
        livemode: bool,
    ) -> dict[str, Any]:
        """Create a subscription paid by an already-confirmed payment method.

        The idempotency key makes a replayed payment intent return the
        subscription created on the first attempt instead of a second one.
        """
        subscription = await stripe.Subscription.create_async(
            customer=customer_id,
            items=[{"price": price_id}],
            default_payment_method=payment_method_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
            **self._request_options(livemode),
        )
        return _to_dict(subscription)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_STRIPE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "stripe_call_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def find_subscription_for_payment(
        self,
        *,
        customer_id: str,
        payment_intent_id: str,
        livemode: bool,
    ) -> dict[str, Any] | None:
        """Return the customer's subscription created for a payment intent, if any.

        Matches on the payment_intent_id metadata written by create_subscription.
        Lists rather than searches because search results lag behind writes.
        """
        subscriptions = await stripe.Subscription.list_async(
            customer=customer_id,
            status="all",
            limit=100,
            **self._request_options(livemode),
        )
        for subscription in subscriptions.data:
            data = _to_dict(subscription)
            if (data.get("metadata") or {}).get("payment_intent_id") == payment_intent_id:
                return data
        return None
