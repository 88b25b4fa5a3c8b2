"""Stripe webhook reconciliation: route verified events to state mutators.

Flow per event:
    ledger check -> ledger record -> route by type -> classify metadata ->
    mutate + analytics + mark processed (one transaction) -> error recorder

Error policy:
- MetadataValidationError: permanent. The error is recorded and the event is
  acknowledged (is_processed=True) so nobody replays a payload that can never apply.
- Database and Stripe API errors: possibly transient. The transaction rolls
  back, the error is recorded and the event stays is_processed=False for replay.
- Unhandled event types: acknowledged without an error.
Only unexpected exceptions escape to the caller.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import stripe
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.exceptions import MetadataValidationError, PersistenceError, WebhookConfigurationError
from app.db.models.analytics_event import AnalyticsEvent
from app.db.models.checkout_session import CheckoutSession
from app.db.models.course_enrollment import CourseEnrollment
from app.db.models.user_subscription import UserSubscription
from app.domain.purchase_intents import (
    CourseRenewal,
    EmbeddedSubscriptionPurchase,
    NewCoursePurchase,
    PurchaseIntent,
    SubscriptionCheckout,
    classify_checkout_session,
    classify_payment_intent,
    compute_expires_at,
    compute_renewal_expiry,
    invoice_subscription_id,
)
from app.metrics.cloudwatch import emit_business_event
from app.schemas.webhooks import StripeEventEnvelope, StripeEventType
from app.services.stripe_gateway import StripeGateway
from app.services.webhook_ledger import WebhookLedger

logger = structlog.get_logger(__name__)

# Upsert attempts when a concurrent delivery inserts the same subscription first
_UPSERT_ATTEMPTS = 2


class ReconcileOutcome(StrEnum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    UNHANDLED = "unhandled"
    SKIPPED_TEST_EVENT = "skipped_test_event"
    INVALID_METADATA = "invalid_metadata"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_period(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Current period bounds; newer API versions only carry them on the items."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _from_epoch(start), _from_epoch(end)


def subscription_interval(subscription: dict[str, Any]) -> str | None:
    price = _first_item(subscription).get("price") or {}
    return (price.get("recurring") or {}).get("interval")


def _has_ended(row: UserSubscription) -> bool:
    return row.ended_at is not None or row.status == "canceled"


class WebhookReconciler:
    """Applies verified Stripe events to enrollment and subscription state exactly once."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        settings: Settings,
        ledger: WebhookLedger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._clock = clock
        self._ledger = ledger or WebhookLedger(session_factory, clock=clock)
        self._handlers: dict[StripeEventType, Callable[[StripeEventEnvelope], Awaitable[None]]] = {
            StripeEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            StripeEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            StripeEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            StripeEventType.PAYMENT_INTENT_SUCCEEDED: self._handle_payment_intent_succeeded,
            StripeEventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            StripeEventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
        }

    @property
    def ledger(self) -> WebhookLedger:
        return self._ledger

    # ── Entry points ────────────────────────────────────────────────

    async def reconcile(self, event: StripeEventEnvelope, raw_payload: dict[str, Any] | None = None) -> ReconcileResult:
        """Apply a verified event unless the ledger already marks it processed."""
        log = logger.bind(event_id=event.id, event_type=event.type)

        if await self._ledger.is_processed(event.id):
            log.info("stripe_event_already_processed")
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED)

        session_id, subscription_id = event.ledger_links()
        await self._ledger.record(
            event.id,
            event.type,
            session_id,
            subscription_id,
            event.livemode,
            raw_payload if raw_payload is not None else event.model_dump(mode="json"),
        )
        return await self._dispatch(event)

    async def replay(self, event_id: str) -> ReconcileResult:
        """Re-dispatch the stored payload of an unprocessed ledger row.

        The payload was signature-verified when it was first received.
        """
        row = await self._ledger.get(event_id)
        if row is None:
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)
        if row.is_processed:
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED)

        logger.info("stripe_event_replay", event_id=event_id, retry_count=row.retry_count)
        return await self._dispatch(StripeEventEnvelope.model_validate(row.raw_event))

    # ── Router ──────────────────────────────────────────────────────

    async def _dispatch(self, event: StripeEventEnvelope) -> ReconcileResult:
        log = logger.bind(event_id=event.id, event_type=event.type, livemode=event.livemode)

        event_type = event.handled_type
        if event_type is None:
            log.info("stripe_event_unhandled")
            await self._ledger.mark_processed(event.id)
            return ReconcileResult(ReconcileOutcome.UNHANDLED)

        if self._settings.skip_db_for_test_events and not event.livemode:
            log.info("stripe_test_event_skipped")
            await self._ledger.mark_processed(event.id)
            return ReconcileResult(ReconcileOutcome.SKIPPED_TEST_EVENT)

        try:
            await self._handlers[event_type](event)
        except MetadataValidationError as e:
            log.warning("stripe_event_invalid_metadata", error=str(e))
            await self._ledger.record_error(event.id, str(e), processed=True)
            return ReconcileResult(ReconcileOutcome.INVALID_METADATA, str(e))
        except (SQLAlchemyError, stripe.StripeError, PersistenceError, WebhookConfigurationError) as e:
            message = f"{type(e).__name__}: {e}"
            log.error("stripe_event_mutation_failed", error=message)
            await self._ledger.record_error(event.id, message, processed=False)
            return ReconcileResult(ReconcileOutcome.FAILED, message)

        log.info("stripe_event_processed")
        return ReconcileResult(ReconcileOutcome.PROCESSED)

    async def _apply_intent(self, event: StripeEventEnvelope, intent: PurchaseIntent | None) -> None:
        if isinstance(intent, NewCoursePurchase):
            await self._create_enrollment(event, intent)
        elif isinstance(intent, CourseRenewal):
            await self._renew_enrollment(event, intent)
        elif isinstance(intent, SubscriptionCheckout):
            await self._activate_checkout_subscription(event, intent)
        elif isinstance(intent, EmbeddedSubscriptionPurchase):
            await self._create_embedded_subscription(event, intent)
        else:
            logger.info("stripe_event_no_purchase_intent", event_id=event.id, object_id=event.object.get("id"))
            await self._ledger.mark_processed(event.id)

    # ── Event handlers ──────────────────────────────────────────────

    async def _handle_checkout_completed(self, event: StripeEventEnvelope) -> None:
        session_obj = event.object
        await self._complete_checkout_session(session_obj["id"])
        intent = classify_checkout_session(session_obj, self._settings.default_days_of_access)
        await self._apply_intent(event, intent)

    async def _handle_payment_intent_succeeded(self, event: StripeEventEnvelope) -> None:
        payment_intent = event.object
        # The embedded flow stores the payment intent ID as the checkout session ID
        await self._complete_checkout_session(payment_intent["id"])
        intent = classify_payment_intent(payment_intent, self._settings.default_days_of_access)
        if intent is None:
            logger.info("payment_intent_metadata_unhandled", event_id=event.id, payment_intent_id=payment_intent["id"])
        await self._apply_intent(event, intent)

    async def _handle_subscription_updated(self, event: StripeEventEnvelope) -> None:
        subscription = event.object
        period_start, period_end = subscription_period(subscription)
        await self._update_subscription_row(
            event,
            subscription["id"],
            status=subscription.get("status"),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        )

    async def _handle_subscription_deleted(self, event: StripeEventEnvelope) -> None:
        await self._update_subscription_row(
            event,
            event.object["id"],
            status="canceled",
            cancel_at_period_end=False,
            ended_at=self._clock(),
        )

    async def _handle_invoice_payment_succeeded(self, event: StripeEventEnvelope) -> None:
        await self._refresh_invoice_subscription(event)

    async def _handle_invoice_payment_failed(self, event: StripeEventEnvelope) -> None:
        await self._refresh_invoice_subscription(event)

    async def _refresh_invoice_subscription(self, event: StripeEventEnvelope) -> None:
        """Mirror the invoice's subscription as Stripe reports it now.

        Invoice events arrive in any order relative to the subscription events,
        so the row takes the retrieved status and period rather than one implied
        by the invoice outcome.
        """
        invoice = event.object
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("invoice_without_subscription", event_id=event.id, invoice_id=invoice.get("id"))
            await self._ledger.mark_processed(event.id)
            return

        subscription = await self._gateway.retrieve_subscription(subscription_id, event.livemode)
        period_start, period_end = subscription_period(subscription)
        await self._update_subscription_row(
            event,
            subscription_id,
            status=subscription.get("status"),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        )

    # ── State mutators ──────────────────────────────────────────────

    async def _complete_checkout_session(self, stripe_session_id: str) -> None:
        """Flag the tracked checkout row completed. Best effort; a missing row is normal."""
        async with self._session_factory() as session:
            try:
                await session.execute(
                    update(CheckoutSession)
                    .where(CheckoutSession.stripe_session_id == stripe_session_id)
                    .values(is_completed=True, completed_at=self._clock())
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("checkout_session_update_failed", stripe_session_id=stripe_session_id, error=str(e))

    def _analytics(self, event_type: str, user_id: str, properties: dict[str, Any], now: datetime) -> AnalyticsEvent:
        return AnalyticsEvent(event_type=event_type, user_id=user_id, properties=properties, created_at=now)

    def _payment_properties(self, intent: NewCoursePurchase | CourseRenewal) -> dict[str, Any]:
        properties: dict[str, Any] = {"courseId": intent.course_id, "source": intent.source}
        if intent.embedded:
            properties.update(payment_id=intent.payment_id, is_embedded=True)
        else:
            properties["session_id"] = intent.payment_id
        return properties

    async def _create_enrollment(self, event: StripeEventEnvelope, intent: NewCoursePurchase) -> None:
        now = self._clock()
        log = logger.bind(event_id=event.id, user_id=intent.user_id, course_id=intent.course_id)

        async with self._session_factory() as session:
            existing = await session.scalar(
                select(CourseEnrollment.id).where(CourseEnrollment.payment_id == intent.payment_id)
            )
            if existing is not None:
                log.info("course_enrollment_already_exists", payment_id=intent.payment_id)
                await self._ledger.mark_processed(event.id, session=session)
                await session.commit()
                return

            session.add(
                CourseEnrollment(
                    user_id=intent.user_id,
                    course_id=intent.course_id,
                    status="active",
                    enrolled_at=now,
                    expires_at=compute_expires_at(now, intent.days_of_access),
                    payment_id=intent.payment_id,
                    renewal_count=0,
                    notification_sent=False,
                )
            )
            session.add(self._analytics("course_purchase", intent.user_id, self._payment_properties(intent), now))
            try:
                # mark_processed autoflushes the pending insert
                await self._ledger.mark_processed(event.id, session=session)
                await session.commit()
            except IntegrityError:
                # A concurrent delivery inserted the enrollment for this payment first
                await session.rollback()
                log.info("course_enrollment_created_concurrently", payment_id=intent.payment_id)
                await self._ledger.mark_processed(event.id)
                return

        log.info("course_enrollment_created", days_of_access=intent.days_of_access)
        await emit_business_event("course_purchase")

    async def _renew_enrollment(self, event: StripeEventEnvelope, intent: CourseRenewal) -> None:
        now = self._clock()
        log = logger.bind(event_id=event.id, user_id=intent.user_id, course_id=intent.course_id)

        async with self._session_factory() as session:
            enrollment = await session.scalar(
                select(CourseEnrollment)
                .where(
                    CourseEnrollment.user_id == intent.user_id,
                    CourseEnrollment.course_id == intent.course_id,
                )
                .order_by(CourseEnrollment.enrolled_at.desc())
                .limit(1)
                .with_for_update()
            )
            if enrollment is None:
                raise MetadataValidationError(
                    f"No enrollment found to renew for user {intent.user_id} and course {intent.course_id}"
                )

            if enrollment.renewal_payment_id == intent.payment_id:
                log.info("course_renewal_already_applied", payment_id=intent.payment_id)
                await self._ledger.mark_processed(event.id, session=session)
                await session.commit()
                return

            enrollment.status = "active"
            enrollment.expires_at = compute_renewal_expiry(
                now,
                intent.days_of_access,
                current_expires_at=enrollment.expires_at,
                extend_from_expiry=self._settings.renewal_extends_from_expiry,
            )
            enrollment.renewed_at = now
            enrollment.renewal_payment_id = intent.payment_id
            enrollment.renewal_count = (enrollment.renewal_count or 0) + 1
            enrollment.notification_sent = False

            session.add(self._analytics("course_renewal", intent.user_id, self._payment_properties(intent), now))
            await self._ledger.mark_processed(event.id, session=session)
            await session.commit()
            renewal_count = enrollment.renewal_count

        log.info("course_enrollment_renewed", renewal_count=renewal_count)
        await emit_business_event("course_renewal")

    async def _activate_checkout_subscription(self, event: StripeEventEnvelope, intent: SubscriptionCheckout) -> None:
        subscription = await self._gateway.retrieve_subscription(intent.subscription_id, event.livemode)
        analytics_type = "subscription_upgrade" if intent.is_upgrade else "subscription_purchase"
        await self._upsert_subscription(
            event,
            user_id=intent.user_id,
            subscription=subscription,
            customer_id=intent.customer_id or subscription.get("customer"),
            tier=intent.tier,
            analytics_type=analytics_type,
            analytics_properties={"tier": intent.tier, "source": intent.source, "session_id": intent.session_id},
        )

    async def _create_embedded_subscription(
        self, event: StripeEventEnvelope, intent: EmbeddedSubscriptionPurchase
    ) -> None:
        # Idempotency keys expire after 24 hours; the metadata lookup covers later replays
        subscription = await self._gateway.find_subscription_for_payment(
            customer_id=intent.customer_id,
            payment_intent_id=intent.payment_id,
            livemode=event.livemode,
        )
        if subscription is not None:
            logger.info(
                "embedded_subscription_reused",
                event_id=event.id,
                subscription_id=subscription["id"],
                payment_intent_id=intent.payment_id,
            )
        else:
            subscription = await self._gateway.create_subscription(
                customer_id=intent.customer_id,
                price_id=intent.price_id,
                payment_method_id=intent.payment_method_id,
                metadata={
                    "user_id": intent.user_id,
                    "subscription_tier": intent.tier,
                    "interval": intent.interval,
                    "payment_intent_id": intent.payment_id,
                },
                idempotency_key=f"jds-subscription-{intent.payment_id}",
                livemode=event.livemode,
            )
            logger.info(
                "embedded_subscription_created",
                event_id=event.id,
                subscription_id=subscription["id"],
                payment_intent_id=intent.payment_id,
            )
        await self._upsert_subscription(
            event,
            user_id=intent.user_id,
            subscription=subscription,
            customer_id=intent.customer_id,
            tier=intent.tier,
            interval=intent.interval,
            analytics_type="subscription_purchase",
            analytics_properties={
                "tier": intent.tier,
                "interval": intent.interval,
                "source": intent.source,
                "payment_id": intent.payment_id,
                "subscription_id": subscription["id"],
                "is_embedded": True,
            },
        )

    async def _upsert_subscription(
        self,
        event: StripeEventEnvelope,
        *,
        user_id: str,
        subscription: dict[str, Any],
        customer_id: Any,
        tier: str,
        analytics_type: str,
        analytics_properties: dict[str, Any],
        interval: str | None = None,
    ) -> None:
        """Insert or replace the subscription row keyed by Stripe subscription ID."""
        subscription_id = subscription["id"]
        period_start, period_end = subscription_period(subscription)
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")

        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            now = self._clock()
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(UserSubscription).where(UserSubscription.stripe_subscription_id == subscription_id)
                )
                if row is None:
                    row = UserSubscription(stripe_subscription_id=subscription_id, created_at=now)
                    session.add(row)

                row.user_id = user_id
                row.stripe_customer_id = customer_id
                row.status = subscription.get("status")
                row.tier = tier
                row.interval = interval or subscription_interval(subscription)
                row.current_period_start = period_start
                row.current_period_end = period_end
                row.cancel_at_period_end = bool(subscription.get("cancel_at_period_end", False))
                row.updated_at = now

                session.add(self._analytics(analytics_type, user_id, analytics_properties, now))
                try:
                    # mark_processed autoflushes the pending insert
                    await self._ledger.mark_processed(event.id, session=session)
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    if attempt == _UPSERT_ATTEMPTS:
                        raise PersistenceError(
                            f"Subscription {subscription_id} upsert conflicted {attempt} times"
                        ) from e
                    logger.info("user_subscription_upsert_conflict", subscription_id=subscription_id, attempt=attempt)
                    continue
            break

        logger.info(
            "user_subscription_upserted",
            event_id=event.id,
            user_id=user_id,
            subscription_id=subscription_id,
            status=subscription.get("status"),
            tier=tier,
        )
        await emit_business_event(analytics_type, tier=tier)

    async def _update_subscription_row(self, event: StripeEventEnvelope, subscription_id: str, **values: Any) -> None:
        """Update an existing subscription row in place (last write wins).

        A row that does not exist yet is not an error: the event that creates it
        may still be in flight. A canceled subscription is terminal in Stripe, so
        a late event never moves its row back to a live status.
        """
        async with self._session_factory() as session:
            row = await session.scalar(
                select(UserSubscription).where(UserSubscription.stripe_subscription_id == subscription_id)
            )
            if row is None:
                logger.warning(
                    "user_subscription_not_found",
                    event_id=event.id,
                    event_type=event.type,
                    subscription_id=subscription_id,
                )
            elif _has_ended(row) and values.get("status") != "canceled":
                logger.info(
                    "user_subscription_already_ended",
                    event_id=event.id,
                    event_type=event.type,
                    subscription_id=subscription_id,
                    ignored_status=values.get("status"),
                )
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = self._clock()
                logger.info("user_subscription_updated", event_id=event.id, subscription_id=subscription_id, **values)

            await self._ledger.mark_processed(event.id, session=session)
            await session.commit()
