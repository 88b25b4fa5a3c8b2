"""Stripe webhook endpoint.

Verifies the signature against the secret for the event's mode, then hands the
event to the reconciler. Every verified delivery is acknowledged with 200 unless
dispatch fails unexpectedly; recorded reconciliation errors are replayed from
the ledger rather than by Stripe redelivery.
"""

import uuid

import structlog
from fastapi import APIRouter, Depends, Request

from app.core.config import get_settings
from app.core.exceptions import WebhookProcessingError
from app.core.locking import EventLock
from app.db.base import get_session_factory
from app.db.redis import get_redis
from app.metrics.cloudwatch import emit_webhook_outcome
from app.schemas.webhooks import StripeEventEnvelope, WebhookAck
from app.services.reconciliation import ReconcileOutcome, WebhookReconciler
from app.services.stripe_gateway import StripeGateway, verify_webhook

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_reconciler() -> WebhookReconciler:
    settings = get_settings()
    return WebhookReconciler(get_session_factory(), StripeGateway(settings), settings)


@router.post("/webhooks/stripe", response_model=WebhookAck, response_model_exclude_none=True)
async def stripe_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """Handle Stripe webhook events with signature verification.

    WebhookError subclasses raised here are rendered as {"error", "code"} by
    the handler registered in app.main.
    """
    settings = get_settings()
    body = await request.body()
    event = verify_webhook(body, request.headers.get("stripe-signature"), settings)

    log = logger.bind(event_id=event.id, event_type=event.type, livemode=event.livemode)
    log.info("stripe_webhook_received")

    redis_client = get_redis()
    if redis_client is None:
        return await _reconcile(reconciler, event)

    lock = EventLock(redis_client, ttl=settings.event_lock_ttl_seconds)
    async with lock.hold(event.id, owner=str(uuid.uuid4())) as acquired:
        if not acquired:
            log.info("stripe_event_in_progress")
            await emit_webhook_outcome(event.type, "in_progress")
            return WebhookAck(processed=False, reason="in_progress")
        return await _reconcile(reconciler, event)


async def _reconcile(reconciler: WebhookReconciler, event: StripeEventEnvelope) -> WebhookAck:
    try:
        result = await reconciler.reconcile(event)
    except Exception as e:
        logger.error(
            "stripe_webhook_processing_failed",
            event_id=event.id,
            event_type=event.type,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        await reconciler.ledger.record_error(event.id, f"{type(e).__name__}: {e}")
        await emit_webhook_outcome(event.type, "error")
        raise WebhookProcessingError("Webhook processing failed") from e

    await emit_webhook_outcome(event.type, result.outcome.value)
    if result.outcome is ReconcileOutcome.ALREADY_PROCESSED:
        return WebhookAck(processed=False, reason="already_processed")
    return WebhookAck()
