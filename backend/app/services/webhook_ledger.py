"""Idempotency ledger over the webhook_events table.

Every Stripe event ID gets exactly one row. The processed flag is the
at-most-once gate; error_message and retry_count make failed events visible
for replay. Ledger writes never raise into the webhook route: a ledger problem
must not turn into a 5xx that makes Stripe redeliver indefinitely.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.webhook_event import WebhookEvent

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WebhookLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def is_processed(self, event_id: str) -> bool:
        """True only if a row exists for the event and it is marked processed.

        A read failure is logged and reported as not processed; the keyed
        mutations downstream keep a repeat run safe.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(WebhookEvent.is_processed).where(WebhookEvent.stripe_event_id == event_id)
                )
                return result.scalar_one_or_none() is True
        except SQLAlchemyError as e:
            logger.error("webhook_ledger_check_failed", event_id=event_id, error=str(e))
            return False

    async def record(
        self,
        event_id: str,
        event_type: str,
        session_id: str | None,
        subscription_id: str | None,
        is_live: bool,
        raw_payload: dict[str, Any],
    ) -> bool:
        """Insert the ledger row for a first sighting.

        Returns True if a new row was written. An existing row (an earlier
        attempt that did not finish) is left as is.
        """
        async with self._session_factory() as session:
            try:
                session.add(
                    WebhookEvent(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        stripe_session_id=session_id,
                        stripe_subscription_id=subscription_id,
                        is_livemode=is_live,
                        raw_event=raw_payload,
                        is_processed=False,
                        retry_count=0,
                    )
                )
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                logger.info("webhook_event_already_recorded", event_id=event_id)
                return False
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("webhook_event_record_failed", event_id=event_id, error=str(e))
                return False

    def _processed_statement(self, event_id: str):
        return (
            update(WebhookEvent)
            .where(WebhookEvent.stripe_event_id == event_id)
            .values(is_processed=True, processed_at=self._clock(), updated_at=self._clock())
        )

    async def mark_processed(self, event_id: str, session: AsyncSession | None = None) -> None:
        """Set is_processed/processed_at.

        With a session the update joins that session's transaction and the
        caller commits it together with the event's business writes.
        """
        if session is not None:
            await session.execute(self._processed_statement(event_id))
            return

        async with self._session_factory() as own_session:
            try:
                await own_session.execute(self._processed_statement(event_id))
                await own_session.commit()
            except SQLAlchemyError as e:
                await own_session.rollback()
                logger.error("webhook_event_mark_processed_failed", event_id=event_id, error=str(e))

    async def record_error(self, event_id: str, message: str, *, processed: bool = False) -> None:
        """Attach an error to the ledger row and bump retry_count.

        processed=True acknowledges the event while keeping the error visible
        (permanent failures such as malformed metadata). processed=False leaves
        the event eligible for replay.
        """
        values: dict[str, Any] = {
            "error_message": message,
            "retry_count": WebhookEvent.retry_count + 1,
            "updated_at": self._clock(),
        }
        if processed:
            values["is_processed"] = True
            values["processed_at"] = self._clock()

        async with self._session_factory() as session:
            try:
                await session.execute(
                    update(WebhookEvent).where(WebhookEvent.stripe_event_id == event_id).values(**values)
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("webhook_event_record_error_failed", event_id=event_id, error=str(e))

    async def get(self, event_id: str) -> WebhookEvent | None:
        async with self._session_factory() as session:
            return await session.get(WebhookEvent, event_id)

    async def list_unprocessed(self, limit: int = 50, errored_only: bool = True) -> list[WebhookEvent]:
        """Oldest unprocessed ledger rows, for replay."""
        stmt = select(WebhookEvent).where(WebhookEvent.is_processed.is_(False))
        if errored_only:
            stmt = stmt.where(WebhookEvent.error_message.is_not(None))
        stmt = stmt.order_by(WebhookEvent.created_at).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
