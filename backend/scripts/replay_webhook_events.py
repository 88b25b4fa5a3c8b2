"""Replay Stripe webhook events whose processing failed.

Re-dispatches the stored payload of every unprocessed ledger row that has a
recorded error, oldest first. Rows that fail again keep is_processed=False and
get their retry_count bumped.

Usage:
    python scripts/replay_webhook_events.py [--limit 50] [--event-id evt_...]
"""

import argparse
import asyncio

from app.core.config import get_settings
from app.core.logging import configure_structlog
from app.db.base import close_db, get_session_factory, init_db
from app.services.reconciliation import WebhookReconciler
from app.services.stripe_gateway import StripeGateway


async def main(limit: int, event_id: str | None) -> None:
    settings = get_settings()
    configure_structlog(log_level="INFO", json_logs=False)
    await init_db()

    reconciler = WebhookReconciler(get_session_factory(), StripeGateway(settings), settings)
    try:
        if event_id:
            event_ids = [event_id]
        else:
            rows = await reconciler.ledger.list_unprocessed(limit=limit)
            event_ids = [row.stripe_event_id for row in rows]

        print(f"Replaying {len(event_ids)} event(s)")
        for eid in event_ids:
            result = await reconciler.replay(eid)
            suffix = f" ({result.error})" if result.error else ""
            print(f"  {eid}: {result.outcome.value}{suffix}")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--event-id", default=None)
    args = parser.parse_args()
    asyncio.run(main(args.limit, args.event_id))
