"""CloudWatch custom metrics for webhook reconciliation and business events.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller. The durable
analytics record lives in the analytics_events table; these metrics only feed
dashboards and alarms.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_count(metric_name: str, dimensions: list[dict[str, str]]) -> None:
    """Synchronous put_metric_data for a single count. Runs in thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().metrics_namespace,
            MetricData=[{
                "MetricName": metric_name,
                "Dimensions": dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric_name)


def _dispatch(metric_name: str, dimensions: list[dict[str, str]]) -> None:
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_count, metric_name, dimensions)


async def emit_business_event(event_name: str, tier: str | None = None) -> None:
    """Count a business event (course_purchase, subscription_upgrade, ...). Non-blocking."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if tier:
        dimensions.append({"Name": "Tier", "Value": tier})
    _dispatch("EventCount", dimensions)


async def emit_webhook_outcome(event_type: str, outcome: str) -> None:
    """Count a webhook delivery by type and outcome (processed, duplicate, failed, ...)."""
    _dispatch(
        "WebhookDelivery",
        [
            {"Name": "EventType", "Value": event_type},
            {"Name": "Outcome", "Value": outcome},
        ],
    )
