"""Tests for log redaction and CloudWatch metric dispatch."""

from unittest.mock import MagicMock, patch

import pytest

from app.core.logging import add_service_name, redact_secrets
from app.metrics import cloudwatch

pytestmark = pytest.mark.unit


def test_redact_secrets():
    event_dict = {"event": "stripe_webhook_received", "stripe_signature": "t=1,v1=abc", "event_id": "evt_1"}

    result = redact_secrets(None, "info", event_dict)

    assert result["stripe_signature"] == "[redacted]"
    assert result["event_id"] == "evt_1"


def test_service_name_added():
    assert add_service_name(None, "info", {"event": "x"})["service"] == "jds-payments"


async def test_metrics_disabled_is_noop(settings):
    settings.metrics_enabled = False
    with (
        patch.object(cloudwatch, "get_settings", return_value=settings),
        patch.object(cloudwatch, "_get_client") as get_client,
    ):
        await cloudwatch.emit_business_event("course_purchase")

    get_client.assert_not_called()


def test_put_count_sends_dimensions(settings):
    client = MagicMock()
    with (
        patch.object(cloudwatch, "get_settings", return_value=settings),
        patch.object(cloudwatch, "_get_client", return_value=client),
    ):
        cloudwatch._put_count("EventCount", [{"Name": "Event", "Value": "course_renewal"}])

    kwargs = client.put_metric_data.call_args.kwargs
    assert kwargs["Namespace"] == "JDS/Business"
    [datum] = kwargs["MetricData"]
    assert datum["MetricName"] == "EventCount"
    assert datum["Dimensions"] == [{"Name": "Event", "Value": "course_renewal"}]
    assert datum["Value"] == 1.0


def test_put_count_swallows_client_errors(settings):
    client = MagicMock()
    client.put_metric_data.side_effect = RuntimeError("throttled")
    with (
        patch.object(cloudwatch, "get_settings", return_value=settings),
        patch.object(cloudwatch, "_get_client", return_value=client),
    ):
        cloudwatch._put_count("EventCount", [])
