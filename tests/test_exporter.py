"""Tests for the Prometheus operational metrics."""

from datetime import datetime, timezone

from prometheus_client import CollectorRegistry, generate_latest

from flume_exporter.exporter import FlumeExporter
from flume_exporter.models import MetricPoint


def point(value, minute):
    return MetricPoint(
        name="flume_water",
        tags={"device_id": "d1", "units": "gallons"},
        fields={"value": value},
        time=datetime(2024, 1, 1, 17, minute, tzinfo=timezone.utc),
    )


def test_exporter_scrape_metrics():
    registry = CollectorRegistry()
    exporter = FlumeExporter(port=9121, registry=registry)

    exporter.set_scrape_success(success=True, duration=1.5, errors=2)
    output = generate_latest(registry).decode('utf-8')

    assert 'flume_scrape_success 1.0' in output, "scrape_success should be 1.0"
    assert 'flume_scrape_duration_seconds 1.5' in output, "duration should be 1.5"
    assert 'flume_scrape_errors 2.0' in output, "errors should be 2.0"
    assert 'flume_scrape_timestamp' in output, "Missing scrape_timestamp"

    exporter.set_scrape_success(success=False, duration=0.5)
    output = generate_latest(registry).decode('utf-8')

    assert 'flume_scrape_success 0.0' in output, "scrape_success should be 0.0"
    assert 'flume_scrape_errors 0.0' in output, "errors should be reset"


def test_exporter_last_value_uses_latest_bucket():
    registry = CollectorRegistry()
    exporter = FlumeExporter(registry=registry)

    # Out of order on purpose: the latest timestamp wins
    exporter.update_metrics([point(1.0, 0), point(4.0, 3), point(2.0, 1)])
    output = generate_latest(registry).decode('utf-8')

    assert 'flume_water_last_value{device_id="d1",units="gallons"} 4.0' in output
    assert 'flume_points_emitted 3.0' in output


def test_exporter_no_points():
    registry = CollectorRegistry()
    exporter = FlumeExporter(registry=registry)

    exporter.update_metrics([])
    output = generate_latest(registry).decode('utf-8')

    assert 'flume_points_emitted 0.0' in output
    assert 'flume_water_last_value{' not in output
