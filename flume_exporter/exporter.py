"""Prometheus metrics exporter module.

This module handles:
- Defining Prometheus operational gauges for the poll loop
- Exposing metrics HTTP server on configurable port
- Tracking the latest usage reading per device
"""

import logging
import time
from typing import Optional, Sequence

from prometheus_client import Gauge, start_http_server, REGISTRY, CollectorRegistry

from flume_exporter.models import MetricPoint

# Configure module logger
logger = logging.getLogger(__name__)


class FlumeExporter:
    """Prometheus exporter for Flume collector health.

    Exposes the following metrics:
    - flume_scrape_success: Whether the last poll completed (1=success, 0=failure)
    - flume_scrape_timestamp: Unix timestamp of last poll
    - flume_scrape_duration_seconds: Duration of last poll
    - flume_scrape_errors: Errors reported during the last poll
    - flume_points_emitted: Points emitted by the last poll
    - flume_water_last_value: Value of the most recent bucket with labels (device_id, units)

    Attributes:
        port: HTTP server port (default 9121)
    """

    def __init__(self, port: int = 9121, registry: Optional[CollectorRegistry] = None):
        """Initialize the exporter.

        Args:
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._scrape_success = Gauge(
            'flume_scrape_success',
            'Whether the last poll succeeded (1=success, 0=failure)',
            registry=self._registry
        )

        self._scrape_timestamp = Gauge(
            'flume_scrape_timestamp',
            'Unix timestamp of the last poll',
            registry=self._registry
        )

        self._scrape_duration = Gauge(
            'flume_scrape_duration_seconds',
            'Duration of the last poll in seconds',
            registry=self._registry
        )

        self._scrape_errors = Gauge(
            'flume_scrape_errors',
            'Number of errors reported during the last poll',
            registry=self._registry
        )

        self._points_emitted = Gauge(
            'flume_points_emitted',
            'Number of usage points emitted by the last poll',
            registry=self._registry
        )

        self._last_value = Gauge(
            'flume_water_last_value',
            'Water used in the most recent minute bucket',
            ['device_id', 'units'],
            registry=self._registry
        )

    def update_metrics(self, points: Sequence[MetricPoint]) -> None:
        """Record the latest reading of each device from a poll's points.

        Args:
            points: Points emitted by a poll, in emission order
        """
        latest = {}
        for point in points:
            key = (point.tags.get("device_id", ""), point.tags.get("units", ""))
            if key not in latest or point.time >= latest[key].time:
                latest[key] = point

        for (device_id, units), point in latest.items():
            self._last_value.labels(device_id=device_id, units=units).set(point.fields["value"])

        self._points_emitted.set(len(points))

    def set_scrape_success(self, success: bool, duration: float, errors: int = 0) -> None:
        """Update operational metrics after a poll attempt.

        Args:
            success: Whether the poll completed
            duration: How long the poll took in seconds
            errors: Number of errors reported during the poll
        """
        self._scrape_success.set(1 if success else 0)
        self._scrape_timestamp.set(time.time())
        self._scrape_duration.set(duration)
        self._scrape_errors.set(errors)

    def start(self) -> None:
        """Start the HTTP server to expose metrics.

        The server runs in a daemon thread and exposes metrics at:
        http://localhost:{port}/metrics
        """
        if self._server_started:
            logger.warning("Prometheus server already started")
            return

        logger.info(f"Starting Prometheus HTTP server on port {self.port}")
        start_http_server(self.port, registry=self._registry)
        self._server_started = True
