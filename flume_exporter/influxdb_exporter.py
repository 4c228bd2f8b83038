"""InfluxDB exporter module.

This module handles:
- Pushing Flume water usage points to InfluxDB with their bucket timestamps
- Each minute bucket is stored at its correct time
- Overlapping polls overwrite identical points (same tags and timestamp)
"""

import logging
from typing import Iterable, List, Optional

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from flume_exporter.models import MetricPoint

# Configure module logger
logger = logging.getLogger(__name__)


class InfluxDBExporter:
    """InfluxDB exporter for Flume water usage data.

    Measurements:
    - flume_water: Per-minute usage readings (field "value")

    Tags:
    - request_id, device/bridge identity, owner email, location attributes, units

    Attributes:
        url: InfluxDB server URL
        token: InfluxDB API token
        org: InfluxDB organization
        bucket: InfluxDB bucket name
    """

    def __init__(
        self,
        url: str = "http://localhost:8086",
        token: str = "",
        org: str = "flume",
        bucket: str = "water",
    ):
        """Initialize the InfluxDB exporter.

        Args:
            url: InfluxDB server URL
            token: InfluxDB API token (required for writes)
            org: InfluxDB organization name
            bucket: InfluxDB bucket name
        """
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self._client: Optional[InfluxDBClient] = None
        self._write_api = None

    def connect(self) -> bool:
        """Connect to InfluxDB.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self._client = InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org
            )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

            health = self._client.health()
            if health.status == "pass":
                logger.info(f"Connected to InfluxDB at {self.url}")
                return True
            else:
                logger.error(f"InfluxDB health check failed: {health.message}")
                return False
        except Exception as e:
            logger.error(f"Failed to connect to InfluxDB: {e}")
            return False

    def close(self) -> None:
        """Close the InfluxDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            logger.info("InfluxDB connection closed")

    @staticmethod
    def to_point(metric: MetricPoint) -> Point:
        """Convert a metric point to an InfluxDB point."""
        point = Point(metric.name)
        for key, value in metric.tags.items():
            point = point.tag(key, value)
        for key, value in metric.fields.items():
            point = point.field(key, value)
        return point.time(metric.time, WritePrecision.S)

    def write_points(self, metrics: Iterable[MetricPoint]) -> int:
        """Write metric points to InfluxDB in a single batch.

        Args:
            metrics: Points emitted by a poll

        Returns:
            Number of points written

        Raises:
            RuntimeError: If not connected to InfluxDB
        """
        if not self._write_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")

        points: List[Point] = [self.to_point(m) for m in metrics]

        if not points:
            logger.info("No points to write")
            return 0

        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=points)
            logger.info(f"Wrote {len(points)} points to InfluxDB")
        except Exception as e:
            logger.error(f"Failed to write to InfluxDB: {e}")
            raise

        return len(points)
