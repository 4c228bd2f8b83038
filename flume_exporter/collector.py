"""Flume water usage collector module.

This module handles:
- Lazily creating the Flume API session on the first poll
- Resolving (and caching) the device to collect usage for
- Querying a trailing lookback window of minute buckets on every poll
- Flattening the query response into tagged metric points

Consecutive polls overlap by design: each poll re-queries the whole lookback
window to pick up late-arriving readings. Points for the same bucket carry the
same tags and timestamp, so the metric store deduplicates them.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from flume_exporter.accumulator import Accumulator
from flume_exporter.client import FlumeClient, FlumeError
from flume_exporter.models import (
    DEFAULT_LOOKBACK_MINS,
    DEFAULT_UNITS,
    METRIC_NAME,
    REQUEST_ID,
    VALID_UNITS,
    Device,
    MetricPoint,
    QueryWindow,
    TimestampParseError,
    TimezoneError,
    UsageBucket,
    build_query_window,
    localize_bucket_time,
    localize_bucket_time_utc,
)

# Configure module logger
logger = logging.getLogger(__name__)


class FlumeDirectoryError(FlumeError):
    """Exception raised when the target device cannot be resolved."""
    pass


class FlumeWaterCollector:
    """Collects minute-level water usage for one Flume device.

    Lifecycle: the API session and the device are set up lazily on the first
    poll; the device is then cached for the lifetime of the collector. A poll
    never raises for upstream failures; it reports them to the accumulator.

    Polls of one instance must not run concurrently.

    Attributes:
        device_id: Explicit device to collect (empty = first device on the account)
        lookback_mins: Minutes re-queried on every poll
        units: Unit the values are reported in
        timeout: Per-request timeout in seconds
        device: The resolved device, or None until resolution succeeds
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        device_id: str = "",
        lookback_mins: int = DEFAULT_LOOKBACK_MINS,
        units: str = DEFAULT_UNITS,
        timeout: float = 5.0,
        client_factory: Callable[..., FlumeClient] = FlumeClient,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the collector. No network calls are made here.

        Args:
            client_id: API client ID
            client_secret: API client secret
            username: Flume account username (email)
            password: Flume account password
            device_id: Device to collect; if empty the first listed device is used
            lookback_mins: Minutes to look back on each poll (0 = default of 5)
            units: One of GALLONS, LITERS, CUBIC_FEET, CUBIC_METERS
            timeout: Per-request timeout in seconds
            client_factory: Callable building the API client (for testing)
            clock: Callable returning the current local time (for testing)

        Raises:
            ValueError: If units is not a supported unit or lookback_mins is negative
        """
        units = (units or DEFAULT_UNITS).upper()
        if units not in VALID_UNITS:
            raise ValueError(f"Unsupported units {units!r}, expected one of {', '.join(VALID_UNITS)}")
        if lookback_mins is not None and lookback_mins < 0:
            raise ValueError(f"lookback_mins must not be negative, got {lookback_mins}")

        self._credentials = (client_id, client_secret, username, password)
        self.device_id = device_id
        self.lookback_mins = lookback_mins or DEFAULT_LOOKBACK_MINS
        self.units = units
        self.timeout = timeout
        self._client_factory = client_factory
        self._clock = clock

        self.client: Optional[FlumeClient] = None
        self.device: Optional[Device] = None

    @property
    def ready(self) -> bool:
        """Whether the session exists and the device has been resolved."""
        return self.client is not None and self.device is not None

    def _get_client(self) -> FlumeClient:
        if self.client is None:
            logger.debug("Creating Flume API session")
            self.client = self._client_factory(*self._credentials, timeout=self.timeout)
        return self.client

    def resolve_device(self) -> Device:
        """Return the target device, fetching it from the directory once.

        Returns:
            The cached or newly resolved device

        Raises:
            FlumeDirectoryError: If the device cannot be fetched
        """
        if self.device is not None:
            return self.device

        client = self._get_client()

        try:
            if self.device_id:
                logger.info(f"Fetching Flume device {self.device_id}")
                device = client.fetch_user_device(self.device_id, include_user=True, include_location=True)
            else:
                logger.info("No device_id configured, fetching device list")
                devices = client.fetch_user_devices(include_user=True, include_location=True)
                if not devices:
                    raise FlumeDirectoryError("No devices found on the Flume account")
                device = devices[0]
        except FlumeDirectoryError:
            raise
        except FlumeError as e:
            raise FlumeDirectoryError(f"Device lookup failed: {e}")

        logger.info(f"Resolved device {device.id} ({device.name or 'unnamed'}) "
                    f"at {device.location.name or 'unknown location'}")
        self.device = device
        return device

    def build_query(self) -> QueryWindow:
        """Build the query window ending at the current wall-clock time."""
        return build_query_window(
            self._clock(),
            lookback_mins=self.lookback_mins,
            units=self.units,
            request_id=REQUEST_ID,
        )

    def device_tags(self, device: Device) -> Dict[str, str]:
        """Tags shared by every point of a device."""
        return {
            "device_id": device.id,
            "bridge_id": device.bridge_id,
            "device_name": device.name,
            "device_type": str(device.type),
            "user_email": device.user.email_address,
            "location_name": device.location.name,
            "location_city": device.location.city,
            "location_state": device.location.state,
            "location_postal_code": device.location.postal_code,
            "location_building_type": device.location.building_type,
            "units": self.units.lower(),
        }

    def _bucket_time(self, bucket: UsageBucket, tz_name: str, accumulator: Accumulator) -> Optional[datetime]:
        """Resolve a bucket's absolute time, reporting any failure.

        An unknown timezone falls back to UTC so the reading is still kept; a
        malformed datetime yields None and the bucket is skipped.
        """
        try:
            return localize_bucket_time(bucket.datetime, tz_name)
        except TimezoneError as e:
            accumulator.add_error(e)
        except TimestampParseError as e:
            accumulator.add_error(e)
            return None

        try:
            return localize_bucket_time_utc(bucket.datetime)
        except TimestampParseError as e:
            accumulator.add_error(e)
            return None

    def emit(self, results, device: Device, accumulator: Accumulator) -> int:
        """Emit one metric point per bucket of a query response.

        Args:
            results: Query groups mapping request_id to buckets
            device: Device the buckets belong to
            accumulator: Sink for points and errors

        Returns:
            Number of points emitted
        """
        base_tags = self.device_tags(device)
        emitted = 0

        for group in results:
            for request_id, buckets in group.items():
                for bucket in buckets:
                    timestamp = self._bucket_time(bucket, device.location.tz, accumulator)
                    if timestamp is None:
                        continue

                    tags = {"request_id": request_id}
                    tags.update(base_tags)
                    accumulator.add_metric(MetricPoint(
                        name=METRIC_NAME,
                        tags=tags,
                        fields={"value": bucket.value},
                        time=timestamp,
                    ))
                    emitted += 1

        return emitted

    def poll(self, accumulator: Accumulator) -> int:
        """Run one fetch-and-emit cycle.

        1. Resolve the device (first successful poll only)
        2. Query the trailing lookback window
        3. Emit one point per returned bucket

        Args:
            accumulator: Sink for points and errors

        Returns:
            Number of points emitted (0 if the cycle ended early)
        """
        try:
            device = self.resolve_device()
        except FlumeDirectoryError as e:
            accumulator.add_error(e)
            return 0

        window = self.build_query()
        logger.debug(f"Querying {device.id} from {window.since} to {window.until} in {window.units}")

        try:
            results = self._get_client().query_user_device(device.id, [window.to_query()])
        except FlumeError as e:
            accumulator.add_error(e)
            return 0

        emitted = self.emit(results, device, accumulator)
        logger.info(f"Emitted {emitted} points for device {device.id}")
        return emitted

    def stop(self) -> None:
        """Release the API session. The resolved device stays cached."""
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Flume collector stopped")
