"""Flume data model module.

This module handles:
- Device, user and location records returned by the device directory
- Building the minute-bucketed usage query window
- Parsing the nested query response into usage buckets
- Interpreting naive bucket times in the device's location timezone

Flume query response (simplified):
    {"data": [{"<request_id>": [{"datetime": "2024-01-01 10:00:00", "value": 3.2}, ...]}]}
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

METRIC_NAME = "flume_water"
DEFAULT_LOOKBACK_MINS = 5
DEFAULT_UNITS = "GALLONS"
VALID_UNITS = ("GALLONS", "LITERS", "CUBIC_FEET", "CUBIC_METERS")
BUCKET_MINUTE = "MIN"
REQUEST_ID = "flume-water-exporter"

QUERY_DATETIME_FORMAT = "%Y-%m-%d %H:%M"
BUCKET_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class TimestampError(Exception):
    """Base exception for bucket timestamp resolution errors."""
    pass


class TimezoneError(TimestampError):
    """Exception raised when a location timezone cannot be loaded."""
    pass


class TimestampParseError(TimestampError):
    """Exception raised when a bucket datetime string is malformed."""
    pass


def _str(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass(frozen=True)
class User:
    """Owner of a Flume device.

    Attributes:
        email_address: Account email address
    """
    email_address: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "User":
        data = data or {}
        return cls(email_address=_str(data.get("email_address")))


@dataclass(frozen=True)
class Location:
    """Installation location of a Flume device.

    Attributes:
        name: Location display name
        city: City
        state: State or region
        postal_code: Postal/ZIP code
        building_type: Building type (e.g. SINGLE_FAMILY_HOME)
        tz: IANA timezone name the device reports its readings in
    """
    name: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    building_type: str = ""
    tz: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "Location":
        data = data or {}
        return cls(
            name=_str(data.get("name")),
            city=_str(data.get("city")),
            state=_str(data.get("state")),
            postal_code=_str(data.get("postal_code")),
            building_type=_str(data.get("building_type")),
            tz=_str(data.get("tz")),
        )


@dataclass(frozen=True)
class Device:
    """A Flume device as described by the device directory.

    Attributes:
        id: Device identifier used for usage queries
        bridge_id: Identifier of the bridge the sensor reports through
        name: Device display name
        type: Device type (1 = bridge, 2 = water sensor)
        user: Owning user (only populated when requested)
        location: Installation location (only populated when requested)
    """
    id: str
    bridge_id: str = ""
    name: str = ""
    type: int = 0
    user: User = field(default_factory=User)
    location: Location = field(default_factory=Location)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Device":
        """Build a Device from a device directory JSON object."""
        try:
            device_type = int(data.get("type") or 0)
        except (TypeError, ValueError):
            device_type = 0

        return cls(
            id=_str(data.get("id")),
            bridge_id=_str(data.get("bridge_id")),
            name=_str(data.get("name")),
            type=device_type,
            user=User.from_api(data.get("user")),
            location=Location.from_api(data.get("location")),
        )


@dataclass(frozen=True)
class UsageBucket:
    """A single minute-granularity usage reading.

    Attributes:
        value: Water used during the bucket, in the query's units
        datetime: Naive bucket start time in the device's local timezone
    """
    value: float
    datetime: str


@dataclass(frozen=True)
class QueryWindow:
    """A half-open usage query window [since, until).

    Attributes:
        since: Start time as a naive "YYYY-MM-DD HH:MM:00" string
        until: End time as a naive "YYYY-MM-DD HH:MM:00" string
        request_id: Correlation key the response groups buckets under
        units: Unit of the returned values
        bucket: Bucket granularity
    """
    since: str
    until: str
    request_id: str = REQUEST_ID
    units: str = DEFAULT_UNITS
    bucket: str = BUCKET_MINUTE

    def to_query(self) -> Dict[str, str]:
        """Return the JSON query object for the usage query endpoint."""
        return {
            "request_id": self.request_id,
            "bucket": self.bucket,
            "since_datetime": self.since,
            "until_datetime": self.until,
            "units": self.units,
        }


@dataclass(frozen=True)
class MetricPoint:
    """One timestamped, tagged metric point.

    Attributes:
        name: Measurement name
        tags: String tags identifying the series
        fields: Numeric fields
        time: Timezone-aware timestamp of the reading
    """
    name: str
    tags: Dict[str, str]
    fields: Dict[str, float]
    time: datetime


def format_query_datetime(dt: datetime) -> str:
    """Format a datetime for a usage query, truncated to the minute.

    Example:
        >>> format_query_datetime(datetime(2024, 1, 1, 10, 4, 59))
        '2024-01-01 10:04:00'
    """
    return dt.strftime(QUERY_DATETIME_FORMAT) + ":00"


def build_query_window(
    now: datetime,
    lookback_mins: int = DEFAULT_LOOKBACK_MINS,
    units: str = DEFAULT_UNITS,
    request_id: str = REQUEST_ID,
) -> QueryWindow:
    """Build the query window covering [now - lookback, now].

    No timezone offset is embedded; the API interprets the naive times against
    the device's own location timezone.

    Args:
        now: Current wall-clock time
        lookback_mins: Minutes to look back (0 falls back to the default)
        units: Unit to report values in
        request_id: Correlation key for the response group

    Returns:
        QueryWindow for a single minute-bucketed query
    """
    if not lookback_mins:
        lookback_mins = DEFAULT_LOOKBACK_MINS

    since = now - timedelta(minutes=lookback_mins)
    return QueryWindow(
        since=format_query_datetime(since),
        until=format_query_datetime(now),
        request_id=request_id,
        units=units or DEFAULT_UNITS,
    )


def parse_query_results(data: Optional[List[Dict[str, Any]]]) -> List[Dict[str, List[UsageBucket]]]:
    """Parse the query response data into usage buckets.

    Group, key and bucket order follow the response exactly.

    Args:
        data: The "data" array of a query response

    Returns:
        One mapping per query group from correlation key to its buckets
    """
    results: List[Dict[str, List[UsageBucket]]] = []
    for group in data or []:
        parsed: Dict[str, List[UsageBucket]] = {}
        for key, buckets in group.items():
            parsed[key] = [
                UsageBucket(value=float(b.get("value") or 0.0), datetime=_str(b.get("datetime")))
                for b in buckets or []
            ]
        results.append(parsed)
    return results


def load_timezone(tz_name: str) -> tzinfo:
    """Load a timezone by IANA name. An empty name means UTC.

    Raises:
        TimezoneError: If the name is unknown
    """
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TimezoneError(f"Unknown timezone {tz_name!r}: {e}")


def parse_bucket_datetime(datetime_str: str) -> datetime:
    """Parse a naive bucket datetime string.

    Raises:
        TimestampParseError: If the string is not "YYYY-MM-DD HH:MM:SS"
    """
    try:
        return datetime.strptime(datetime_str, BUCKET_DATETIME_FORMAT)
    except (TypeError, ValueError) as e:
        raise TimestampParseError(f"Invalid bucket datetime {datetime_str!r}: {e}")


def localize_bucket_time(datetime_str: str, tz_name: str) -> datetime:
    """Interpret a naive bucket time in the named timezone.

    Example:
        >>> localize_bucket_time("2024-01-01 10:00:00", "America/Denver").isoformat()
        '2024-01-01T10:00:00-07:00'

    Raises:
        TimestampParseError: If the datetime string is malformed
        TimezoneError: If the timezone cannot be loaded
    """
    naive = parse_bucket_datetime(datetime_str)
    return naive.replace(tzinfo=load_timezone(tz_name))


def localize_bucket_time_utc(datetime_str: str) -> datetime:
    """Interpret a naive bucket time as UTC."""
    return parse_bucket_datetime(datetime_str).replace(tzinfo=timezone.utc)
