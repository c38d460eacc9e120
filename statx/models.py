"""Data models for probe outcomes, samples and query results."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

# Metric names for the two series recorded per target.
STATUS_METRIC = "http_status"
RESPONSE_TIME_METRIC = "http_response_time"

# Label carrying the target URL on every series.
URL_LABEL = "url"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Sample:
    """A single measurement belonging to one series.

    Attributes:
        metric: Metric name, e.g. "http_status".
        labels: Label set identifying the series (at minimum ``url``).
        timestamp_ms: Unix timestamp in milliseconds.
        value: Measured value.
    """

    metric: str
    labels: dict[str, str] = field(hash=False)
    timestamp_ms: int
    value: float


@dataclass(frozen=True)
class TimeRange:
    """Closed time interval used for queries.

    Both bounds must be timezone-aware. A range whose start lies after its
    end is rejected.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("time range bounds must be timezone-aware")
        if self.start > self.end:
            raise ValueError(
                f"start ({self.start.isoformat()}) is after end ({self.end.isoformat()})"
            )

    @property
    def start_ms(self) -> int:
        return to_millis(self.start)

    @property
    def end_ms(self) -> int:
        return to_millis(self.end)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a successful probe.

    Attributes:
        status_code: HTTP status code of the response (any code counts).
        response_time_ms: Duration of the attempt that succeeded, in milliseconds.
        attempts: Number of attempts made, including the successful one.
    """

    status_code: int
    response_time_ms: float
    attempts: int = 1


@dataclass(frozen=True)
class QueryResult:
    """One joined status/latency record for a URL at a timestamp."""

    url: str
    timestamp: datetime
    status: int
    response_time: float

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        return {
            "url": self.url,
            "timestamp": format_timestamp(self.timestamp),
            "status": self.status,
            "response_time": self.response_time,
        }


def to_millis(moment: datetime) -> int:
    """Convert an aware datetime to Unix milliseconds."""
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def from_millis(timestamp_ms: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=timestamp_ms)


def now_millis() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return to_millis(datetime.now(UTC))


def format_timestamp(moment: datetime) -> str:
    """Render an aware datetime as RFC 3339 with millisecond precision and Z suffix."""
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
