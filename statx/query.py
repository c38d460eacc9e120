"""Time-range resolution and the status/latency join for uptime queries."""

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .config import parse_duration
from .models import (
    RESPONSE_TIME_METRIC,
    STATUS_METRIC,
    URL_LABEL,
    QueryResult,
    TimeRange,
    from_millis,
)
from .store import SampleStore

logger = logging.getLogger(__name__)

DEFAULT_QUERY_WINDOW = timedelta(hours=1)

# Called with (url, unmatched_status_count, unmatched_latency_count).
UnmatchedHook = Callable[[str, int, int], None]


# Extended RFC 3339 date-time; the offset is optional here so a missing
# one can be reported as such.
_RFC3339 = re.compile(
    r"\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:[Zz]|[+-]\d{2}:\d{2})?"
)


def _parse_rfc3339(value: str, name: str) -> datetime:
    """Parse an RFC 3339 timestamp; a trailing "Z" means UTC."""
    text = value.strip()
    if not _RFC3339.fullmatch(text):
        raise ValueError(f"{name} is not a valid RFC 3339 timestamp: {value!r}")
    text = f"{text[:10]}T{text[11:]}"
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"{name} is not a valid RFC 3339 timestamp: {value!r}")
    if moment.tzinfo is None:
        raise ValueError(f"{name} must include a timezone offset: {value!r}")
    try:
        return moment.astimezone(UTC)
    except OverflowError:
        raise ValueError(f"{name} is out of range: {value!r}")


def parse_time_range(
    start: str | None = None,
    end: str | None = None,
    duration: str | None = None,
    now: datetime | None = None,
) -> TimeRange:
    """Resolve query parameters into a TimeRange.

    Precedence:
    1. ``duration`` (e.g. "2h") gives [now - duration, now].
    2. ``start`` and ``end`` (RFC 3339) give [start, end].
    3. Anything else, including a lone start or end, gives the last hour.

    Raises:
        ValueError: On an unparseable or out-of-range value, or start > end.
    """
    now = now or datetime.now(UTC)

    if duration:
        try:
            return TimeRange(start=now - parse_duration(duration), end=now)
        except OverflowError:
            raise ValueError(f"duration out of range: {duration!r}")

    if start and end:
        return TimeRange(start=_parse_rfc3339(start, "start"), end=_parse_rfc3339(end, "end"))

    return TimeRange(start=now - DEFAULT_QUERY_WINDOW, end=now)


def query_status(
    store: SampleStore,
    url: str,
    time_range: TimeRange,
    on_unmatched: UnmatchedHook | None = None,
) -> list[QueryResult]:
    """Join the status and latency series of ``url`` over ``time_range``.

    Both series are read from a single store snapshot. A record is produced
    only for timestamps present in both series; output follows the latency
    series order (ascending time). Unmatched samples are dropped but counted
    and reported through ``on_unmatched`` and the debug log.

    Raises:
        StoreError: If reading from the store fails.
    """
    matchers = {URL_LABEL: url}
    # The range is closed; the store's upper bound is exclusive.
    start_ms, end_ms = time_range.start_ms, time_range.end_ms + 1

    with store.snapshot() as querier:
        status_samples = querier.select(STATUS_METRIC, matchers, start_ms, end_ms)
        latency_samples = querier.select(RESPONSE_TIME_METRIC, matchers, start_ms, end_ms)

    status_by_ts = {ts: int(value) for ts, value in status_samples}

    results: list[QueryResult] = []
    matched: set[int] = set()
    for ts, response_time in latency_samples:
        status = status_by_ts.get(ts)
        if status is None:
            continue
        matched.add(ts)
        results.append(
            QueryResult(
                url=url,
                timestamp=from_millis(ts),
                status=status,
                response_time=response_time,
            )
        )

    unmatched_latency = len(latency_samples) - len(results)
    unmatched_status = len(status_by_ts.keys() - matched)
    if unmatched_status or unmatched_latency:
        logger.debug(
            "Dropped unmatched samples for %s: %d status, %d latency",
            url,
            unmatched_status,
            unmatched_latency,
        )
        if on_unmatched is not None:
            on_unmatched(url, unmatched_status, unmatched_latency)

    return results
