"""Single HTTP check with bounded retries."""

import logging
import time
from threading import Event

import requests

from .models import ProbeResult

logger = logging.getLogger(__name__)

USER_AGENT = "statx/0.1"


class ProbeError(Exception):
    """Raised when every attempt of a probe failed at the transport level.

    Attributes:
        url: The probed URL.
        attempts: Number of attempts made.
        last_error: The transport error of the final attempt.
    """

    def __init__(self, url: str, attempts: int, last_error: BaseException | None) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{url}: {attempts} attempt(s) failed: {last_error}")


class ProbeCancelled(ProbeError):
    """Raised when a probe is abandoned because shutdown was requested."""

    pass


def check(
    url: str,
    timeout: float,
    max_attempts: int,
    retry_delay: float,
    session: requests.Session | None = None,
    stop_event: Event | None = None,
) -> ProbeResult:
    """Perform an HTTP GET against ``url``, retrying on transport failures.

    Any HTTP response, including 4xx and 5xx, counts as success. Only errors
    raised before a response arrives (connection refused, DNS failure,
    timeout, ...) trigger a retry. Latency covers the request up to the
    response headers; the body is never read.

    Args:
        url: URL to probe.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Maximum number of attempts (at least 1).
        retry_delay: Seconds to wait between attempts.
        session: Session to issue the request with (a fresh one if None).
        stop_event: If set while waiting between attempts, the probe stops.

    Returns:
        ProbeResult with the status code and latency of the successful attempt.

    Raises:
        ProbeError: When all attempts failed.
        ProbeCancelled: When stop_event was set before the next attempt.
        ValueError: If max_attempts is less than 1.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    http = session if session is not None else requests.Session()
    last_error: BaseException | None = None

    try:
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                if stop_event is not None:
                    if stop_event.wait(retry_delay):
                        raise ProbeCancelled(url, attempt - 1, last_error)
                else:
                    time.sleep(retry_delay)

            start = time.monotonic()
            try:
                response = http.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT}, stream=True)
            except requests.RequestException as e:
                last_error = e
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, max_attempts, url, e)
                continue

            elapsed_ms = (time.monotonic() - start) * 1000
            response.close()
            return ProbeResult(
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                attempts=attempt,
            )
    finally:
        if session is None:
            http.close()

    raise ProbeError(url, max_attempts, last_error)
