"""Per-target polling loops that probe URLs and record paired samples."""

import enum
import logging
import threading
import time
from collections.abc import Callable
from threading import Event, Thread

import requests

from . import probe
from .config import Config, TargetConfig
from .models import RESPONSE_TIME_METRIC, STATUS_METRIC, URL_LABEL, ProbeResult, Sample, now_millis
from .store import SampleStore, StoreError

logger = logging.getLogger(__name__)


class TargetState(enum.Enum):
    """Lifecycle of a target's polling loop."""

    IDLE = "idle"
    PROBING = "probing"
    RECORDING = "recording"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


def paired_samples(url: str, timestamp_ms: int, status: float, response_time: float) -> list[Sample]:
    """Build the status and latency samples recorded for one check."""
    labels = {URL_LABEL: url}
    return [
        Sample(metric=STATUS_METRIC, labels=labels, timestamp_ms=timestamp_ms, value=float(status)),
        Sample(metric=RESPONSE_TIME_METRIC, labels=labels, timestamp_ms=timestamp_ms, value=float(response_time)),
    ]


class Scheduler:
    """Runs one independent polling thread per target.

    Each thread loops probe -> record -> sleep until ``stop()`` sets the
    shared stop event. A slow or failing target only delays its own loop.
    A housekeeping thread purges expired samples on a fixed interval.

    Example:
        scheduler = Scheduler(config, store)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        config: Config,
        store: SampleStore,
        on_cycle: Callable[[str, ProbeResult | None], None] | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Application configuration with targets and check settings.
            store: Sample store receiving the recorded samples.
            on_cycle: Optional callback invoked after each cycle with the URL and
                the probe result (None when the probe failed or was cancelled).
            session_factory: Creates the HTTP session used by each target thread.
        """
        self._config = config
        self._store = store
        self._on_cycle = on_cycle
        self._session_factory = session_factory
        self._stop_event = Event()
        self._threads: list[Thread] = []
        self._states: dict[str, TargetState] = {target.url: TargetState.IDLE for target in config.targets}
        self._states_lock = threading.Lock()

    @property
    def stop_event(self) -> Event:
        return self._stop_event

    def start(self) -> None:
        """Start one polling thread per target plus the housekeeping thread."""
        if self.is_running():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._threads = [
            Thread(target=self._run_target, args=(target,), daemon=True, name=f"probe-{i}")
            for i, target in enumerate(self._config.targets)
        ]
        self._threads.append(Thread(target=self._run_housekeeping, daemon=True, name="housekeeping"))
        for thread in self._threads:
            thread.start()
        logger.info("Scheduler started with %d targets", len(self._config.targets))

    def stop(self, timeout: float = 10.0) -> None:
        """Signal every loop to stop and wait for the threads to exit.

        Args:
            timeout: Maximum seconds to wait for all threads together.
        """
        if not self._threads:
            return

        logger.info("Stopping scheduler...")
        self._stop_event.set()

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning("Threads did not stop within timeout: %s", ", ".join(alive))
        else:
            logger.info("Scheduler stopped")
        self._threads = []

    def is_running(self) -> bool:
        """Check if any polling thread is alive."""
        return any(thread.is_alive() for thread in self._threads)

    def states(self) -> dict[str, TargetState]:
        """Return a snapshot of every target's current state."""
        with self._states_lock:
            return dict(self._states)

    def _set_state(self, url: str, state: TargetState) -> None:
        with self._states_lock:
            self._states[url] = state

    def _run_target(self, target: TargetConfig) -> None:
        """Polling loop for a single target - runs in its own thread."""
        logger.debug("Polling loop started for %s (every %.1fs)", target.url, target.interval)
        session = self._session_factory()
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_cycle(target, session=session)
                except Exception:
                    logger.exception("Unexpected error in cycle for %s", target.url)

                if self._stop_event.is_set():
                    break
                self._set_state(target.url, TargetState.SLEEPING)
                # Interruptible sleep so stop() takes effect immediately.
                self._stop_event.wait(timeout=target.interval)
        finally:
            session.close()
            self._set_state(target.url, TargetState.STOPPED)
            logger.debug("Polling loop exited for %s", target.url)

    def run_cycle(self, target: TargetConfig, session: requests.Session | None = None) -> ProbeResult | None:
        """Probe ``target`` once and record the paired samples.

        On success the status code and latency are recorded. When every
        attempt failed a ``{status=0, latency=0}`` pair is recorded instead,
        stamped with the time the cycle started. A cancelled probe records
        nothing. Store failures are logged and not retried.

        Returns:
            The probe result, or None if the probe failed or was cancelled.
        """
        check = self._config.check
        timestamp_ms = now_millis()

        self._set_state(target.url, TargetState.PROBING)
        result: ProbeResult | None = None
        try:
            result = probe.check(
                target.url,
                timeout=check.timeout,
                max_attempts=check.retry_attempts,
                retry_delay=check.retry_delay,
                session=session,
                stop_event=self._stop_event,
            )
        except probe.ProbeCancelled:
            logger.debug("Probe for %s cancelled by shutdown", target.url)
            return None
        except probe.ProbeError as e:
            logger.error("Error checking %s: %s", target.url, e.last_error)

        self._set_state(target.url, TargetState.RECORDING)
        if result is not None:
            logger.info("Status for %s: %d (%.1fms)", target.url, result.status_code, result.response_time_ms)
            samples = paired_samples(target.url, timestamp_ms, result.status_code, result.response_time_ms)
        else:
            samples = paired_samples(target.url, timestamp_ms, 0, 0)

        self._store_samples(target.url, samples)

        if self._on_cycle is not None:
            try:
                self._on_cycle(target.url, result)
            except Exception as e:
                logger.error("Cycle callback failed for %s: %s", target.url, e)

        return result

    def _store_samples(self, url: str, samples: list[Sample]) -> None:
        """Write a check's samples, logging instead of raising on failure."""
        try:
            self._store.append_many(samples)
        except StoreError as e:
            logger.error("Error writing samples for %s: %s", url, e)

    def _run_housekeeping(self) -> None:
        """Purge expired samples periodically until stopped."""
        interval = self._config.storage.purge_interval
        while not self._stop_event.wait(timeout=interval):
            self.run_purge()

    def run_purge(self) -> int:
        """Run one retention purge, logging failures. Returns deleted sample count."""
        try:
            return self._store.purge_expired()
        except StoreError as e:
            logger.error("Retention purge failed: %s", e)
            return 0
