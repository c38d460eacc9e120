"""SQLite-backed time-series store for probe samples.

Samples are grouped into series keyed by metric name and label set. Each
series is an append-only, time-ordered sequence indexed on
(series_id, timestamp_ms) so range queries only touch the requested slice.

Concurrency model:
- Every thread gets its own connection. With WAL enabled, readers never
  block the writer and the writer never blocks readers.
- SQLite permits a single writer, so write transactions are serialized by a
  store-level lock. Writes are short (one check = two rows).
- Reads go through ``snapshot()``, which pins a single read transaction so
  all selects inside it observe the same state even if a retention purge
  commits meanwhile.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from .models import Sample, format_timestamp, from_millis, now_millis

logger = logging.getLogger(__name__)

DB_FILENAME = "samples.db"

# Seconds a connection waits on a locked database before failing.
BUSY_TIMEOUT_SECONDS = 30.0


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class OutOfOrderSampleError(StoreError):
    """Raised when an append is older than the newest sample of its series."""

    pass


_SCHEMA = """
CREATE TABLE IF NOT EXISTS series (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    metric TEXT NOT NULL,
    labels TEXT NOT NULL,
    UNIQUE (metric, labels)
);
CREATE TABLE IF NOT EXISTS samples (
    series_id INTEGER NOT NULL REFERENCES series(id),
    timestamp_ms INTEGER NOT NULL,
    value REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_samples_series_ts ON samples(series_id, timestamp_ms);
CREATE INDEX IF NOT EXISTS idx_samples_ts ON samples(timestamp_ms);
CREATE TABLE IF NOT EXISTS _metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def canonical_labels(labels: dict[str, str]) -> str:
    """Serialize a label set so that equal sets produce equal strings."""
    return json.dumps(labels, sort_keys=True, separators=(",", ":"))


class Querier:
    """Read access to one consistent snapshot of the store.

    Obtained from ``SampleStore.snapshot()``; only valid inside that block.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def _matching_series(self, metric: str, matchers: dict[str, str]) -> list[int]:
        rows = self._conn.execute(
            "SELECT id, labels FROM series WHERE metric = ? ORDER BY id",
            (metric,),
        ).fetchall()
        series_ids = []
        for series_id, labels_json in rows:
            labels = json.loads(labels_json)
            if all(labels.get(name) == value for name, value in matchers.items()):
                series_ids.append(series_id)
        return series_ids

    def select(
        self,
        metric: str,
        matchers: dict[str, str],
        start_ms: int,
        end_ms: int,
    ) -> list[tuple[int, float]]:
        """Return samples of matching series with start_ms <= ts < end_ms.

        Args:
            metric: Metric name of the series to read.
            matchers: Label equality matchers; every one must match.
            start_ms: Inclusive lower bound (Unix ms).
            end_ms: Exclusive upper bound (Unix ms).

        Returns:
            (timestamp_ms, value) tuples in ascending timestamp order.

        Raises:
            StoreError: If the read fails.
        """
        if end_ms <= start_ms:
            return []
        try:
            series_ids = self._matching_series(metric, matchers)
            if not series_ids:
                return []
            placeholders = ",".join("?" * len(series_ids))
            rows = self._conn.execute(
                f"""
                SELECT timestamp_ms, value FROM samples
                WHERE series_id IN ({placeholders})
                  AND timestamp_ms >= ? AND timestamp_ms < ?
                ORDER BY timestamp_ms, rowid
                """,
                (*series_ids, start_ms, end_ms),
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to query {metric}: {e}")
        return [(int(ts), float(value)) for ts, value in rows]


class SampleStore:
    """Durable, label-indexed, append-only sample store.

    Example:
        store = open_store("data", retention_ms=7 * 86_400_000, block_duration_ms=7_200_000)
        store.append_many([...])
        with store.snapshot() as querier:
            querier.select("http_status", {"url": "https://example.com"}, start_ms, end_ms)
        store.close()
    """

    def __init__(self, path: str, retention_ms: int, block_duration_ms: int) -> None:
        if retention_ms <= 0:
            raise ValueError("retention_ms must be positive")
        if block_duration_ms <= 0:
            raise ValueError("block_duration_ms must be positive")

        self._dir = Path(path)
        self._db_path = str(self._dir / DB_FILENAME)
        self.retention_ms = retention_ms
        self.block_duration_ms = block_duration_ms

        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False

        # (metric, canonical labels) -> series id; guarded by _write_lock.
        self._series_cache: dict[tuple[str, str], int] = {}

        try:
            if not self._dir.exists():
                self._dir.mkdir(parents=True, exist_ok=True)
            conn = self._connection()
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize sample store: {e}")
        except OSError as e:
            raise StoreError(f"Failed to create storage directory: {e}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connection(self) -> sqlite3.Connection:
        """Return this thread's connection, opening it on first use."""
        if self._closed:
            raise StoreError("Sample store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._db_path,
                timeout=BUSY_TIMEOUT_SECONDS,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _series_id(
        self,
        conn: sqlite3.Connection,
        metric: str,
        labels_json: str,
        created: dict[tuple[str, str], int],
    ) -> int:
        key = (metric, labels_json)
        series_id = self._series_cache.get(key) or created.get(key)
        if series_id is not None:
            return series_id

        row = conn.execute(
            "SELECT id FROM series WHERE metric = ? AND labels = ?",
            key,
        ).fetchone()
        if row is not None:
            series_id = row[0]
        else:
            cursor = conn.execute("INSERT INTO series (metric, labels) VALUES (?, ?)", key)
            series_id = cursor.lastrowid
        created[key] = series_id
        return series_id

    def append(self, metric: str, labels: dict[str, str], timestamp_ms: int, value: float) -> None:
        """Durably record a single sample.

        Raises:
            OutOfOrderSampleError: If timestamp_ms precedes the newest sample of the series.
            StoreError: If the write fails.
        """
        self.append_many([Sample(metric=metric, labels=labels, timestamp_ms=timestamp_ms, value=value)])

    def append_many(self, samples: Iterable[Sample]) -> None:
        """Durably record several samples in one transaction.

        Either every sample becomes visible to readers or none does.

        Raises:
            OutOfOrderSampleError: If any sample precedes the newest sample of its
                series; the whole batch is rolled back.
            StoreError: If the write fails.
        """
        batch = list(samples)
        if not batch:
            return

        with self._write_lock:
            conn = self._connection()
            created: dict[tuple[str, str], int] = {}
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for sample in batch:
                        series_id = self._series_id(conn, sample.metric, canonical_labels(sample.labels), created)
                        newest = conn.execute(
                            "SELECT MAX(timestamp_ms) FROM samples WHERE series_id = ?",
                            (series_id,),
                        ).fetchone()[0]
                        if newest is not None and sample.timestamp_ms < newest:
                            raise OutOfOrderSampleError(
                                f"Sample for {sample.metric}{sample.labels} at {sample.timestamp_ms} "
                                f"is older than the newest sample at {newest}"
                            )
                        conn.execute(
                            "INSERT INTO samples (series_id, timestamp_ms, value) VALUES (?, ?, ?)",
                            (series_id, sample.timestamp_ms, float(sample.value)),
                        )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise StoreError(f"Failed to append samples: {e}")

            self._series_cache.update(created)

    @contextmanager
    def snapshot(self) -> Iterator[Querier]:
        """Open a read snapshot shared by every select made through the yielded querier.

        Raises:
            StoreError: If the snapshot cannot be opened.
        """
        conn = self._connection()
        try:
            conn.execute("BEGIN DEFERRED")
            # The first read pins the WAL snapshot for the whole transaction.
            conn.execute("SELECT COUNT(*) FROM series").fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open read snapshot: {e}")
        try:
            yield Querier(conn)
        finally:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                logger.error("Failed to release read snapshot: %s", e)

    def query(
        self,
        start_ms: int,
        end_ms: int,
        metric: str,
        matchers: dict[str, str],
    ) -> list[tuple[int, float]]:
        """Return samples of matching series in [start_ms, end_ms), ascending by time."""
        with self.snapshot() as querier:
            return querier.select(metric, matchers, start_ms, end_ms)

    def purge_expired(self, now_ms: int | None = None) -> int:
        """Delete whole blocks that lie entirely outside the retention window.

        The cutoff is ``now - retention`` rounded down to a block boundary, so
        samples are kept for at least the retention period. Series left
        without samples are removed as well.

        Args:
            now_ms: Reference time in Unix ms (defaults to now).

        Returns:
            Number of deleted samples.

        Raises:
            StoreError: If the purge fails.
        """
        now = now_ms if now_ms is not None else now_millis()
        cutoff = now - self.retention_ms
        cutoff -= cutoff % self.block_duration_ms

        with self._write_lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    deleted = conn.execute(
                        "DELETE FROM samples WHERE timestamp_ms < ?",
                        (cutoff,),
                    ).rowcount
                    conn.execute(
                        "DELETE FROM series WHERE NOT EXISTS "
                        "(SELECT 1 FROM samples WHERE samples.series_id = series.id)"
                    )
                    conn.execute(
                        "INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)",
                        ("last_purge", format_timestamp(from_millis(now))),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise StoreError(f"Failed to purge expired samples: {e}")

            self._series_cache.clear()

        if deleted > 0:
            logger.info("Purged %d samples older than %s", deleted, format_timestamp(from_millis(cutoff)))
        return deleted

    def last_purge(self) -> str | None:
        """Return the RFC 3339 time of the last retention purge, if any."""
        try:
            row = self._connection().execute(
                "SELECT value FROM _metadata WHERE key = ?",
                ("last_purge",),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read metadata: {e}")
        return row[0] if row else None

    def series_count(self) -> int:
        try:
            return self._connection().execute("SELECT COUNT(*) FROM series").fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to count series: {e}")

    def sample_count(self) -> int:
        try:
            return self._connection().execute("SELECT COUNT(*) FROM samples").fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to count samples: {e}")

    def close(self) -> None:
        """Close every connection opened by the store."""
        with self._connections_lock:
            if self._closed:
                return
            self._closed = True
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("Failed to close store connection: %s", e)


def open_store(path: str, retention_ms: int, block_duration_ms: int) -> SampleStore:
    """Open (creating if needed) the sample store under ``path``.

    Raises:
        StoreError: If the directory or database cannot be initialized.
    """
    return SampleStore(path, retention_ms, block_duration_ms)
