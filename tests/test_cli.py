"""Tests for the command-line interface."""

import json
from pathlib import Path

import pytest

from statx import __version__, main
from statx.models import RESPONSE_TIME_METRIC, STATUS_METRIC, now_millis
from statx.store import open_store

URL = "https://example.com"
RETENTION_MS = 7 * 86_400_000
BLOCK_MS = 7_200_000


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def config_file(tmp_path: Path, data_dir: Path) -> Path:
    """Write a minimal configuration pointing at a temporary store."""
    path = tmp_path / "config.yaml"
    path.write_text(
        f"targets:\n  - url: {URL}\n    interval: 30s\n"
        f"storage:\n  path: {data_dir}\n"
    )
    return path


def _record(data_dir: Path, timestamp_ms: int, status: int, latency: float) -> None:
    store = open_store(str(data_dir), retention_ms=RETENTION_MS, block_duration_ms=BLOCK_MS)
    try:
        store.append(STATUS_METRIC, {"url": URL}, timestamp_ms, status)
        store.append(RESPONSE_TIME_METRIC, {"url": URL}, timestamp_ms, latency)
    finally:
        store.close()


class TestVersion:
    """Tests for --version."""

    def test_prints_version(self, capsys: pytest.CaptureFixture) -> None:
        """--version prints the package version and exits cleanly."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip() == f"statx {__version__}"


class TestInitConfig:
    """Tests for the init-config command."""

    def test_writes_default_config(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        """The default configuration file is created."""
        path = tmp_path / "config.yaml"

        main(["init-config", "-c", str(path)])

        assert path.exists()
        assert "Default configuration written" in capsys.readouterr().out

    def test_refuses_existing_file(self, config_file: Path, capsys: pytest.CaptureFixture) -> None:
        """An existing configuration is left alone."""
        original = config_file.read_text()

        with pytest.raises(SystemExit) as exc_info:
            main(["init-config", "-c", str(config_file)])

        assert exc_info.value.code == 1
        assert config_file.read_text() == original
        assert "already exists" in capsys.readouterr().out


class TestQuery:
    """Tests for the query command."""

    def test_prints_records_as_json(
        self, config_file: Path, data_dir: Path, capsys: pytest.CaptureFixture
    ) -> None:
        """Joined records are printed as a JSON array."""
        _record(data_dir, now_millis() - 1000, 200, 42.0)

        main(["query", "-c", str(config_file), "--url", URL, "--duration", "1h"])

        records = json.loads(capsys.readouterr().out)
        assert [(r["url"], r["status"], r["response_time"]) for r in records] == [(URL, 200, 42.0)]

    def test_invalid_range_exits_with_2(self, config_file: Path, capsys: pytest.CaptureFixture) -> None:
        """A malformed range is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            main(
                [
                    "query", "-c", str(config_file), "--url", URL,
                    "--start", "2024-01-02T00:00:00Z", "--end", "2024-01-01T00:00:00Z",
                ]
            )

        assert exc_info.value.code == 2
        assert "invalid time range" in capsys.readouterr().out

    def test_missing_config_exits_with_1(self, tmp_path: Path) -> None:
        """A missing configuration file is reported."""
        with pytest.raises(SystemExit) as exc_info:
            main(["query", "-c", str(tmp_path / "missing.yaml"), "--url", URL])

        assert exc_info.value.code == 1

    def test_undecodable_config_exits_with_1(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        """A config file that is not UTF-8 is reported, not a traceback."""
        path = tmp_path / "config.yaml"
        path.write_bytes(b"\xff\xfe\x00garbage")

        with pytest.raises(SystemExit) as exc_info:
            main(["query", "-c", str(path), "--url", URL])

        assert exc_info.value.code == 1
        assert "Failed to read configuration file" in capsys.readouterr().out


class TestClean:
    """Tests for the clean command."""

    def test_purges_expired_samples(
        self, config_file: Path, data_dir: Path, capsys: pytest.CaptureFixture
    ) -> None:
        """Samples outside the retention period are deleted."""
        _record(data_dir, 1000, 200, 10.0)
        _record(data_dir, now_millis(), 200, 10.0)

        main(["clean", "-c", str(config_file)])

        assert "Purged 2 samples" in capsys.readouterr().out
        store = open_store(str(data_dir), retention_ms=RETENTION_MS, block_duration_ms=BLOCK_MS)
        try:
            assert store.sample_count() == 2
        finally:
            store.close()

    def test_missing_store_exits_with_1(self, config_file: Path, capsys: pytest.CaptureFixture) -> None:
        """Cleaning before any data exists is an error."""
        with pytest.raises(SystemExit) as exc_info:
            main(["clean", "-c", str(config_file)])

        assert exc_info.value.code == 1
        assert "not found" in capsys.readouterr().out
