"""Tests for the probe module."""

import logging
from threading import Event
from unittest.mock import MagicMock, patch

import pytest
import requests

from statx.probe import USER_AGENT, ProbeCancelled, ProbeError, check

URL = "https://example.com"


def _response(status_code: int) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    return response


@pytest.fixture
def session() -> MagicMock:
    """Create a mock HTTP session."""
    return MagicMock(spec=requests.Session)


class TestCheckSuccess:
    """Tests for probes that receive a response."""

    def test_returns_status_code(self, session: MagicMock) -> None:
        """A 200 response yields its status code after one attempt."""
        response = _response(200)
        session.get.return_value = response

        result = check(URL, timeout=5, max_attempts=3, retry_delay=1, session=session)

        assert result.status_code == 200
        assert result.attempts == 1
        assert result.response_time_ms >= 0
        session.get.assert_called_once_with(
            URL, timeout=5, headers={"User-Agent": USER_AGENT}, stream=True
        )
        response.close.assert_called_once()

    @pytest.mark.parametrize("status_code", [301, 404, 500, 503])
    def test_any_http_status_is_success(self, session: MagicMock, status_code: int) -> None:
        """Error status codes are recorded, not retried."""
        session.get.return_value = _response(status_code)

        result = check(URL, timeout=5, max_attempts=3, retry_delay=1, session=session)

        assert result.status_code == status_code
        assert session.get.call_count == 1

    def test_latency_covers_successful_attempt_only(self, session: MagicMock) -> None:
        """Failed attempts and retry waits are excluded from the latency."""
        session.get.side_effect = [
            requests.ConnectionError("refused"),
            requests.Timeout("timed out"),
            _response(200),
        ]

        with patch("statx.probe.time") as mock_time:
            # One reading per attempt start, plus one when the response arrives.
            mock_time.monotonic.side_effect = [0.0, 10.0, 20.0, 20.25]
            result = check(URL, timeout=5, max_attempts=3, retry_delay=5, session=session)

        assert result.attempts == 3
        assert result.response_time_ms == pytest.approx(250.0)

    def test_provided_session_is_not_closed(self, session: MagicMock) -> None:
        """A caller-owned session stays open."""
        session.get.return_value = _response(200)

        check(URL, timeout=5, max_attempts=1, retry_delay=0, session=session)

        session.close.assert_not_called()

    def test_creates_and_closes_own_session(self) -> None:
        """Without a session, a temporary one is created and closed."""
        with patch("statx.probe.requests.Session") as session_cls:
            own_session = session_cls.return_value
            own_session.get.return_value = _response(200)

            result = check(URL, timeout=5, max_attempts=1, retry_delay=0)

        assert result.status_code == 200
        own_session.close.assert_called_once()


class TestCheckRetries:
    """Tests for the bounded retry loop."""

    def test_retries_until_success(self, session: MagicMock) -> None:
        """Transport errors are retried with the configured delay."""
        session.get.side_effect = [requests.ConnectionError("refused"), _response(200)]

        with patch("statx.probe.time.sleep") as mock_sleep:
            result = check(URL, timeout=5, max_attempts=3, retry_delay=2, session=session)

        assert result.status_code == 200
        assert result.attempts == 2
        mock_sleep.assert_called_once_with(2)

    def test_gives_up_after_max_attempts(self, session: MagicMock) -> None:
        """Exactly max_attempts requests are made before failing."""
        errors = [requests.ConnectionError(f"refused {i}") for i in range(3)]
        session.get.side_effect = errors

        with patch("statx.probe.time.sleep") as mock_sleep:
            with pytest.raises(ProbeError) as exc_info:
                check(URL, timeout=5, max_attempts=3, retry_delay=2, session=session)

        assert session.get.call_count == 3
        assert mock_sleep.call_count == 2
        assert exc_info.value.url == URL
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is errors[-1]
        assert not isinstance(exc_info.value, ProbeCancelled)

    def test_single_attempt_does_not_wait(self, session: MagicMock) -> None:
        """With one attempt there is no retry delay."""
        session.get.side_effect = requests.Timeout("timed out")

        with patch("statx.probe.time.sleep") as mock_sleep:
            with pytest.raises(ProbeError):
                check(URL, timeout=5, max_attempts=1, retry_delay=2, session=session)

        assert session.get.call_count == 1
        mock_sleep.assert_not_called()

    def test_logs_each_failed_attempt(
        self, session: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Every failed attempt is logged as a warning."""
        session.get.side_effect = requests.ConnectionError("refused")

        with caplog.at_level(logging.WARNING, logger="statx.probe"):
            with pytest.raises(ProbeError):
                check(URL, timeout=5, max_attempts=2, retry_delay=0, session=session)

        messages = [r.getMessage() for r in caplog.records]
        assert any("Attempt 1/2 failed" in m for m in messages)
        assert any("Attempt 2/2 failed" in m for m in messages)

    def test_non_transport_errors_propagate(self, session: MagicMock) -> None:
        """Errors outside requests' hierarchy are not retried."""
        session.get.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            check(URL, timeout=5, max_attempts=3, retry_delay=0, session=session)

        assert session.get.call_count == 1

    def test_rejects_zero_attempts(self, session: MagicMock) -> None:
        """max_attempts below 1 is a programming error."""
        with pytest.raises(ValueError):
            check(URL, timeout=5, max_attempts=0, retry_delay=0, session=session)
        session.get.assert_not_called()


class TestCheckCancellation:
    """Tests for interrupting the retry wait."""

    def test_stop_event_cancels_retry(self, session: MagicMock) -> None:
        """A set stop event aborts the probe before the next attempt."""
        error = requests.ConnectionError("refused")
        session.get.side_effect = error
        stop_event = Event()
        stop_event.set()

        with pytest.raises(ProbeCancelled) as exc_info:
            check(URL, timeout=5, max_attempts=3, retry_delay=30, session=session, stop_event=stop_event)

        assert session.get.call_count == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.last_error is error

    def test_unset_stop_event_waits_and_retries(self, session: MagicMock) -> None:
        """An unset stop event only delays the retry."""
        session.get.side_effect = [requests.ConnectionError("refused"), _response(204)]

        result = check(URL, timeout=5, max_attempts=2, retry_delay=0.01, session=session, stop_event=Event())

        assert result.status_code == 204
        assert result.attempts == 2
