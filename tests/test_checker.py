"""Tests for the checker module."""

import logging
import threading
import time
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from pingme.checker import HealthChecker, ping_me
from pingme.config import OVERLAP_ALLOW, CheckerConfig, ConfigError, ReportConfig
from pingme.models import NO_RESPONSE, CheckResult
from pingme.probe import HttpStatusError, TransportError
from pingme.reporter import Reporter

ENDPOINT_A = "https://a.example.com/health"
ENDPOINT_B = "https://b.example.com/health"


def make_result(endpoint: str, status: int = 200, error: str | None = None, attempts: int = 1) -> CheckResult:
    return CheckResult(
        endpoint=endpoint,
        status=status,
        response_time_ms=12,
        timestamp=datetime.now(UTC),
        error=error,
        attempts=attempts,
    )


class ProbeRecorder:
    """Stand-in for probe_endpoint that records call times."""

    def __init__(self, delays: dict[str, float] | None = None, status: int = 200) -> None:
        self.delays = delays or {}
        self.status = status
        self.calls: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    def __call__(self, endpoint: str, **kwargs) -> CheckResult:
        with self._lock:
            self.calls.append((endpoint, time.monotonic()))
        time.sleep(self.delays.get(endpoint, 0))
        return make_result(endpoint, status=self.status)

    def count(self, endpoint: str | None = None) -> int:
        with self._lock:
            return sum(1 for e, _ in self.calls if endpoint is None or e == endpoint)


@pytest.fixture
def recorder() -> ProbeRecorder:
    """Patch probe_endpoint with a recorder for the duration of a test."""
    fake = ProbeRecorder()
    with patch("pingme.checker.probe_endpoint", side_effect=fake):
        yield fake


@pytest.fixture
def checker_factory():
    """Create checkers that are always stopped after the test."""
    created: list[HealthChecker] = []

    def factory(config: CheckerConfig | None = None, **kwargs) -> HealthChecker:
        checker = HealthChecker(config, **kwargs)
        created.append(checker)
        return checker

    yield factory
    for checker in created:
        checker.stop()


def wait_for(condition, timeout: float = 2.0) -> bool:
    """Poll until condition() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class TestRegistration:
    """Tests for register and unregister."""

    def test_registers_config_endpoints(self, checker_factory) -> None:
        """Endpoints from the config are registered at construction."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_B, ENDPOINT_A]))

        assert checker.endpoints == [ENDPOINT_A, ENDPOINT_B]

    def test_register_is_idempotent(self, checker_factory) -> None:
        """Registering the same URL twice keeps one entry."""
        checker = checker_factory()
        checker.register(ENDPOINT_A).register([ENDPOINT_A, ENDPOINT_B])

        assert checker.endpoints == [ENDPOINT_A, ENDPOINT_B]

    def test_register_rejects_invalid_url(self, checker_factory) -> None:
        """Non-http URLs are rejected."""
        checker = checker_factory()

        with pytest.raises(ConfigError):
            checker.register("not-a-url")
        assert checker.endpoints == []

    def test_unregister_ignores_unknown(self, checker_factory) -> None:
        """Removing an endpoint that was never registered is a no-op."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A]))
        checker.unregister(["https://unknown.example.com", ENDPOINT_A])

        assert checker.endpoints == []


class TestStartStop:
    """Tests for the timer lifecycle."""

    def test_start_without_endpoints_is_noop(self, checker_factory, recorder: ProbeRecorder) -> None:
        """start() with nothing registered does not activate the checker."""
        checker = checker_factory()
        checker.start()

        assert checker.is_active is False
        assert recorder.count() == 0

    def test_start_probes_immediately(self, checker_factory, recorder: ProbeRecorder) -> None:
        """The first probe cycle fires at start, not after one interval."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))
        checker.start()

        assert wait_for(lambda: recorder.count() == 1)
        assert checker.is_active is True

    def test_double_start_is_single_cycle(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Starting an active checker does not add a second timer."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))
        checker.start()
        checker.start()

        assert wait_for(lambda: recorder.count() >= 1)
        time.sleep(0.2)
        assert recorder.count() == 1

    def test_stop_halts_future_ticks(self, checker_factory, recorder: ProbeRecorder) -> None:
        """No new cycles begin after stop() returns."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=100))
        checker.start()
        assert wait_for(lambda: recorder.count() >= 2)

        checker.stop()
        time.sleep(0.05)
        count_after_stop = recorder.count()
        time.sleep(0.35)

        assert checker.is_active is False
        assert recorder.count() == count_after_stop

    def test_stop_is_idempotent(self, checker_factory) -> None:
        """Stopping an idle checker is harmless."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A]))

        checker.stop()
        checker.stop()

        assert checker.is_active is False

    def test_ticks_follow_interval(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Cycles fire at start and then every interval."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=1000))
        started = time.monotonic()
        checker.start()

        assert wait_for(lambda: recorder.count() >= 3, timeout=3.0)
        checker.stop()

        offsets = [t - started for _, t in recorder.calls[:3]]
        for offset, expected in zip(offsets, (0.0, 1.0, 2.0)):
            assert abs(offset - expected) < 0.25

    def test_restart_after_stop(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A stopped checker can be started again."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))
        checker.start()
        assert wait_for(lambda: recorder.count() == 1)
        checker.stop()

        checker.start()

        assert wait_for(lambda: recorder.count() == 2)
        assert checker.is_active is True

    def test_auto_start(self, checker_factory, recorder: ProbeRecorder) -> None:
        """auto_start starts the checker at construction."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000, auto_start=True))

        assert checker.is_active is True
        assert wait_for(lambda: recorder.count() == 1)


class TestSetInterval:
    """Tests for set_interval."""

    def test_rejects_non_positive(self, checker_factory) -> None:
        """Interval must be positive."""
        checker = checker_factory()

        with pytest.raises(ConfigError):
            checker.set_interval(0)

    def test_idle_checker_only_records_interval(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Changing the interval of an idle checker does not start it."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A]))
        checker.set_interval(5000)

        assert checker.interval_ms == 5000
        assert checker.is_active is False
        assert recorder.count() == 0

    def test_active_checker_restarts_with_immediate_probe(self, checker_factory, recorder: ProbeRecorder) -> None:
        """An active checker restarts and fires a fresh cycle."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))
        checker.start()
        assert wait_for(lambda: recorder.count() == 1)

        checker.set_interval(20_000)

        assert wait_for(lambda: recorder.count() == 2)
        assert checker.is_active is True
        assert checker.status().interval_ms == 20_000

    def test_restart_probes_even_while_previous_cycle_runs(self, checker_factory) -> None:
        """A slow cycle from the previous run does not swallow the restart's immediate cycle."""
        fake = ProbeRecorder(delays={ENDPOINT_A: 0.5})
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))

        with patch("pingme.checker.probe_endpoint", side_effect=fake):
            checker.start()
            assert wait_for(lambda: fake.count() == 1)
            time.sleep(0.1)

            checker.set_interval(20_000)

            assert wait_for(lambda: fake.count() == 2, timeout=1.0)
            time.sleep(0.5)


class TestProbeAll:
    """Tests for probe_all."""

    def test_probes_endpoints_concurrently(self, checker_factory) -> None:
        """A slow endpoint does not delay the others."""
        fake = ProbeRecorder(delays={ENDPOINT_A: 0.5, ENDPOINT_B: 0.01})
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A, ENDPOINT_B]))

        with patch("pingme.checker.probe_endpoint", side_effect=fake):
            started = time.monotonic()
            results = checker.probe_all()
            elapsed = time.monotonic() - started

        assert set(results) == {ENDPOINT_A, ENDPOINT_B}
        assert elapsed < 0.6

    def test_replaces_last_results(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Results for unregistered endpoints disappear after the next cycle."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A, ENDPOINT_B]))
        checker.probe_all()
        checker.unregister(ENDPOINT_B)

        checker.probe_all()

        assert set(checker.last_results) == {ENDPOINT_A}

    def test_snapshots_are_not_mutated(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A last_results snapshot is unaffected by later cycles."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A]))
        checker.probe_all()
        snapshot = checker.last_results

        checker.probe_all()

        assert snapshot[ENDPOINT_A] is not checker.last_results[ENDPOINT_A]

    def test_last_ping_timestamp_strictly_increases(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Each cycle stamps a later timestamp, even when the clock stands still."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A]))
        frozen = datetime(2026, 1, 17, 12, 0, 0, tzinfo=UTC)

        with patch("pingme.checker.datetime") as mock_datetime:
            mock_datetime.now.return_value = frozen
            checker.probe_all()
            first = checker.last_ping_timestamp
            checker.probe_all()
            second = checker.last_ping_timestamp

        assert first == frozen
        assert second > first

    def test_no_endpoints_returns_empty(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A cycle with nothing registered still stamps a timestamp."""
        checker = checker_factory()

        assert checker.probe_all() == {}
        assert checker.last_ping_timestamp is not None


class TestProbeOnce:
    """Tests for probe_once."""

    def test_does_not_require_registration(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Any URL can be probed on demand."""
        checker = checker_factory()

        result = checker.probe_once(ENDPOINT_A)

        assert result.status == 200
        assert checker.last_results[ENDPOINT_A] == result
        assert checker.endpoints == []

    def test_passes_config_to_probe(self, checker_factory) -> None:
        """The configured method, timeout and retry policy are used."""
        config = CheckerConfig(method="HEAD", timeout_ms=1500, retry_count=2, retry_delay_ms=50)
        checker = checker_factory(config)

        with patch("pingme.checker.probe_endpoint", return_value=make_result(ENDPOINT_A)) as mock_probe:
            checker.probe_once(ENDPOINT_A)

        mock_probe.assert_called_once_with(
            ENDPOINT_A,
            method="HEAD",
            timeout_ms=1500,
            retry_count=2,
            retry_delay_ms=50,
            user_agent=config.user_agent,
        )


class TestCallbacks:
    """Tests for callback dispatch."""

    def test_on_success_called_once(self, checker_factory, recorder: ProbeRecorder) -> None:
        """on_success receives the endpoint and response time."""
        on_success = MagicMock()
        on_error = MagicMock()
        checker = checker_factory(on_success=on_success, on_error=on_error)

        checker.probe_once(ENDPOINT_A)

        on_success.assert_called_once_with(ENDPOINT_A, 12)
        on_error.assert_not_called()

    def test_on_error_for_http_status(self, checker_factory) -> None:
        """A 5xx response is passed to on_error as HttpStatusError."""
        on_error = MagicMock()
        checker = checker_factory(on_error=on_error)

        with patch("pingme.checker.probe_endpoint", return_value=make_result(ENDPOINT_A, status=503)):
            checker.probe_once(ENDPOINT_A)

        on_error.assert_called_once()
        error, endpoint = on_error.call_args[0]
        assert isinstance(error, HttpStatusError)
        assert error.status == 503
        assert endpoint == ENDPOINT_A

    def test_on_error_once_after_retries(self, checker_factory) -> None:
        """A transport failure fires on_error once, after all attempts."""
        on_error = MagicMock()
        failed = make_result(ENDPOINT_A, status=NO_RESPONSE, error="Connection refused", attempts=3)
        checker = checker_factory(CheckerConfig(retry_count=2), on_error=on_error)

        with patch("pingme.checker.probe_endpoint", return_value=failed):
            checker.probe_once(ENDPOINT_A)

        on_error.assert_called_once()
        error = on_error.call_args[0][0]
        assert isinstance(error, TransportError)
        assert str(error) == "Connection refused"

    def test_on_result_receives_every_result(self, checker_factory, recorder: ProbeRecorder) -> None:
        """on_result sees each final result."""
        on_result = MagicMock()
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A, ENDPOINT_B]), on_result=on_result)

        checker.probe_all()

        assert on_result.call_count == 2

    def test_callback_exception_is_contained(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A raising callback does not break the probe."""
        checker = checker_factory(on_success=MagicMock(side_effect=RuntimeError("boom")))

        result = checker.probe_once(ENDPOINT_A)

        assert result.status == 200
        assert checker.last_results[ENDPOINT_A] == result

    def test_callback_exception_does_not_stop_timer(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Ticks keep firing after a callback raised."""
        checker = checker_factory(
            CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=100),
            on_result=MagicMock(side_effect=RuntimeError("boom")),
        )
        checker.start()

        assert wait_for(lambda: recorder.count() >= 3)
        assert checker.is_active is True


class TestOverlap:
    """Tests for the tick overlap policy."""

    def test_skip_policy_drops_ticks_while_busy(self, checker_factory, caplog) -> None:
        """With the default policy a slow cycle causes later ticks to be skipped."""
        fake = ProbeRecorder(delays={ENDPOINT_A: 0.35})
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=100))

        with caplog.at_level(logging.WARNING, logger="pingme.checker"):
            with patch("pingme.checker.probe_endpoint", side_effect=fake):
                checker.start()
                time.sleep(0.5)
                checker.stop()

        assert 1 <= fake.count() <= 2
        assert "Previous probe cycle still running, skipping tick" in caplog.text

    def test_overlap_policy_runs_ticks_concurrently(self, checker_factory) -> None:
        """With overlap allowed every tick starts a cycle."""
        fake = ProbeRecorder(delays={ENDPOINT_A: 0.35})
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=100, overlap=OVERLAP_ALLOW))

        with patch("pingme.checker.probe_endpoint", side_effect=fake):
            checker.start()
            time.sleep(0.5)
            checker.stop()

        assert fake.count() >= 4


class TestReporting:
    """Tests for forwarding results to a reporter."""

    def test_builds_reporter_when_enabled(self, checker_factory) -> None:
        """An API key in the config enables reporting."""
        config = CheckerConfig(report=ReportConfig(api_key="secret"))
        checker = checker_factory(config)

        assert isinstance(checker._reporter, Reporter)

    def test_reports_successful_results(self, checker_factory, recorder: ProbeRecorder) -> None:
        """Up results are submitted."""
        reporter = MagicMock(report_failures=False)
        checker = checker_factory(reporter=reporter)

        checker.probe_once(ENDPOINT_A)

        reporter.submit.assert_called_once()

    def test_skips_failures_unless_enabled(self, checker_factory) -> None:
        """Failed results are only submitted with report_failures."""
        reporter = MagicMock(report_failures=False)
        checker = checker_factory(reporter=reporter)

        with patch("pingme.checker.probe_endpoint", return_value=make_result(ENDPOINT_A, status=500)):
            checker.probe_once(ENDPOINT_A)
            reporter.submit.assert_not_called()

            reporter.report_failures = True
            checker.probe_once(ENDPOINT_A)
            reporter.submit.assert_called_once()

    def test_failing_sink_does_not_affect_result(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A sink that cannot be reached leaves the probe outcome unchanged."""
        on_success = MagicMock()
        reporter = Reporter(ReportConfig(api_key="secret"))
        checker = checker_factory(reporter=reporter, on_success=on_success)

        with patch.object(reporter, "submit", side_effect=reporter.send), patch(
            "pingme.reporter.requests.post", side_effect=requests.ConnectionError("down")
        ) as mock_post:
            result = checker.probe_once(ENDPOINT_A)

        mock_post.assert_called_once()
        assert result.status == 200
        on_success.assert_called_once()

    def test_raising_reporter_is_contained(self, checker_factory, recorder: ProbeRecorder) -> None:
        """A reporter that raises synchronously is logged and ignored."""
        reporter = MagicMock(report_failures=True)
        reporter.submit.side_effect = RuntimeError("sink exploded")
        checker = checker_factory(reporter=reporter)

        result = checker.probe_once(ENDPOINT_A)

        assert result.status == 200


class TestStatus:
    """Tests for status snapshots."""

    def test_snapshot_reflects_state(self, checker_factory, recorder: ProbeRecorder) -> None:
        """status() reports activity, endpoints, interval and results."""
        checker = checker_factory(CheckerConfig(endpoints=[ENDPOINT_A], interval_ms=10_000))
        checker.probe_all()

        status = checker.status()

        assert status.is_active is False
        assert status.endpoints == [ENDPOINT_A]
        assert status.interval_ms == 10_000
        assert status.last_ping_timestamp == checker.last_ping_timestamp
        assert set(status.last_results) == {ENDPOINT_A}

    def test_config_reflects_runtime_changes(self, checker_factory) -> None:
        """config carries the current interval and endpoints."""
        checker = checker_factory(CheckerConfig(interval_ms=10_000))
        checker.register(ENDPOINT_A)
        checker.set_interval(2000)

        assert checker.config.interval_ms == 2000
        assert checker.config.endpoints == (ENDPOINT_A,)


class TestPingMe:
    """Tests for the ping_me helper."""

    def test_starts_and_returns_stop(self, recorder: ProbeRecorder) -> None:
        """ping_me starts checking at once and returns a stop function."""
        stop = ping_me(ENDPOINT_A, CheckerConfig(interval_ms=10_000))
        try:
            assert wait_for(lambda: recorder.count(ENDPOINT_A) == 1)
        finally:
            stop()

        time.sleep(0.1)
        assert recorder.count() == 1

    def test_passes_callbacks(self, recorder: ProbeRecorder) -> None:
        """Callbacks are forwarded to the checker."""
        on_success = MagicMock()
        stop = ping_me(ENDPOINT_A, CheckerConfig(interval_ms=10_000), on_success=on_success)
        try:
            assert wait_for(lambda: on_success.call_count == 1)
        finally:
            stop()
