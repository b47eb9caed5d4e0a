"""Periodic health checker: probe endpoints on an interval with bounded retry."""

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from threading import Event, Lock, Thread, current_thread

from .config import OVERLAP_SKIP, CheckerConfig, ConfigError, validate_endpoint
from .models import NO_RESPONSE, CheckerStatus, CheckResult
from .probe import HttpStatusError, ProbeError, TransportError, probe_endpoint
from .reporter import Reporter

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[str, int], None]
ErrorCallback = Callable[[ProbeError, str], None]
ResultCallback = Callable[[CheckResult], None]


def _as_list(endpoints: str | Iterable[str]) -> list[str]:
    if isinstance(endpoints, str):
        return [endpoints]
    return list(endpoints)


class HealthChecker:
    """Probes registered endpoints every interval on a background thread.

    start() probes immediately, then every interval_ms. Each tick fans out
    one concurrent probe per endpoint and joins them. Transport failures are
    retried up to retry_count times; callbacks only see the final outcome.

    Changing the interval of an active checker restarts it, which fires a
    fresh immediate probe cycle.

    Example:
        checker = HealthChecker(CheckerConfig(interval_ms=60_000))
        checker.register("https://my-api.example.com/health")
        checker.start()
        # ... later ...
        checker.stop()
    """

    def __init__(
        self,
        config: CheckerConfig | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_result: ResultCallback | None = None,
        reporter: Reporter | None = None,
    ) -> None:
        """Initialize the checker.

        Args:
            config: Checker configuration (defaults apply when omitted).
            on_success: Called as on_success(endpoint, response_time_ms) for up results.
            on_error: Called as on_error(error, endpoint) for every other result.
            on_result: Called with every final CheckResult.
            reporter: Sink for results. Built from config.report when omitted and enabled.
        """
        self._config = config or CheckerConfig()
        self._on_success = on_success
        self._on_error = on_error
        self._on_result = on_result
        if reporter is None and self._config.report.enabled:
            reporter = Reporter(self._config.report, user_agent=self._config.user_agent)
        self._reporter = reporter

        self._lock = Lock()
        self._endpoints: set[str] = set(self._config.endpoints)
        self._interval_ms = self._config.interval_ms
        self._last_results: dict[str, CheckResult] = {}
        self._last_ping_timestamp: datetime | None = None
        self._stop_event = Event()
        self._thread: Thread | None = None
        # In-flight ticks per timer run, keyed by that run's stop event
        self._ticks_in_flight: dict[Event, int] = {}

        if self._config.auto_start:
            self.start()

    @property
    def config(self) -> CheckerConfig:
        """Configuration with the current interval and endpoints applied."""
        return replace(self._config, interval_ms=self._interval_ms, endpoints=tuple(self.endpoints))

    @property
    def is_active(self) -> bool:
        """Whether the interval timer is scheduled."""
        with self._lock:
            return self._thread is not None

    @property
    def endpoints(self) -> list[str]:
        """Registered endpoints, sorted."""
        with self._lock:
            return sorted(self._endpoints)

    @property
    def interval_ms(self) -> int:
        """Current probe interval in milliseconds."""
        with self._lock:
            return self._interval_ms

    @property
    def last_results(self) -> dict[str, CheckResult]:
        """Most recent result per endpoint."""
        with self._lock:
            return dict(self._last_results)

    @property
    def last_ping_timestamp(self) -> datetime | None:
        """Start of the most recent probe cycle, if any."""
        with self._lock:
            return self._last_ping_timestamp

    def register(self, endpoints: str | Iterable[str]) -> "HealthChecker":
        """Add one or more endpoints. Registering an endpoint twice has no effect.

        Raises:
            ConfigError: If an endpoint is not an http(s) URL.
        """
        new = [validate_endpoint(endpoint) for endpoint in _as_list(endpoints)]
        with self._lock:
            self._endpoints.update(new)
            registered = sorted(self._endpoints)
        logger.debug("Registered endpoints: %s", ", ".join(registered))
        return self

    def unregister(self, endpoints: str | Iterable[str]) -> "HealthChecker":
        """Remove one or more endpoints. Unknown endpoints are ignored."""
        with self._lock:
            for endpoint in _as_list(endpoints):
                self._endpoints.discard(endpoint)
            remaining = sorted(self._endpoints)
        logger.debug("Remaining endpoints: %s", ", ".join(remaining) or "(none)")
        return self

    def start(self) -> "HealthChecker":
        """Probe all endpoints now, then every interval on a background thread.

        No-op if already running or if no endpoints are registered.
        """
        with self._lock:
            if self._thread is not None:
                logger.debug("Health checker already running")
                return self
            if not self._endpoints:
                logger.warning("No endpoints registered, not starting health checker")
                return self

            # Fresh event per run: a timer thread still winding down keeps its own
            self._stop_event = Event()
            self._thread = Thread(
                target=self._run_loop,
                args=(self._stop_event, self._interval_ms / 1000),
                name="pingme-timer",
                daemon=True,
            )
            self._thread.start()
            count = len(self._endpoints)

        logger.info("Health checker started: %d endpoint(s) every %dms", count, self._interval_ms)
        return self

    def stop(self, timeout: float = 5.0) -> "HealthChecker":
        """Cancel the timer. Probes already in flight are allowed to finish.

        Args:
            timeout: Maximum seconds to wait for the timer thread to exit.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return self
            self._stop_event.set()
            self._thread = None

        if thread is not current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Timer thread did not stop within timeout")
        logger.info("Health checker stopped")
        return self

    def set_interval(self, interval_ms: int) -> "HealthChecker":
        """Change the probe interval.

        An active checker is stopped and restarted, so the new interval takes
        effect at once and an immediate probe cycle fires.

        Raises:
            ConfigError: If interval_ms is not positive.
        """
        if interval_ms < 1:
            raise ConfigError(f"Interval must be at least 1ms (got {interval_ms})")

        with self._lock:
            self._interval_ms = interval_ms
        if self.is_active:
            self.stop()
            self.start()

        logger.info("Updated ping interval to %dms", interval_ms)
        return self

    def status(self) -> CheckerStatus:
        """Return a snapshot of the checker state."""
        with self._lock:
            return CheckerStatus(
                is_active=self._thread is not None,
                endpoints=sorted(self._endpoints),
                interval_ms=self._interval_ms,
                last_ping_timestamp=self._last_ping_timestamp,
                last_results=dict(self._last_results),
            )

    def probe_once(self, endpoint: str) -> CheckResult:
        """Probe a single endpoint now, independent of the timer.

        The endpoint does not need to be registered. Updates last_results
        and invokes callbacks once for the final outcome.
        """
        result = self._probe(endpoint)
        with self._lock:
            # Copy-on-write so snapshots handed out earlier never change
            last_results = dict(self._last_results)
            last_results[endpoint] = result
            self._last_results = last_results
        return result

    def probe_all(self) -> dict[str, CheckResult]:
        """Probe every registered endpoint concurrently and wait for all.

        Returns:
            Mapping of endpoint to its result. It also replaces last_results.
        """
        with self._lock:
            endpoints = sorted(self._endpoints)
            started_at = datetime.now(UTC)
            # Strictly increasing per checker even if the clock does not advance
            if self._last_ping_timestamp is not None and started_at <= self._last_ping_timestamp:
                started_at = self._last_ping_timestamp + timedelta(microseconds=1)
            self._last_ping_timestamp = started_at

        results: dict[str, CheckResult] = {}
        if endpoints:
            # One worker per endpoint so a slow endpoint never delays the others
            with ThreadPoolExecutor(max_workers=len(endpoints), thread_name_prefix="pingme-probe") as executor:
                futures = {executor.submit(self._probe, endpoint): endpoint for endpoint in endpoints}

                for future in as_completed(futures):
                    endpoint = futures[future]
                    try:
                        results[endpoint] = future.result()
                    except Exception as e:
                        logger.error("Failed to probe %s: %s", endpoint, e)

        with self._lock:
            self._last_results = dict(results)
        return results

    def _run_loop(self, stop_event: Event, interval_s: float) -> None:
        """Timer loop: dispatch a tick at fixed-rate slots until stopped."""
        logger.debug("Timer loop started")
        next_tick = time.monotonic()

        while not stop_event.is_set():
            self._dispatch_tick(stop_event)

            next_tick += interval_s
            now = time.monotonic()
            if next_tick <= now:
                # Fell behind: skip missed slots instead of firing a burst
                missed = int((now - next_tick) // interval_s) + 1
                next_tick += missed * interval_s
            if stop_event.wait(timeout=next_tick - now):
                break

        logger.debug("Timer loop exited")

    def _dispatch_tick(self, stop_event: Event) -> None:
        """Start one probe cycle on its own thread."""
        with self._lock:
            if stop_event.is_set():
                return
            in_flight = self._ticks_in_flight.get(stop_event, 0)
            if in_flight and self._config.overlap == OVERLAP_SKIP:
                logger.warning("Previous probe cycle still running, skipping tick")
                return
            self._ticks_in_flight[stop_event] = in_flight + 1

        Thread(target=self._run_tick, args=(stop_event,), name="pingme-tick", daemon=True).start()

    def _run_tick(self, stop_event: Event) -> None:
        """Run one probe cycle. Errors are contained so future ticks still run."""
        try:
            self.probe_all()
        except Exception:
            logger.exception("Probe cycle failed")
        finally:
            with self._lock:
                remaining = self._ticks_in_flight[stop_event] - 1
                if remaining:
                    self._ticks_in_flight[stop_event] = remaining
                else:
                    del self._ticks_in_flight[stop_event]

    def _probe(self, endpoint: str) -> CheckResult:
        """Probe with the configured retry policy, then notify and report."""
        result = probe_endpoint(
            endpoint,
            method=self._config.method,
            timeout_ms=self._config.timeout_ms,
            retry_count=self._config.retry_count,
            retry_delay_ms=self._config.retry_delay_ms,
            user_agent=self._config.user_agent,
        )

        if result.is_up:
            logger.info("Pinged %s: %d (%dms)", endpoint, result.status, result.response_time_ms)
        elif result.status == NO_RESPONSE:
            logger.warning("Failed to ping %s after %d attempt(s): %s", endpoint, result.attempts, result.error)
        else:
            logger.warning("Ping to %s returned HTTP %d (%dms)", endpoint, result.status, result.response_time_ms)

        self._notify(result)
        self._report(result)
        return result

    def _notify(self, result: CheckResult) -> None:
        """Invoke user callbacks for a final result."""
        try:
            if result.is_up:
                if self._on_success is not None:
                    self._on_success(result.endpoint, result.response_time_ms)
            elif self._on_error is not None:
                error: ProbeError
                if result.status == NO_RESPONSE:
                    error = TransportError(result.error)
                else:
                    error = HttpStatusError(result.status)
                self._on_error(error, result.endpoint)
        except Exception as e:
            logger.error("Callback failed for %s: %s", result.endpoint, e)

        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception as e:
                logger.error("Result callback failed for %s: %s", result.endpoint, e)

    def _report(self, result: CheckResult) -> None:
        """Forward a result to the reporter without affecting the probe."""
        if self._reporter is None:
            return
        if not result.is_up and not self._reporter.report_failures:
            return
        try:
            self._reporter.submit(result)
        except Exception as e:
            logger.error("Failed to submit report for %s: %s", result.endpoint, e)


def ping_me(url: str, config: CheckerConfig | None = None, **callbacks) -> Callable[[], None]:
    """Start checking a single URL and return a function that stops it.

    Args:
        url: Endpoint to keep pinging.
        config: Optional checker configuration (endpoints are added to).
        **callbacks: on_success, on_error, on_result or reporter, passed to HealthChecker.

    Returns:
        A zero-argument callable that stops the checker.
    """
    checker = HealthChecker(replace(config or CheckerConfig(), auto_start=False), **callbacks)
    checker.register(url)
    checker.start()
    return checker.stop
