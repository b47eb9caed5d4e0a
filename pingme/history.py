"""In-memory result history with per-endpoint retention and uptime metrics."""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .config import DEFAULT_MAX_PER_ENDPOINT
from .models import CheckResult

# Supported windows and the bucket width of the response-time series for each.
TIME_RANGES: dict[str, tuple[timedelta, timedelta]] = {
    "1h": (timedelta(hours=1), timedelta(minutes=5)),
    "24h": (timedelta(hours=24), timedelta(hours=1)),
    "7d": (timedelta(days=7), timedelta(hours=6)),
    "30d": (timedelta(days=30), timedelta(hours=24)),
}

DEFAULT_TIME_RANGE = "24h"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class MetricsSummary:
    """Aggregated metrics for a time window.

    Attributes:
        time_range: Window key ("1h", "24h", "7d" or "30d").
        total_checks: Number of results in the window.
        uptime: Percentage of results that are up (status 200-399).
        avg_response_time_ms: Mean response time across the window.
        error_rate: Percentage of results that were not up (100 - uptime).
        status_codes: Count of results per status code (0 = no response).
        time_points: Bucket start times of the series, oldest first.
        response_times: Rounded mean response time per bucket.
    """

    time_range: str
    total_checks: int
    uptime: float
    avg_response_time_ms: float
    error_rate: float
    status_codes: dict[int, int] = field(default_factory=dict)
    time_points: list[datetime] = field(default_factory=list)
    response_times: list[int] = field(default_factory=list)


def _bucket_start(timestamp: datetime, width: timedelta) -> datetime:
    """Floor a timestamp to the start of its bucket (UTC, epoch aligned)."""
    offset = (timestamp - _EPOCH) // width
    return _EPOCH + offset * width


class ResultHistory:
    """Thread-safe store of recent results, capped per endpoint.

    Adding a result beyond the cap drops the oldest records for that endpoint.
    """

    def __init__(self, max_per_endpoint: int = DEFAULT_MAX_PER_ENDPOINT) -> None:
        if max_per_endpoint < 1:
            raise ValueError("max_per_endpoint must be at least 1")
        self._max_per_endpoint = max_per_endpoint
        self._records: dict[str, deque[CheckResult]] = {}
        self._lock = threading.Lock()

    def add(self, result: CheckResult) -> None:
        """Record a result."""
        with self._lock:
            records = self._records.get(result.endpoint)
            if records is None:
                records = deque(maxlen=self._max_per_endpoint)
                self._records[result.endpoint] = records
            records.append(result)

    def endpoints(self) -> list[str]:
        """Endpoints with at least one record, sorted."""
        with self._lock:
            return sorted(self._records)

    def records(self, endpoint: str | None = None, since: datetime | None = None) -> list[CheckResult]:
        """Return records, oldest first.

        Args:
            endpoint: Restrict to one endpoint, or None for all.
            since: Only include records at or after this instant.
        """
        with self._lock:
            if endpoint is None:
                selected = [r for records in self._records.values() for r in records]
            else:
                selected = list(self._records.get(endpoint, ()))

        if since is not None:
            selected = [r for r in selected if r.timestamp >= since]
        return sorted(selected, key=lambda r: r.timestamp)

    def clear(self) -> int:
        """Delete all records and return how many were removed."""
        with self._lock:
            count = sum(len(records) for records in self._records.values())
            self._records.clear()
        return count

    def summarize(
        self,
        endpoint: str | None = None,
        time_range: str = DEFAULT_TIME_RANGE,
        now: datetime | None = None,
    ) -> MetricsSummary:
        """Aggregate uptime and response times over a window.

        Args:
            endpoint: Restrict to one endpoint, or None for all.
            time_range: One of TIME_RANGES.
            now: End of the window (defaults to the current UTC time).

        Raises:
            ValueError: If time_range is not supported.
        """
        if time_range not in TIME_RANGES:
            raise ValueError(f"Unsupported time range '{time_range}'. Must be one of: {list(TIME_RANGES)}")

        window, bucket_width = TIME_RANGES[time_range]
        now = now or datetime.now(UTC)
        results = self.records(endpoint, since=now - window)
        total = len(results)

        if total == 0:
            # No data: assume up
            return MetricsSummary(
                time_range=time_range,
                total_checks=0,
                uptime=100.0,
                avg_response_time_ms=0.0,
                error_rate=0.0,
            )

        up = sum(1 for r in results if r.is_up)
        status_codes: dict[int, int] = {}
        buckets: dict[datetime, list[int]] = {}
        for r in results:
            status_codes[r.status] = status_codes.get(r.status, 0) + 1
            buckets.setdefault(_bucket_start(r.timestamp, bucket_width), []).append(r.response_time_ms)

        time_points = sorted(buckets)
        return MetricsSummary(
            time_range=time_range,
            total_checks=total,
            uptime=round(up / total * 100, 2),
            avg_response_time_ms=round(sum(r.response_time_ms for r in results) / total, 2),
            error_rate=round((total - up) / total * 100, 2),
            status_codes=status_codes,
            time_points=time_points,
            response_times=[round(sum(buckets[t]) / len(buckets[t])) for t in time_points],
        )
