"""Data models for probe results and checker status."""

from dataclasses import dataclass, field
from datetime import datetime

# Status recorded when no HTTP response was obtained (timeout, DNS, reset...).
NO_RESPONSE = 0


def is_success_status(status: int) -> bool:
    """Return True if a status code counts as "up" (2xx and 3xx)."""
    return 200 <= status < 400


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one logical probe of an endpoint.

    Attributes:
        endpoint: URL that was probed.
        status: HTTP status code, or NO_RESPONSE (0) if no response was obtained.
        response_time_ms: Elapsed time of the final attempt in milliseconds.
        timestamp: UTC instant the final attempt completed.
        error: Failure description. Set if and only if status is NO_RESPONSE.
        attempts: Number of attempts made, including retries.
    """

    endpoint: str
    status: int
    response_time_ms: int
    timestamp: datetime
    error: str | None = None
    attempts: int = 1

    def __post_init__(self) -> None:
        if self.status == NO_RESPONSE and not self.error:
            raise ValueError(f"Result for {self.endpoint} has no response but no error description")
        if self.status != NO_RESPONSE and self.error is not None:
            raise ValueError(f"Result for {self.endpoint} has status {self.status} and an error")

    @property
    def is_up(self) -> bool:
        """Whether the endpoint responded with a 2xx or 3xx status."""
        return is_success_status(self.status)


@dataclass(frozen=True)
class CheckerStatus:
    """Point-in-time snapshot of a HealthChecker.

    Attributes:
        is_active: Whether the interval timer is running.
        endpoints: Registered endpoints, sorted.
        interval_ms: Current probe interval in milliseconds.
        last_ping_timestamp: Start of the most recent probe cycle, if any.
        last_results: Most recent result per endpoint.
    """

    is_active: bool
    endpoints: list[str]
    interval_ms: int
    last_ping_timestamp: datetime | None = None
    last_results: dict[str, CheckResult] = field(default_factory=dict)
