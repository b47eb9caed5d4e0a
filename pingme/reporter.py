"""Best-effort forwarding of probe results to the metrics sink."""

import logging
import threading
from datetime import datetime

import requests

from .config import DEFAULT_USER_AGENT, ReportConfig
from .models import CheckResult

logger = logging.getLogger(__name__)


def format_timestamp(timestamp: datetime) -> str:
    """Format a UTC datetime as ISO-8601 with millisecond precision and a Z suffix."""
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _build_payload(result: CheckResult) -> dict:
    """Build the report payload.

    Args:
        result: The final result of a probe

    Returns:
        The JSON body for the metrics sink ("error" omitted when unset)
    """
    payload = {
        "endpoint": result.endpoint,
        "status": result.status,
        "responseTime": result.response_time_ms,
        "timestamp": format_timestamp(result.timestamp),
    }
    if result.error is not None:
        payload["error"] = result.error
    return payload


class Reporter:
    """Posts probe results to a remote sink with a bearer token.

    Failures are logged and swallowed: no retry, nothing propagates.
    """

    def __init__(self, config: ReportConfig, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._config = config
        self._user_agent = user_agent

    @property
    def report_failures(self) -> bool:
        """Whether results that are not up are forwarded too."""
        return self._config.report_failures

    def send(self, result: CheckResult) -> bool:
        """Send one result synchronously.

        Returns:
            True if the sink accepted the result with a 2xx response.
        """
        try:
            response = requests.post(
                self._config.url,
                json=_build_payload(result),
                headers={
                    "Authorization": f"Bearer {self._config.api_key}",
                    "User-Agent": self._user_agent,
                },
                timeout=self._config.timeout_ms / 1000,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Failed to report result for %s: %s", result.endpoint, e)
            return False
        except Exception as e:
            logger.error("Unexpected error reporting result for %s: %s", result.endpoint, e)
            return False

        logger.debug("Reported result for %s (status %d)", result.endpoint, result.status)
        return True

    def submit(self, result: CheckResult) -> None:
        """Send a result in the background without waiting for the sink."""
        thread = threading.Thread(target=self.send, args=(result,), name="pingme-report", daemon=True)
        thread.start()
