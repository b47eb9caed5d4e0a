"""Single HTTP probes with bounded retry on transport failures."""

import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from datetime import UTC, datetime

from .config import DEFAULT_TIMEOUT_MS, DEFAULT_USER_AGENT
from .models import NO_RESPONSE, CheckResult

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """Base class for failures reported to on_error callbacks."""

    pass


class TransportError(ProbeError):
    """No HTTP response was obtained (timeout, DNS failure, connection reset)."""

    pass


class HttpStatusError(ProbeError):
    """A response was received but its status is outside 200-399."""

    def __init__(self, status: int) -> None:
        super().__init__(f"Ping failed with status {status}")
        self.status = status


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Custom redirect handler that follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        """Handle 307 Temporary Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        """Handle 308 Permanent Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method."""
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urllib.parse.urljoin(req.full_url, new_url),
                method=req.get_method(),
                headers=dict(req.headers),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


# Create opener with custom redirect handler
_opener = urllib.request.build_opener(_RedirectHandler())


def is_retryable(error: BaseException) -> bool:
    """Whether a probe failure is transport-level and worth retrying.

    A received HTTP response (HTTPError) is a completed probe, never retried.
    Connection errors, DNS failures and timeouts (all OSError) are retryable.
    """
    if isinstance(error, urllib.error.HTTPError):
        return False
    return isinstance(error, OSError)


def describe_error(error: BaseException, timeout_ms: int) -> str:
    """Return a non-empty human-readable description of a probe failure."""
    if isinstance(error, TimeoutError):
        return f"Timed out after {timeout_ms}ms"
    if isinstance(error, urllib.error.URLError):
        reason = error.reason
        if isinstance(reason, TimeoutError):
            return f"Timed out after {timeout_ms}ms"
        if isinstance(reason, BaseException):
            return str(reason) or type(reason).__name__
        return str(reason) if reason else "Connection failed"
    return str(error) or type(error).__name__


def send_probe(
    endpoint: str,
    method: str = "GET",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    user_agent: str = DEFAULT_USER_AGENT,
) -> int:
    """Perform exactly one HTTP request and return the status code.

    Error statuses (4xx/5xx) are returned, not raised.

    Raises:
        OSError: On transport failures (URLError, timeouts, resets).
        ValueError: If the URL cannot be requested at all.
    """
    request = urllib.request.Request(
        endpoint,
        method=method,
        headers={"User-Agent": user_agent},
    )
    try:
        with _opener.open(request, timeout=timeout_ms / 1000) as response:
            return response.status
    except urllib.error.HTTPError as e:
        return e.code


def probe_endpoint(
    endpoint: str,
    method: str = "GET",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    retry_count: int = 0,
    retry_delay_ms: int = 1000,
    user_agent: str = DEFAULT_USER_AGENT,
) -> CheckResult:
    """Probe an endpoint, retrying transport failures up to retry_count times.

    Never raises for probe failures: exhausting retries, or hitting a
    non-retryable error, yields a result with status NO_RESPONSE and an
    error description.

    Args:
        endpoint: URL to probe.
        method: HTTP method (GET or HEAD).
        timeout_ms: Per-attempt timeout in milliseconds.
        retry_count: Extra attempts allowed after a retryable failure.
        retry_delay_ms: Pause between attempts in milliseconds.
        user_agent: User-Agent header value.

    Returns:
        CheckResult for the final attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        start = time.monotonic()
        try:
            status = send_probe(endpoint, method=method, timeout_ms=timeout_ms, user_agent=user_agent)
        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            if is_retryable(e) and attempt <= retry_count:
                logger.debug(
                    "Attempt %d/%d for %s failed (%s), retrying in %dms",
                    attempt,
                    retry_count + 1,
                    endpoint,
                    describe_error(e, timeout_ms),
                    retry_delay_ms,
                )
                time.sleep(retry_delay_ms / 1000)
                continue
            return CheckResult(
                endpoint=endpoint,
                status=NO_RESPONSE,
                response_time_ms=elapsed_ms,
                timestamp=datetime.now(UTC),
                error=describe_error(e, timeout_ms),
                attempts=attempt,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CheckResult(
            endpoint=endpoint,
            status=status,
            response_time_ms=elapsed_ms,
            timestamp=datetime.now(UTC),
            attempts=attempt,
        )
