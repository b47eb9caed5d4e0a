"""Configuration loader with type-safe dataclasses."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_INTERVAL_MS = 300_000  # 5 minutes
DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_USER_AGENT = "PingMe/0.1.0"
DEFAULT_REPORT_URL = "https://api.ping-me.app/v1/ping"
DEFAULT_ENV_PREFIX = "PING_ME_ENDPOINT_"
DEFAULT_ROUTE = "/ping"
DEFAULT_MAX_PER_ENDPOINT = 1000

HTTP_METHODS = ("GET", "HEAD")

# Tick overlap policies: skip a tick while the previous one is still running,
# or let ticks overlap (last_results then reflects whichever tick lands last).
OVERLAP_SKIP = "skip"
OVERLAP_ALLOW = "overlap"
OVERLAP_POLICIES = (OVERLAP_SKIP, OVERLAP_ALLOW)


def validate_endpoint(endpoint: str) -> str:
    """Check that an endpoint is an http(s) URL and return it.

    Raises:
        ConfigError: If the endpoint is empty or not http(s).
    """
    if not isinstance(endpoint, str) or not endpoint:
        raise ConfigError("Endpoint URL cannot be empty")
    if not endpoint.startswith(("http://", "https://")):
        raise ConfigError(f"Endpoint must start with http:// or https://, got '{endpoint}'")
    return endpoint


@dataclass(frozen=True)
class ReportConfig:
    """Configuration for forwarding results to the metrics sink."""

    url: str = DEFAULT_REPORT_URL
    api_key: str | None = None
    timeout_ms: int = 5000
    report_failures: bool = False  # also forward results that are not up

    def __post_init__(self) -> None:
        if self.url and not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Report URL must start with http:// or https://, got '{self.url}'")
        if self.timeout_ms < 1:
            raise ConfigError(f"Report timeout must be at least 1ms (got {self.timeout_ms})")

    @property
    def enabled(self) -> bool:
        """Reporting needs both a sink URL and an API key."""
        return bool(self.url and self.api_key)


@dataclass(frozen=True)
class CheckerConfig:
    """Configuration captured by a HealthChecker at construction."""

    endpoints: tuple[str, ...] = ()
    interval_ms: int = DEFAULT_INTERVAL_MS
    method: str = "GET"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_count: int = 0
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    overlap: str = OVERLAP_SKIP
    user_agent: str = DEFAULT_USER_AGENT
    auto_start: bool = False
    report: ReportConfig = field(default_factory=ReportConfig)

    def __post_init__(self) -> None:
        # Accept any iterable of URLs but store an immutable tuple
        object.__setattr__(self, "endpoints", tuple(self.endpoints))
        for endpoint in self.endpoints:
            validate_endpoint(endpoint)
        if self.interval_ms < 1:
            raise ConfigError(f"Interval must be at least 1ms (got {self.interval_ms})")
        if self.method not in HTTP_METHODS:
            raise ConfigError(f"Invalid method '{self.method}'. Must be one of: {HTTP_METHODS}")
        if self.timeout_ms < 1:
            raise ConfigError(f"Timeout must be at least 1ms (got {self.timeout_ms})")
        if self.retry_count < 0:
            raise ConfigError(f"Retry count must be non-negative (got {self.retry_count})")
        if self.retry_delay_ms < 0:
            raise ConfigError(f"Retry delay must be non-negative (got {self.retry_delay_ms})")
        if self.overlap not in OVERLAP_POLICIES:
            raise ConfigError(f"Invalid overlap policy '{self.overlap}'. Must be one of: {OVERLAP_POLICIES}")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the built-in health route server."""

    enabled: bool = False
    host: str = ""  # all interfaces
    port: int = 8080  # 0 picks an ephemeral port
    route: str = DEFAULT_ROUTE
    message: str = "PingMe: service is up and running"
    register_self: bool = True
    public_url: str | None = None  # base URL other hosts reach this service at

    def __post_init__(self) -> None:
        if not (0 <= self.port <= 65535):
            raise ConfigError(f"Server port must be between 0 and 65535, got {self.port}")
        if not self.route.startswith("/"):
            raise ConfigError(f"Server route must start with '/', got '{self.route}'")
        if self.public_url is not None and not self.public_url.startswith(("http://", "https://")):
            raise ConfigError(f"Public URL must start with http:// or https://, got '{self.public_url}'")


@dataclass(frozen=True)
class HistoryConfig:
    """Configuration for the in-memory result history."""

    max_per_endpoint: int = DEFAULT_MAX_PER_ENDPOINT

    def __post_init__(self) -> None:
        if self.max_per_endpoint < 1:
            raise ConfigError("History max_per_endpoint must be at least 1")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    checker: CheckerConfig = field(default_factory=CheckerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    def __post_init__(self) -> None:
        if not self.checker.endpoints and not self.server.enabled:
            raise ConfigError("At least one endpoint must be configured (or enable the server to ping itself)")


def endpoints_from_env(
    prefix: str = DEFAULT_ENV_PREFIX,
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """Collect endpoint URLs from environment variables.

    Variables such as PING_ME_ENDPOINT_1=https://example.com are picked up.
    Empty values are ignored.

    Returns:
        Endpoint URLs ordered by variable name.
    """
    env = os.environ if environ is None else environ
    return [env[key] for key in sorted(env) if key.startswith(prefix) and env[key]]


def self_endpoint(
    route: str = "/",
    port: int | None = None,
    host: str | None = None,
    public_url: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Build the URL a service uses to ping itself.

    A public_url wins when given. Otherwise host and port default to the
    HOST and PORT environment variables (localhost:3000), and https is used
    when PINGME_ENV is "production".
    """
    if public_url:
        return f"{public_url.rstrip('/')}{route}"

    env = os.environ if environ is None else environ
    host = host or env.get("HOST") or "localhost"
    port = port or int(env.get("PORT", 3000))
    scheme = "https" if env.get("PINGME_ENV") == "production" else "http"
    return f"{scheme}://{host}:{port}{route}"


def _parse_report_config(data: dict | None) -> ReportConfig:
    """Parse report configuration section."""
    if data is None:
        return ReportConfig()
    if not isinstance(data, dict):
        raise ConfigError("'report' section must be a dictionary")

    api_key = data.get("api_key")

    return ReportConfig(
        url=str(data.get("url", DEFAULT_REPORT_URL)),
        api_key=str(api_key) if api_key is not None else None,
        timeout_ms=int(data.get("timeout_ms", 5000)),
        report_failures=bool(data.get("report_failures", False)),
    )


def _parse_endpoints(data: dict) -> tuple[str, ...]:
    """Parse the endpoint list, merging in any from the environment."""
    endpoints_data = data.get("endpoints")
    if endpoints_data is None:
        endpoints_data = []
    if not isinstance(endpoints_data, list):
        raise ConfigError("'endpoints' must be a list")

    endpoints: list[str] = []
    for i, entry in enumerate(endpoints_data):
        if not isinstance(entry, str):
            raise ConfigError(f"Endpoint entry {i} must be a string")
        endpoints.append(entry)

    env_prefix = data.get("env_prefix")
    if env_prefix:
        endpoints.extend(endpoints_from_env(str(env_prefix)))

    # Duplicates collapse, first occurrence wins
    return tuple(dict.fromkeys(endpoints))


def _parse_checker_config(data: dict) -> CheckerConfig:
    """Parse the top-level checker settings."""
    try:
        return CheckerConfig(
            endpoints=_parse_endpoints(data),
            interval_ms=int(data.get("interval_ms", DEFAULT_INTERVAL_MS)),
            method=str(data.get("method", "GET")).upper(),
            timeout_ms=int(data.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            retry_count=int(data.get("retry_count", 0)),
            retry_delay_ms=int(data.get("retry_delay_ms", DEFAULT_RETRY_DELAY_MS)),
            overlap=str(data.get("overlap", OVERLAP_SKIP)),
            user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)),
            auto_start=bool(data.get("auto_start", False)),
            report=_parse_report_config(data.get("report")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid checker setting: {e}")


def _parse_server_config(data: dict | None) -> ServerConfig:
    """Parse server configuration section."""
    if data is None:
        return ServerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'server' section must be a dictionary")

    public_url = data.get("public_url")

    return ServerConfig(
        enabled=bool(data.get("enabled", False)),
        host=str(data.get("host", "")),
        port=int(data.get("port", 8080)),
        route=str(data.get("route", DEFAULT_ROUTE)),
        message=str(data.get("message", ServerConfig.message)),
        register_self=bool(data.get("register_self", True)),
        public_url=str(public_url) if public_url is not None else None,
    )


def _parse_history_config(data: dict | None) -> HistoryConfig:
    """Parse history configuration section."""
    if data is None:
        return HistoryConfig()
    if not isinstance(data, dict):
        raise ConfigError("'history' section must be a dictionary")

    return HistoryConfig(max_per_endpoint=int(data.get("max_per_endpoint", DEFAULT_MAX_PER_ENDPOINT)))


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - PINGME_INTERVAL_MS: Override interval_ms
    - PINGME_METHOD: Override method
    - PINGME_RETRY_COUNT: Override retry_count
    - PINGME_API_KEY: Override report.api_key
    - PINGME_REPORT_URL: Override report.url
    - PINGME_SERVER_PORT: Override server.port
    - PINGME_SERVER_ENABLED: Override server.enabled (true/false)
    """
    if config_data.get("report") is None:
        config_data["report"] = {}
    if config_data.get("server") is None:
        config_data["server"] = {}

    interval = os.environ.get("PINGME_INTERVAL_MS")
    if interval is not None:
        config_data["interval_ms"] = int(interval)

    method = os.environ.get("PINGME_METHOD")
    if method is not None:
        config_data["method"] = method

    retry_count = os.environ.get("PINGME_RETRY_COUNT")
    if retry_count is not None:
        config_data["retry_count"] = int(retry_count)

    if isinstance(config_data["report"], dict):
        api_key = os.environ.get("PINGME_API_KEY")
        if api_key is not None:
            config_data["report"]["api_key"] = api_key

        report_url = os.environ.get("PINGME_REPORT_URL")
        if report_url is not None:
            config_data["report"]["url"] = report_url

    if isinstance(config_data["server"], dict):
        server_port = os.environ.get("PINGME_SERVER_PORT")
        if server_port is not None:
            config_data["server"]["port"] = int(server_port)

        server_enabled = os.environ.get("PINGME_SERVER_ENABLED")
        if server_enabled is not None:
            config_data["server"]["enabled"] = server_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    try:
        server = _parse_server_config(data.get("server"))
        history = _parse_history_config(data.get("history"))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid setting: {e}")

    return Config(
        checker=_parse_checker_config(data),
        server=server,
        history=history,
    )
