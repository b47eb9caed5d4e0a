"""PingMe - Keep your free tier backends alive with periodic health checks."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Optional

from .checker import HealthChecker, ping_me
from .config import DEFAULT_REPORT_URL, CheckerConfig, ConfigError, ReportConfig, validate_endpoint
from .models import CheckerStatus, CheckResult
from .probe import HttpStatusError, ProbeError, TransportError

__version__ = "0.1.0"

__all__ = [
    "CheckResult",
    "CheckerConfig",
    "CheckerStatus",
    "ConfigError",
    "HealthChecker",
    "HttpStatusError",
    "ProbeError",
    "ReportConfig",
    "TransportError",
    "main",
    "ping_me",
]

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)

EXAMPLE_CONFIG = """\
# PingMe configuration
endpoints:
  - https://my-api.example.com/health

# Also register endpoints from PING_ME_ENDPOINT_* environment variables
# env_prefix: PING_ME_ENDPOINT_

interval_ms: 300000  # 5 minutes
method: GET
timeout_ms: 10000
retry_count: 1
retry_delay_ms: 1000
overlap: skip  # or "overlap"

# Optional: forward results to a metrics sink
# report:
#   url: https://api.ping-me.app/v1/ping
#   api_key: YOUR_API_KEY
#   report_failures: false

# Optional: serve a ping route and keep this service awake
# server:
#   enabled: true
#   port: 8080
#   route: /ping
#   public_url: https://my-api.example.com

history:
  max_per_endpoint: 1000
"""


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _install_shutdown_handlers() -> Event:
    global _shutdown_event

    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)
    return _shutdown_event


def format_result_line(result: CheckResult) -> str:
    """Format a single human-readable line for a probe result."""
    stamp = result.timestamp.isoformat(timespec="seconds").replace("+00:00", "Z")
    if result.is_up:
        return f"✅ [{stamp}] {result.endpoint}: {result.status} ({result.response_time_ms}ms)"
    reason = result.error if result.error is not None else f"HTTP {result.status}"
    return f"❌ [{stamp}] {result.endpoint}: Failed to ping ({reason})"


def _print_result(result: CheckResult) -> None:
    print(format_result_line(result), flush=True)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the checker service."""
    _setup_logging(args.verbose)

    logger.info("PingMe %s starting...", __version__)

    # Import here to allow logging setup first
    from .endpoint import PingServer, ServerError
    from .history import ResultHistory

    # 1. Load configuration
    try:
        from .config import load_config

        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Wire checker and history
    history = ResultHistory(config.history.max_per_endpoint)
    checker = HealthChecker(config.checker, on_result=history.add)
    if config.checker.report.enabled:
        logger.info("Reporting results to %s", config.checker.report.url)

    shutdown_event = _install_shutdown_handlers()

    # 3. Start components
    server: Optional[PingServer] = None
    try:
        if config.server.enabled:
            server = PingServer(config.server, checker)
            try:
                server.start()
            except ServerError as e:
                logger.error("Failed to start ping server: %s", e)
                logger.warning("Continuing without ping server")
                server = None
                checker.start()
        else:
            checker.start()

        logger.info("All components started, waiting for shutdown signal...")
        shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        logger.info("Shutting down components...")
        if server is not None:
            server.stop()
        checker.stop()

        for endpoint in history.endpoints():
            summary = history.summarize(endpoint, time_range="24h")
            logger.info(
                "%s: %.2f%% uptime over %d checks, avg %.0fms",
                endpoint,
                summary.uptime,
                summary.total_checks,
                summary.avg_response_time_ms,
            )
        logger.info("Shutdown complete")


def _cmd_start(args: argparse.Namespace) -> None:
    """Execute the start command - ping URLs in a loop, printing each result."""
    _setup_logging(args.verbose)
    # Result lines are printed; keep per-ping log lines out of the way
    if not args.verbose:
        logging.getLogger("pingme.checker").setLevel(logging.ERROR)

    from .config import endpoints_from_env

    urls = list(args.urls)
    if args.env:
        urls.extend(endpoints_from_env(args.env))

    if not urls:
        print("Error: no URLs given (pass URLs or --env PREFIX)")
        sys.exit(1)

    try:
        config = CheckerConfig(
            endpoints=tuple(dict.fromkeys(urls)),
            interval_ms=args.interval,
            method=args.method,
            timeout_ms=args.timeout,
            retry_count=args.retries,
            retry_delay_ms=args.retry_delay,
            report=ReportConfig(url=args.report_url, api_key=args.api_key),
        )
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"🚀 Starting to ping {', '.join(config.endpoints)} every {config.interval_ms}ms...")
    print("ℹ️  Press Ctrl+C to stop")

    shutdown_event = _install_shutdown_handlers()
    checker = HealthChecker(config, on_result=_print_result)
    try:
        checker.start()
        shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        print("\n🛑 Stopping PingMe...")
        checker.stop()


def _cmd_probe(args: argparse.Namespace) -> None:
    """Execute the probe command - probe a URL once and report the result."""
    try:
        config = CheckerConfig(
            method=args.method,
            timeout_ms=args.timeout,
            retry_count=args.retries,
            retry_delay_ms=args.retry_delay,
        )
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        url = validate_endpoint(args.url)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    result = HealthChecker(config).probe_once(url)

    _print_result(result)
    if not result.is_up:
        sys.exit(1)


def _cmd_init(args: argparse.Namespace) -> None:
    """Execute the init command - write an example configuration file."""
    path = Path(args.output)

    if path.exists() and not args.force:
        print(f"⚠️  {path} already exists! Use --force to overwrite it.")
        return

    try:
        path.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    except OSError as e:
        print(f"Error writing {path}: {e}")
        sys.exit(1)

    print(f"✅ Created {path}")


def _add_probe_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--method",
        type=str.upper,
        choices=["GET", "HEAD"],
        default="GET",
        help="HTTP method used for probes (default: GET)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=10_000,
        help="Per-attempt timeout in milliseconds (default: 10000)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Retries after a network failure or timeout (default: 0)",
    )
    parser.add_argument(
        "--retry-delay",
        type=int,
        default=1000,
        help="Delay between retries in milliseconds (default: 1000)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="pingme",
        description="PingMe - Keep your free tier backends alive",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pingme {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Run the checker service from a configuration file",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="ping-me.yaml",
        help="Path to configuration file (default: ping-me.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Start subcommand
    start_parser = subparsers.add_parser(
        "start",
        help="Start pinging URLs at regular intervals",
    )
    start_parser.add_argument("urls", nargs="*", metavar="URL", help="URL(s) to ping")
    start_parser.add_argument(
        "-i", "--interval",
        type=int,
        default=300_000,
        help="Ping interval in milliseconds (default: 300000)",
    )
    start_parser.add_argument(
        "-e", "--env",
        metavar="PREFIX",
        help="Also ping URLs from environment variables with this prefix (e.g. PING_ME_ENDPOINT_)",
    )
    start_parser.add_argument("-k", "--api-key", help="API key for reporting results")
    start_parser.add_argument(
        "--report-url",
        default=DEFAULT_REPORT_URL,
        help=f"Metrics sink URL (default: {DEFAULT_REPORT_URL})",
    )
    start_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    _add_probe_options(start_parser)
    start_parser.set_defaults(func=_cmd_start)

    # Probe subcommand
    probe_parser = subparsers.add_parser(
        "probe",
        help="Probe a URL once",
    )
    probe_parser.add_argument("url", help="URL to probe")
    _add_probe_options(probe_parser)
    probe_parser.set_defaults(func=_cmd_probe)

    # Init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Write an example configuration file",
    )
    init_parser.add_argument(
        "-o", "--output",
        default="ping-me.yaml",
        help="Where to write the configuration (default: ping-me.yaml)",
    )
    init_parser.add_argument(
        "-f", "--force",
        action="store_true",
        help="Overwrite an existing file",
    )
    init_parser.set_defaults(func=_cmd_init)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the pingme command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    args.func(args)
