"""statx - Lightweight HTTP uptime and latency monitor."""

import argparse
import json
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Set by the signal handlers to end the run command.
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False, level_name: str = "info") -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start probing and serving the API."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("statx %s starting...", __version__)

    # Submodules are imported after logging is configured.
    from .api import ApiError, ApiServer
    from .config import ConfigError, load_config
    from .scheduler import Scheduler
    from .store import StoreError, open_store

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    _setup_logging(args.verbose, config.log_level)
    logger.info("Configuration loaded from %s", args.config)
    logger.info("Monitoring %d targets", len(config.targets))

    # 2. Open the sample store
    try:
        store = open_store(
            config.storage.path,
            retention_ms=config.storage.retention_ms,
            block_duration_ms=config.storage.block_duration_ms,
        )
        logger.info("Sample store opened at %s", store.db_path)
    except StoreError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    scheduler = Scheduler(config, store)
    api_server: Optional[ApiServer] = None

    try:
        scheduler.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, store, config)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        scheduler.stop()

        if api_server is not None:
            api_server.stop()

        store.close()
        logger.info("Sample store closed")

        logger.info("Shutdown complete")


def _cmd_init_config(args: argparse.Namespace) -> None:
    """Execute the init-config command - write the default configuration file."""
    from .config import ConfigError, write_default_config

    try:
        path = write_default_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Default configuration written to {path}")


def _cmd_query(args: argparse.Namespace) -> None:
    """Execute the query command - print joined status records as JSON."""
    from .config import ConfigError, load_config
    from .query import parse_time_range, query_status
    from .store import StoreError, open_store

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Resolve the time range
    try:
        time_range = parse_time_range(start=args.start, end=args.end, duration=args.duration)
    except ValueError as e:
        print(f"Error: invalid time range: {e}")
        sys.exit(2)

    # 3. Query the store
    try:
        store = open_store(
            config.storage.path,
            retention_ms=config.storage.retention_ms,
            block_duration_ms=config.storage.block_duration_ms,
        )
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        results = query_status(store, args.url, time_range)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()

    print(json.dumps([result.to_dict() for result in results], indent=2))


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - purge samples outside the retention period."""
    from pathlib import Path

    from .config import ConfigError, load_config
    from .store import DB_FILENAME, StoreError, open_store

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Validate store exists
    db_path = Path(config.storage.path) / DB_FILENAME
    if not db_path.exists():
        print(f"Error: Sample store not found at {db_path}")
        sys.exit(1)

    # 3. Purge expired blocks
    try:
        store = open_store(
            config.storage.path,
            retention_ms=config.storage.retention_ms,
            block_duration_ms=config.storage.block_duration_ms,
        )
        try:
            deleted = store.purge_expired()
        finally:
            store.close()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Purged {deleted} samples outside the retention period.")


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the statx package."""
    parser = argparse.ArgumentParser(
        description="statx - Lightweight HTTP uptime and latency monitor"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"statx {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start probing targets and serving the API (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Init-config subcommand
    init_parser = subparsers.add_parser(
        "init-config",
        help="Write a default configuration file",
    )
    _add_config_argument(init_parser)
    init_parser.set_defaults(func=_cmd_init_config)

    # Query subcommand
    query_parser = subparsers.add_parser(
        "query",
        help="Print the status history of a target as JSON",
    )
    _add_config_argument(query_parser)
    query_parser.add_argument("--url", required=True, help="Target URL to query")
    query_parser.add_argument("--start", help="Range start (RFC 3339)")
    query_parser.add_argument("--end", help="Range end (RFC 3339)")
    query_parser.add_argument("--duration", help="Relative range ending now, e.g. 2h (overrides start/end)")
    query_parser.set_defaults(func=_cmd_query)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Purge samples outside the retention period",
    )
    _add_config_argument(clean_parser)
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args(argv)

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
