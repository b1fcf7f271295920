#!/usr/bin/env python3
"""
fieldpoll - Main Entry Point

Loads the configuration and runs the acquisition engine until SIGINT or
SIGTERM.

Usage:
    fieldpoll                                  # Use default config.yaml
    fieldpoll --config my.yaml                 # Use custom config file
    fieldpoll --dry-run                        # Validate config and exit
    fieldpoll --sink jsonl --output out.jsonl  # Append values to a file
    fieldpoll --sink http --url http://host/ingest

The process will:
1. Load and validate the YAML configuration
2. Open one Modbus link per source
3. Poll every source on its own interval
4. Deliver decoded values to the selected sink
"""

import argparse
import asyncio
import os
import sys

from fieldpoll import __version__
from fieldpoll.common.config import EngineConfig
from fieldpoll.common.exceptions import ConfigError
from fieldpoll.common.logging_setup import get_service_logger
from fieldpoll.services.acquisition import (
    AcquisitionService,
    HttpSink,
    JsonLinesSink,
    LoggingSink,
    Sink,
)
from fieldpoll.services.acquisition.service import HEALTH_PORT
from fieldpoll.services.config import find_config_path, load_config_file


def build_sink(args: argparse.Namespace) -> Sink:
    """Create the sink selected on the command line"""
    if args.sink == "jsonl":
        return JsonLinesSink(args.output)
    if args.sink == "http":
        if not args.url:
            raise ConfigError("--url is required for the http sink")
        return HttpSink(args.url, batch_size=args.batch_size)
    return LoggingSink()


def print_config_summary(config: EngineConfig) -> None:
    """Print a summary of the configuration."""
    print()
    print("=" * 60)
    print("  FIELDPOLL - MODBUS ACQUISITION")
    print("=" * 60)
    print()
    print(f"  Log level: {config.log_level}")
    print(f"  Sources:   {len(config.sources)}")
    for source in config.sources:
        variables = config.variables_for(source.name)
        print(
            f"    - {source.name} [{source.type.value}] {source.endpoint} "
            f"unit={source.unit_id} every {source.poll_interval}s "
            f"({len(variables)} variables)"
        )
    print(f"  Variables: {len(config.variables)}")
    print()
    print("=" * 60)
    print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldpoll",
        description="Modbus TCP/RTU polling and decoding engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    fieldpoll                                  # Start with default config
    fieldpoll --config my.yaml                 # Use custom config file
    fieldpoll --dry-run                        # Validate config and exit
    fieldpoll -v                               # Enable debug logging
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: first of /etc/fieldpoll, "
             "/opt/fieldpoll, ./config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging in plain text",
    )
    parser.add_argument(
        "--sink",
        choices=["log", "jsonl", "http"],
        default="log",
        help="Where decoded values go (default: log)",
    )
    parser.add_argument(
        "--output",
        default="fieldpoll.jsonl",
        help="Output file for the jsonl sink",
    )
    parser.add_argument("--url", help="Endpoint for the http sink")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=100,
        help="Values per POST for the http sink",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=HEALTH_PORT,
        help=f"Health endpoint port, 0 to disable (default: {HEALTH_PORT})",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fieldpoll {__version__}",
    )
    return parser


async def main_async(config: EngineConfig, args: argparse.Namespace) -> None:
    """Run the acquisition service until a shutdown signal"""
    log_level = "DEBUG" if args.verbose else config.log_level
    if args.verbose:
        os.environ["FIELDPOLL_LOG_FORMAT"] = "text"
    logger = get_service_logger("main", log_level)

    service = AcquisitionService(
        config,
        build_sink(args),
        health_port=args.health_port or None,
        logger=get_service_logger("acquisition", log_level),
    )

    try:
        await service.run()
    except ConfigError:
        raise
    except Exception as e:
        logger.critical(f"Acquisition service failed: {e}")
        raise


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config_path = args.config or find_config_path()
    try:
        config = load_config_file(config_path)
    except ConfigError as e:
        print(e.message, file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print_config_summary(config)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        return 0

    print("Starting acquisition...")
    print("Press Ctrl+C to stop")
    print()

    try:
        asyncio.run(main_async(config, args))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except ConfigError as e:
        print(e.message, file=sys.stderr)
        return 1
    except Exception as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
