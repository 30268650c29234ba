"""
Command-line interface for the ETL sync engine.

Available commands:
- init-state: Create the state tables
- run: Execute one or more sync jobs
- status: Show a job's checkpoint and recent runs
- buckets: Show the bucket records of a run
"""

import argparse
import logging
import sys

import yaml

from utils.logging import setup_logging, shutdown_logging
from utils.tracing import shutdown_tracing

from ..app import build_engine, start_observability
from ..config import AppConfig, load_config
from ..errors import EtlSyncError
from .commands import cmd_buckets, cmd_init_state, cmd_run, cmd_status
from .parser import create_parser

logger = logging.getLogger(__name__)

COMMANDS = {
    'init-state': cmd_init_state,
    'run': cmd_run,
    'status': cmd_status,
    'buckets': cmd_buckets,
}


def configure_logging(config: AppConfig, args: argparse.Namespace) -> None:
    """Apply the ``logging`` config section, with command-line flags taking precedence."""
    settings = config.log_settings
    setup_logging(
        level=args.log_level or settings.get("level", "INFO"),
        log_file=settings.get("file"),
        console_output=bool(settings.get("console", True)),
        json_format=args.log_json or bool(settings.get("json", False)),
    )


def run_command(args: argparse.Namespace) -> int:
    """
    Load configuration, wire the engine and execute one command

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit code
    """
    setup_logging(level=args.log_level or "INFO", json_format=args.log_json)
    try:
        config = load_config(args.config)
    except (EtlSyncError, OSError, yaml.YAMLError) as e:
        logger.error(f"Configuration error: {e}")
        return 1
    configure_logging(config, args)

    engine = build_engine(config)
    try:
        if args.command == 'run':
            start_observability(config)
        return COMMANDS[args.command](engine, args)
    except EtlSyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        engine.close()
        shutdown_tracing()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the etl-sync CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(1)
    if args.command == 'run' and not args.jobs and not args.all:
        parser.error("Either --job or --all is required")

    try:
        code = run_command(args)
    finally:
        shutdown_logging()
    sys.exit(code)


__all__ = [
    'main',
    'run_command',
    'configure_logging',
    'cmd_init_state',
    'cmd_run',
    'cmd_status',
    'cmd_buckets',
    'create_parser',
]


if __name__ == '__main__':
    main()
