"""
Command-line argument parser configuration.

Defines the etl-sync commands and their options.
"""

import argparse
import os

DEFAULT_CONFIG = "etl-sync.yaml"


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="etl-sync",
        description="Incremental ETL synchronization with bucket-checksum validation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the state tables on the state datasource
  etl-sync --config etl-sync.yaml init-state

  # Run one job
  etl-sync run --job orders

  # Run every configured job concurrently, JSON output
  etl-sync run --all --parallel --format json

  # Show checkpoint and recent runs of a job
  etl-sync status --job orders --limit 5

  # Show the divergent buckets of a run
  etl-sync buckets --run 3f2c9e... --divergent-only
        """
    )

    parser.add_argument(
        '--config', '-c',
        default=os.getenv("ETL_SYNC_CONFIG", DEFAULT_CONFIG),
        help=f'Configuration file (default: $ETL_SYNC_CONFIG or {DEFAULT_CONFIG})'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging level (default: logging.level from config, else INFO)'
    )
    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit JSON log lines'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========== init-state command ==========
    subparsers.add_parser('init-state', help='Create missing state tables')

    # ========== run command ==========
    run_parser = subparsers.add_parser('run', help='Run sync jobs')
    run_parser.add_argument(
        '--job',
        action='append',
        dest='jobs',
        default=[],
        help='Job id to run (repeatable)'
    )
    run_parser.add_argument(
        '--all',
        action='store_true',
        help='Run every configured job'
    )
    run_parser.add_argument(
        '--parallel',
        action='store_true',
        help='Run the selected jobs concurrently'
    )
    run_parser.add_argument(
        '--format',
        choices=['console', 'json'],
        default='console',
        help='Output format (default: console)'
    )

    # ========== status command ==========
    status_parser = subparsers.add_parser('status', help='Show checkpoint and recent runs')
    status_parser.add_argument('--job', required=True, help='Job id')
    status_parser.add_argument(
        '--limit',
        type=int,
        default=10,
        help='Number of recent runs to show (default: 10)'
    )
    status_parser.add_argument('--format', choices=['console', 'json'], default='console')

    # ========== buckets command ==========
    buckets_parser = subparsers.add_parser('buckets', help='Show bucket records of a run')
    buckets_parser.add_argument('--run', required=True, help='Execution log id')
    buckets_parser.add_argument(
        '--divergent-only',
        action='store_true',
        help='Only show buckets that still need sync'
    )
    buckets_parser.add_argument('--format', choices=['console', 'json'], default='console')

    return parser
