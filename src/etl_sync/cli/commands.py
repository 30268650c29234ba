"""
CLI command implementations.

Each command returns the process exit code:
- 0: success
- 1: failure (configuration error, failed or rejected run)
- 2: at least one run ended PARTIAL_SUCCESS and none failed
"""

import argparse
import logging
from concurrent.futures import Future

from ..app import Engine
from ..errors import ConcurrentRunRejectedError, JobConfigurationError
from ..models import ExecutionLog, ExecutionStatus
from ..report import (
    checkpoint_to_dict,
    format_buckets_console,
    format_run_console,
    format_status_console,
    run_to_dict,
    to_json,
)

logger = logging.getLogger(__name__)


def cmd_init_state(engine: Engine, args: argparse.Namespace) -> int:
    created = engine.store.initialize_schema()
    if created:
        print(f"Created state tables: {', '.join(created)}")
    else:
        print("State tables already exist")
    return 0


def _selected_jobs(engine: Engine, args: argparse.Namespace) -> list[str]:
    if args.all:
        return sorted(engine.config.jobs)
    unknown = [job_id for job_id in args.jobs if job_id not in engine.config.jobs]
    if unknown:
        raise JobConfigurationError(f"Unknown job(s): {', '.join(unknown)}")
    return list(args.jobs)


def cmd_run(engine: Engine, args: argparse.Namespace) -> int:
    """
    Run the selected jobs

    Args:
        engine: Wired engine
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    job_ids = _selected_jobs(engine, args)
    logger.info(f"Running {len(job_ids)} job(s): {', '.join(job_ids)}")

    results: list[ExecutionLog] = []
    rejected = 0
    if args.parallel:
        futures: list[tuple[str, Future]] = [
            (job_id, engine.orchestrator.submit(engine.config.jobs[job_id])) for job_id in job_ids
        ]
        outcomes = [(job_id, future.exception(), future) for job_id, future in futures]
    else:
        outcomes = []
        for job_id in job_ids:
            try:
                outcomes.append((job_id, None, engine.orchestrator.execute(engine.config.jobs[job_id])))
            except ConcurrentRunRejectedError as e:
                outcomes.append((job_id, e, None))

    for job_id, error, result in outcomes:
        if error is not None:
            if not isinstance(error, ConcurrentRunRejectedError):
                raise error
            logger.warning(str(error))
            rejected += 1
            continue
        results.append(result.result() if isinstance(result, Future) else result)

    validations = {log.id: engine.store.get_validation_log(log.id) for log in results}
    if args.format == 'json':
        print(to_json([run_to_dict(log, validations[log.id]) for log in results]))
    else:
        for log in results:
            print(format_run_console(log, validations[log.id]))

    statuses = {log.status for log in results}
    if rejected or ExecutionStatus.FAILED in statuses:
        return 1
    if ExecutionStatus.PARTIAL_SUCCESS in statuses:
        return 2
    return 0


def cmd_status(engine: Engine, args: argparse.Namespace) -> int:
    checkpoint = engine.store.get_checkpoint(args.job)
    runs = engine.store.list_execution_logs(args.job, limit=args.limit)
    if args.format == 'json':
        print(to_json({
            "checkpoint": checkpoint_to_dict(checkpoint) if checkpoint else None,
            "runs": [run.to_dict() for run in runs],
        }))
    else:
        print(format_status_console(checkpoint, runs, args.job))
    return 0


def cmd_buckets(engine: Engine, args: argparse.Namespace) -> int:
    if engine.store.get_execution_log(args.run) is None:
        logger.error(f"No run with id {args.run}")
        return 1
    buckets = engine.store.list_bucket_checksums(args.run)
    if args.divergent_only:
        buckets = [b for b in buckets if b.needs_sync]
    if args.format == 'json':
        print(to_json([b.to_dict() for b in buckets]))
    else:
        print(format_buckets_console(buckets))
    return 0
