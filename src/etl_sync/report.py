"""
Run report formatting for console and JSON output.
"""

import json
from typing import Any

from .models import BucketChecksum, ExecutionLog, SyncCheckpoint, ValidationLog


def run_to_dict(log: ExecutionLog, validation: ValidationLog | None = None) -> dict[str, Any]:
    report = log.to_dict()
    if validation is not None:
        report["validation"] = {
            "source_total_rows": validation.source_total_rows,
            "target_total_rows": validation.target_total_rows,
            "source_checksum": validation.source_checksum,
            "target_checksum": validation.target_checksum,
            "bucket_count": validation.bucket_count,
            "mismatch_count": validation.mismatch_count,
            "message": validation.message,
        }
    return report


def checkpoint_to_dict(checkpoint: SyncCheckpoint) -> dict[str, Any]:
    return {
        "job_id": checkpoint.job_id,
        "sync_mode": checkpoint.sync_mode.value,
        "incremental_column": checkpoint.incremental_column,
        "last_incremental_value": checkpoint.last_incremental_value,
        "last_sync_time": checkpoint.last_sync_time.isoformat() if checkpoint.last_sync_time else None,
        "source_row_count": checkpoint.source_row_count,
        "target_row_count": checkpoint.target_row_count,
        "applied_bucket_count": checkpoint.applied_bucket_count,
        "skipped_bucket_count": checkpoint.skipped_bucket_count,
        "validation_status": checkpoint.validation_status,
        "last_execution_log_id": checkpoint.last_execution_log_id,
    }


def to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def format_run_console(log: ExecutionLog, validation: ValidationLog | None = None) -> str:
    """
    Format one run for console output

    Args:
        log: Sealed execution log
        validation: Validation log of the run, if bucketing ran

    Returns:
        Formatted string for console display
    """
    lines = []

    lines.append("=" * 80)
    lines.append(f"SYNC RUN {log.id}")
    lines.append("=" * 80)
    lines.append(f"Job: {log.job_id}")
    lines.append(f"Status: {log.status.value} (final state {log.final_state.value if log.final_state else '-'})")
    lines.append(f"Started: {log.start_time.isoformat()}")
    lines.append(f"Duration: {log.duration_ms if log.duration_ms is not None else '-'} ms")
    lines.append(f"Source Rows: {log.source_row_count:,}")
    lines.append(f"Target Rows: {log.target_row_count:,}")
    lines.append(f"Rows Loaded: {log.inserted_count:,}")
    lines.append(f"Buckets: {log.bucket_count} ({log.mismatch_count} mismatched, {log.needs_sync_count} need sync)")
    if log.error_message:
        lines.append(f"Error: {log.error_message}")
    lines.append("")

    if validation is not None:
        lines.append("VALIDATION")
        lines.append("-" * 80)
        lines.append(f"Source Checksum: {validation.source_checksum}")
        lines.append(f"Target Checksum: {validation.target_checksum}")
        lines.append(validation.message)
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)


def format_status_console(checkpoint: SyncCheckpoint | None, runs: list[ExecutionLog], job_id: str) -> str:
    lines = ["=" * 80, f"JOB {job_id}", "=" * 80]
    if checkpoint is None:
        lines.append("No checkpoint (job has never run)")
    else:
        lines.append(f"Watermark: {checkpoint.last_incremental_value or '-'}")
        lines.append(f"Last Sync: {checkpoint.last_sync_time.isoformat() if checkpoint.last_sync_time else '-'}")
        lines.append(f"Validation: {checkpoint.validation_status}")
        lines.append(
            f"Rows: source {checkpoint.source_row_count:,} / target {checkpoint.target_row_count:,}"
        )
        lines.append(
            f"Buckets: {checkpoint.applied_bucket_count} consistent, "
            f"{checkpoint.skipped_bucket_count} skipped"
        )
    lines.append("")

    if runs:
        lines.append("RECENT RUNS")
        lines.append("-" * 80)
        for run in runs:
            lines.append(
                f"{run.start_time.isoformat()}  {run.id}  {run.status.value:<16} "
                f"loaded={run.inserted_count} buckets={run.bucket_count} needs_sync={run.needs_sync_count}"
            )
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)


def format_buckets_console(buckets: list[BucketChecksum]) -> str:
    lines = [f"{'#':>6}  {'range':<40} {'src rows':>9} {'tgt rows':>9}  {'retries':>7}  outcome"]
    lines.append("-" * 80)
    for bucket in buckets:
        upper = "]" if bucket.boundary_closed else ")"
        lines.append(
            f"{bucket.bucket_number:>6}  {f'[{bucket.boundary_start}, {bucket.boundary_end}{upper}':<40} "
            f"{bucket.source_row_count:>9} {bucket.target_row_count:>9}  {bucket.retry_count:>7}  "
            f"{'NEEDS_SYNC ' if bucket.needs_sync else ''}"
            f"{bucket.skip_reason.value if bucket.skip_reason else ''}"
        )
    return "\n".join(lines)
