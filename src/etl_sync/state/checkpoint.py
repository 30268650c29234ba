"""
Checkpoint management.
"""

import logging
from datetime import UTC, datetime

from ..models import SyncCheckpoint, SyncJob
from .store import SyncStateStore
from .watermark import advance_watermark

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Creates and advances per-job checkpoints."""

    def __init__(self, store: SyncStateStore):
        self.store = store

    def get_or_create(self, job: SyncJob) -> SyncCheckpoint:
        """
        Load the job's checkpoint, inserting a zero-state one on first use.

        Args:
            job: Job being run

        Returns:
            Existing or newly created checkpoint
        """
        checkpoint = self.store.get_checkpoint(job.id)
        if checkpoint is not None:
            return checkpoint

        checkpoint = SyncCheckpoint(
            job_id=job.id,
            sync_mode=job.sync_mode,
            incremental_column=job.incremental_column,
        )
        self.store.insert_checkpoint(checkpoint)
        logger.info(f"Created checkpoint for job '{job.id}'")
        return checkpoint

    def update_after_execution(
        self,
        checkpoint: SyncCheckpoint,
        new_watermark: str | None,
        source_count: int,
        target_count: int,
        applied_buckets: int,
        skipped_buckets: int,
        validation_status: str,
        execution_log_id: str,
        watermark_kind: str | None = None,
    ) -> SyncCheckpoint:
        """
        Record the outcome of a run in a single UPDATE.

        The stored checkpoint is re-read under the store's write lock and the
        watermark advanced against it, so a run that finishes after a newer
        one never moves the watermark backwards.

        Returns:
            The updated checkpoint
        """
        with self.store.exclusive():
            stored = self.store.get_checkpoint(checkpoint.job_id)
            previous = stored.last_incremental_value if stored else checkpoint.last_incremental_value
            watermark = advance_watermark(previous, new_watermark, watermark_kind)
            if new_watermark is not None and watermark != new_watermark:
                logger.warning(
                    f"Job '{checkpoint.job_id}': candidate watermark {new_watermark!r} is behind "
                    f"stored {previous!r}; keeping stored value"
                )

            checkpoint.last_incremental_value = watermark
            checkpoint.last_sync_time = datetime.now(UTC)
            checkpoint.source_row_count = source_count
            checkpoint.target_row_count = target_count
            checkpoint.applied_bucket_count = applied_buckets
            checkpoint.skipped_bucket_count = skipped_buckets
            checkpoint.validation_status = validation_status
            checkpoint.last_execution_log_id = execution_log_id
            self.store.update_checkpoint(checkpoint)
        return checkpoint
