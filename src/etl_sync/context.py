"""
Per-run state and per-job mutual exclusion.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from .errors import ConcurrentRunRejectedError, InvalidStateTransition, RunTimeoutError
from .models import ExecutionLog, RunState, SyncJob

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.EXTRACTING},
    RunState.EXTRACTING: {RunState.BUCKETING},
    RunState.BUCKETING: {RunState.RECONCILING},
    RunState.RECONCILING: {RunState.CHECKPOINTING},
    RunState.CHECKPOINTING: {RunState.SUCCESS, RunState.PARTIAL_SUCCESS, RunState.FAILED},
}


class RunContext:
    """
    State of one orchestrated run, passed down the call chain.

    Holds the run's state machine, its deadline and the cancel event that
    bucket workers poll.
    """

    def __init__(
        self,
        job: SyncJob,
        execution_log: ExecutionLog,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job = job
        self.execution_log = execution_log
        self.state = RunState.PENDING
        self.cancel_event = threading.Event()
        self.detail: dict[str, Any] = {}
        self._clock = clock
        self._deadline = clock() + timeout_seconds if timeout_seconds else None
        self._timeout_seconds = timeout_seconds

    def transition(self, new_state: RunState) -> None:
        """
        Move to ``new_state``.

        Any non-terminal state may move to FAILED.

        Raises:
            InvalidStateTransition: If the move is not allowed
        """
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed and not (new_state == RunState.FAILED and not self.state.is_terminal):
            raise InvalidStateTransition(
                f"Run {self.execution_log.id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Run {self.execution_log.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a timeout."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def check(self) -> None:
        """
        Raise if the run was cancelled or ran out of time.

        Raises:
            RunTimeoutError: On expiry; the cancel event is set as well
        """
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel()
        if self.cancelled:
            if self._deadline is None:
                raise RunTimeoutError(f"Run {self.execution_log.id} of job '{self.job.id}' was cancelled")
            raise RunTimeoutError(
                f"Run {self.execution_log.id} of job '{self.job.id}' exceeded "
                f"{self._timeout_seconds}s timeout"
            )


class JobRunGuard:
    """Rejects overlapping runs of jobs that do not allow them."""

    def __init__(self):
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def active_runs(self, job_id: str) -> int:
        with self._lock:
            return self._active.get(job_id, 0)

    @contextmanager
    def hold(self, job: SyncJob) -> Iterator[None]:
        """
        Hold the job's run slot for the duration of the block.

        Raises:
            ConcurrentRunRejectedError: If the job forbids overlap and is running
        """
        with self._lock:
            if self._active.get(job.id, 0) and not job.concurrent_allowed:
                raise ConcurrentRunRejectedError(job.id)
            self._active[job.id] = self._active.get(job.id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                self._active[job.id] -= 1
                if not self._active[job.id]:
                    del self._active[job.id]
