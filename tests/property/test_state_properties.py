"""
Property-based tests for run state using Hypothesis.

Tests invariants that should hold for all inputs:
- Watermarks never move backwards
- Structure digests depend on structure, not catalog order
- Run states only follow the allowed lifecycle
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

from hypothesis import given, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from etl_sync.context import RunContext
from etl_sync.errors import InvalidStateTransition
from etl_sync.metadata import TableMetadataInspector
from etl_sync.models import ColumnMetadata, ExecutionLog, ExecutionStatus, RunState, SyncJob
from etl_sync.state.watermark import (
    DATETIME,
    INTEGER,
    advance_watermark,
    compare_watermarks,
    render_watermark,
)


# Property: folding candidates through advance_watermark yields the maximum
@given(candidates=st.lists(st.one_of(st.none(), st.integers(min_value=-10**12, max_value=10**12)), max_size=30))
def test_integer_watermark_never_moves_backwards(candidates):
    watermark = None
    seen = []
    for candidate in candidates:
        previous = watermark
        watermark = advance_watermark(watermark, render_watermark(candidate), INTEGER)
        if candidate is not None:
            seen.append(candidate)
        if previous is not None:
            assert compare_watermarks(watermark, previous, INTEGER) >= 0

    assert watermark == (render_watermark(max(seen)) if seen else None)


# Property: datetime watermarks order chronologically, not lexically
@given(
    base=st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2090, 1, 1)),
    offsets=st.lists(st.integers(min_value=0, max_value=10**8), min_size=1, max_size=20),
)
def test_datetime_watermark_is_latest(base, offsets):
    values = [base + timedelta(seconds=offset, microseconds=offset % 7) for offset in offsets]
    watermark = None
    for value in values:
        watermark = advance_watermark(watermark, render_watermark(value), DATETIME)

    assert watermark == render_watermark(max(values))


# Property: three-way comparison is antisymmetric
@given(left=st.integers(), right=st.integers())
def test_compare_watermarks_antisymmetric(left, right):
    a, b = str(left), str(right)
    assert compare_watermarks(a, b) == -compare_watermarks(b, a)
    assert (compare_watermarks(a, b) == 0) == (left == right)


column_names = st.lists(
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12), min_size=1, max_size=12, unique=True
)


# Property: the digest only depends on the structure, never on catalog order
@given(names=column_names, seed=st.randoms(use_true_random=False))
def test_digest_independent_of_catalog_order(names, seed):
    columns = [
        ColumnMetadata(name=name, data_type="VARCHAR", size=10 + i, nullable=bool(i % 2),
                       primary_key=i == 0, ordinal=i + 1)
        for i, name in enumerate(names)
    ]
    shuffled = list(columns)
    seed.shuffle(shuffled)

    service = Mock()
    service.get_columns.side_effect = [columns, shuffled]
    inspector = TableMetadataInspector(service)

    first = inspector.inspect("ds", None, "t")
    second = inspector.inspect("ds", None, "t")

    assert first.structure_digest == second.structure_digest
    assert first.column_names == names


def new_context():
    job = SyncJob(
        id="j", name="j", source_datasource="s", source_table="a", target_datasource="t", target_table="b"
    )
    log = ExecutionLog(id="r", job_id="j", status=ExecutionStatus.RUNNING, start_time=datetime.now(UTC))
    return RunContext(job, log)


_FORWARD = {
    RunState.PENDING: {RunState.EXTRACTING},
    RunState.EXTRACTING: {RunState.BUCKETING},
    RunState.BUCKETING: {RunState.RECONCILING},
    RunState.RECONCILING: {RunState.CHECKPOINTING},
    RunState.CHECKPOINTING: {RunState.SUCCESS, RunState.PARTIAL_SUCCESS, RunState.FAILED},
}


class RunLifecycleMachine(RuleBasedStateMachine):
    """Random transition attempts against the run state machine."""

    def __init__(self):
        super().__init__()
        self.context = new_context()
        self.history = [RunState.PENDING]

    @rule(target_state=st.sampled_from(list(RunState)))
    def attempt(self, target_state):
        current = self.context.state
        allowed = _FORWARD.get(current, set()) | (
            {RunState.FAILED} if not current.is_terminal else set()
        )
        try:
            self.context.transition(target_state)
        except InvalidStateTransition:
            assert target_state not in allowed
            assert self.context.state == current
        else:
            assert target_state in allowed
            self.history.append(target_state)

    @invariant()
    def terminal_states_are_final(self):
        terminal = [i for i, state in enumerate(self.history) if state.is_terminal]
        if terminal:
            assert terminal[0] == len(self.history) - 1

    @invariant()
    def state_matches_history(self):
        assert self.context.state == self.history[-1]


TestRunLifecycle = RunLifecycleMachine.TestCase
