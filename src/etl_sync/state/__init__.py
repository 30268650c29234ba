"""
Run state persistence: checkpoints, execution/validation logs, bucket
checksums and structure snapshots.
"""

from .checkpoint import CheckpointManager
from .store import SyncStateStore
from .watermark import (
    advance_watermark,
    compare_watermarks,
    infer_watermark_kind,
    parse_watermark,
    render_watermark,
)

__all__ = [
    "CheckpointManager",
    "SyncStateStore",
    "advance_watermark",
    "compare_watermarks",
    "infer_watermark_kind",
    "parse_watermark",
    "render_watermark",
]
