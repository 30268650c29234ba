"""
Job execution: column mapping, extraction, loading and run orchestration.
"""

from .extract import RowExtractor
from .mapping import ColumnProjection, resolve_projection
from .orchestrator import ReconciliationOrchestrator
from .writer import TargetWriter

__all__ = [
    "ColumnProjection",
    "ReconciliationOrchestrator",
    "RowExtractor",
    "TargetWriter",
    "resolve_projection",
]
