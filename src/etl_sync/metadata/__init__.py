"""
Table metadata access and structural digests.
"""

from .inspector import TableMetadataInspector, compute_structure_digest
from .service import DatabaseMetadataService, DbApiMetadataService

__all__ = [
    "DatabaseMetadataService",
    "DbApiMetadataService",
    "TableMetadataInspector",
    "compute_structure_digest",
]
