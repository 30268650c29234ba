"""
Key-range bucketing, bucket checksums and bucket repair.
"""

from .checksum import (
    MODULUS,
    BucketScore,
    canonical_text,
    combine_checksums,
    format_checksum,
    row_hash,
    score_rows,
)
from .engine import BucketChecksumEngine, BucketWriter, TableSide
from .partition import KeyBucket, KeyRange, merge_key_ranges, partition_key_range

__all__ = [
    "MODULUS",
    "BucketChecksumEngine",
    "BucketScore",
    "BucketWriter",
    "KeyBucket",
    "KeyRange",
    "TableSide",
    "canonical_text",
    "combine_checksums",
    "format_checksum",
    "merge_key_ranges",
    "partition_key_range",
    "row_hash",
    "score_rows",
]
