"""
Order-independent row-set checksums.

Each row is reduced to a 64-bit hash: the first 8 bytes of SHA-256 over the
length-prefixed canonical text of its values. A set of rows is the sum of its
row hashes modulo the Mersenne prime 2^61 - 1, so the aggregate is
commutative and two bucket checksums can be combined by addition.
"""

import hashlib
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Any

MODULUS = (1 << 61) - 1


def _canonical_number(value: Decimal) -> str:
    if not value.is_finite():
        return str(value)
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "0") else text


def canonical_text(value: Any) -> str | None:
    """
    Engine-neutral text for one column value.

    Integers, decimals and floats with the same numeric value render
    identically; aware datetimes are converted to naive UTC.

    Raises:
        TypeError: If the value's type has no canonical form
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        return _canonical_number(value)
    if isinstance(value, float):
        return _canonical_number(Decimal(repr(value)))
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    raise TypeError(f"No canonical text for {type(value).__name__} value")


def row_hash(values: Sequence[Any]) -> int:
    """64-bit hash of one row's values, in column order."""
    parts = []
    for value in values:
        text = canonical_text(value)
        if text is None:
            parts.append("N;")
        else:
            parts.append(f"{len(text)}:{text};")
    digest = hashlib.sha256("".join(parts).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def format_checksum(value: int) -> str:
    return f"{value:016x}"


def combine_checksums(checksums: Iterable[str | None]) -> str:
    """Aggregate of disjoint row sets from their hex checksums."""
    total = 0
    for checksum in checksums:
        if checksum:
            total = (total + int(checksum, 16)) % MODULUS
    return format_checksum(total)


@dataclass(frozen=True)
class BucketScore:
    """Row count and aggregate checksum of one side of a bucket."""

    row_count: int
    checksum: int

    @property
    def hex(self) -> str:
        return format_checksum(self.checksum)


def score_rows(rows: Iterable[Sequence[Any]]) -> BucketScore:
    count = 0
    total = 0
    for row in rows:
        total = (total + row_hash(row)) % MODULUS
        count += 1
    return BucketScore(row_count=count, checksum=total)
