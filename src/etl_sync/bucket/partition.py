"""
Key-range partitioning.

Splits ``[min, max]`` of a primary key into ordered, contiguous,
non-overlapping buckets. Integer keys use half-open buckets ending at
``max + 1``; every other key type closes the final bucket at ``max``.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ..errors import UnsupportedKeyTypeError
from ..state.watermark import render_watermark

# Strings are encoded over this many leading code points
STRING_PREFIX_WIDTH = 8
_CODE_POINTS = 0x110000
_SURROGATES = (0xD800, 0xDFFF)


@dataclass(frozen=True)
class KeyRange:
    min_key: Any
    max_key: Any
    row_count: int

    @property
    def empty(self) -> bool:
        return self.min_key is None or self.max_key is None


@dataclass(frozen=True)
class KeyBucket:
    """``[start, end)``, or ``[start, end]`` when closed."""

    number: int
    start: Any
    end: Any
    closed: bool = False

    def contains(self, key: Any) -> bool:
        if key < self.start:
            return False
        return key <= self.end if self.closed else key < self.end

    @property
    def boundary_start(self) -> str:
        return render_watermark(self.start)

    @property
    def boundary_end(self) -> str:
        return render_watermark(self.end)


def _key_kind(value: Any) -> str:
    if isinstance(value, bool):
        raise UnsupportedKeyTypeError("Boolean keys cannot be range-partitioned")
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (Decimal, float)):
        return "decimal"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, str):
        return "string"
    raise UnsupportedKeyTypeError(f"Keys of type {type(value).__name__} cannot be range-partitioned")


def merge_key_ranges(source: KeyRange, target: KeyRange) -> KeyRange:
    """
    Union of the source and target key ranges.

    Raises:
        UnsupportedKeyTypeError: If the two sides' keys are not comparable
    """
    mins = [k for k in (source.min_key, target.min_key) if k is not None]
    maxes = [k for k in (source.max_key, target.max_key) if k is not None]
    row_count = max(source.row_count, target.row_count)
    if not mins or not maxes:
        return KeyRange(None, None, row_count)
    try:
        return KeyRange(min(mins), max(maxes), row_count)
    except TypeError as e:
        raise UnsupportedKeyTypeError(f"Source and target keys are not comparable: {e}") from e


def bucket_count_for(row_count: int, rows_per_bucket: int, max_buckets: int) -> int:
    """``ceil(row_count / rows_per_bucket)`` clamped to ``[1, max_buckets]``."""
    if rows_per_bucket <= 0 or max_buckets <= 0:
        raise ValueError("rows_per_bucket and max_buckets must be positive")
    return max(1, min(max_buckets, math.ceil(row_count / rows_per_bucket)))


def partition_key_range(key_range: KeyRange, rows_per_bucket: int, max_buckets: int) -> list[KeyBucket]:
    """
    Partition a key range into buckets.

    Args:
        key_range: Union key range of both tables
        rows_per_bucket: Target rows per bucket
        max_buckets: Upper bound on the bucket count

    Returns:
        Buckets in key order, numbered from 0; empty for an empty range

    Raises:
        UnsupportedKeyTypeError: If the key type cannot be partitioned
    """
    if key_range.empty:
        return []
    count = bucket_count_for(key_range.row_count, rows_per_bucket, max_buckets)
    low, high = key_range.min_key, key_range.max_key
    kinds = {_key_kind(low), _key_kind(high)}

    if kinds == {"integer"}:
        return _integer_buckets(low, high, count)
    if kinds <= {"integer", "decimal"}:
        return _decimal_buckets(low, high, count)
    if kinds == {"datetime"}:
        return _closed_buckets(_interpolate(low, high, count, lambda i, w: low + w * i))
    if kinds == {"date"}:
        return _date_buckets(low, high, count)
    if kinds == {"string"}:
        return _string_buckets(low, high, count)
    raise UnsupportedKeyTypeError(f"Mixed key types cannot be partitioned: {sorted(kinds)}")


def _integer_buckets(low: int, high: int, count: int) -> list[KeyBucket]:
    span = high - low + 1
    count = min(count, span)
    width = math.ceil(span / count)
    count = math.ceil(span / width)
    return [
        KeyBucket(
            number=i,
            start=low + i * width,
            end=min(low + (i + 1) * width, high + 1),
        )
        for i in range(count)
    ]


def _interpolate(low: Any, high: Any, count: int, point) -> list[Any]:
    width = (high - low) / count
    return [low] + [point(i, width) for i in range(1, count)] + [high]


def _decimal_buckets(low: Any, high: Any, count: int) -> list[KeyBucket]:
    if isinstance(low, float) or isinstance(high, float):
        low, high = float(low), float(high)
    else:
        low, high = Decimal(low), Decimal(high)
    return _closed_buckets(_interpolate(low, high, count, lambda i, w: low + w * i))


def _date_buckets(low: date, high: date, count: int) -> list[KeyBucket]:
    days = (high - low).days
    count = max(1, min(count, days))
    step = math.ceil(days / count) if days else 0
    points = [date.fromordinal(low.toordinal() + step * i) for i in range(count)] + [high]
    return _closed_buckets(points)


def _encode(text: str) -> int:
    value = 0
    padded = text[:STRING_PREFIX_WIDTH].ljust(STRING_PREFIX_WIDTH, "\x00")
    for char in padded:
        value = value * _CODE_POINTS + ord(char)
    return value


def _decode(value: int) -> str:
    chars = []
    for _ in range(STRING_PREFIX_WIDTH):
        value, code = divmod(value, _CODE_POINTS)
        # Lone surrogates cannot be encoded for binding; round up past them
        if _SURROGATES[0] <= code <= _SURROGATES[1]:
            code = _SURROGATES[1] + 1
        chars.append(chr(code))
    text = "".join(reversed(chars))
    # Interior NULs are not storable on most engines; cut at the first one
    return text.split("\x00", 1)[0]


def _string_buckets(low: str, high: str, count: int) -> list[KeyBucket]:
    start, end = _encode(low), _encode(high)
    width = (end - start) // count
    interior = [_decode(start + width * i) for i in range(1, count)] if width else []
    return _closed_buckets([low, *interior, high])


def _closed_buckets(points: list[Any]) -> list[KeyBucket]:
    """Buckets between strictly increasing boundary points, the last one closed."""
    boundaries = [points[0]]
    for point in points[1:-1]:
        if boundaries[-1] < point < points[-1]:
            boundaries.append(point)
    boundaries.append(points[-1])

    if len(boundaries) == 2 and boundaries[0] == boundaries[1]:
        return [KeyBucket(number=0, start=boundaries[0], end=boundaries[1], closed=True)]
    last = len(boundaries) - 2
    return [
        KeyBucket(number=i, start=boundaries[i], end=boundaries[i + 1], closed=i == last)
        for i in range(len(boundaries) - 1)
    ]
