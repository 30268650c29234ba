"""
Incremental watermark helpers.

Watermarks are persisted as text. These helpers render driver values to text,
parse text back into a value suitable for binding, and compare two
watermarks by value when both parse as the same type.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

INTEGER = "integer"
DECIMAL = "decimal"
DATETIME = "datetime"
DATE = "date"
TEXT = "text"

_DECIMAL_TYPES = ("decimal", "numeric", "number", "real", "float", "double", "money")


def infer_watermark_kind(data_type: str | None) -> str:
    """Map a declared column type to a watermark kind."""
    if not data_type:
        return TEXT
    lowered = data_type.lower()
    if "int" in lowered and "interval" not in lowered:
        return INTEGER
    if any(name in lowered for name in _DECIMAL_TYPES):
        return DECIMAL
    if "timestamp" in lowered or "datetime" in lowered:
        return DATETIME
    if "date" in lowered:
        return DATE
    return TEXT


def render_watermark(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def parse_watermark(text: str, kind: str) -> Any:
    """
    Parse a stored watermark.

    Raises:
        ValueError: If the text does not parse as ``kind``
    """
    if kind == INTEGER:
        return int(text)
    if kind == DECIMAL:
        try:
            return Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Not a decimal watermark: {text!r}") from None
    if kind == DATETIME:
        return datetime.fromisoformat(text)
    if kind == DATE:
        return date.fromisoformat(text[:10])
    return text


def _guess_kind(text: str) -> str:
    for kind in (INTEGER, DECIMAL, DATETIME):
        try:
            parse_watermark(text, kind)
            return kind
        except ValueError:
            continue
    return TEXT


def compare_watermarks(left: str, right: str, kind: str | None = None) -> int:
    """
    Three-way comparison of two stored watermarks.

    Values are compared typed when both parse as the same kind, otherwise
    as plain strings.
    """
    left_kind = kind or _guess_kind(left)
    right_kind = kind or _guess_kind(right)
    if left_kind == right_kind and left_kind != TEXT:
        try:
            a, b = parse_watermark(left, left_kind), parse_watermark(right, right_kind)
            return (a > b) - (a < b)
        except (ValueError, TypeError):
            pass
    return (left > right) - (left < right)


def advance_watermark(previous: str | None, candidate: str | None, kind: str | None = None) -> str | None:
    """The later of two watermarks; never moves backwards."""
    if candidate is None:
        return previous
    if previous is None:
        return candidate
    return candidate if compare_watermarks(candidate, previous, kind) > 0 else previous


def max_value(current: Any, value: Any) -> Any:
    """Running maximum over driver values, tolerating mixed types."""
    if value is None:
        return current
    if current is None:
        return value
    try:
        return value if value > current else current
    except TypeError:
        return value if compare_watermarks(render_watermark(value), render_watermark(current)) > 0 else current
