"""
Unit tests for key-range partitioning

Tests verify:
- Bucket count sizing and clamping
- Integer buckets are half-open and end at max + 1
- Decimal, datetime, date and string buckets close at max
- Single-key and empty ranges
- Unsupported and incomparable key types
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from etl_sync.bucket import KeyBucket, KeyRange, merge_key_ranges, partition_key_range
from etl_sync.bucket.partition import STRING_PREFIX_WIDTH, bucket_count_for
from etl_sync.errors import UnsupportedKeyTypeError


def assert_contiguous(buckets):
    """Consecutive buckets share their boundary and only the last one is closed."""
    for i, (left, right) in enumerate(zip(buckets, buckets[1:])):
        assert left.number == i
        assert left.end == right.start
        assert left.start < left.end
        assert not left.closed


class TestBucketCount:
    """Test bucket_count_for function"""

    @pytest.mark.parametrize("rows,per_bucket,max_buckets,expected", [
        (10000, 1000, 100, 10),
        (10001, 1000, 100, 11),
        (0, 1000, 100, 1),
        (10 ** 9, 1000, 50, 50),
        (5, 1000, 100, 1),
    ])
    def test_sizing(self, rows, per_bucket, max_buckets, expected):
        assert bucket_count_for(rows, per_bucket, max_buckets) == expected

    def test_non_positive_settings_rejected(self):
        with pytest.raises(ValueError):
            bucket_count_for(10, 0, 10)


class TestIntegerBuckets:
    """Test integer key partitioning"""

    def test_even_split(self):
        buckets = partition_key_range(KeyRange(1, 10000, 10000), rows_per_bucket=1000, max_buckets=100)

        assert len(buckets) == 10
        assert buckets[0] == KeyBucket(0, 1, 1001)
        assert buckets[-1] == KeyBucket(9, 9001, 10001)
        assert_contiguous(buckets)

    def test_last_bucket_clamped_to_max_plus_one(self):
        buckets = partition_key_range(KeyRange(0, 9, 10), rows_per_bucket=3, max_buckets=100)

        assert [(b.start, b.end) for b in buckets] == [(0, 3), (3, 6), (6, 9), (9, 10)]
        assert all(not b.closed for b in buckets)

    def test_sparse_keys_never_more_buckets_than_keys(self):
        buckets = partition_key_range(KeyRange(1, 3, 1000), rows_per_bucket=10, max_buckets=100)
        assert len(buckets) == 3

    def test_single_key(self):
        buckets = partition_key_range(KeyRange(42, 42, 1), rows_per_bucket=100, max_buckets=10)

        assert buckets == [KeyBucket(0, 42, 43)]
        assert buckets[0].contains(42)

    def test_every_key_in_exactly_one_bucket(self):
        buckets = partition_key_range(KeyRange(-50, 137, 188), rows_per_bucket=17, max_buckets=100)
        for key in range(-50, 138):
            assert sum(b.contains(key) for b in buckets) == 1

    def test_max_buckets_respected(self):
        buckets = partition_key_range(KeyRange(1, 10 ** 6, 10 ** 6), rows_per_bucket=1, max_buckets=25)
        assert len(buckets) == 25
        assert buckets[-1].end == 10 ** 6 + 1


class TestClosedBuckets:
    """Test non-integer key partitioning"""

    def test_decimal_keys(self):
        buckets = partition_key_range(
            KeyRange(Decimal("0"), Decimal("1"), 4), rows_per_bucket=1, max_buckets=10
        )

        assert [b.start for b in buckets] == [Decimal("0"), Decimal("0.25"), Decimal("0.5"), Decimal("0.75")]
        assert buckets[-1].end == Decimal("1")
        assert buckets[-1].closed
        assert_contiguous(buckets)

    def test_mixed_integer_and_float(self):
        buckets = partition_key_range(KeyRange(0, 1.0, 2), rows_per_bucket=1, max_buckets=10)
        assert [b.start for b in buckets] == [0.0, 0.5]
        assert buckets[-1].contains(1.0)

    def test_datetime_keys(self):
        low = datetime(2024, 1, 1)
        high = datetime(2024, 1, 5)
        buckets = partition_key_range(KeyRange(low, high, 400), rows_per_bucket=100, max_buckets=10)

        assert len(buckets) == 4
        assert buckets[1].start == low + timedelta(days=1)
        assert buckets[-1].contains(high)
        assert_contiguous(buckets)

    def test_date_keys_step_whole_days(self):
        buckets = partition_key_range(
            KeyRange(date(2024, 1, 1), date(2024, 1, 11), 3), rows_per_bucket=1, max_buckets=10
        )

        assert [b.start for b in buckets] == [date(2024, 1, 1), date(2024, 1, 5), date(2024, 1, 9)]
        assert buckets[-1].end == date(2024, 1, 11)
        assert buckets[-1].closed

    def test_same_day_single_bucket(self):
        buckets = partition_key_range(
            KeyRange(date(2024, 1, 1), date(2024, 1, 1), 50), rows_per_bucket=1, max_buckets=10
        )
        assert buckets == [KeyBucket(0, date(2024, 1, 1), date(2024, 1, 1), closed=True)]

    def test_string_keys(self):
        buckets = partition_key_range(KeyRange("apple", "zebra", 1000), rows_per_bucket=100, max_buckets=10)

        assert buckets[0].start == "apple"
        assert buckets[-1].end == "zebra"
        assert buckets[-1].closed
        assert_contiguous(buckets)
        # interior boundaries must stay bindable text
        assert all(b.start.encode("utf-8") for b in buckets)
        for word in ("apple", "banana", "mango", "yak", "zebra"):
            assert sum(b.contains(word) for b in buckets) == 1

    def test_long_strings_sharing_prefix(self):
        prefix = "x" * STRING_PREFIX_WIDTH
        buckets = partition_key_range(
            KeyRange(prefix + "a", prefix + "z", 1000), rows_per_bucket=10, max_buckets=10
        )
        assert buckets == [KeyBucket(0, prefix + "a", prefix + "z", closed=True)]

    def test_boundaries_render_as_text(self):
        bucket = KeyBucket(0, datetime(2024, 1, 1, 12), datetime(2024, 1, 2), closed=True)
        assert bucket.boundary_start == "2024-01-01T12:00:00"
        assert bucket.boundary_end == "2024-01-02T00:00:00"


class TestKeyRanges:
    """Test range merging and unsupported keys"""

    def test_empty_range(self):
        assert partition_key_range(KeyRange(None, None, 0), 100, 10) == []

    def test_merge_takes_union(self):
        merged = merge_key_ranges(KeyRange(5, 100, 90), KeyRange(1, 80, 70))
        assert merged == KeyRange(1, 100, 90)

    def test_merge_with_empty_side(self):
        merged = merge_key_ranges(KeyRange(1, 10, 10), KeyRange(None, None, 0))
        assert merged == KeyRange(1, 10, 10)

    def test_merge_both_empty(self):
        assert merge_key_ranges(KeyRange(None, None, 0), KeyRange(None, None, 0)).empty

    def test_merge_incomparable_keys(self):
        with pytest.raises(UnsupportedKeyTypeError, match="not comparable"):
            merge_key_ranges(KeyRange(1, 10, 10), KeyRange("a", "z", 10))

    def test_boolean_keys_rejected(self):
        with pytest.raises(UnsupportedKeyTypeError, match="Boolean"):
            partition_key_range(KeyRange(False, True, 2), 1, 10)

    def test_binary_keys_rejected(self):
        with pytest.raises(UnsupportedKeyTypeError, match="bytes"):
            partition_key_range(KeyRange(b"\x00", b"\xff", 2), 1, 10)
