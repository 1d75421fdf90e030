"""
Unit tests for calendar periods and time buckets.
"""

from datetime import datetime, timedelta, timezone

import pytest

from api_cost_tracker.core.periods import Period, add_months, as_utc, bucket_label, is_closed


UTC = timezone.utc


class TestPeriod:
    """Test calendar-month arithmetic."""

    def test_containing_and_bounds(self):
        period = Period.containing(datetime(2024, 2, 29, 23, 59, tzinfo=UTC))
        assert period.key == "2024-02"
        assert period.start == datetime(2024, 2, 1, tzinfo=UTC)
        assert period.end == datetime(2024, 3, 1, tzinfo=UTC)
        assert period.days() == 29

    def test_end_is_exclusive(self):
        period = Period(2024, 5)
        assert period.contains(datetime(2024, 5, 31, 23, 59, 59, tzinfo=UTC))
        assert not period.contains(datetime(2024, 6, 1, tzinfo=UTC))

    def test_year_boundaries(self):
        assert Period(2024, 12).next() == Period(2025, 1)
        assert Period(2024, 1).previous() == Period(2023, 12)

    def test_parse(self):
        assert Period.parse("2023-11") == Period(2023, 11)
        with pytest.raises(ValueError):
            Period.parse("November")
        with pytest.raises(ValueError):
            Period.parse("2023-13")

    def test_closed_once_end_passed(self):
        period = Period(2024, 5)
        assert period.is_closed(datetime(2024, 6, 1, tzinfo=UTC))
        assert not period.is_closed(datetime(2024, 5, 31, tzinfo=UTC))
        assert not is_closed(None)

    def test_naive_datetimes_are_utc(self):
        assert as_utc(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=UTC)
        offset = timezone(timedelta(hours=2))
        assert as_utc(datetime(2024, 1, 1, 1, tzinfo=offset)) == datetime(2023, 12, 31, 23, tzinfo=UTC)


class TestBuckets:
    """Test breakdown bucket labels."""

    def test_labels(self):
        moment = datetime(2024, 1, 1, 8, tzinfo=UTC)
        assert bucket_label(moment, "day") == "2024-01-01"
        assert bucket_label(moment, "week") == "2024-W01"
        assert bucket_label(moment, "month") == "2024-01"

    def test_iso_week_crosses_year(self):
        assert bucket_label(datetime(2021, 1, 3, tzinfo=UTC), "week") == "2020-W53"

    def test_invalid_group_by(self):
        with pytest.raises(ValueError):
            bucket_label(datetime(2024, 1, 1, tzinfo=UTC), "hour")

    def test_add_months_clamps_day(self):
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)
        assert add_months(datetime(2024, 11, 15, tzinfo=UTC), 2) == datetime(2025, 1, 15, tzinfo=UTC)
