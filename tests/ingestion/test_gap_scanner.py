"""
Test Suite for the Gap Scanner

Tests weekday enumeration, hourly window derivation, per-family existence
checks and forced rescans.
"""

import pytest
from datetime import date, datetime
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from core.database.history_service import HistoryService
from core.database.models import PeriodType, RecordFamily
from ingestion.backfill.gap_scanner import GapScanner, TimeUnit
from ingestion.errors import GapScanError


@pytest.fixture
def history(session_factory):
    return HistoryService(session_factory)


@pytest.fixture
def scanner(history):
    # 2024-01-03 16:00 UTC is 11:00 market time
    return GapScanner(history, clock=lambda: datetime(2024, 1, 3, 16, 0))


def _daily(history, family, day):
    unit = TimeUnit("AAPL", day)
    if family is RecordFamily.SENTIMENT:
        history.upsert_sentiment("AAPL", unit.recorded_at, PeriodType.DAILY, 50, 1, 1, 0, 2)
    elif family is RecordFamily.NARRATIVE:
        history.upsert_narratives("AAPL", unit.recorded_at, PeriodType.DAILY, [], None, 2)
    else:
        history.upsert_emotions("AAPL", unit.recorded_at, PeriodType.DAILY, [], None, 2)


class TestTimeUnit:

    def test_daily_alignment(self):
        unit = TimeUnit("AAPL", date(2024, 1, 2))

        assert unit.period_type == PeriodType.DAILY
        assert unit.window_start == datetime(2024, 1, 2, 0, 0, 0)
        assert unit.window_end == datetime(2024, 1, 2, 23, 59, 59)
        assert unit.recorded_at == datetime(2024, 1, 2, 23, 59, 59, 999000)
        assert unit.summary_value == "2024-01-02"

    def test_hourly_alignment_uses_fixed_offset(self):
        unit = TimeUnit("AAPL", date(2024, 1, 2), hour=9)

        assert unit.window_start == datetime(2024, 1, 2, 14, 0, 0)
        assert unit.window_end == datetime(2024, 1, 2, 14, 59, 59)
        assert unit.recorded_at == datetime(2024, 1, 2, 14, 30)
        assert unit.summary_value == 9
        assert unit.label == "2024-01-02 09:00"

    def test_families_do_not_affect_identity(self):
        a = TimeUnit("AAPL", date(2024, 1, 2), families=frozenset({RecordFamily.EMOTION}))
        b = TimeUnit("AAPL", date(2024, 1, 2))
        assert a == b
        assert len({a, b}) == 1


class TestDailyScan:

    def test_weekday_enumeration(self, scanner):
        units = scanner.missing_daily_units("AAPL", date(2024, 1, 1), date(2024, 1, 7))

        assert [u.day for u in units] == [
            date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 4), date(2024, 1, 5)
        ]

    def test_weekend_only_range_is_empty(self, scanner):
        assert scanner.missing_daily_units("AAPL", date(2024, 1, 6), date(2024, 1, 7)) == []

    def test_reversed_range_is_empty(self, scanner):
        assert GapScanner.weekdays(date(2024, 1, 5), date(2024, 1, 1)) == []

    def test_present_days_excluded(self, scanner, history):
        for family in RecordFamily:
            _daily(history, family, date(2024, 1, 2))

        result = scanner.scan_daily("AAPL", date(2024, 1, 1), date(2024, 1, 3))

        assert [u.day for u in result.missing] == [date(2024, 1, 1), date(2024, 1, 3)]
        assert [u.day for u in result.present] == [date(2024, 1, 2)]
        assert result.coverage == pytest.approx(1 / 3)

    def test_unit_missing_one_family_carries_only_that_family(self, scanner, history):
        _daily(history, RecordFamily.SENTIMENT, date(2024, 1, 2))
        _daily(history, RecordFamily.NARRATIVE, date(2024, 1, 2))

        missing = scanner.missing_daily_units("aapl", date(2024, 1, 2), date(2024, 1, 2))

        assert len(missing) == 1
        assert missing[0].families == frozenset({RecordFamily.EMOTION})

    def test_requested_families_limit_the_check(self, scanner, history):
        _daily(history, RecordFamily.SENTIMENT, date(2024, 1, 2))

        missing = scanner.missing_daily_units("AAPL", date(2024, 1, 2), date(2024, 1, 2),
                                              families=[RecordFamily.SENTIMENT])

        assert missing == []

    def test_force_marks_everything_missing(self, scanner, history):
        for family in RecordFamily:
            _daily(history, family, date(2024, 1, 2))

        result = scanner.scan_daily("AAPL", date(2024, 1, 2), date(2024, 1, 2), force=True)

        assert len(result.missing) == 1
        assert result.present == []
        assert result.missing[0].families == frozenset(RecordFamily)

    def test_storage_failure_raises_gap_scan_error(self):
        history = MagicMock()
        history.recorded_dates.side_effect = OperationalError("SELECT", {}, Exception("gone"))
        scanner = GapScanner(history)

        with pytest.raises(GapScanError):
            scanner.scan_daily("AAPL", date(2024, 1, 2), date(2024, 1, 2))


class TestHourlyScan:

    def test_today_stops_at_current_market_hour(self, scanner):
        units = scanner.missing_hourly_units("AAPL", date(2024, 1, 3))
        assert [u.hour for u in units] == [5, 6, 7, 8, 9, 10, 11]

    def test_past_day_covers_whole_window(self, scanner):
        units = scanner.missing_hourly_units("AAPL", date(2024, 1, 2))
        assert [u.hour for u in units] == list(range(5, 19))

    def test_future_day_has_no_hours(self, scanner):
        assert scanner.missing_hourly_units("AAPL", date(2024, 1, 4)) == []

    def test_explicit_now_hour_is_capped(self, scanner):
        assert scanner.resolve_now_hour(date(2024, 1, 2), 23) == 18
        assert [u.hour for u in scanner.missing_hourly_units("AAPL", date(2024, 1, 2), now_hour=6)] == [5, 6]

    def test_before_window_opens(self, history):
        early = GapScanner(history, clock=lambda: datetime(2024, 1, 3, 8, 0))  # 03:00 market time
        assert early.missing_hourly_units("AAPL", date(2024, 1, 3)) == []

    def test_existing_hours_excluded(self, scanner, history):
        for hour in (5, 6):
            unit = TimeUnit("AAPL", date(2024, 1, 2), hour=hour)
            history.upsert_narratives("AAPL", unit.recorded_at, PeriodType.HOURLY, [], None, 5)
            history.upsert_emotions("AAPL", unit.recorded_at, PeriodType.HOURLY, [], None, 5)

        units = scanner.missing_hourly_units(
            "AAPL", date(2024, 1, 2), now_hour=8,
            families=[RecordFamily.NARRATIVE, RecordFamily.EMOTION]
        )

        assert [u.hour for u in units] == [7, 8]

    def test_scan_dispatches_on_mode(self, scanner):
        hourly = scanner.scan("AAPL", date(2024, 1, 2), date(2024, 1, 2), hourly=True, now_hour=5)
        daily = scanner.scan("AAPL", date(2024, 1, 2), date(2024, 1, 2))

        assert [u.hour for u in hourly.expected] == [5]
        assert [u.hour for u in daily.expected] == [None]
