"""
Gap Scanner

Enumerates the time units a backfill should cover and checks which of them
are missing derived records. Daily units are weekdays; hourly units are
market-local hours inside the trading window of a single day.

Market-local time uses a fixed UTC offset with no daylight-saving table,
so hourly alignment is an hour off while DST is in effect.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Union

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from core.database.history_service import HistoryService
from core.database.models import PeriodType, RecordFamily
from core.database.query_helpers import utc_now
from ingestion.errors import GapScanError

logger = logging.getLogger(__name__)

ALL_FAMILIES: FrozenSet[RecordFamily] = frozenset(RecordFamily)


@dataclass(frozen=True)
class TimeUnit:
    """
    One day or one market hour of one symbol.

    Identity is (symbol, day, hour); the families still to be filled and the
    market offset ride along without affecting equality.
    """
    symbol: str
    day: date
    hour: Optional[int] = None
    families: FrozenSet[RecordFamily] = field(default=ALL_FAMILIES, compare=False)
    utc_offset_hours: int = field(default=-5, compare=False)

    @property
    def is_hourly(self) -> bool:
        return self.hour is not None

    @property
    def period_type(self) -> PeriodType:
        return PeriodType.HOURLY if self.is_hourly else PeriodType.DAILY

    @property
    def label(self) -> str:
        if self.is_hourly:
            return f"{self.day.isoformat()} {self.hour:02d}:00"
        return self.day.isoformat()

    @property
    def summary_value(self) -> Union[str, int]:
        """How the unit is listed in job summaries: the hour for hourly units, else the ISO date."""
        return self.hour if self.is_hourly else self.day.isoformat()

    @property
    def window_start(self) -> datetime:
        """Start of the UTC fetch window."""
        if self.is_hourly:
            local = datetime.combine(self.day, time(self.hour))
            return local - timedelta(hours=self.utc_offset_hours)
        return datetime.combine(self.day, time.min)

    @property
    def window_end(self) -> datetime:
        """End of the UTC fetch window (inclusive, whole seconds)."""
        if self.is_hourly:
            return self.window_start + timedelta(minutes=59, seconds=59)
        return datetime.combine(self.day, time(23, 59, 59))

    @property
    def recorded_at(self) -> datetime:
        """Timestamp stored on every record derived from this unit."""
        if self.is_hourly:
            return self.window_start + timedelta(minutes=30)
        return datetime.combine(self.day, time(23, 59, 59, 999000))

    def with_families(self, families: Iterable[RecordFamily]) -> 'TimeUnit':
        return TimeUnit(self.symbol, self.day, self.hour, frozenset(families), self.utc_offset_hours)


@dataclass
class GapScanResult:
    """Expected units of a range split into missing and present."""
    expected: List[TimeUnit] = field(default_factory=list)
    missing: List[TimeUnit] = field(default_factory=list)
    present: List[TimeUnit] = field(default_factory=list)

    @property
    def coverage(self) -> float:
        if not self.expected:
            return 1.0
        return len(self.present) / len(self.expected)


class GapScanner:
    """Finds units that lack derived records."""

    def __init__(self,
                 history: HistoryService,
                 utc_offset_hours: int = -5,
                 window_start_hour: int = 5,
                 window_end_hour: int = 18,
                 clock: Callable[[], datetime] = utc_now):
        """
        Args:
            history: Store queried for existing records
            utc_offset_hours: Fixed market-local offset from UTC
            window_start_hour: First market hour of the hourly window
            window_end_hour: Last market hour of the hourly window (inclusive)
            clock: Returns the current naive UTC time
        """
        self.history = history
        self.utc_offset_hours = utc_offset_hours
        self.window_start_hour = window_start_hour
        self.window_end_hour = window_end_hour
        self.clock = clock

    @classmethod
    def from_settings(cls, history: HistoryService, settings) -> 'GapScanner':
        return cls(
            history,
            utc_offset_hours=settings.market_utc_offset_hours,
            window_start_hour=settings.hourly_window_start,
            window_end_hour=settings.hourly_window_end
        )

    # Enumeration

    @staticmethod
    def weekdays(start_date: date, end_date: date) -> List[date]:
        """Monday-Friday dates in [start_date, end_date]."""
        if start_date > end_date:
            return []
        return [ts.date() for ts in pd.bdate_range(start=start_date, end=end_date)]

    def market_now(self) -> datetime:
        return self.clock() + timedelta(hours=self.utc_offset_hours)

    def resolve_now_hour(self, day: date, now_hour: Optional[int] = None) -> Optional[int]:
        """
        Last market hour of ``day`` that should already have data.

        Explicit values are capped at the end of the window. Otherwise today
        uses the current market hour, earlier days the whole window and later
        days nothing (None).
        """
        if now_hour is not None:
            return min(now_hour, self.window_end_hour)

        market_now = self.market_now()
        if day < market_now.date():
            return self.window_end_hour
        if day > market_now.date():
            return None
        return min(market_now.hour, self.window_end_hour)

    def expected_hours(self, day: date, now_hour: Optional[int] = None) -> List[int]:
        last = self.resolve_now_hour(day, now_hour)
        if last is None:
            return []
        return list(range(self.window_start_hour, last + 1))

    # Existence checks

    def _present_days(self, symbol: str, start_date: date, end_date: date,
                      families: FrozenSet[RecordFamily]) -> Dict[RecordFamily, Set[date]]:
        return {
            family: self.history.recorded_dates(family, symbol, start_date, end_date, PeriodType.DAILY)
            for family in families
        }

    def _present_hours(self, symbol: str, day: date,
                       families: FrozenSet[RecordFamily]) -> Dict[RecordFamily, Set[int]]:
        first = TimeUnit(symbol, day, self.window_start_hour, utc_offset_hours=self.utc_offset_hours)
        last = TimeUnit(symbol, day, self.window_end_hour, utc_offset_hours=self.utc_offset_hours)

        present: Dict[RecordFamily, Set[int]] = {}
        for family in families:
            hours = set()
            for ts in self.history.recorded_times(family, symbol, first.window_start, last.window_end,
                                                  PeriodType.HOURLY):
                local = ts + timedelta(hours=self.utc_offset_hours)
                if local.date() == day:
                    hours.add(local.hour)
            present[family] = hours
        return present

    # Scans

    def scan_daily(self,
                   symbol: str,
                   start_date: date,
                   end_date: date,
                   families: Iterable[RecordFamily] = ALL_FAMILIES,
                   force: bool = False) -> GapScanResult:
        """
        Split the weekdays of a range into missing and present units.

        Raises:
            GapScanError: if existing records could not be read
        """
        symbol = symbol.upper()
        families = frozenset(families)
        expected = [TimeUnit(symbol, d, families=families, utc_offset_hours=self.utc_offset_hours)
                    for d in self.weekdays(start_date, end_date)]

        if force or not expected:
            return GapScanResult(expected=expected, missing=list(expected))

        try:
            present_days = self._present_days(symbol, start_date, end_date, families)
        except SQLAlchemyError as e:
            raise GapScanError(f"Failed to scan daily records for {symbol}: {e}") from e

        result = GapScanResult(expected=expected)
        for unit in expected:
            lacking = [f for f in families if unit.day not in present_days[f]]
            if lacking:
                result.missing.append(unit.with_families(lacking))
            else:
                result.present.append(unit)

        logger.info(f"Daily scan {symbol} {start_date}..{end_date}: "
                    f"{len(result.missing)}/{len(expected)} weekdays missing")
        return result

    def scan_hourly(self,
                    symbol: str,
                    day: date,
                    families: Iterable[RecordFamily] = ALL_FAMILIES,
                    now_hour: Optional[int] = None,
                    force: bool = False) -> GapScanResult:
        """
        Split the trading-window hours of a day into missing and present units.

        Raises:
            GapScanError: if existing records could not be read
        """
        symbol = symbol.upper()
        families = frozenset(families)
        expected = [TimeUnit(symbol, day, hour, families, self.utc_offset_hours)
                    for hour in self.expected_hours(day, now_hour)]

        if force or not expected:
            return GapScanResult(expected=expected, missing=list(expected))

        try:
            present_hours = self._present_hours(symbol, day, families)
        except SQLAlchemyError as e:
            raise GapScanError(f"Failed to scan hourly records for {symbol} on {day}: {e}") from e

        result = GapScanResult(expected=expected)
        for unit in expected:
            lacking = [f for f in families if unit.hour not in present_hours[f]]
            if lacking:
                result.missing.append(unit.with_families(lacking))
            else:
                result.present.append(unit)

        logger.info(f"Hourly scan {symbol} {day}: {len(result.missing)}/{len(expected)} hours missing")
        return result

    def missing_daily_units(self, symbol: str, start_date: date, end_date: date,
                            families: Iterable[RecordFamily] = ALL_FAMILIES,
                            force: bool = False) -> List[TimeUnit]:
        return self.scan_daily(symbol, start_date, end_date, families, force).missing

    def missing_hourly_units(self, symbol: str, day: date,
                             families: Iterable[RecordFamily] = ALL_FAMILIES,
                             now_hour: Optional[int] = None,
                             force: bool = False) -> List[TimeUnit]:
        return self.scan_hourly(symbol, day, families, now_hour, force).missing

    def scan(self,
             symbol: str,
             start_date: date,
             end_date: date,
             hourly: bool = False,
             families: Iterable[RecordFamily] = ALL_FAMILIES,
             force: bool = False,
             now_hour: Optional[int] = None) -> GapScanResult:
        """Scan hourly units of start_date when ``hourly`` is set, otherwise the daily range."""
        if hourly:
            return self.scan_hourly(symbol, start_date, families, now_hour, force)
        return self.scan_daily(symbol, start_date, end_date, families, force)
