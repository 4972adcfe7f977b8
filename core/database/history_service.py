"""
History Service
Database operations for derived sentiment, narrative and emotion records
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import (
    FAMILY_MODELS, FAMILY_PAYLOAD_COLUMNS, PeriodType, RecordFamily
)
from .query_helpers import to_naive_utc, upsert_row, utc_now
from ingestion.analysis.sanitize import sanitize_tree
from ingestion.errors import PersistenceError

logger = logging.getLogger(__name__)

# Columns identifying a record; everything else is overwritten on conflict
_KEY_COLUMNS = ('symbol', 'recorded_at')


class HistoryService:
    """Service for derived history records"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        """
        Initialize with an optional session factory.
        If none is provided the application's SessionLocal is used.
        """
        if session_factory is None:
            from config.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    # Writes

    def upsert_record(self,
                      family: RecordFamily,
                      symbol: str,
                      recorded_at: datetime,
                      period_type: PeriodType,
                      values: Dict[str, Any]) -> None:
        """
        Insert a record or overwrite the existing one keyed by (symbol, recorded_at).

        Raises:
            PersistenceError: if the write fails
        """
        model = FAMILY_MODELS[family]
        row = {
            'symbol': symbol.upper(),
            'recorded_at': to_naive_utc(recorded_at),
            'period_type': PeriodType(period_type).value,
            **values
        }

        session = self.session_factory()
        try:
            upsert_row(session, model, row, _KEY_COLUMNS)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"{family.value} write failed for {row['symbol']} "
                                   f"at {row['recorded_at'].isoformat()}: {e}") from e
        finally:
            session.close()

        logger.debug(f"Upserted {family.value} record for {row['symbol']} at {row['recorded_at']}")

    def upsert_sentiment(self, symbol: str, recorded_at: datetime, period_type: PeriodType,
                         sentiment_score: float, bullish_count: int, bearish_count: int,
                         neutral_count: int, message_volume: int) -> None:
        self.upsert_record(RecordFamily.SENTIMENT, symbol, recorded_at, period_type, {
            'sentiment_score': sentiment_score,
            'bullish_count': bullish_count,
            'bearish_count': bearish_count,
            'neutral_count': neutral_count,
            'message_volume': message_volume,
        })

    def upsert_narratives(self, symbol: str, recorded_at: datetime, period_type: PeriodType,
                          narratives: List[Dict[str, Any]], dominant_narrative: Optional[str],
                          message_count: int) -> None:
        self.upsert_record(RecordFamily.NARRATIVE, symbol, recorded_at, period_type, {
            'narratives': narratives,
            'dominant_narrative': dominant_narrative,
            'message_count': message_count,
        })

    def upsert_emotions(self, symbol: str, recorded_at: datetime, period_type: PeriodType,
                        emotions: List[Dict[str, Any]], dominant_emotion: Optional[str],
                        message_count: int) -> None:
        self.upsert_record(RecordFamily.EMOTION, symbol, recorded_at, period_type, {
            'emotions': emotions,
            'dominant_emotion': dominant_emotion,
            'message_count': message_count,
        })

    # Reads

    def recorded_times(self,
                       family: RecordFamily,
                       symbol: str,
                       start: datetime,
                       end: datetime,
                       period_type: Optional[PeriodType] = None) -> List[datetime]:
        """Timestamps of existing records in [start, end]."""
        model = FAMILY_MODELS[family]
        session = self.session_factory()
        try:
            query = session.query(model.recorded_at).filter(
                and_(
                    model.symbol == symbol.upper(),
                    model.recorded_at >= to_naive_utc(start),
                    model.recorded_at <= to_naive_utc(end)
                )
            )
            if period_type is not None:
                query = query.filter(model.period_type == PeriodType(period_type).value)
            return [row[0] for row in query.order_by(model.recorded_at).all()]
        finally:
            session.close()

    def recorded_dates(self,
                       family: RecordFamily,
                       symbol: str,
                       start_date: date,
                       end_date: date,
                       period_type: Optional[PeriodType] = PeriodType.DAILY) -> Set[date]:
        """UTC calendar days in [start_date, end_date] holding at least one record."""
        start = datetime.combine(start_date, time.min)
        end = datetime.combine(end_date, time.max)
        return {ts.date() for ts in self.recorded_times(family, symbol, start, end, period_type)}

    def get_records(self,
                    family: RecordFamily,
                    symbol: str,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    period_type: Optional[PeriodType] = None) -> List[Any]:
        """Retrieve records for a symbol ordered by recorded_at"""
        model = FAMILY_MODELS[family]
        session = self.session_factory()
        try:
            query = session.query(model).filter(model.symbol == symbol.upper())
            if start:
                query = query.filter(model.recorded_at >= to_naive_utc(start))
            if end:
                query = query.filter(model.recorded_at <= to_naive_utc(end))
            if period_type is not None:
                query = query.filter(model.period_type == PeriodType(period_type).value)
            return query.order_by(model.recorded_at).all()
        finally:
            session.close()

    def count_records(self, family: RecordFamily, symbol: Optional[str] = None) -> int:
        model = FAMILY_MODELS[family]
        session = self.session_factory()
        try:
            query = session.query(model)
            if symbol:
                query = query.filter(model.symbol == symbol.upper())
            return query.count()
        finally:
            session.close()

    # Maintenance

    def sanitize_payloads(self,
                          families: Optional[Iterable[RecordFamily]] = None,
                          dry_run: bool = True,
                          batch_size: int = 100) -> Dict[str, Dict[str, int]]:
        """
        Strip non-ASCII characters from stored narrative/emotion payloads.

        Only rows whose payload actually changes are written.

        Returns:
            Per-table counts of scanned, updated and failed rows
        """
        families = list(families) if families is not None else list(FAMILY_PAYLOAD_COLUMNS)
        results: Dict[str, Dict[str, int]] = {}

        for family in families:
            columns = FAMILY_PAYLOAD_COLUMNS.get(RecordFamily(family))
            if not columns:
                continue
            model = FAMILY_MODELS[RecordFamily(family)]
            counts = {'scanned': 0, 'updated': 0, 'errors': 0}
            offset = 0

            while True:
                session = self.session_factory()
                try:
                    rows = (session.query(model).order_by(model.id)
                            .offset(offset).limit(batch_size).all())
                    if not rows:
                        break
                    counts['scanned'] += len(rows)

                    for row in rows:
                        updates = {}
                        for column in columns:
                            result = sanitize_tree(getattr(row, column))
                            if result.changed:
                                updates[column] = result.value
                        if not updates:
                            continue
                        counts['updated'] += 1
                        if not dry_run:
                            for column, value in updates.items():
                                setattr(row, column, value)
                    if not dry_run:
                        session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    counts['errors'] += 1
                    logger.error(f"Sanitize pass failed on {model.__tablename__} at offset {offset}: {e}")
                    break
                finally:
                    session.close()
                offset += batch_size

            results[model.__tablename__] = counts
            logger.info(f"Sanitize {model.__tablename__}: {counts} (dry_run={dry_run})")

        return results

    def cleanup_old_records(self, days_to_keep: int = 90) -> Dict[str, int]:
        """
        Remove narrative and emotion history older than the retention window
        Returns number of records deleted per table
        """
        cutoff = utc_now() - timedelta(days=days_to_keep)
        deleted: Dict[str, int] = {}
        session = self.session_factory()
        try:
            for family in (RecordFamily.NARRATIVE, RecordFamily.EMOTION):
                model = FAMILY_MODELS[family]
                deleted[model.__tablename__] = session.query(model).filter(
                    model.recorded_at < cutoff
                ).delete()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"History cleanup failed: {e}") from e
        finally:
            session.close()

        logger.info(f"History cleanup removed {deleted} (cutoff {cutoff.isoformat()})")
        return deleted
