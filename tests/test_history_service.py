"""
Test History Service
Tests for idempotent upserts, existence queries and payload sanitation
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from core.database.history_service import HistoryService
from core.database.models import (
    EmotionHistory, NarrativeHistory, PeriodType, RecordFamily, SentimentHistory,
    get_supported_period_types
)
from core.database.query_helpers import to_naive_utc
from ingestion.errors import PersistenceError


@pytest.fixture
def history(session_factory):
    return HistoryService(session_factory)


def _sentiment(history, symbol="AAPL", recorded_at=datetime(2024, 1, 2, 23, 59, 59, 999000),
               score=60.0, period=PeriodType.DAILY):
    history.upsert_sentiment(symbol, recorded_at, period, score, 6, 4, 0, 10)


class TestUpserts:

    def test_upsert_inserts_then_overwrites(self, history, session_factory):
        _sentiment(history, score=60.0)
        _sentiment(history, score=75.0)

        session = session_factory()
        rows = session.query(SentimentHistory).all()
        session.close()

        assert len(rows) == 1
        assert rows[0].sentiment_score == 75.0
        assert rows[0].symbol == "AAPL"
        assert rows[0].period_type == "daily"

    def test_symbol_is_upper_cased(self, history):
        _sentiment(history, symbol="tsla")
        assert history.count_records(RecordFamily.SENTIMENT, "TSLA") == 1

    def test_aware_timestamps_stored_as_naive_utc(self, history):
        aware = datetime(2024, 1, 2, 10, 30, tzinfo=timezone(timedelta(hours=-5)))
        history.upsert_narratives("AAPL", aware, PeriodType.HOURLY, [{"name": "x", "count": 1}], "x", 5)

        records = history.get_records(RecordFamily.NARRATIVE, "AAPL")
        assert records[0].recorded_at == datetime(2024, 1, 2, 15, 30)

    def test_json_payloads_round_trip(self, history):
        emotions = [{"name": "Fear", "score": 80.0, "percentage": 30.0}]
        history.upsert_emotions("AAPL", datetime(2024, 1, 3, 23, 59, 59), PeriodType.DAILY, emotions, "Fear", 42)

        record = history.get_records(RecordFamily.EMOTION, "AAPL")[0]
        assert record.emotions == emotions
        assert record.dominant_emotion == "Fear"
        assert record.message_count == 42

    def test_write_failure_raises_persistence_error(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("locked"))
        broken = HistoryService(lambda: session)

        with pytest.raises(PersistenceError):
            _sentiment(broken)
        session.rollback.assert_called_once()

    def test_fallback_dialect_uses_select_then_update(self, session_factory):
        class OtherDialectSession:
            def __init__(self):
                self._session = session_factory()

            def __getattr__(self, name):
                return getattr(self._session, name)

            def get_bind(self):
                bind = MagicMock()
                bind.dialect.name = "mysql"
                return bind

        history = HistoryService(OtherDialectSession)
        _sentiment(history, score=10.0)
        _sentiment(history, score=20.0)

        session = session_factory()
        rows = session.query(SentimentHistory).all()
        session.close()
        assert [r.sentiment_score for r in rows] == [20.0]


class TestExistenceQueries:

    def test_recorded_dates_filters_period_type(self, history):
        _sentiment(history, recorded_at=datetime(2024, 1, 2, 23, 59, 59, 999000))
        _sentiment(history, recorded_at=datetime(2024, 1, 3, 15, 30), period=PeriodType.HOURLY)

        days = history.recorded_dates(RecordFamily.SENTIMENT, "AAPL", date(2024, 1, 1), date(2024, 1, 5))

        assert days == {date(2024, 1, 2)}

    def test_recorded_times_window(self, history):
        for hour in (10, 11, 22):
            history.upsert_narratives("AAPL", datetime(2024, 1, 2, hour, 30), PeriodType.HOURLY, [], None, 5)

        times = history.recorded_times(
            RecordFamily.NARRATIVE, "AAPL",
            datetime(2024, 1, 2, 10, 0), datetime(2024, 1, 2, 12, 0),
            PeriodType.HOURLY
        )

        assert times == [datetime(2024, 1, 2, 10, 30), datetime(2024, 1, 2, 11, 30)]

    def test_counts_per_symbol(self, history):
        _sentiment(history, symbol="AAPL")
        _sentiment(history, symbol="MSFT")

        assert history.count_records(RecordFamily.SENTIMENT) == 2
        assert history.count_records(RecordFamily.SENTIMENT, "MSFT") == 1


class TestSanitizePayloads:

    def _seed(self, session_factory):
        session = session_factory()
        session.add(NarrativeHistory(
            symbol="AAPL", recorded_at=datetime(2024, 1, 2, 23, 59), period_type="daily",
            narratives=[{"name": "Moon \U0001F680 shot", "count": 3}], dominant_narrative="Moon \U0001F680 shot",
            message_count=12
        ))
        session.add(NarrativeHistory(
            symbol="AAPL", recorded_at=datetime(2024, 1, 3, 23, 59), period_type="daily",
            narratives=[{"name": "Clean", "count": 1}], dominant_narrative="Clean", message_count=12
        ))
        session.add(EmotionHistory(
            symbol="AAPL", recorded_at=datetime(2024, 1, 2, 23, 59), period_type="daily",
            emotions=[{"name": "Fear", "score": 10}], dominant_emotion="Fear", message_count=12
        ))
        session.commit()
        session.close()

    def test_dry_run_counts_without_writing(self, history, session_factory):
        self._seed(session_factory)

        results = history.sanitize_payloads(dry_run=True)

        assert results["narrative_history"] == {"scanned": 2, "updated": 1, "errors": 0}
        assert results["emotion_history"] == {"scanned": 1, "updated": 0, "errors": 0}
        record = history.get_records(RecordFamily.NARRATIVE, "AAPL")[0]
        assert record.dominant_narrative == "Moon \U0001F680 shot"

    def test_apply_rewrites_only_changed_rows(self, history, session_factory):
        self._seed(session_factory)

        history.sanitize_payloads(dry_run=False, batch_size=1)

        records = history.get_records(RecordFamily.NARRATIVE, "AAPL")
        assert records[0].narratives == [{"name": "Moon shot", "count": 3}]
        assert records[0].dominant_narrative == "Moon shot"
        assert records[1].dominant_narrative == "Clean"
        assert history.sanitize_payloads(dry_run=True)["narrative_history"]["updated"] == 0


def test_to_naive_utc_leaves_naive_values():
    value = datetime(2024, 1, 2, 3, 4)
    assert to_naive_utc(value) is value


def test_supported_period_types():
    assert get_supported_period_types() == ["hourly", "daily"]
