"""
DeriveStreet Database Models
SQLAlchemy ORM models for the upstream response cache and derived history records
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, JSON,
    Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from datetime import datetime
from enum import Enum
from typing import Dict, Type

# SQLAlchemy base class for all models
Base = declarative_base()


class PeriodType(str, Enum):
    """Granularity of a derived history record."""
    HOURLY = "hourly"
    DAILY = "daily"


class RecordFamily(str, Enum):
    """Families of derived records produced by the backfill pipeline."""
    SENTIMENT = "sentiment"
    NARRATIVE = "narrative"
    EMOTION = "emotion"


class ResponseCacheEntry(Base):
    """
    Server-side cache of upstream API responses.
    One live row per fingerprint; expired rows are removed lazily or by a sweep.
    """
    __tablename__ = 'upstream_response_cache'

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(64), nullable=False, unique=True,
                       comment="SHA-256 fingerprint of action and sorted parameters")
    action = Column(String(32), nullable=False, comment="Gateway action name")
    symbol = Column(String(32), index=True, comment="Symbol parameter, if any")
    payload = Column(JSON, nullable=False, comment="Cached JSON response body")
    created_at = Column(DateTime, default=func.now(), nullable=False)
    expires_at = Column(DateTime, nullable=False, comment="Expiry timestamp in UTC")

    __table_args__ = (
        Index('idx_response_cache_expires', 'expires_at'),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return f"<ResponseCacheEntry(action='{self.action}', symbol='{self.symbol}', expires_at='{self.expires_at}')>"


class SentimentHistory(Base):
    """
    Bullish/bearish/neutral aggregates computed from message labels
    """
    __tablename__ = 'sentiment_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False)
    recorded_at = Column(DateTime, nullable=False, comment="Aligned record timestamp in UTC")
    period_type = Column(String(10), nullable=False, default=PeriodType.DAILY.value)

    sentiment_score = Column(Float, nullable=False, comment="0 = all bearish, 100 = all bullish")
    bullish_count = Column(Integer, nullable=False, default=0)
    bearish_count = Column(Integer, nullable=False, default=0)
    neutral_count = Column(Integer, nullable=False, default=0)
    message_volume = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'recorded_at', name='uq_sentiment_symbol_recorded'),
        CheckConstraint("period_type IN ('hourly', 'daily')", name='ck_sentiment_period_type'),
        CheckConstraint('sentiment_score >= 0 AND sentiment_score <= 100', name='ck_sentiment_score_range'),
        Index('idx_sentiment_history_symbol_date', 'symbol', 'recorded_at'),
    )

    def __repr__(self):
        return (f"<SentimentHistory(symbol='{self.symbol}', recorded_at='{self.recorded_at}', "
                f"score={self.sentiment_score})>")


class NarrativeHistory(Base):
    """
    Narratives extracted from a window of messages
    """
    __tablename__ = 'narrative_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False)
    recorded_at = Column(DateTime, nullable=False)
    period_type = Column(String(10), nullable=False)

    narratives = Column(JSON, nullable=False, default=list)
    dominant_narrative = Column(String(255))
    message_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'recorded_at', name='uq_narrative_symbol_recorded'),
        CheckConstraint("period_type IN ('hourly', 'daily')", name='ck_narrative_period_type'),
        Index('idx_narrative_history_symbol_recorded', 'symbol', 'recorded_at'),
        Index('idx_narrative_history_period_type', 'period_type', 'recorded_at'),
    )

    def __repr__(self):
        return (f"<NarrativeHistory(symbol='{self.symbol}', recorded_at='{self.recorded_at}', "
                f"dominant='{self.dominant_narrative}')>")


class EmotionHistory(Base):
    """
    Emotion scores extracted from a window of messages
    """
    __tablename__ = 'emotion_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False)
    recorded_at = Column(DateTime, nullable=False)
    period_type = Column(String(10), nullable=False)

    emotions = Column(JSON, nullable=False, default=list)
    dominant_emotion = Column(String(255))
    message_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'recorded_at', name='uq_emotion_symbol_recorded'),
        CheckConstraint("period_type IN ('hourly', 'daily')", name='ck_emotion_period_type'),
        Index('idx_emotion_history_symbol_recorded', 'symbol', 'recorded_at'),
        Index('idx_emotion_history_period_type', 'period_type', 'recorded_at'),
    )

    def __repr__(self):
        return (f"<EmotionHistory(symbol='{self.symbol}', recorded_at='{self.recorded_at}', "
                f"dominant='{self.dominant_emotion}')>")


FAMILY_MODELS: Dict[RecordFamily, Type[Base]] = {
    RecordFamily.SENTIMENT: SentimentHistory,
    RecordFamily.NARRATIVE: NarrativeHistory,
    RecordFamily.EMOTION: EmotionHistory,
}

# JSON columns rewritten by the sanitation pass
FAMILY_PAYLOAD_COLUMNS: Dict[RecordFamily, tuple] = {
    RecordFamily.NARRATIVE: ('narratives', 'dominant_narrative'),
    RecordFamily.EMOTION: ('emotions', 'dominant_emotion'),
}


def get_supported_period_types() -> list[str]:
    """Return list of supported record granularities"""
    return [p.value for p in PeriodType]
