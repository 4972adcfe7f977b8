"""
Sentiment aggregation over labelled messages.
"""

import math
from dataclasses import dataclass
from typing import Iterable

from ingestion.fetchers.upstream_gateway import SocialMessage


@dataclass(frozen=True)
class SentimentAggregate:
    """Bullish/bearish/neutral counts and the derived 0-100 score."""
    sentiment_score: float
    bullish_count: int
    bearish_count: int
    neutral_count: int

    @property
    def total(self) -> int:
        return self.bullish_count + self.bearish_count + self.neutral_count


def compute_sentiment(messages: Iterable[SocialMessage]) -> SentimentAggregate:
    """
    Aggregate message labels into a sentiment score.

    Unlabelled messages count as neutral. The score maps the net bullish
    share onto 0 (all bearish) .. 50 (balanced) .. 100 (all bullish),
    rounded half-up; an empty input scores 50.
    """
    bullish = bearish = neutral = 0
    for message in messages:
        if message.sentiment == 'bullish':
            bullish += 1
        elif message.sentiment == 'bearish':
            bearish += 1
        else:
            neutral += 1

    total = bullish + bearish + neutral
    if total == 0:
        return SentimentAggregate(50, 0, 0, 0)

    score = math.floor(((bullish - bearish) / total + 1) * 50 + 0.5)
    return SentimentAggregate(score, bullish, bearish, neutral)
