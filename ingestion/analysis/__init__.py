"""
Message Analysis Package

- AnalysisClient / LLMAnalysisClient: Narrative and emotion extraction
- compute_sentiment: Bullish/bearish aggregation
- sanitize_tree: Non-ASCII cleanup of stored JSON payloads
"""

from .sanitize import SanitizeResult, sanitize_text, sanitize_tree
from .sentiment import SentimentAggregate, compute_sentiment
from .client import (
    AnalysisClient,
    LLMAnalysisClient,
    Narrative,
    EmotionScore,
    dominant_narrative,
    dominant_emotion
)

__all__ = [
    "SanitizeResult",
    "sanitize_text",
    "sanitize_tree",
    "SentimentAggregate",
    "compute_sentiment",
    "AnalysisClient",
    "LLMAnalysisClient",
    "Narrative",
    "EmotionScore",
    "dominant_narrative",
    "dominant_emotion"
]
