"""
Analysis Client

Contract for the external function that turns a window of messages into
narratives and emotion scores, plus an implementation backed by an
OpenAI-compatible chat-completions endpoint using forced tool calls.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ingestion.errors import AnalysisError, GatewayError
from ingestion.fetchers.base_fetcher import BaseFetcher, CircuitBreakerConfig
from ingestion.fetchers.upstream_gateway import SocialMessage
from .sanitize import sanitize_text

logger = logging.getLogger(__name__)

# Only the first messages of a window are sent for analysis
MAX_ANALYZED_MESSAGES = 100

EMOTIONS = [
    "Excitement", "Fear", "Greed", "Hope", "Frustration",
    "Confidence", "Uncertainty", "FOMO", "Relief", "Skepticism",
]

NARRATIVE_SENTIMENTS = ("bullish", "bearish", "neutral")


@dataclass
class Narrative:
    """A theme discussed in a message window."""
    name: str
    count: int
    sentiment: str = "neutral"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmotionScore:
    """Prevalence of one emotion in a message window."""
    name: str
    score: float
    percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def dominant_narrative(narratives: Sequence[Narrative]) -> Optional[str]:
    if not narratives:
        return None
    return max(narratives, key=lambda n: n.count).name or None


def dominant_emotion(emotions: Sequence[EmotionScore]) -> Optional[str]:
    if not emotions:
        return None
    return max(emotions, key=lambda e: e.score).name or None


class AnalysisClient(ABC):
    """Opaque narrative/emotion extraction."""

    @abstractmethod
    async def analyze_narratives(self, messages: Sequence[SocialMessage]) -> List[Narrative]:
        pass

    @abstractmethod
    async def analyze_emotions(self, messages: Sequence[SocialMessage]) -> List[EmotionScore]:
        pass


def _format_messages(messages: Sequence[SocialMessage]) -> str:
    return "\n".join(
        f"{i + 1}. {m.body}" for i, m in enumerate(messages[:MAX_ANALYZED_MESSAGES])
    )


def _tool(name: str, description: str, key: str, item_properties: Dict[str, Any],
          required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {
                    key: {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": item_properties,
                            "required": required,
                        },
                    },
                },
                "required": [key],
            },
        },
    }


NARRATIVE_TOOL = _tool(
    "extract_narratives", "Extract narratives from messages", "narratives",
    {
        "name": {"type": "string"},
        "count": {"type": "number"},
        "sentiment": {"type": "string", "enum": list(NARRATIVE_SENTIMENTS)},
    },
    ["name", "count", "sentiment"],
)

EMOTION_TOOL = _tool(
    "extract_emotions", "Extract emotion scores from messages", "emotions",
    {
        "name": {"type": "string"},
        "score": {"type": "number"},
        "percentage": {"type": "number"},
    },
    ["name", "score", "percentage"],
)


class LLMAnalysisClient(BaseFetcher, AnalysisClient):
    """
    Analysis client calling a chat-completions API with a forced tool call.

    Labels coming back from the model are stripped of non-ASCII characters
    before they are handed to the pipeline.
    """

    user_agent = 'DeriveStreet-Analysis/1.0'

    def __init__(self,
                 api_url: Optional[str] = None,
                 api_key: Optional[str] = None,
                 model: Optional[str] = None,
                 timeout: Optional[float] = None,
                 circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        from config.settings import settings

        super().__init__(circuit_breaker_config=circuit_breaker_config,
                         timeout=timeout if timeout is not None else settings.analysis_timeout,
                         session=session)
        self.api_url = api_url or settings.analysis_api_url
        self.api_key = api_key if api_key is not None else settings.analysis_api_key
        self.model = model or settings.analysis_model

    def _trips_circuit(self, error: Exception) -> bool:
        if isinstance(error, AnalysisError) and error.status is not None:
            return error.status == 429 or error.status >= 500
        return super()._trips_circuit(error)

    async def _invoke_tool(self, system_prompt: str, user_prompt: str,
                           tool: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Run one forced tool call and return its parsed arguments, or None if absent."""
        if not self.api_key:
            raise AnalysisError("Analysis API key not configured")

        tool_name = tool["function"]["name"]
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": tool_name}},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        try:
            async with self._guarded_request():
                response = None
                try:
                    response = await self._make_request('POST', self.api_url, json=payload, headers=headers)
                    text = await response.text()
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    raise AnalysisError(f"Analysis request failed: {e}") from e
                finally:
                    if response is not None:
                        response.release()
                if response.status >= 400:
                    raise AnalysisError(f"AI API error: {response.status}", status=response.status)
        except GatewayError as e:
            raise AnalysisError(f"Analysis unavailable: {e}") from e

        try:
            data = json.loads(text)
        except ValueError as e:
            raise AnalysisError(f"Analysis response is not JSON: {e}") from e

        try:
            tool_call = data["choices"][0]["message"]["tool_calls"][0]
            arguments = tool_call["function"]["arguments"]
        except (KeyError, IndexError, TypeError):
            logger.warning(f"Analysis response for {tool_name} carried no tool call")
            return None

        try:
            return json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
        except (ValueError, TypeError) as e:
            raise AnalysisError(f"Tool arguments for {tool_name} could not be parsed: {e}") from e

    async def analyze_narratives(self, messages: Sequence[SocialMessage]) -> List[Narrative]:
        arguments = await self._invoke_tool(
            "You are a financial analyst specializing in identifying key narratives and themes "
            "from social media discussions about stocks. Analyze the messages and extract the "
            "main narratives being discussed.",
            f"Analyze these {len(messages)} messages and identify the top 5 narratives:\n\n"
            f"{_format_messages(messages)}\n\n"
            "For each narrative, provide:\n1. A short name (2-4 words)\n"
            "2. How many messages mention it (approximate count)\n"
            "3. Overall sentiment: bullish, bearish, or neutral",
            NARRATIVE_TOOL,
        )
        if arguments is None:
            return []

        narratives = []
        for item in arguments.get("narratives") or []:
            try:
                name = sanitize_text(str(item["name"]))
                count = int(item.get("count") or 0)
            except (KeyError, TypeError, ValueError) as e:
                raise AnalysisError(f"Malformed narrative entry {item!r}: {e}") from e
            sentiment = str(item.get("sentiment") or "neutral").lower()
            if sentiment not in NARRATIVE_SENTIMENTS:
                sentiment = "neutral"
            narratives.append(Narrative(name=name, count=count, sentiment=sentiment))
        return narratives

    async def analyze_emotions(self, messages: Sequence[SocialMessage]) -> List[EmotionScore]:
        arguments = await self._invoke_tool(
            "You are an expert at analyzing emotional sentiment in financial social media posts. "
            f"Analyze the messages and score these emotions: {', '.join(EMOTIONS)}",
            f"Analyze these {len(messages)} messages for emotional content:\n\n"
            f"{_format_messages(messages)}\n\n"
            "Score each emotion from 0-100 based on prevalence.",
            EMOTION_TOOL,
        )
        if arguments is None:
            # Neutral baseline when the model declines to call the tool
            return [EmotionScore(name=name, score=50, percentage=10) for name in EMOTIONS]

        emotions = []
        for item in arguments.get("emotions") or []:
            try:
                emotions.append(EmotionScore(
                    name=sanitize_text(str(item["name"])),
                    score=float(item.get("score") or 0),
                    percentage=float(item.get("percentage") or 0),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise AnalysisError(f"Malformed emotion entry {item!r}: {e}") from e
        return emotions
