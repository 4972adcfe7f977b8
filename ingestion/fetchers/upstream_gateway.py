"""
Upstream Social-Data Gateway

Translates high-level actions (messages, symbols, stats, analytics,
sentiment, trending, analyze) into requests against the rate-limited
social-data provider, attaches outbound credentials and validates the
responses before anything is cached or persisted.

Features:
- Fixed action map with per-action default parameters
- Response validation (HTTP errors, HTML error pages, malformed JSON)
- Circuit breaker tripping on 429, 5xx and non-JSON bodies
- Message parsing for the backfill pipeline
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp
import pandas as pd

from .base_fetcher import BaseFetcher, CircuitBreakerConfig
from .credentials import CredentialProvider, StaticCredentialProvider
from ingestion.errors import (
    GatewayError, InvalidActionError, InvalidUpstreamJSONError,
    RateLimitedError, UpstreamHTTPError, UpstreamUnavailableError
)

logger = logging.getLogger(__name__)

QUERY_PATH = '/functions/v1/stocktwits-query'
SENTIMENT_PATH = '/functions/v1/stocktwits-sentiment'
TRENDING_PATH = '/functions/v1/stocktwits-trending'
ANALYZE_PATH = '/functions/v1/analyze-sentiment'


@dataclass(frozen=True)
class ActionRoute:
    """How one gateway action maps onto an upstream endpoint."""
    path: str
    method: str = 'GET'
    fixed: Tuple[Tuple[str, str], ...] = ()
    passthrough: Tuple[str, ...] = ()
    defaults: Tuple[Tuple[str, str], ...] = ()
    default_days: Optional[int] = None  # start/end default to the last N days


ACTION_ROUTES: Dict[str, ActionRoute] = {
    'messages': ActionRoute(
        QUERY_PATH,
        fixed=(('action', 'messages'), ('primaryOnly', 'true')),
        passthrough=('symbol', 'cursor_created_at', 'cursor_id'),
        defaults=(('limit', '50'),),
        default_days=7
    ),
    'symbols': ActionRoute(QUERY_PATH, fixed=(('action', 'symbols'),)),
    'stats': ActionRoute(QUERY_PATH, fixed=(('action', 'stats'),), passthrough=('symbol',)),
    'analytics': ActionRoute(
        QUERY_PATH,
        fixed=(('action', 'analytics'),),
        passthrough=('type', 'symbol'),
        default_days=30
    ),
    'sentiment': ActionRoute(SENTIMENT_PATH, passthrough=('symbol',)),
    'trending': ActionRoute(TRENDING_PATH),
    'analyze': ActionRoute(ANALYZE_PATH, method='POST'),
}


def supported_actions() -> List[str]:
    return list(ACTION_ROUTES)


@dataclass
class UpstreamRequest:
    """A fully resolved upstream call."""
    action: str
    method: str
    path: str
    params: Dict[str, str] = field(default_factory=dict)
    body: Optional[Any] = None

    def url(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}{self.path}"


@dataclass
class SocialMessage:
    """A single social-media message as returned by the messages action."""
    id: Any
    body: str
    created_at: Optional[datetime] = None
    sentiment: Optional[str] = None  # 'bullish', 'bearish' or None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SocialMessage':
        sentiment = data.get('sentiment')
        if isinstance(sentiment, Mapping):
            sentiment = sentiment.get('basic')
        if isinstance(sentiment, str):
            sentiment = sentiment.strip().lower() or None
        else:
            sentiment = None

        created_at = None
        raw_created = data.get('created_at')
        if raw_created:
            try:
                created_at = pd.Timestamp(raw_created).to_pydatetime()
            except (ValueError, TypeError):
                logger.debug(f"Unparseable message timestamp: {raw_created!r}")

        return cls(
            id=data.get('id'),
            body=data.get('body') or '',
            created_at=created_at,
            sentiment=sentiment
        )


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


def _extract_messages(payload: Any) -> List[Mapping[str, Any]]:
    """Accept both {'messages': [...]} and {'data': {'messages': [...]}} shapes."""
    if not isinstance(payload, Mapping):
        return []
    messages = payload.get('messages')
    if messages is None:
        data = payload.get('data')
        if isinstance(data, Mapping):
            messages = data.get('messages')
        elif isinstance(data, list):
            messages = data
    if not isinstance(messages, list):
        return []
    return [m for m in messages if isinstance(m, Mapping)]


class UpstreamGateway(BaseFetcher):
    """
    Gateway to the upstream social-data provider.

    Every call goes through the circuit breaker; there are no automatic
    retries.
    """

    def __init__(self,
                 base_url: Optional[str] = None,
                 credentials: Optional[CredentialProvider] = None,
                 circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
                 timeout: Optional[float] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the gateway.

        Args:
            base_url: Upstream base URL (defaults to settings)
            credentials: Provider for the outbound x-api-key header
            circuit_breaker_config: Circuit breaker configuration
            timeout: Request timeout in seconds
            session: Shared aiohttp session
            clock: Returns the current UTC time, used for default date ranges
        """
        if base_url is None or credentials is None or timeout is None:
            from config.settings import settings
            base_url = base_url or settings.upstream_base_url
            credentials = credentials or StaticCredentialProvider(settings.upstream_api_key)
            timeout = timeout if timeout is not None else settings.upstream_timeout

        super().__init__(circuit_breaker_config=circuit_breaker_config,
                         timeout=timeout, session=session)
        self.base_url = base_url
        self.credentials = credentials
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # Request construction

    def build_request(self,
                      action: str,
                      params: Optional[Mapping[str, Any]] = None,
                      body: Optional[Any] = None) -> UpstreamRequest:
        """
        Resolve an action and caller parameters into an upstream request.

        Raises:
            InvalidActionError: if the action is not in the action map
        """
        route = ACTION_ROUTES.get(action or '')
        if route is None:
            raise InvalidActionError(f"Unknown action: {action!r}")

        params = {k: v for k, v in (params or {}).items() if v is not None and v != ''}
        query: Dict[str, str] = dict(route.fixed)

        for name in route.passthrough:
            if name in params:
                query[name] = str(params[name])
        for name, default in route.defaults:
            query[name] = str(params.get(name, default))

        if route.default_days is not None:
            now = self.clock()
            query['start'] = str(params.get('start') or (now - timedelta(days=route.default_days)).date().isoformat())
            query['end'] = str(params.get('end') or now.date().isoformat())

        return UpstreamRequest(
            action=action,
            method=route.method,
            path=route.path,
            params=query,
            body=body if route.method == 'POST' else None
        )

    # Execution

    def _trips_circuit(self, error: Exception) -> bool:
        if isinstance(error, (UpstreamUnavailableError, InvalidUpstreamJSONError)):
            return True
        if isinstance(error, UpstreamHTTPError):
            return error.upstream_status == 429 or error.upstream_status >= 500
        return super()._trips_circuit(error)

    async def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        token = await self.credentials.get_token()
        if token:
            headers['x-api-key'] = token
        return headers

    @staticmethod
    def parse_response(status: int, content_type: str, text: str) -> Any:
        """
        Validate an upstream response and return the decoded JSON payload.

        Raises:
            RateLimitedError: upstream answered 429
            UpstreamHTTPError: upstream answered with another status >= 400
            UpstreamUnavailableError: body is not JSON (e.g. an HTML error page)
            InvalidUpstreamJSONError: body claims to be JSON but does not parse
        """
        snippet = (text or '')[:200]
        if status == 429:
            raise RateLimitedError(f"Upstream rate limited: {snippet}")
        if status >= 400:
            raise UpstreamHTTPError(status, f"Upstream returned {status}: {snippet}")

        stripped = (text or '').lstrip()
        if 'json' not in (content_type or '').lower() or stripped.startswith('<'):
            raise UpstreamUnavailableError(
                f"Upstream returned non-JSON response ({content_type or 'no content type'})"
            )

        try:
            return json.loads(text)
        except ValueError as e:
            raise InvalidUpstreamJSONError(f"Upstream JSON could not be parsed: {e}") from e

    async def execute(self, request: UpstreamRequest) -> Any:
        """Send a resolved request and return the validated payload."""
        url = request.url(self.base_url)
        kwargs: Dict[str, Any] = {'params': request.params, 'headers': await self._headers()}
        if request.body is not None:
            kwargs['json'] = request.body

        async with self._guarded_request():
            response = None
            try:
                response = await self._make_request(request.method, url, **kwargs)
                text = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise UpstreamUnavailableError(f"Upstream request failed: {e}") from e
            finally:
                if response is not None:
                    response.release()

            payload = self.parse_response(
                response.status, response.headers.get('Content-Type', ''), text
            )

        logger.debug(f"Upstream {request.action} -> {response.status}")
        return payload

    async def call(self,
                   action: str,
                   params: Optional[Mapping[str, Any]] = None,
                   body: Optional[Any] = None) -> Any:
        """Resolve and execute an action in one step."""
        return await self.execute(self.build_request(action, params, body))

    async def fetch_messages(self,
                             symbol: str,
                             start: datetime,
                             end: datetime,
                             limit: int = 500) -> List[SocialMessage]:
        """
        Fetch raw messages for a symbol within [start, end].

        Raises:
            GatewayError: on any upstream failure
        """
        payload = await self.call('messages', {
            'symbol': symbol.upper(),
            'limit': limit,
            'start': _format_timestamp(start),
            'end': _format_timestamp(end),
        })
        messages = [SocialMessage.from_dict(m) for m in _extract_messages(payload)]
        logger.info(f"Fetched {len(messages)} messages for {symbol.upper()} "
                    f"between {_format_timestamp(start)} and {_format_timestamp(end)}")
        return messages

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the upstream provider."""
        try:
            await self.call('symbols')
            return {'status': 'ok', 'circuit_breaker': self.circuit_breaker.get_stats()}
        except GatewayError as e:
            return {
                'status': 'error',
                'error': e.to_dict(),
                'circuit_breaker': self.circuit_breaker.get_stats()
            }
