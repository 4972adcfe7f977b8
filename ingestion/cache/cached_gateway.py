"""
Cache-fronted read path for the upstream gateway.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from ingestion.fetchers.upstream_gateway import UpstreamGateway
from .response_cache import ResponseCache, fingerprint

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    """Value of the X-Cache response header."""
    HIT = "HIT"
    MISS = "MISS"
    BYPASS = "BYPASS"


@dataclass
class GatewayResult:
    payload: Any
    cache_status: CacheStatus
    status: int = 200


class CachedGateway:
    """
    Serves gateway actions from the response cache when possible.

    Actions with a zero TTL (and any non-GET action) bypass the cache
    entirely; they are neither looked up nor stored. Cache reads and writes
    run in a worker thread so the event loop never blocks on the database.
    """

    def __init__(self, gateway: UpstreamGateway, cache: ResponseCache):
        self.gateway = gateway
        self.cache = cache

    async def query(self,
                    action: str,
                    params: Optional[Mapping[str, Any]] = None,
                    body: Optional[Any] = None) -> GatewayResult:
        """
        Answer an action from cache or upstream.

        Raises:
            GatewayError: for invalid actions and upstream failures; failures are never cached
        """
        request = self.gateway.build_request(action, params, body)
        ttl = self.cache.ttl_for(action)

        if ttl <= 0 or request.method != 'GET':
            payload = await self.gateway.execute(request)
            return GatewayResult(payload, CacheStatus.BYPASS)

        key = fingerprint(action, request.params)
        cached = await asyncio.to_thread(self.cache.get, key)
        if cached is not None:
            return GatewayResult(cached, CacheStatus.HIT)

        payload = await self.gateway.execute(request)
        await asyncio.to_thread(
            self.cache.put, key, action, payload, request.params.get('symbol'), ttl
        )
        await asyncio.to_thread(self.cache.maybe_sweep)

        return GatewayResult(payload, CacheStatus.MISS)
