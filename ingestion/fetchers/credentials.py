"""
Outbound credential providers for upstream requests.

Providers are injected into the gateway instead of living in module state,
so each application (and each test) owns its own token cache.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CredentialProvider(ABC):
    """Supplies the token sent with outbound upstream requests."""

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        pass

    def invalidate(self):
        """Forget any cached token (e.g. on sign-out)."""
        pass


class StaticCredentialProvider(CredentialProvider):
    """Always returns the configured token."""

    def __init__(self, token: Optional[str]):
        self.token = token

    async def get_token(self) -> Optional[str]:
        return self.token


class RefreshingCredentialProvider(CredentialProvider):
    """
    Caches a token from an async fetch function and refreshes it once it is
    older than ``max_age`` seconds.

    Concurrent callers that arrive while a refresh is running wait for that
    refresh instead of starting their own. A failed refresh falls back to
    ``fallback_token``.
    """

    def __init__(self,
                 fetch: Callable[[], Awaitable[Optional[str]]],
                 max_age: float = 600.0,
                 fallback_token: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.fetch = fetch
        self.max_age = max_age
        self.fallback_token = fallback_token
        self.clock = clock

        self._token: Optional[str] = None
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        return (self._token is not None and self._fetched_at is not None
                and self.clock() - self._fetched_at < self.max_age)

    async def get_token(self) -> Optional[str]:
        if self._is_fresh():
            return self._token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._token

            self.refresh_count += 1
            try:
                token = await self.fetch()
            except Exception as e:
                logger.warning(f"Credential refresh failed, using fallback token: {e}")
                return self.fallback_token

            self._token = token
            self._fetched_at = self.clock()
            return token if token is not None else self.fallback_token

    def invalidate(self):
        self._token = None
        self._fetched_at = None
        logger.info("Credential cache cleared")
