"""
Upstream Response Cache

Database-backed cache of upstream responses keyed by a fingerprint of the
action and its parameters. Each action has its own time-to-live; actions
with a TTL of zero are never cached.

The cache is best effort: read failures are reported as misses and write
failures are logged and swallowed so that callers never fail because of it.
"""

import hashlib
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.database.models import ResponseCacheEntry
from core.database.query_helpers import upsert_row, utc_now

logger = logging.getLogger(__name__)

# Seconds each action's response stays fresh
DEFAULT_TTLS: Dict[str, int] = {
    'trending': 60,
    'stats': 30,
    'sentiment': 30,
    'messages': 15,
    'symbols': 300,
    'analytics': 120,
    'analyze': 0,
}


@dataclass
class CacheConfig:
    """Configuration for the response cache."""
    ttls: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TTLS))
    sweep_probability: float = 0.05
    sweep_interval_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings) -> 'CacheConfig':
        ttls = dict(DEFAULT_TTLS)
        ttls.update(settings.cache_ttl_overrides or {})
        return cls(
            ttls=ttls,
            sweep_probability=settings.cache_sweep_probability,
            sweep_interval_seconds=settings.cache_sweep_interval_seconds
        )

    def ttl_for(self, action: str) -> int:
        return self.ttls.get(action, 0)


def fingerprint(action: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Deterministic cache key for an action and its parameters.

    Parameters are sorted by name and null values dropped, so the key does
    not depend on the order in which a caller supplied them.
    """
    pairs = sorted((str(k), str(v)) for k, v in (params or {}).items() if v is not None)
    canonical = f"{action}:" + "&".join(f"{k}={v}" for k, v in pairs)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class ResponseCache:
    """Best-effort TTL cache stored in the upstream_response_cache table."""

    def __init__(self,
                 session_factory: Optional[Callable[[], Session]] = None,
                 config: Optional[CacheConfig] = None,
                 clock: Callable[[], datetime] = utc_now,
                 rng: Callable[[], float] = random.random):
        """
        Initialize the cache.

        Args:
            session_factory: Session factory (defaults to the application's SessionLocal)
            config: TTLs and sweep settings
            clock: Returns the current naive UTC time
            rng: Source of uniform [0, 1) numbers for opportunistic sweeps
        """
        if session_factory is None:
            from config.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.config = config or CacheConfig()
        self.clock = clock
        self.rng = rng

        self.stats = {
            'hits': 0,
            'misses': 0,
            'expired': 0,
            'writes': 0,
            'write_failures': 0,
            'read_failures': 0,
            'sweeps': 0,
            'swept_entries': 0,
        }

    def ttl_for(self, action: str) -> int:
        return self.config.ttl_for(action)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached payload, or None on a miss, an expired entry or a read failure."""
        session = self.session_factory()
        try:
            entry = session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.cache_key == key
            ).one_or_none()

            if entry is None:
                self.stats['misses'] += 1
                logger.debug(f"Cache MISS {key[:12]}")
                return None

            if entry.is_expired(self.clock()):
                session.delete(entry)
                session.commit()
                self.stats['misses'] += 1
                self.stats['expired'] += 1
                logger.debug(f"Cache EXPIRED {key[:12]}")
                return None

            self.stats['hits'] += 1
            logger.debug(f"Cache HIT {key[:12]}")
            return entry.payload
        except SQLAlchemyError as e:
            session.rollback()
            self.stats['read_failures'] += 1
            self.stats['misses'] += 1
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None
        finally:
            session.close()

    def put(self,
            key: str,
            action: str,
            payload: Any,
            symbol: Optional[str] = None,
            ttl_seconds: Optional[int] = None) -> bool:
        """
        Store a payload. Returns True if it was written.

        A TTL of zero (the default for non-cacheable actions) writes nothing.
        """
        ttl = self.ttl_for(action) if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return False

        now = self.clock()
        row = {
            'cache_key': key,
            'action': action,
            'symbol': symbol.upper() if symbol else None,
            'payload': payload,
            'created_at': now,
            'expires_at': now + timedelta(seconds=ttl),
        }

        session = self.session_factory()
        try:
            upsert_row(session, ResponseCacheEntry, row, ('cache_key',))
            session.commit()
            self.stats['writes'] += 1
            return True
        except (SQLAlchemyError, TypeError, ValueError) as e:
            # Unserializable payloads surface as TypeError/ValueError from the JSON column
            session.rollback()
            self.stats['write_failures'] += 1
            logger.warning(f"Cache write failed for {action}: {e}")
            return False
        finally:
            session.close()

    def sweep(self) -> int:
        """Delete every expired entry. Returns the number of rows removed."""
        session = self.session_factory()
        try:
            deleted = session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.expires_at <= self.clock()
            ).delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Cache sweep failed: {e}")
            return 0
        finally:
            session.close()

        self.stats['sweeps'] += 1
        self.stats['swept_entries'] += deleted
        if deleted:
            logger.info(f"Cache sweep removed {deleted} expired entries")
        return deleted

    def maybe_sweep(self) -> Optional[int]:
        """Sweep with the configured probability; returns the count if a sweep ran."""
        if self.rng() < self.config.sweep_probability:
            return self.sweep()
        return None

    def invalidate_symbol(self, symbol: str) -> int:
        """Drop every entry stored for a symbol."""
        session = self.session_factory()
        try:
            deleted = session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.symbol == symbol.upper()
            ).delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()

        logger.info(f"Invalidated {deleted} cache entries for {symbol.upper()}")
        return deleted

    def clear(self) -> int:
        session = self.session_factory()
        try:
            deleted = session.query(ResponseCacheEntry).delete(synchronize_session=False)
            session.commit()
            return deleted
        finally:
            session.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self.stats['hits'] + self.stats['misses']
        return {
            **self.stats,
            'hit_rate': self.stats['hits'] / lookups if lookups else 0.0,
        }
