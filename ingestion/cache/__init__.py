"""
Response Cache Package

- ResponseCache: Database-backed TTL cache of upstream responses
- CachedGateway: Cache-fronted read path for the gateway
- CacheMaintenanceTask: Periodic sweep of expired entries
"""

from .response_cache import ResponseCache, CacheConfig, DEFAULT_TTLS, fingerprint
from .cached_gateway import CachedGateway, GatewayResult, CacheStatus
from .maintenance import CacheMaintenanceTask

__all__ = [
    "ResponseCache",
    "CacheConfig",
    "DEFAULT_TTLS",
    "fingerprint",
    "CachedGateway",
    "GatewayResult",
    "CacheStatus",
    "CacheMaintenanceTask"
]
