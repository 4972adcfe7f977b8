"""
Upstream Fetchers Package

Contains the components that talk to the social-data provider:
- BaseFetcher: HTTP session lifecycle and circuit breaker
- UpstreamGateway: Action map, response validation, message parsing
- CredentialProvider: Outbound authorization tokens
"""

from .base_fetcher import BaseFetcher, CircuitBreaker, CircuitBreakerConfig, CircuitState
from .credentials import CredentialProvider, StaticCredentialProvider, RefreshingCredentialProvider
from .upstream_gateway import (
    UpstreamGateway,
    UpstreamRequest,
    SocialMessage,
    ACTION_ROUTES,
    supported_actions
)

__all__ = [
    "BaseFetcher",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CredentialProvider",
    "StaticCredentialProvider",
    "RefreshingCredentialProvider",
    "UpstreamGateway",
    "UpstreamRequest",
    "SocialMessage",
    "ACTION_ROUTES",
    "supported_actions"
]
