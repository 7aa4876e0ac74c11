"""Outbound HTTP: pooled clients, rate limiting and the cached remote client."""

from .external_api import CachedRemoteClient
from .http_client_factory import HttpClientFactory
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimiterRegistry

__all__ = [
    "CachedRemoteClient",
    "HttpClientFactory",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimiterRegistry",
]
