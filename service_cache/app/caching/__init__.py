"""
Gateway caching package.

The policy decides what is cached, for how long and what a mutation evicts;
the store holds the entries; the middleware applies both to live traffic.
"""

from .admin import CacheAdmin, create_admin_router
from .middleware import ResponseCacheMiddleware
from .policy import CachePolicy, RouteRule, Visibility, WarmupRoute, build_default_policy
from .store import CacheStore, MemoryCacheStore, RedisCacheStore, StatsSnapshot, create_store

__all__ = [
    "CacheAdmin",
    "create_admin_router",
    "ResponseCacheMiddleware",
    "CachePolicy",
    "RouteRule",
    "Visibility",
    "WarmupRoute",
    "build_default_policy",
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "StatsSnapshot",
    "create_store",
]
