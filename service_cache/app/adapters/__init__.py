"""
Adapters package for the cache gateway.

Wraps the upstream CRUD API: request forwarding for proxied routes and
JSON fetches for cache warmup, with retries and errors mapped to
shared errors.
"""

from .upstream_client import UpstreamClient, UpstreamResponse

__all__ = [
    "UpstreamClient",
    "UpstreamResponse",
]
