"""
Read-through response cache middleware.

GET requests on cacheable routes are served from the store when possible and
populate it otherwise. Successful mutations evict the key patterns the policy
maps them to. Store failures never fail a request: the middleware logs them
and serves the request uncached.

Private responses are partitioned per caller. Requests for private routes
that carry neither an attached user nor credentials are never cached.
"""

import hashlib
import json
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from shared.errors import StoreUnavailable
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from .policy import CachePolicy, MUTATING_METHODS
from .store import CacheStore, MISSING

CACHE_STATUS_HEADER = "X-Cache"
TOKEN_PARTITION_PREFIX = "token-"

# Recomputed by JSONResponse when the body is re-rendered
_RENDERED_HEADERS = frozenset({"content-length", "content-type"})


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Policy-driven response cache in front of the API routes."""

    def __init__(
        self,
        app: ASGIApp,
        store: CacheStore,
        policy: CachePolicy,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(app)
        self.store = store
        self.policy = policy
        self.metrics = metrics
        self.logger = get_logger("cache.middleware")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        method = request.method.upper()
        path = request.url.path

        if method in MUTATING_METHODS:
            response = await call_next(request)
            if response.status_code < 400:
                await self._invalidate(path)
            return response

        if not self.policy.is_cacheable(method, path):
            return await call_next(request)

        return await self._read_through(request, call_next, path)

    async def _read_through(self, request: Request, call_next: RequestResponseEndpoint, path: str) -> Response:
        user_id = None
        if not self.policy.is_public(path):
            user_id = self._partition_for(request)
            if user_id is None:
                self.logger.debug("Anonymous request for private route, serving uncached", path=path)
                self._count("cache_bypass_total", reason="anonymous")
                return await call_next(request)
        set_user_context(user_id)
        key = self.policy.key_for(path, request.query_params.multi_items(), user_id)
        ttl = self.policy.ttl_for(path)
        headers = self.policy.headers_for(path, ttl)
        route = self.policy.route_label(path)

        store_available = True
        cached = MISSING
        try:
            cached = await self.store.get(key, MISSING)
        except StoreUnavailable as exc:
            store_available = False
            self.logger.warning("Cache store unavailable, serving uncached", key=key, error=exc.message)
            self._count("cache_bypass_total", reason="store_unavailable")

        if cached is not MISSING:
            self.logger.debug("Cache hit", key=key, route=route)
            self._count("cache_hits_total", route=route)
            return JSONResponse(cached, status_code=200, headers={**headers, CACHE_STATUS_HEADER: "HIT"})

        self._count("cache_misses_total", route=route)
        response = await call_next(request)
        if response.status_code != 200:
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        try:
            payload = self._decode_body(response, body)
        except ValueError as exc:
            self.logger.warning("Response body not cacheable", key=key, error=str(exc))
            self._count("cache_bypass_total", reason="undecodable_body")
            return Response(
                content=body,
                status_code=response.status_code,
                headers=dict(response.headers),
                background=response.background,
            )

        if store_available:
            try:
                await self.store.set(key, payload, ttl)
                self.logger.debug("Cached response", key=key, ttl=ttl)
            except StoreUnavailable as exc:
                self.logger.warning("Failed to populate cache", key=key, error=exc.message)
                self._count("cache_store_errors_total", operation="set")

        cached_response = JSONResponse(
            payload,
            status_code=response.status_code,
            headers={**headers, CACHE_STATUS_HEADER: "MISS"},
            background=response.background,
        )
        for name, value in response.headers.items():
            if name.lower() not in _RENDERED_HEADERS and name not in cached_response.headers:
                cached_response.headers.append(name, value)
        return cached_response

    async def _invalidate(self, path: str) -> int:
        patterns = self.policy.invalidation_patterns_for(path)
        if not patterns:
            return 0

        resource = self.policy.resource_for(path) or "unknown"
        total = 0
        for pattern in patterns:
            try:
                total += await self.store.clear_by_pattern(pattern)
            except StoreUnavailable as exc:
                self.logger.warning("Cache invalidation skipped", pattern=pattern, error=exc.message)
                self._count("cache_store_errors_total", operation="clear_pattern")

        if total:
            self._count("cache_invalidations_total", amount=total, resource=resource)
        self.logger.info("Invalidated cache after mutation", path=path, patterns=patterns, deleted=total)
        return total

    @staticmethod
    def _decode_body(response: Response, body: bytes) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            raise ValueError(f"unsupported content type {content_type!r}")
        return json.loads(body)

    @classmethod
    def _partition_for(cls, request: Request) -> Optional[str]:
        """
        Cache partition for a private response.

        The user id attached by an authentication layer wins. Without one the
        credentials decide: callers presenting different Authorization headers
        never share an entry. None means the caller is anonymous.
        """
        user_id = cls._get_user_id(request)
        if user_id:
            return user_id

        authorization = request.headers.get("authorization", "").strip()
        if not authorization:
            return None
        digest = hashlib.sha256(authorization.encode("utf-8")).hexdigest()
        return f"{TOKEN_PARTITION_PREFIX}{digest}"

    @staticmethod
    def _get_user_id(request: Request) -> Optional[str]:
        """User id attached by the authentication layer, if any."""
        user_info = getattr(request.state, "user_info", None)
        if isinstance(user_info, dict) and user_info.get("user_id"):
            return str(user_info["user_id"])

        user_id = getattr(request.state, "user_id", None)
        return str(user_id) if user_id else None

    def _count(self, metric: str, amount: float = 1, **labels: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, amount, **labels)
