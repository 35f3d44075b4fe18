"""
Response cache gateway in front of the meter CRUD API.
"""

from typing import Dict

from fastapi import Request, Response

from shared.base_service import BaseService
from service_cache.app.adapters.upstream_client import UpstreamClient
from service_cache.app.caching.admin import CacheAdmin, create_admin_router
from service_cache.app.caching.middleware import ResponseCacheMiddleware
from service_cache.app.caching.policy import build_default_policy
from service_cache.app.caching.store import create_store
from service_cache.app.caching.warmup_loader import WarmupRouteLoader

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class CacheGatewayService(BaseService):
    """Cache gateway service implementation."""

    def __init__(self):
        super().__init__("cache", 8000)

        @self.app.on_event("startup")
        async def _startup():
            self.logger.info(
                "Cache gateway starting",
                backend=self.config.cache_backend,
                upstream=self.config.upstream_api_url,
                routes=len(self.policy.rules),
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.upstream.close()
            await self.store.close()

        self._setup_cache_routes()

    def _setup_cache_components(self):
        """Build the store, policy, upstream client and admin plane from config."""
        self.store = create_store(
            self.config.cache_backend,
            self.config.redis_url,
            self.config.cache_prefix,
            socket_timeout=self.config.cache_socket_timeout,
        )
        self.policy = build_default_policy(
            default_ttl=self.config.cache_default_ttl,
            health_threshold=self.config.cache_health_threshold,
            warmup_routes=WarmupRouteLoader(self.config.cache_warmup_routes_file).load(),
        )
        self.upstream = UpstreamClient(
            self.config.upstream_api_url,
            timeout=self.config.upstream_timeout_seconds,
        )
        self.admin = CacheAdmin(self.store, self.policy, self.upstream, metrics=self.metrics)

    def _setup_middleware(self):
        """Set up middleware; the response cache runs inside request timing."""
        self._setup_cache_components()
        self.app.add_middleware(
            ResponseCacheMiddleware,
            store=self.store,
            policy=self.policy,
            metrics=self.metrics,
        )
        super()._setup_middleware()

    def _setup_cache_routes(self):
        """Mount the admin surface, then proxy everything else under /api."""
        self.app.include_router(create_admin_router(self.admin), prefix=self.config.admin_prefix)

        @self.app.api_route("/api/{path:path}", methods=PROXY_METHODS)
        async def proxy(path: str, request: Request):
            """Forward the request to the upstream API."""
            upstream_response = await self.upstream.forward(
                request.method,
                request.url.path,
                query=request.query_params.multi_items(),
                headers=dict(request.headers),
                body=await request.body(),
            )
            return Response(
                content=upstream_response.content,
                status_code=upstream_response.status_code,
                headers=upstream_response.headers,
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check cache dependencies."""
        # The gateway keeps serving uncached when the store is down
        store_ok = await self.store.ping()
        return {"cache_store": "ok" if store_ok else "unavailable"}


def create_app():
    """Create FastAPI application."""
    service = CacheGatewayService()
    return service.app


if __name__ == "__main__":
    service = CacheGatewayService()
    service.run()
