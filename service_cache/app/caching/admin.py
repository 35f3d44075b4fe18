"""
Operational control plane for the response cache.

Each operation is a thin composition of the store and the policy. The router
wraps results in the ``{status, message?, data?}`` envelope.
"""

from typing import Any, Dict, List, Mapping, Optional, Protocol

from fastapi import APIRouter
from pydantic import BaseModel

from shared.errors import StoreUnavailable, UpstreamError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .policy import CachePolicy
from .store import CacheStore, StatsSnapshot

HEALTHY = "healthy"
DEGRADED = "degraded"


class StatsReport(StatsSnapshot):
    """Store statistics plus connection state and the TTL table."""

    is_connected: bool = True
    default_ttl: int = 0
    cache_ttls: Dict[str, int] = {}


class HealthReport(BaseModel):
    status: str
    hit_ratio: float
    is_connected: bool


class KeyInfo(BaseModel):
    key: str
    exists: bool
    ttl: int
    value: Any = None


class WarmupOutcome(BaseModel):
    route: str
    params: Dict[str, str]
    key: str
    result: str


class WarmupSummary(BaseModel):
    warmed_routes: int
    routes: List[WarmupOutcome] = []


class InvalidationResult(BaseModel):
    operation: str
    patterns: List[str]
    invalidated_keys: int


class ClearPatternRequest(BaseModel):
    pattern: Optional[str] = None


class InvalidateRequest(BaseModel):
    operation: Optional[str] = None


class WarmupResolver(Protocol):
    """Owner of a route's data, used to pre-populate the cache."""

    async def resolve(self, route: str, params: Mapping[str, str]) -> Any:
        ...


class CacheAdmin:
    """Stats, health, clearing, warmup and inspection over one store."""

    def __init__(
        self,
        store: CacheStore,
        policy: CachePolicy,
        resolver: Optional[WarmupResolver] = None,
        *,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.policy = policy
        self.resolver = resolver
        self.metrics = metrics
        self.logger = get_logger("cache.admin")

    async def stats(self) -> StatsReport:
        """Store statistics; an unreachable store is reported, not raised."""
        cache_ttls = {rule.shape: rule.ttl_seconds for rule in self.policy.rules}
        try:
            snapshot = await self.store.stats()
        except StoreUnavailable as exc:
            self.logger.warning("Cache stats unavailable", error=exc.message)
            return StatsReport(is_connected=False, default_ttl=self.policy.default_ttl, cache_ttls=cache_ttls)

        return StatsReport(
            **snapshot.model_dump(),
            is_connected=True,
            default_ttl=self.policy.default_ttl,
            cache_ttls=cache_ttls,
        )

    async def health(self) -> HealthReport:
        try:
            snapshot = await self.store.stats()
        except StoreUnavailable as exc:
            self.logger.warning("Cache health check failed", error=exc.message)
            return HealthReport(status=DEGRADED, hit_ratio=0.0, is_connected=False)

        status = HEALTHY if snapshot.hit_ratio >= self.policy.health_threshold else DEGRADED
        return HealthReport(status=status, hit_ratio=snapshot.hit_ratio, is_connected=True)

    async def clear(self) -> bool:
        result = await self.store.flush()
        self.logger.info("Cache flushed")
        return result

    async def clear_pattern(self, pattern: Optional[str]) -> int:
        if not pattern or not pattern.strip():
            raise ValidationError("Pattern is required")

        deleted = await self.store.clear_by_pattern(pattern)
        self.logger.info("Cache pattern cleared", pattern=pattern, deleted=deleted)
        return deleted

    async def warmup(self) -> WarmupSummary:
        """Resolve each warmup route in priority order and store its data."""
        if self.resolver is None:
            self.logger.warning("Cache warmup requested but no resolver is configured; skipping")
            return WarmupSummary(warmed_routes=0)

        outcomes: List[WarmupOutcome] = []
        warmed = 0
        for route in self.policy.warmup_routes():
            params = dict(route.params)
            key = self.policy.key_for(route.route, params)

            try:
                data = await self.resolver.resolve(route.route, params)
            except UpstreamError as exc:
                self.logger.error("Failed to warm cache route", route=route.route, params=params, error=exc.message)
                outcomes.append(WarmupOutcome(route=route.route, params=params, key=key, result="error"))
                self._count_warm("error")
                continue

            if data is None:
                outcomes.append(WarmupOutcome(route=route.route, params=params, key=key, result="empty"))
                self._count_warm("empty")
                continue

            await self.store.set(key, data, self.policy.ttl_for(route.route))
            warmed += 1
            outcomes.append(WarmupOutcome(route=route.route, params=params, key=key, result="warmed"))
            self._count_warm("warmed")

        self.logger.info("Cache warmup completed", warmed=warmed, planned=len(outcomes))
        return WarmupSummary(warmed_routes=warmed, routes=outcomes)

    async def invalidate(self, operation: Optional[str]) -> InvalidationResult:
        if not operation or not operation.strip():
            raise ValidationError("Operation is required")

        patterns = self.policy.invalidation_patterns_for(operation)
        total = 0
        for pattern in patterns:
            total += await self.store.clear_by_pattern(pattern)

        self.logger.info("Cache invalidated", operation=operation, patterns=patterns, deleted=total)
        return InvalidationResult(operation=operation, patterns=patterns, invalidated_keys=total)

    async def key_info(self, key: str) -> KeyInfo:
        exists = await self.store.has(key)
        ttl = await self.store.ttl_remaining(key)
        value = await self.store.get(key) if exists else None
        return KeyInfo(key=key, exists=exists, ttl=ttl, value=value)

    def _count_warm(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_warm_total", result=result)


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Success envelope for admin endpoints."""
    payload: Dict[str, Any] = {"status": "success"}
    if message:
        payload["message"] = message
    if data is not None:
        payload["data"] = data
    return payload


def create_admin_router(admin: CacheAdmin) -> APIRouter:
    """Admin endpoints; mount under the configured admin prefix."""
    router = APIRouter(tags=["cache"])

    @router.get("/stats")
    async def cache_stats():
        """Get cache statistics."""
        report = await admin.stats()
        return success_response(report.model_dump())

    @router.get("/health")
    async def cache_health():
        """Classify cache health from the hit ratio."""
        report = await admin.health()
        return success_response(report.model_dump())

    @router.post("/clear")
    async def cache_clear():
        """Flush every cached entry."""
        await admin.clear()
        return success_response(message="Cache cleared successfully")

    @router.post("/clear-pattern")
    async def cache_clear_pattern(payload: Optional[ClearPatternRequest] = None):
        """Delete keys matching a glob pattern."""
        pattern = payload.pattern if payload else None
        deleted = await admin.clear_pattern(pattern)
        return success_response(
            {"pattern": pattern, "cleared_keys": deleted},
            message="Cache pattern cleared successfully",
        )

    @router.post("/warmup")
    async def cache_warmup():
        """Pre-populate high-traffic routes."""
        summary = await admin.warmup()
        return success_response(summary.model_dump(), message="Cache warmup completed")

    @router.post("/invalidate")
    async def cache_invalidate(payload: Optional[InvalidateRequest] = None):
        """Evict the patterns mapped to an operation or path."""
        result = await admin.invalidate(payload.operation if payload else None)
        return success_response(result.model_dump(), message="Cache invalidated successfully")

    @router.get("/key/{key:path}")
    async def cache_key_info(key: str):
        """Inspect a single cache key."""
        info = await admin.key_info(key)
        return success_response(info.model_dump())

    return router
