"""
Route-aware cache policy.

The policy is built once at startup and never mutated; every lookup is a pure
function of the request path. Route shapes use ``{placeholder}`` segments and
match a path when they are a segment-wise prefix of it, the longest shape
winning. That way ``/api/meters/{id}/balance`` overrides ``/api/meters/{id}``
while unknown sub-resources inherit their parent's rule.
"""

import fnmatch
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from enum import Enum
from types import MappingProxyType
from urllib.parse import quote
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


API_ROOT = "api"
KEY_SEPARATOR = ":"
USER_KEY_PREFIX = "user"

DEFAULT_TTL = 300
DEFAULT_HEALTH_THRESHOLD = 50.0

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

QueryParams = Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None]


class Visibility(str, Enum):
    """Who may share a cached representation."""
    PUBLIC = "public"
    PRIVATE = "private"


@dataclass(frozen=True)
class RouteRule:
    """Caching rule for one route shape."""

    shape: str
    ttl_seconds: int
    visibility: Visibility = Visibility.PRIVATE
    cacheable: bool = True

    @property
    def segments(self) -> Tuple[str, ...]:
        return tuple(part for part in self.shape.split("/") if part)

    def matches(self, path_segments: Tuple[str, ...]) -> bool:
        """True when the shape is a segment-wise prefix of the path."""
        shape_segments = self.segments
        if len(shape_segments) > len(path_segments):
            return False
        for expected, actual in zip(shape_segments, path_segments):
            if expected.startswith("{") and expected.endswith("}"):
                continue
            if expected != actual:
                return False
        return True

    def specificity(self) -> Tuple[int, int]:
        literals = sum(1 for part in self.segments if not part.startswith("{"))
        return len(self.segments), literals


@dataclass(frozen=True)
class WarmupRoute:
    """A route worth pre-populating, lowest priority value first."""

    route: str
    params: Mapping[str, str] = field(default_factory=dict)
    priority: int = 100


def normalize_segments(path: str) -> Tuple[str, ...]:
    return tuple(part for part in path.split("/") if part)


def encode_key_part(value: Any) -> str:
    """Percent-encode a key component so separators inside it stay literal."""
    return quote(str(value), safe="")


def resource_pattern(resource: str) -> str:
    """Glob matching every cached key of a resource, with or without a user partition."""
    return f"*{API_ROOT}{KEY_SEPARATOR}{resource}*"


def _query_pairs(query_params: QueryParams) -> List[Tuple[str, str]]:
    if not query_params:
        return []

    items = query_params.items() if isinstance(query_params, Mapping) else query_params
    pairs: List[Tuple[str, str]] = []
    for name, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), str(item)) for item in value)
        else:
            pairs.append((str(name), str(value)))
    return sorted(pairs)


@dataclass(frozen=True)
class CachePolicy:
    """Immutable cache policy shared by every request."""

    rules: Tuple[RouteRule, ...]
    excluded: Tuple[str, ...]
    cascades: Mapping[str, Tuple[str, ...]]
    operations: Mapping[str, str]
    warmup: Tuple[WarmupRoute, ...] = ()
    default_ttl: int = DEFAULT_TTL
    health_threshold: float = DEFAULT_HEALTH_THRESHOLD

    def match(self, path: str) -> Optional[RouteRule]:
        """Most specific rule whose shape prefixes path."""
        segments = normalize_segments(path)
        candidates = [rule for rule in self.rules if rule.matches(segments)]
        if not candidates:
            return None
        return max(candidates, key=lambda rule: rule.specificity())

    def route_label(self, path: str) -> str:
        rule = self.match(path)
        return rule.shape if rule else "unmatched"

    def ttl_for(self, path: str) -> int:
        rule = self.match(path)
        return rule.ttl_seconds if rule else self.default_ttl

    def is_excluded(self, path: str) -> bool:
        normalized = "/" + "/".join(normalize_segments(path))
        return any(fnmatch.fnmatchcase(normalized, pattern) for pattern in self.excluded)

    def is_cacheable(self, method: str, path: str) -> bool:
        if method.upper() != "GET":
            return False
        if self.is_excluded(path):
            return False
        rule = self.match(path)
        return rule is not None and rule.cacheable

    def is_public(self, path: str) -> bool:
        rule = self.match(path)
        return rule is not None and rule.visibility == Visibility.PUBLIC

    def key_for(self, path: str, query_params: QueryParams = None, user_id: Optional[str] = None) -> str:
        """
        Deterministic cache key.

        ``/api/meters/`` + ``{"offset": 0, "limit": 10}`` + ``"u1"`` becomes
        ``user:u1:api:meters:limit=10&offset=0``. Every component is
        percent-encoded, so ``:``, ``&`` and ``=`` inside a segment, name or
        value cannot make two requests share a slot.
        """
        key = KEY_SEPARATOR.join(encode_key_part(part) for part in normalize_segments(path))

        pairs = _query_pairs(query_params)
        if pairs:
            key += KEY_SEPARATOR + "&".join(
                f"{encode_key_part(name)}={encode_key_part(value)}" for name, value in pairs
            )

        if user_id:
            key = f"{USER_KEY_PREFIX}{KEY_SEPARATOR}{encode_key_part(user_id)}{KEY_SEPARATOR}{key}"
        return key

    def resource_for(self, path: str) -> Optional[str]:
        segments = normalize_segments(path)
        if segments and segments[0] == API_ROOT:
            segments = segments[1:]
        return segments[0] if segments else None

    def _resource_for_operation(self, operation: str) -> Optional[str]:
        entity, _, action = operation.rpartition("_")
        if not entity or not action:
            return None
        return self.operations.get(entity)

    def invalidation_patterns_for(self, target: str) -> List[str]:
        """
        Globs to evict after a mutation.

        target is either a request path (``/api/meters/12``) or an operation
        name (``meter_update``). Unknown targets evict nothing.
        """
        if not target:
            return []

        if target.startswith("/"):
            resource = self.resource_for(target)
        else:
            resource = self._resource_for_operation(target)

        if resource is None:
            return []
        return [resource_pattern(name) for name in self.cascades.get(resource, ())]

    def headers_for(self, path: str, ttl: int, now: Optional[float] = None) -> Dict[str, str]:
        if self.is_public(path):
            issued_at = time.time() if now is None else now
            return {
                "Cache-Control": f"public, max-age={ttl}",
                "Expires": formatdate(issued_at + ttl, usegmt=True),
                "Vary": "Accept-Encoding",
            }
        return {
            "Cache-Control": f"private, max-age={ttl}",
            "Vary": "Authorization, Accept-Encoding",
        }

    def warmup_routes(self) -> List[WarmupRoute]:
        return sorted(self.warmup, key=lambda route: route.priority)

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """Route shape -> ttl, cacheability, visibility and eviction patterns."""
        return {
            rule.shape: {
                "ttl_seconds": rule.ttl_seconds,
                "cacheable": rule.cacheable and not self.is_excluded(rule.shape),
                "visibility": rule.visibility.value,
                "invalidation_patterns": self.invalidation_patterns_for(rule.shape),
            }
            for rule in self.rules
        }


DEFAULT_ROUTE_RULES: Tuple[RouteRule, ...] = (
    RouteRule("/api/meters", 300),
    RouteRule("/api/meters/{id}", 300),
    RouteRule("/api/meters/{id}/consumption", 600),
    RouteRule("/api/meters/{id}/balance", 60),
    RouteRule("/api/meters/{id}/status", 30),
    RouteRule("/api/meters/{id}/credits", 300),
    RouteRule("/api/tariffs", 3600, Visibility.PUBLIC),
    RouteRule("/api/tariffs/{id}", 3600, Visibility.PUBLIC),
    RouteRule("/api/service-fees", 3600, Visibility.PUBLIC),
    RouteRule("/api/service-fees/{id}", 3600, Visibility.PUBLIC),
    RouteRule("/api/properties", 1800),
    RouteRule("/api/properties/{id}", 1800),
    RouteRule("/api/users/{id}", 900),
    RouteRule("/api/payments", 300),
)

# Auth, device actions, live streams and the cache admin surface itself
DEFAULT_EXCLUSIONS: Tuple[str, ...] = (
    "/api/auth",
    "/api/auth/*",
    "/api/meters/*/ota*",
    "/api/meters/*/control*",
    "/api/meters/*/valve*",
    "/api/devices/*/firmware*",
    "/api/valves*",
    "/api/realtime*",
    "/api/stream*",
    "/api/cache*",
)

# A property's cached view embeds its meters and a meter's embeds its property;
# payments and credit top-ups move a meter's balance.
DEFAULT_CASCADES: Dict[str, Tuple[str, ...]] = {
    "meters": ("meters", "properties"),
    "properties": ("properties", "meters"),
    "payments": ("payments", "meters"),
    "credits": ("credits", "meters"),
    "tariffs": ("tariffs",),
    "service-fees": ("service-fees",),
    "users": ("users",),
    "customers": ("customers",),
}

DEFAULT_OPERATIONS: Dict[str, str] = {
    "meter": "meters",
    "property": "properties",
    "payment": "payments",
    "credit": "credits",
    "tariff": "tariffs",
    "service_fee": "service-fees",
    "user": "users",
    "customer": "customers",
}

DEFAULT_WARMUP_ROUTES: Tuple[WarmupRoute, ...] = (
    WarmupRoute("/api/tariffs", {"limit": "50", "offset": "0"}, priority=1),
    WarmupRoute("/api/service-fees", {"limit": "50", "offset": "0"}, priority=2),
    WarmupRoute("/api/meters", {"limit": "20", "offset": "0"}, priority=3),
    WarmupRoute("/api/meters", {"limit": "20", "offset": "0", "status": "active"}, priority=4),
    WarmupRoute("/api/meters", {"limit": "20", "offset": "0", "status": "inactive"}, priority=5),
)


def build_default_policy(
    *,
    default_ttl: int = DEFAULT_TTL,
    health_threshold: float = DEFAULT_HEALTH_THRESHOLD,
    warmup_routes: Optional[Iterable[WarmupRoute]] = None,
) -> CachePolicy:
    """Build the process-wide policy."""
    return CachePolicy(
        rules=DEFAULT_ROUTE_RULES,
        excluded=DEFAULT_EXCLUSIONS,
        cascades=MappingProxyType(dict(DEFAULT_CASCADES)),
        operations=MappingProxyType(dict(DEFAULT_OPERATIONS)),
        warmup=tuple(warmup_routes) if warmup_routes is not None else DEFAULT_WARMUP_ROUTES,
        default_ttl=default_ttl,
        health_threshold=health_threshold,
    )
