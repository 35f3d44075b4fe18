"""
Client for the upstream meter CRUD API.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import httpx

from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

# Hop-by-hop headers are never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


class UpstreamResponse:
    """Status, headers and raw body of a proxied call."""

    def __init__(self, status_code: int, headers: Dict[str, str], content: bytes):
        self.status_code = status_code
        self.headers = headers
        self.content = content


class UpstreamClient:
    """Forwards API traffic to the service that owns the data."""

    def __init__(self, base_url: str, timeout: float = 10.0, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.logger = get_logger("cache.upstream")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def forward(
        self,
        method: str,
        path: str,
        query: Iterable[Tuple[str, str]] = (),
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
    ) -> UpstreamResponse:
        """Send one request upstream and return its response verbatim."""
        outgoing = {
            name: value for name, value in (headers or {}).items()
            if name.lower() not in HOP_BY_HOP_HEADERS
        }

        try:
            response = await self._client.request(
                method,
                path,
                params=list(query),
                headers=outgoing,
                content=body or None,
            )
        except httpx.HTTPError as exc:
            self.logger.error("Upstream request failed", method=method, path=path, error=str(exc))
            raise UpstreamError(str(exc) or exc.__class__.__name__, details={"path": path}) from exc

        self.logger.debug("Upstream response", method=method, path=path, status_code=response.status_code)
        return UpstreamResponse(
            status_code=response.status_code,
            headers={
                name: value for name, value in response.headers.items()
                if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "content-encoding"
            },
            content=response.content,
        )

    async def resolve(self, route: str, params: Mapping[str, str]) -> Optional[Any]:
        """Fetch a route's JSON payload for cache warmup; None when there is nothing to cache."""
        try:
            return await self._fetch_json(route, dict(params))
        except RetryError as exc:
            raise UpstreamError(str(exc.last_exception), details={"route": route, "attempts": exc.attempts}) from exc

    @retry_on_exception((httpx.HTTPError,), config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0))
    async def _fetch_json(self, route: str, params: Dict[str, str]) -> Optional[Any]:
        response = await self._client.get(route, params=params)

        if response.status_code == 200:
            try:
                return response.json()
            except ValueError:
                self.logger.warning("Upstream returned non-JSON body", route=route)
                return None

        self.logger.info("Upstream returned nothing to warm", route=route, status_code=response.status_code)
        return None

    async def close(self) -> None:
        await self._client.aclose()
