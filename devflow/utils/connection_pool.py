"""
Pooled HTTP/2 client for the platform's GraphQL endpoint.

One ``httpx.AsyncClient`` is opened lazily and shared by every Projects V2
call so bulk provisioning reuses connections instead of opening one per
mutation. The pool counts requests and remembers the last status it saw,
which feeds the provider health check.
"""

import asyncio
import time
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)


class HTTPConnectionPool:
    """Lazily opened, shared ``httpx.AsyncClient``.

    Args:
        base_url: Scheme and host requests are resolved against
        max_connections: Upper bound on open connections
        max_keepalive_connections: Idle connections kept for reuse
        timeout: Per-request timeout in seconds
        headers: Sent with every request (authorization, accept)
    """

    def __init__(
        self,
        base_url: str,
        max_connections: int = 10,
        max_keepalive_connections: int = 5,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url
        self.limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=min(max_keepalive_connections, max_connections),
            keepalive_expiry=30.0,
        )
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.requests_sent = 0
        self.last_status: int | None = None
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def initialize(self) -> httpx.AsyncClient:
        """Open the shared client if needed and return it."""
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    limits=self.limits,
                    timeout=self.timeout,
                    http2=True,
                    headers=self.headers,
                )
                log.info(
                    "graphql_pool_opened",
                    base_url=self.base_url,
                    max_connections=self.limits.max_connections,
                )
            return self._client

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
                log.info("graphql_pool_closed", base_url=self.base_url, requests_sent=self.requests_sent)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        """POST ``path``, opening the pool on first use."""
        client = self._client or await self.initialize()
        started = time.monotonic()
        response = await client.post(path, **kwargs)
        self.requests_sent += 1
        self.last_status = response.status_code
        log.debug(
            "graphql_http_request",
            path=path,
            status=response.status_code,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return response

    def health(self) -> dict[str, Any]:
        return {
            "open": self.is_open,
            "requests_sent": self.requests_sent,
            "last_status": self.last_status,
        }

    async def __aenter__(self) -> "HTTPConnectionPool":
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
