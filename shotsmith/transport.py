"""Shared HTTP plumbing for provider clients.

Every provider call goes through ``BaseClient._request``, which turns httpx
status and transport failures into the typed errors of ``shotsmith.errors``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from shotsmith.config import EngineSettings
from shotsmith.errors import (
    ParseError,
    RequestTimeoutError,
    error_from_response,
    error_from_transport,
)
from shotsmith.resolver import ModelResolver
from shotsmith.retry import retry

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60.0
_CONNECT_TIMEOUT = 10.0


def auth_headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


def request_timeout(seconds: float | None) -> httpx.Timeout:
    """httpx timeout for a request whose reads may take up to ``seconds``."""
    return httpx.Timeout(seconds, connect=_CONNECT_TIMEOUT)


def parse_json(response: httpx.Response) -> Any:
    """Decode a JSON body, raising ParseError when it is not JSON."""
    try:
        return response.json()
    except ValueError as exc:
        raise ParseError(
            f"Invalid JSON from {response.request.url}: {response.text[:200]}",
            status_code=response.status_code,
            body=response.text,
        ) from exc


async def with_deadline(awaitable: Awaitable[Any], seconds: float | None, what: str = "Request") -> Any:
    """Await with an overall deadline, mapped to RequestTimeoutError."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError(f"{what} timed out after {seconds:.0f}s") from exc


class BaseClient:
    """Owns (or borrows) an ``httpx.AsyncClient`` and a model resolver.

    A client passed in through ``http`` is left open on close, so tests and
    callers can share one connection pool between several clients.
    """

    def __init__(
        self,
        resolver: ModelResolver,
        http: httpx.AsyncClient | None = None,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.resolver = resolver
        self.settings = settings or resolver.config.engine
        self._sleep = sleep
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(_DEFAULT_TIMEOUT, connect=_CONNECT_TIMEOUT))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this object created it."""
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise error_from_response(exc.response) from exc
        except httpx.TransportError as exc:
            raise error_from_transport(exc) from exc

    async def _retry(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await retry(
            operation,
            self.settings.retry_max_attempts,
            self.settings.retry_base_delay,
            sleep=self._sleep,
            label=label,
        )
