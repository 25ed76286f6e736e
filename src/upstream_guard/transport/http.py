"""HTTP 传输层：基于 httpx 的异步上游客户端，可选地经过弹性封装。

HTTP transport using httpx for calls to an upstream service.

Provides:
- Classified errors (UpstreamError for >= 400, TransportError for network failures)
- Configurable timeouts
- Optional protection of every request by a ResilientCallWrapper
"""

from __future__ import annotations

import os
from contextlib import suppress
from typing import TYPE_CHECKING, Any

import httpx

from upstream_guard.errors import TransportError, UpstreamError
from upstream_guard.errors.classification import transport_code_from_message

if TYPE_CHECKING:
    from types import TracebackType

    from upstream_guard.resilience.wrapper import ResilientCallWrapper

# Default timeouts
_DEFAULT_TIMEOUT = 30.0
_DEFAULT_CONNECT_TIMEOUT = 10.0


def _env_timeout() -> float | None:
    env_timeout = os.getenv("UPSTREAM_GUARD_HTTP_TIMEOUT_SECS")
    if env_timeout:
        with suppress(ValueError):
            return float(env_timeout)
    return None


class HttpUpstream:
    """Async HTTP client for one upstream service.

    Example:
        >>> wrapper = create_resilient_wrapper("exa", {"maxRetries": 2})
        >>> async with HttpUpstream("https://api.exa.ai", wrapper=wrapper) as upstream:
        ...     results = await upstream.post_json("/search", {"query": "rates"})
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float | None = None,
        wrapper: ResilientCallWrapper | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the upstream client.

        Args:
            base_url: Base URL of the upstream service
            timeout: Request timeout in seconds
            wrapper: Resilient wrapper every request is executed through
            headers: Headers sent with every request
            transport: Custom httpx transport (e.g. for tests)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or _env_timeout() or _DEFAULT_TIMEOUT
        self._wrapper = wrapper
        self._headers = {
            "Accept": "application/json",
            **(headers or {}),
        }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def wrapper(self) -> ResilientCallWrapper | None:
        return self._wrapper

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout, connect=_DEFAULT_CONNECT_TIMEOUT),
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpUpstream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a single HTTP request.

        Raises:
            TransportError: On network/connection errors
            UpstreamError: On error responses (4xx, 5xx)
        """
        client = self._get_client()
        url = f"{self._base_url}{path}"

        try:
            response = await client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out: {e}", code="ETIMEDOUT", url=url, cause=e
            ) from e
        except httpx.ConnectError as e:
            raise TransportError(
                f"Connection failed: {e}",
                code=transport_code_from_message(str(e)) or "ECONNREFUSED",
                url=url,
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"HTTP error: {e}",
                code=transport_code_from_message(str(e)) or "ECONNRESET",
                url=url,
                cause=e,
            ) from e

        if response.status_code >= 400:
            body = None
            with suppress(ValueError):
                body = response.json()
            raise UpstreamError.from_response(
                status_code=response.status_code,
                body=body if isinstance(body, dict) else None,
                headers=dict(response.headers),
                url=url,
            )

        return response

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request, through the wrapper when one is configured.

        Args:
            method: HTTP method
            path: Request path (relative to base URL)
            json: JSON body
            params: Query parameters
            headers: Additional headers

        Returns:
            HTTP response
        """
        async def attempt() -> httpx.Response:
            return await self._send(method, path, json=json, params=params, headers=headers)

        if self._wrapper is None:
            return await attempt()
        return await self._wrapper.execute(attempt, f"{method.upper()} {path}")

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a path and decode the JSON body."""
        response = await self.request("GET", path, params=params)
        return response.json()

    async def post_json(self, path: str, json: Any) -> Any:
        """POST a JSON body and decode the JSON response."""
        response = await self.request("POST", path, json=json)
        return response.json()
