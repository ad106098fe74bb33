
from __future__ import annotations
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Union

import httpx

from ..errors import StoreError, StreamError
from ..ports import Transport, TransportResponse

TokenProvider = Callable[[], Union[str, None, Awaitable[Optional[str]]]]


class HttpxResponse(TransportResponse):
    def __init__(self, resp: httpx.Response):
        self._resp = resp
        self.status_code = resp.status_code
        self.headers = resp.headers

    async def read(self) -> bytes:
        try:
            return await self._resp.aread()
        except httpx.HTTPError as e:
            raise StreamError(f"failed reading response body: {e}", cause=e) from e

    async def iter_bytes(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._resp.aiter_bytes(chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise StreamError(f"transfer interrupted: {e}", cause=e) from e

    async def close(self) -> None:
        await self._resp.aclose()


class HttpxTransport(Transport):
    """httpx.AsyncClient transport with an optional bearer token.

    `transport` lets callers mount an in-process app (httpx.ASGITransport) or a
    mock (httpx.MockTransport) instead of the network. No retries here.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 token_provider: Optional[TokenProvider] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._token = token
        self._token_provider = token_provider
        self.adapter = "http"

    async def _auth_headers(self) -> dict:
        token = self._token
        if self._token_provider is not None:
            try:
                token = self._token_provider()
                if inspect.isawaitable(token):
                    token = await token
            except Exception as e:
                raise StoreError(f"token provider failed: {e}", cause=e) from e
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        content: Any = None,
        json: Any = None,
        stream: bool = False,
    ) -> HttpxResponse:
        merged = dict(headers or {})
        merged.update(await self._auth_headers())
        query = {k: v for k, v in (params or {}).items() if v is not None}
        request = self.client.build_request(
            method, path, params=query or None, headers=merged, content=content, json=json
        )
        try:
            resp = await self.client.send(request, stream=stream)
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}", cause=e) from e
        return HttpxResponse(resp)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
