
from __future__ import annotations
import json as jsonlib
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Mapping, Optional


class TransportResponse(ABC):
    status_code: int
    headers: Mapping[str, str]

    @abstractmethod
    async def read(self) -> bytes: ...

    @abstractmethod
    def iter_bytes(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def json(self) -> Any:
        body = await self.read()
        return jsonlib.loads(body) if body else {}


class Transport(ABC):
    """Authenticated request capability against the remote store.

    Request-phase failures raise StoreError, body-phase failures raise StreamError.
    Responses opened with stream=True must be closed by the caller.
    """

    @abstractmethod
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
    ) -> TransportResponse: ...

    async def aclose(self) -> None:
        return None
