
from __future__ import annotations
import asyncio
import base64
import hashlib
import inspect
import json
import logging
import mimetypes
import time
import uuid
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union
from urllib.parse import quote

from pydantic import ValidationError

from .contracts import (
    BlobObject, BufferSource, CopyTarget, FileSource, ListQuery, ListResult, StreamSource, WriteOptions
)
from .errors import BlobClientError, InvalidArgument, NotFound, StoreError, StreamError
from .ports import Transport, TransportResponse

log = logging.getLogger("blobbucket")

DEFAULT_CHUNK_SIZE = 256 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_API = "/storage/v1"
_UPLOAD = "/upload/storage/v1"


def _segment(value: str) -> str:
    # object names may contain "/", they travel as one path segment
    return quote(value, safe="")


def _md5_b64(h) -> str:
    return base64.b64encode(h.digest()).decode("ascii")


def _to_object(res: Any, what: str) -> BlobObject:
    try:
        return BlobObject.from_resource(res)
    except (KeyError, TypeError, ValueError) as e:
        raise StoreError(f"{what}: malformed object resource: {e!r}", cause=e) from e


def _parse_goog_hash(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    for part in header.split(","):
        algo, _, value = part.strip().partition("=")
        if algo == "md5" and value:
            return value
    return None


def _as_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise TypeError(f"stream produced {type(chunk).__name__}, expected bytes")


async def _raise_for_status(resp: TransportResponse, what: str) -> None:
    if resp.status_code < 300:
        return
    message = ""
    try:
        body = await resp.json()
        if isinstance(body, dict):
            message = (body.get("error") or {}).get("message") or ""
    except (ValueError, StreamError):
        pass
    message = message or f"HTTP {resp.status_code}"
    if resp.status_code == 404:
        raise NotFound(f"{what}: {message}")
    if resp.status_code == 400:
        raise InvalidArgument(f"{what}: {message}")
    raise StoreError(f"{what}: {message}", status=resp.status_code)


async def _iter_source(source: Union[FileSource, BufferSource, StreamSource], chunk_size: int) -> AsyncIterator[bytes]:
    if isinstance(source, BufferSource):
        view = memoryview(source.data)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start:start + chunk_size])
    elif isinstance(source, FileSource):
        f = await asyncio.to_thread(open, source.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()
    else:
        stream = source.stream
        if hasattr(stream, "__aiter__"):
            async for chunk in stream:
                yield _as_bytes(chunk)
        elif hasattr(stream, "read"):
            while True:
                if inspect.iscoroutinefunction(stream.read):
                    chunk = await stream.read(chunk_size)
                else:
                    chunk = await asyncio.to_thread(stream.read, chunk_size)
                if not chunk:
                    break
                yield _as_bytes(chunk)
        else:
            for chunk in stream:
                yield _as_bytes(chunk)


class BlobReadStream:
    """Single-pass async byte stream over one object's content.

    Nothing is requested until the first iteration. A missing object raises
    NotFound there; a broken transfer or a digest mismatch raises StreamError.
    `completed` turns True only after the last byte arrived intact.
    """

    def __init__(self, client: "BlobBucketClient", name: str):
        self.client = client
        self.name = name
        self.bytes_read = 0
        self.completed = False
        self._md5 = hashlib.md5()
        self._expected_md5: Optional[str] = None
        self._resp: Optional[TransportResponse] = None
        self._chunks = None
        self._started = False
        self._closed = False

    def __aiter__(self) -> "BlobReadStream":
        return self

    async def __aenter__(self) -> "BlobReadStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _open(self) -> None:
        resp = await self.client.transport.send(
            "GET", self.client._object_path(self.name), params={"alt": "media"}, stream=True
        )
        try:
            await _raise_for_status(resp, f"read {self.name!r}")
        except BaseException:
            await resp.close()
            raise
        self._resp = resp
        self._expected_md5 = _parse_goog_hash(resp.headers.get("x-goog-hash"))
        self._chunks = resp.iter_bytes(self.client.chunk_size).__aiter__()

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            try:
                await self._open()
            except BaseException:
                self._closed = True
                raise
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            received = _md5_b64(self._md5)
            if self._expected_md5 is not None and received != self._expected_md5:
                raise StreamError(
                    f"read {self.name!r}: md5 mismatch after {self.bytes_read} bytes "
                    f"(expected {self._expected_md5}, got {received})"
                )
            self.completed = True
            log.debug("blob.read done bucket=%s name=%s size=%s", self.client.bucket, self.name, self.bytes_read)
            raise
        except BaseException:
            await self.aclose()
            raise
        self._md5.update(chunk)
        self.bytes_read += len(chunk)
        return chunk

    def _claim(self) -> None:
        if self._started or self._closed:
            raise StreamError("read stream can only be consumed once; call create_read_stream again")

    async def pipe(self, sink: Any) -> int:
        """Write every chunk into `sink` (sync or async `write`) and return the byte count."""
        self._claim()
        write_is_async = inspect.iscoroutinefunction(sink.write)
        async with self:
            async for chunk in self:
                if write_is_async:
                    await sink.write(chunk)
                else:
                    await asyncio.to_thread(sink.write, chunk)
        return self.bytes_read

    async def read_all(self) -> bytes:
        self._claim()
        buf = bytearray()
        async with self:
            async for chunk in self:
                buf += chunk
        return bytes(buf)

    async def aclose(self) -> None:
        self._closed = True
        chunks, resp = self._chunks, self._resp
        self._chunks = self._resp = None
        closer = getattr(chunks, "aclose", None)
        if closer is not None:
            await closer()
        if resp is not None:
            await resp.close()


class BlobBucketClient:
    """Operations against one bucket of the remote store.

    Holds only the bucket name, the transport and tuning values; every call is an
    independent request, so calls may run concurrently.
    """

    def __init__(self, bucket: str, transport: Transport, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 validate_md5: bool = True):
        if not isinstance(bucket, str) or not bucket:
            raise InvalidArgument("bucket must be a non-empty string")
        if chunk_size <= 0:
            raise InvalidArgument("chunk_size must be positive")
        self.bucket = bucket
        self.transport = transport
        self.chunk_size = chunk_size
        self.validate_md5 = validate_md5

    # -------- helpers --------

    @staticmethod
    def _check_name(name: Any) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgument("object name must be a non-empty string")
        if name in (".", ".."):
            raise InvalidArgument(f"object name {name!r} is reserved")

    def _object_path(self, name: str, bucket: Optional[str] = None) -> str:
        return f"{_API}/b/{_segment(bucket or self.bucket)}/o/{_segment(name)}"

    async def _call(self, method: str, path: str, what: str, **kwargs) -> Dict[str, Any]:
        t0 = time.perf_counter()
        resp = await self.transport.send(method, path, **kwargs)
        try:
            await _raise_for_status(resp, what)
            try:
                res = await resp.json()
            except ValueError as e:
                raise StoreError(f"{what}: malformed response body", cause=e, status=resp.status_code) from e
        finally:
            await resp.close()
        if not isinstance(res, dict):
            raise StoreError(f"{what}: unexpected response body", status=resp.status_code)
        log.debug("blob.call %s bucket=%s status=%s dur_ms=%s",
                  what, self.bucket, resp.status_code, int((time.perf_counter() - t0) * 1000))
        return res

    @staticmethod
    def _guess_type(source: Any) -> str:
        if isinstance(source, FileSource):
            guessed, _ = mimetypes.guess_type(str(source.path))
            if guessed:
                return guessed
        return DEFAULT_CONTENT_TYPE

    # -------- operations --------

    async def write(self, name: str, source: Union[FileSource, BufferSource, StreamSource],
                    options: Optional[WriteOptions] = None) -> BlobObject:
        self._check_name(name)
        if not isinstance(source, (FileSource, BufferSource, StreamSource)):
            raise InvalidArgument("source must be exactly one of FileSource, BufferSource or StreamSource")
        if isinstance(source, FileSource) and not await asyncio.to_thread(source.path.is_file):
            raise InvalidArgument(f"file not found: {source.path}")
        options = options or WriteOptions()

        content_type = options.content_type or self._guess_type(source)
        resource: Dict[str, Any] = {"name": name, "contentType": content_type}
        if options.metadata:
            resource["metadata"] = dict(options.metadata)

        boundary = uuid.uuid4().hex
        md5 = hashlib.md5()
        state: Dict[str, Any] = {"size": 0, "failure": None}

        async def body() -> AsyncIterator[bytes]:
            yield (
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n"
                f"{json.dumps(resource)}\r\n"
                f"--{boundary}\r\nContent-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
            try:
                async for chunk in _iter_source(source, self.chunk_size):
                    md5.update(chunk)
                    state["size"] += len(chunk)
                    yield chunk
            except Exception as e:
                failure = StreamError(f"reading write source for {name!r} failed: {e}", cause=e)
                state["failure"] = failure
                raise failure from e
            yield f"\r\n--{boundary}--\r\n".encode("utf-8")

        t0 = time.perf_counter()
        upload = body()
        try:
            res = await self._call(
                "POST", f"{_UPLOAD}/b/{_segment(self.bucket)}/o", f"write {name!r}",
                params={"uploadType": "multipart"},
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
                content=upload,
            )
        except Exception as e:
            failure = state["failure"]
            if failure is not None and e is not failure:
                raise failure from e
            if isinstance(e, BlobClientError):
                raise
            raise StoreError(f"write {name!r} failed: {e}", cause=e) from e
        finally:
            # releases the source if the store answered before reading it all
            await upload.aclose()

        obj = _to_object(res, f"write {name!r}")
        sent = _md5_b64(md5)
        if obj.md5_hash is None:
            obj.md5_hash = sent
        elif self.validate_md5 and obj.md5_hash != sent:
            log.warning("blob.write md5 mismatch bucket=%s name=%s sent=%s stored=%s",
                        self.bucket, name, sent, obj.md5_hash)
            try:
                await self.remove(name)
            except BlobClientError:
                log.warning("blob.write cleanup failed bucket=%s name=%s", self.bucket, name, exc_info=True)
            raise StreamError(f"write {name!r}: md5 mismatch (sent {sent}, store reported {obj.md5_hash})")

        log.debug("blob.write ok bucket=%s name=%s size=%s md5=%s dur_ms=%s",
                  self.bucket, name, state["size"], sent, int((time.perf_counter() - t0) * 1000))
        return obj

    def create_read_stream(self, name: str) -> BlobReadStream:
        self._check_name(name)
        return BlobReadStream(self, name)

    async def stat(self, name: str) -> BlobObject:
        self._check_name(name)
        what = f"stat {name!r}"
        res = await self._call("GET", self._object_path(name), what)
        return _to_object(res, what)

    async def copy(self, source_name: str, target: Union[CopyTarget, Mapping[str, Any], str]) -> BlobObject:
        """Server-side copy; the source stays in place."""
        self._check_name(source_name)
        try:
            if isinstance(target, str):
                target = CopyTarget(name=target)
            elif isinstance(target, Mapping):
                target = CopyTarget(**target)
        except ValidationError as e:
            raise InvalidArgument(f"invalid copy target: {e}") from e
        if not isinstance(target, CopyTarget):
            raise InvalidArgument("copy target must be a CopyTarget, a mapping with 'name', or a name")
        dest_bucket = target.bucket or self.bucket
        path = f"{self._object_path(source_name)}/copyTo/b/{_segment(dest_bucket)}/o/{_segment(target.name)}"
        what = f"copy {source_name!r} -> {dest_bucket}/{target.name!r}"
        res = await self._call("POST", path, what, json={})
        return _to_object(res, what)

    async def remove(self, name: str) -> None:
        self._check_name(name)
        await self._call("DELETE", self._object_path(name), f"remove {name!r}")

    async def list(self, query: Union[ListQuery, Mapping[str, Any], None] = None) -> ListResult:
        query = query or ListQuery()
        if isinstance(query, Mapping):
            try:
                query = ListQuery.model_validate(query)
            except ValidationError as e:
                raise InvalidArgument(f"invalid list query: {e}") from e
        if not isinstance(query, ListQuery):
            raise InvalidArgument("query must be a ListQuery or a mapping")
        params = {"maxResults": query.max_results, "pageToken": query.page_token, "prefix": query.prefix}
        what = f"list {self.bucket}"
        res = await self._call("GET", f"{_API}/b/{_segment(self.bucket)}/o", what, params=params)
        raw_items = res.get("items") or []
        if not isinstance(raw_items, list):
            raise StoreError(f"{what}: items must be a list")
        items = [_to_object(r, what) for r in raw_items]
        token = res.get("nextPageToken")
        next_query = query.model_copy(update={"page_token": token}) if token else None
        return ListResult(items=items, next_query=next_query)

    async def iter_objects(self, query: Union[ListQuery, Mapping[str, Any], None] = None) -> AsyncIterator[BlobObject]:
        next_query = query or ListQuery()
        while next_query is not None:
            page = await self.list(next_query)
            for item in page.items:
                yield item
            next_query = page.next_query

    async def set_metadata(self, name: str, metadata: Optional[Mapping[str, Optional[str]]] = None,
                           content_type: Optional[str] = None) -> BlobObject:
        """Merge custom metadata (a None value drops the key) and/or replace the content type."""
        self._check_name(name)
        if metadata is None and content_type is None:
            raise InvalidArgument("nothing to update: pass metadata and/or content_type")
        patch: Dict[str, Any] = {}
        if metadata is not None:
            patch["metadata"] = dict(metadata)
        if content_type is not None:
            patch["contentType"] = content_type
        what = f"set_metadata {name!r}"
        res = await self._call("PATCH", self._object_path(name), what, json=patch)
        return _to_object(res, what)
