"""
In-memory store emulator: a FastAPI app speaking the same JSON/multipart wire
format as the remote store, for local development and tests.

Mount it in-process with `httpx.ASGITransport(app=create_emulator_app())`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

log = logging.getLogger("blobbucket.emulator")

DEFAULT_PAGE_SIZE = 1000
MEDIA_CHUNK = 64 * 1024


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredObject:
    bucket: str
    name: str
    data: bytes
    content_type: str
    metadata: Dict[str, str]
    generation: int
    created: datetime = field(default_factory=_now)
    updated: datetime = field(default_factory=_now)

    @property
    def md5_hash(self) -> str:
        return base64.b64encode(hashlib.md5(self.data).digest()).decode("ascii")

    def resource(self) -> Dict[str, Any]:
        md5 = self.md5_hash
        return {
            "kind": "storage#object",
            "bucket": self.bucket,
            "name": self.name,
            "size": str(len(self.data)),
            "md5Hash": md5,
            "etag": md5,
            "contentType": self.content_type,
            "metadata": dict(self.metadata),
            "generation": str(self.generation),
            "timeCreated": self.created.isoformat(),
            "updated": self.updated.isoformat(),
        }


class InMemoryObjectStore:
    """Thread-safe {bucket: {name: StoredObject}} map. Buckets appear on first write."""

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE):
        self._buckets: Dict[str, Dict[str, StoredObject]] = {}
        self._lock = threading.RLock()
        self._generations = itertools.count(1)
        self.page_size = page_size

    def put(self, bucket: str, name: str, data: bytes, content_type: str,
            metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        with self._lock:
            obj = StoredObject(bucket=bucket, name=name, data=data, content_type=content_type,
                               metadata=dict(metadata or {}), generation=next(self._generations))
            self._buckets.setdefault(bucket, {})[name] = obj
            return obj

    def get(self, bucket: str, name: str) -> Optional[StoredObject]:
        with self._lock:
            return self._buckets.get(bucket, {}).get(name)

    def delete(self, bucket: str, name: str) -> bool:
        with self._lock:
            return self._buckets.get(bucket, {}).pop(name, None) is not None

    def copy(self, bucket: str, name: str, dest_bucket: str, dest_name: str,
             content_type: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> Optional[StoredObject]:
        with self._lock:
            src = self.get(bucket, name)
            if src is None:
                return None
            return self.put(dest_bucket, dest_name, src.data,
                            content_type or src.content_type,
                            src.metadata if metadata is None else metadata)

    def patch(self, bucket: str, name: str, metadata: Optional[Dict[str, Optional[str]]] = None,
              content_type: Optional[str] = None) -> Optional[StoredObject]:
        with self._lock:
            obj = self.get(bucket, name)
            if obj is None:
                return None
            for k, v in (metadata or {}).items():
                if v is None:
                    obj.metadata.pop(k, None)
                else:
                    obj.metadata[k] = str(v)
            if content_type:
                obj.content_type = content_type
            obj.generation = next(self._generations)
            obj.updated = _now()
            return obj

    def list(self, bucket: str, prefix: str = "", max_results: Optional[int] = None,
             start_after: Optional[str] = None) -> Tuple[List[StoredObject], Optional[str]]:
        """One page in name order, plus the last returned name when more remain."""
        with self._lock:
            objects = self._buckets.get(bucket, {})
            names = sorted(n for n in objects if n.startswith(prefix))
            if start_after is not None:
                names = [n for n in names if n > start_after]
            limit = max_results or self.page_size
            page = names[:limit]
            items = [objects[n] for n in page]
        return items, (page[-1] if len(names) > limit else None)

    def names(self, bucket: str) -> List[str]:
        with self._lock:
            return sorted(self._buckets.get(bucket, {}))


def encode_page_token(last_name: str) -> str:
    return base64.urlsafe_b64encode(last_name.encode("utf-8")).decode("ascii")


def decode_page_token(token: str) -> str:
    return base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": status, "message": message}}, status_code=status)


def _boundary(content_type: str) -> Optional[str]:
    media, _, params = content_type.partition(";")
    if media.strip().lower() != "multipart/related":
        return None
    for param in params.split(";"):
        key, _, value = param.strip().partition("=")
        if key.lower() == "boundary" and value:
            return value.strip('"')
    return None


def parse_multipart_related(body: bytes, boundary: str) -> Tuple[Dict[str, Any], Optional[str], bytes]:
    """Split an upload into (JSON resource, media content type, media bytes)."""
    parts = body.split(b"--" + boundary.encode("ascii"))
    if len(parts) != 4 or parts[0].strip() or not parts[3].startswith(b"--"):
        raise ValueError("expected exactly a metadata part and a media part")
    decoded = []
    for raw in parts[1:3]:
        if not raw.startswith(b"\r\n"):
            raise ValueError("malformed part delimiter")
        head, sep, content = raw[2:].partition(b"\r\n\r\n")
        if not sep or not content.endswith(b"\r\n"):
            raise ValueError("malformed part")
        headers = {}
        for line in head.decode("latin-1").split("\r\n"):
            key, _, value = line.partition(":")
            headers[key.strip().lower()] = value.strip()
        decoded.append((headers, content[:-2]))
    resource = json.loads(decoded[0][1] or b"{}")
    if not isinstance(resource, dict):
        raise ValueError("metadata part must be a JSON object")
    return resource, decoded[1][0].get("content-type"), decoded[1][1]


def _media_chunks(data: bytes) -> Iterator[bytes]:
    for start in range(0, len(data), MEDIA_CHUNK):
        yield data[start:start + MEDIA_CHUNK]


def create_emulator_app(store: Optional[InMemoryObjectStore] = None) -> FastAPI:
    store = store or InMemoryObjectStore()
    app = FastAPI(title="blobbucket-emulator")
    app.state.store = store

    @app.post("/upload/storage/v1/b/{bucket}/o")
    async def upload(bucket: str, request: Request, upload_type: str = Query("multipart", alias="uploadType")):
        if upload_type != "multipart":
            return _error(400, f"unsupported uploadType {upload_type!r}")
        boundary = _boundary(request.headers.get("content-type", ""))
        if boundary is None:
            return _error(400, "expected multipart/related with a boundary")
        # nothing is committed until the whole body arrived
        body = await request.body()
        try:
            resource, media_type, data = parse_multipart_related(body, boundary)
        except (ValueError, UnicodeDecodeError) as e:
            return _error(400, f"invalid multipart body: {e}")
        name = resource.get("name")
        if not isinstance(name, str) or not name:
            return _error(400, "object name is required")
        metadata = resource.get("metadata") or {}
        if not isinstance(metadata, dict):
            return _error(400, "metadata must be an object")
        expected_md5 = resource.get("md5Hash")
        if expected_md5:
            actual = base64.b64encode(hashlib.md5(data).digest()).decode("ascii")
            if actual != expected_md5:
                return _error(400, "provided md5Hash does not match the uploaded content")
        content_type = resource.get("contentType") or media_type or "application/octet-stream"
        obj = store.put(bucket, name, data, content_type, {k: str(v) for k, v in metadata.items()})
        log.info("emulator.put bucket=%s name=%s size=%s", bucket, name, len(data))
        return obj.resource()

    @app.get("/storage/v1/b/{bucket}/o")
    async def list_objects(
        bucket: str,
        max_results: Optional[int] = Query(None, alias="maxResults", ge=1),
        page_token: Optional[str] = Query(None, alias="pageToken"),
        prefix: str = Query(""),
    ):
        start_after = None
        if page_token:
            try:
                start_after = decode_page_token(page_token)
            except (binascii.Error, UnicodeDecodeError, ValueError):
                return _error(400, "invalid pageToken")
        items, last = store.list(bucket, prefix=prefix, max_results=max_results, start_after=start_after)
        out: Dict[str, Any] = {"kind": "storage#objects", "items": [o.resource() for o in items]}
        if last is not None:
            out["nextPageToken"] = encode_page_token(last)
        return out

    @app.post("/storage/v1/b/{bucket}/o/{name:path}/copyTo/b/{dest_bucket}/o/{dest_name:path}")
    async def copy_object(bucket: str, name: str, dest_bucket: str, dest_name: str, request: Request):
        raw = await request.body()
        try:
            overrides = json.loads(raw) if raw else {}
        except ValueError:
            return _error(400, "invalid JSON body")
        if not isinstance(overrides, dict):
            return _error(400, "copy body must be a JSON object")
        if not dest_name:
            return _error(400, "destination name is required")
        obj = store.copy(bucket, name, dest_bucket, dest_name,
                         content_type=overrides.get("contentType"), metadata=overrides.get("metadata"))
        if obj is None:
            return _error(404, f"no such object: {bucket}/{name}")
        log.info("emulator.copy %s/%s -> %s/%s", bucket, name, dest_bucket, dest_name)
        return obj.resource()

    @app.get("/storage/v1/b/{bucket}/o/{name:path}")
    async def get_object(bucket: str, name: str, alt: Optional[str] = None):
        obj = store.get(bucket, name)
        if obj is None:
            return _error(404, f"no such object: {bucket}/{name}")
        if alt == "media":
            return StreamingResponse(
                _media_chunks(obj.data),
                media_type=obj.content_type,
                headers={"x-goog-hash": f"md5={obj.md5_hash}", "content-length": str(len(obj.data))},
            )
        return obj.resource()

    @app.patch("/storage/v1/b/{bucket}/o/{name:path}")
    async def patch_object(bucket: str, name: str, request: Request):
        try:
            patch = json.loads(await request.body() or b"{}")
        except ValueError:
            return _error(400, "invalid JSON body")
        if not isinstance(patch, dict):
            return _error(400, "patch body must be a JSON object")
        metadata = patch.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            return _error(400, "metadata must be an object")
        obj = store.patch(bucket, name, metadata=metadata, content_type=patch.get("contentType"))
        if obj is None:
            return _error(404, f"no such object: {bucket}/{name}")
        return obj.resource()

    @app.delete("/storage/v1/b/{bucket}/o/{name:path}")
    async def delete_object(bucket: str, name: str):
        if not store.delete(bucket, name):
            return _error(404, f"no such object: {bucket}/{name}")
        log.info("emulator.delete bucket=%s name=%s", bucket, name)
        return Response(status_code=204)

    return app
