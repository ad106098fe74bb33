
from __future__ import annotations
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from opentelemetry import trace

from .bucket import BlobBucketClient
from .contracts import CopyTarget, ErrorPayload, ListQuery, MetaPayload, UWFResponse, WriteRequest
from .errors import InvalidArgument, NotFound, StoreError, StreamError

log = logging.getLogger("blobbucket")
tracer = trace.get_tracer("blobbucket")

@contextmanager
def _span(span_name: str, **attrs):
    with tracer.start_as_current_span(span_name) as span:
        for k, v in attrs.items():
            if v is None:
                continue
            try:
                span.set_attribute(f"blob.{k}", v)
            except Exception:
                log.debug("span attribute dropped key=%s", k, exc_info=True)
        yield span

def _uwf_ok(result, meta: MetaPayload) -> UWFResponse:
    return UWFResponse(ok=True, result=result, meta=meta)

def _uwf_err(e: Exception, meta: MetaPayload) -> UWFResponse:
    if isinstance(e, InvalidArgument):
        t, code = "INVALID_ARGUMENT", "BLOB_INVALID_ARGUMENT"
    elif isinstance(e, NotFound):
        t, code = "NOT_FOUND", "BLOB_NOT_FOUND"
    elif isinstance(e, StreamError):
        t, code = "STREAM", "BLOB_STREAM"
    elif isinstance(e, StoreError):
        t, code = "STORE", "BLOB_STORE"
    else:
        t, code = "INTERNAL", "BLOB_INTERNAL"

    details = None
    if isinstance(e, StoreError) and e.status is not None:
        details = {"status": e.status}
    err = ErrorPayload(type=t, code=code, message=str(e) or type(e).__name__, details=details)
    return UWFResponse(ok=False, error=err, meta=meta)

class BlobService:
    """Envelope façade over BlobBucketClient: one UWFResponse per call, logged and traced."""

    def __init__(self, client: BlobBucketClient, adapter_name: str):
        self.client = client
        self.adapter_name = adapter_name

    async def _run(self, operation: str, name: Optional[str], call: Callable[[], Awaitable[Any]],
                   summarize: Callable[[Any], str] = lambda res: "") -> UWFResponse:
        t0 = time.time()
        meta = MetaPayload(request_id=uuid.uuid4().hex, bucket=self.client.bucket,
                           operation=operation, adapter=self.adapter_name)
        try:
            with _span(f"blob.{operation}", bucket=self.client.bucket, key=name, adapter=self.adapter_name):
                res = await call()
            meta.duration_ms = int((time.time() - t0) * 1000)
            log.info("blob.%s ok bucket=%s name=%s %s adapter=%s dur_ms=%s",
                     operation, self.client.bucket, name, summarize(res), self.adapter_name, meta.duration_ms)
            return _uwf_ok(res, meta)
        except Exception as e:
            meta.duration_ms = int((time.time() - t0) * 1000)
            log.exception("blob.%s err bucket=%s name=%s adapter=%s dur_ms=%s",
                          operation, self.client.bucket, name, self.adapter_name, meta.duration_ms)
            return _uwf_err(e, meta)

    async def write(self, req: WriteRequest) -> UWFResponse:
        async def call():
            obj = await self.client.write(req.name, req.source, req.options)
            return obj.model_dump()
        return await self._run("write", req.name, call,
                               lambda res: f"size={res['size']} md5={res['md5_hash']}")

    async def read(self, name: str) -> UWFResponse:
        async def call():
            return await self.client.create_read_stream(name).read_all()
        return await self._run("read", name, call, lambda res: f"size={len(res)}")

    async def stat(self, name: str) -> UWFResponse:
        async def call():
            return (await self.client.stat(name)).model_dump()
        return await self._run("stat", name, call, lambda res: f"size={res['size']}")

    async def copy(self, name: str, target: Union[CopyTarget, Mapping[str, Any], str]) -> UWFResponse:
        async def call():
            return (await self.client.copy(name, target)).model_dump()
        return await self._run("copy", name, call, lambda res: f"dest={res['bucket']}/{res['name']}")

    async def remove(self, name: str) -> UWFResponse:
        return await self._run("remove", name, lambda: self.client.remove(name))

    async def list(self, query: Union[ListQuery, Mapping[str, Any], None] = None) -> UWFResponse:
        async def call():
            return (await self.client.list(query)).model_dump()
        return await self._run("list", None, call,
                               lambda res: f"count={len(res['items'])} more={res['next_query'] is not None}")

    async def set_metadata(self, name: str, metadata: Optional[Mapping[str, Optional[str]]] = None,
                           content_type: Optional[str] = None) -> UWFResponse:
        async def call():
            return (await self.client.set_metadata(name, metadata, content_type)).model_dump()
        return await self._run("set_metadata", name, call)
