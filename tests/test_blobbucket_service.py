import logging
from contextlib import contextmanager

import httpx
import pytest

from components.blobbucket import (
    BlobBucketClient,
    BlobService,
    HttpxTransport,
    ListQuery,
    WriteOptions,
    WriteRequest,
    write_source,
)
from components.blobbucket import service


@pytest.fixture
def svc(bucket):
    return BlobService(bucket, adapter_name="emulator")


@pytest.mark.anyio
async def test_write_stat_read_ok_envelopes(svc):
    res = await svc.write(WriteRequest(name="MyBuffer", source=write_source(data="Hello World"),
                                       options=WriteOptions(content_type="text/plain")))
    assert res.ok is True and res.error is None
    assert res.result["name"] == "MyBuffer"
    assert res.meta.operation == "write"
    assert res.meta.bucket == "regression-bucket"
    assert res.meta.adapter == "emulator"
    assert res.meta.request_id
    assert res.meta.duration_ms is not None

    stat = await svc.stat("MyBuffer")
    assert stat.result["content_type"] == "text/plain"

    read = await svc.read("MyBuffer")
    assert read.result == b"Hello World"


@pytest.mark.anyio
async def test_copy_list_remove_envelopes(svc):
    await svc.write(WriteRequest(name="a", source=write_source(data=b"1")))
    copied = await svc.copy("a", {"name": "b"})
    assert copied.ok and copied.result["name"] == "b"

    page = await svc.list(ListQuery(max_results=1))
    assert len(page.result["items"]) == 1
    assert page.result["next_query"]["page_token"]

    removed = await svc.remove("a")
    assert removed.ok is True and removed.result is None


@pytest.mark.anyio
async def test_error_envelopes_carry_no_result(svc, caplog):
    with caplog.at_level(logging.ERROR, logger="blobbucket"):
        missing = await svc.remove("ghost")
    assert missing.ok is False
    assert missing.result is None
    assert missing.error.type == "NOT_FOUND"
    assert missing.error.code == "BLOB_NOT_FOUND"
    assert any("blob.remove err" in r.getMessage() for r in caplog.records)

    invalid = await svc.stat("")
    assert invalid.error.type == "INVALID_ARGUMENT"

    patched = await svc.set_metadata("ghost", {"a": "1"})
    assert patched.error.type == "NOT_FOUND"


@pytest.mark.anyio
async def test_store_and_stream_errors_are_typed():
    def handler(request: httpx.Request):
        if request.url.params.get("alt") == "media":
            return httpx.Response(200, content=b"short", headers={"x-goog-hash": "md5=AAAAAAAAAAAAAAAAAAAAAA=="})
        return httpx.Response(503, json={"error": {"code": 503, "message": "try later"}})

    transport = HttpxTransport(base_url="http://store", transport=httpx.MockTransport(handler))
    svc = BlobService(BlobBucketClient("b", transport), adapter_name="http")

    store_err = await svc.stat("obj")
    assert store_err.error.type == "STORE"
    assert store_err.error.details == {"status": 503}

    stream_err = await svc.read("obj")
    assert stream_err.error.type == "STREAM"


class RecordingSpan:
    def __init__(self):
        self.attributes = {}

    def set_attribute(self, key, value):
        if not isinstance(value, (str, bool, int, float)):
            raise TypeError(f"unsupported attribute type for {key}")
        self.attributes[key] = value


class RecordingTracer:
    def __init__(self):
        self.spans = []

    @contextmanager
    def start_as_current_span(self, name):
        span = RecordingSpan()
        self.spans.append((name, span))
        yield span


class BrokenTracer:
    def start_as_current_span(self, name):
        raise RuntimeError("exporter misconfigured")


@pytest.mark.anyio
async def test_each_call_opens_one_span_with_the_object_key(svc, monkeypatch):
    tracer = RecordingTracer()
    monkeypatch.setattr(service, "tracer", tracer)

    await svc.write(WriteRequest(name="traced", source=write_source(data=b"t")))
    listed = await svc.list({"maxResults": 1})
    assert listed.ok

    (write_name, write_span), (list_name, list_span) = tracer.spans
    assert write_name == "blob.write"
    assert write_span.attributes == {"blob.bucket": "regression-bucket", "blob.key": "traced",
                                     "blob.adapter": "emulator"}
    assert list_name == "blob.list"
    assert "blob.key" not in list_span.attributes


def test_unsupported_span_attribute_is_dropped(monkeypatch):
    tracer = RecordingTracer()
    monkeypatch.setattr(service, "tracer", tracer)

    with service._span("blob.stat", bucket="b", key="x", details={"a": 1}, prefix=None) as span:
        pass
    assert tracer.spans == [("blob.stat", span)]
    assert span.attributes == {"blob.bucket": "b", "blob.key": "x"}


@pytest.mark.anyio
async def test_tracer_failure_still_returns_an_envelope(svc, monkeypatch):
    monkeypatch.setattr(service, "tracer", BrokenTracer())
    res = await svc.stat("anything")
    assert res.ok is False
    assert res.error.type == "INTERNAL"
    assert res.error.message == "exporter misconfigured"
    assert res.meta.operation == "stat"
