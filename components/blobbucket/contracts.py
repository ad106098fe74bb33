
from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, conint, constr, field_validator, model_validator

from .errors import InvalidArgument

# ---------- Unified Wire Format (UWF) ----------

class ErrorPayload(BaseModel):
    type: Literal["INVALID_ARGUMENT", "NOT_FOUND", "STORE", "STREAM", "INTERNAL"]
    code: constr(strip_whitespace=True, min_length=1)
    message: constr(strip_whitespace=True, min_length=1)
    details: Optional[Dict[str, Any]] = None

class MetaPayload(BaseModel):
    request_id: Optional[str] = None
    bucket: Optional[str] = None
    operation: Optional[str] = None
    adapter: Optional[str] = None
    duration_ms: Optional[int] = None

class UWFResponse(BaseModel):
    ok: bool
    result: Optional[Any] = None
    error: Optional[ErrorPayload] = None
    meta: MetaPayload = Field(default_factory=MetaPayload)

    @model_validator(mode="after")
    def _one_outcome(self) -> "UWFResponse":
        if self.ok and self.error is not None:
            raise ValueError("ok response cannot carry an error")
        if not self.ok and (self.error is None or self.result is not None):
            raise ValueError("failed response carries an error and no result")
        return self

# ---------- Objects ----------

class BlobObject(BaseModel):
    name: str
    bucket: Optional[str] = None
    md5_hash: Optional[str] = None  # base64, computed by the store
    content_type: Optional[str] = None
    size: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    generation: Optional[str] = None
    etag: Optional[str] = None
    time_created: Optional[datetime] = None
    updated: Optional[datetime] = None

    @classmethod
    def from_resource(cls, res: Dict[str, Any]) -> "BlobObject":
        """Build from the store's JSON object resource (camelCase keys, size as a string)."""
        size = res.get("size")
        return cls(
            name=res["name"],
            bucket=res.get("bucket"),
            md5_hash=res.get("md5Hash"),
            content_type=res.get("contentType"),
            size=int(size) if size is not None else None,
            metadata=res.get("metadata") or {},
            generation=str(res["generation"]) if res.get("generation") is not None else None,
            etag=res.get("etag"),
            time_created=res.get("timeCreated"),
            updated=res.get("updated"),
        )

# ---------- Write sources ----------

class FileSource(BaseModel):
    kind: Literal["file"] = "file"
    path: Path

class BufferSource(BaseModel):
    kind: Literal["buffer"] = "buffer"
    data: bytes

class StreamSource(BaseModel):
    """Async iterable of bytes, readable binary file object, or iterable of bytes."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["stream"] = "stream"
    stream: Any

    @field_validator("stream")
    @classmethod
    def _readable(cls, v: Any) -> Any:
        if v is None or isinstance(v, (str, bytes, bytearray, memoryview)):
            raise ValueError("in-memory data belongs in a BufferSource")
        if hasattr(v, "__aiter__") or hasattr(v, "read") or hasattr(v, "__iter__"):
            return v
        raise ValueError("stream must be an async iterable, a readable file object or an iterable of bytes")

WriteSource = Annotated[Union[FileSource, BufferSource, StreamSource], Field(discriminator="kind")]

def write_source(filename: Union[str, Path, None] = None, data: Any = None) -> Union[FileSource, BufferSource, StreamSource]:
    """Build a WriteSource from either a file path or data (str, bytes or a stream)."""
    if (filename is None) == (data is None):
        raise InvalidArgument("exactly one of filename or data must be provided")
    try:
        if filename is not None:
            return FileSource(path=filename)
        if isinstance(data, str):
            return BufferSource(data=data.encode("utf-8"))
        if isinstance(data, (bytes, bytearray, memoryview)):
            return BufferSource(data=bytes(data))
        return StreamSource(stream=data)
    except ValidationError as e:
        raise InvalidArgument(str(e)) from e

class WriteOptions(BaseModel):
    content_type: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

class WriteRequest(BaseModel):
    name: constr(min_length=1)
    source: WriteSource
    options: WriteOptions = Field(default_factory=WriteOptions)

# ---------- Copy ----------

class CopyTarget(BaseModel):
    name: constr(min_length=1)
    bucket: Optional[str] = None  # defaults to the source bucket

# ---------- Listing ----------

class ListQuery(BaseModel):
    # also accepts the wire spelling: {"maxResults": 2, "pageToken": ...}
    model_config = ConfigDict(populate_by_name=True)

    max_results: Optional[conint(ge=1)] = Field(None, alias="maxResults")
    page_token: Optional[str] = Field(None, alias="pageToken")  # opaque, only on follow-up queries
    prefix: Optional[str] = None

class ListResult(BaseModel):
    items: List[BlobObject]
    next_query: Optional[ListQuery] = None
