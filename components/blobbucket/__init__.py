from __future__ import annotations
import httpx

from .contracts import *
from .errors import *
from .ports import Transport, TransportResponse
from .bucket import BlobBucketClient, BlobReadStream
from .service import BlobService
from .adapters.httpx_transport import HttpxTransport
from .adapters.emulator import InMemoryObjectStore, create_emulator_app

from .config import BlobClientSettings

EMULATOR_BASE_URL = "http://blob-emulator"

def make_client_from_env(cfg: BlobClientSettings | None = None):
    cfg = cfg or BlobClientSettings()
    if not cfg.BLOB_BUCKET:
        raise RuntimeError("BLOB_BUCKET is required")
    kind = cfg.BLOB_TRANSPORT.lower()
    if kind == "http":
        transport = HttpxTransport(
            base_url=cfg.BLOB_API_BASE_URL,
            token=cfg.BLOB_ACCESS_TOKEN,
            timeout=cfg.BLOB_TIMEOUT_S,
        )
    elif kind == "emulator":
        transport = HttpxTransport(
            base_url=EMULATOR_BASE_URL,
            timeout=cfg.BLOB_TIMEOUT_S,
            transport=httpx.ASGITransport(app=create_emulator_app()),
        )
    else:
        raise RuntimeError(f"Unknown BLOB_TRANSPORT: {cfg.BLOB_TRANSPORT}")
    client = BlobBucketClient(
        cfg.BLOB_BUCKET,
        transport,
        chunk_size=cfg.BLOB_CHUNK_SIZE,
        validate_md5=cfg.BLOB_VALIDATE_MD5,
    )
    return client, kind
