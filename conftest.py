from pathlib import Path
import sys

import httpx
import pytest

# Ensure project root is on sys.path before tests import modules
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from components.blobbucket import BlobBucketClient, HttpxTransport, InMemoryObjectStore, create_emulator_app

BUCKET = "regression-bucket"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
async def transport(store):
    t = HttpxTransport(base_url="http://emulator", transport=httpx.ASGITransport(app=create_emulator_app(store)))
    yield t
    await t.aclose()


@pytest.fixture
def bucket(transport):
    # small chunks so every write and read crosses several chunk boundaries
    return BlobBucketClient(BUCKET, transport, chunk_size=4096)


@pytest.fixture
def logo_file(tmp_path):
    path = tmp_path / "CloudPlatform_128px_Retina.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 64)
    return path
