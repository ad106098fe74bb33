import httpx
import pytest

from components.blobbucket import BlobClientSettings, HttpxTransport, make_client_from_env, write_source


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("BLOB_BUCKET", "env-bucket")
    monkeypatch.setenv("blob_chunk_size", "1024")
    monkeypatch.setenv("BLOB_VALIDATE_MD5", "false")
    cfg = BlobClientSettings()
    assert cfg.BLOB_BUCKET == "env-bucket"
    assert cfg.BLOB_CHUNK_SIZE == 1024
    assert cfg.BLOB_VALIDATE_MD5 is False
    assert cfg.BLOB_TRANSPORT == "http"


def test_http_transport_from_settings():
    cfg = BlobClientSettings(BLOB_BUCKET="prod", BLOB_ACCESS_TOKEN="secret", BLOB_CHUNK_SIZE=2048)
    client, kind = make_client_from_env(cfg)
    assert kind == "http"
    assert client.bucket == "prod"
    assert client.chunk_size == 2048
    assert isinstance(client.transport, HttpxTransport)
    assert str(client.transport.client.base_url).rstrip("/") == "https://storage.googleapis.com"


def test_factory_rejects_bad_settings():
    with pytest.raises(RuntimeError, match="BLOB_BUCKET"):
        make_client_from_env(BlobClientSettings(BLOB_BUCKET=None))
    with pytest.raises(RuntimeError, match="Unknown BLOB_TRANSPORT"):
        make_client_from_env(BlobClientSettings(BLOB_BUCKET="b", BLOB_TRANSPORT="ftp"))


@pytest.mark.anyio
async def test_emulator_transport_round_trip(monkeypatch):
    monkeypatch.setenv("BLOB_TRANSPORT", "emulator")
    monkeypatch.setenv("BLOB_BUCKET", "dev-bucket")
    client, kind = make_client_from_env()
    assert kind == "emulator"
    try:
        obj = await client.write("greeting", write_source(data="Hello World"))
        assert obj.bucket == "dev-bucket"
        assert await client.create_read_stream("greeting").read_all() == b"Hello World"
    finally:
        await client.transport.aclose()
