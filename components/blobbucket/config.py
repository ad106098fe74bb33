
from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional

class BlobClientSettings(BaseSettings):
    BLOB_TRANSPORT: str = Field(default="http")  # "http" | "emulator"
    BLOB_BUCKET: Optional[str] = None
    # HTTP transport
    BLOB_API_BASE_URL: str = Field(default="https://storage.googleapis.com")
    BLOB_ACCESS_TOKEN: Optional[str] = None
    BLOB_TIMEOUT_S: float = 30.0
    # Client tuning
    BLOB_CHUNK_SIZE: int = Field(default=256 * 1024, gt=0)
    BLOB_VALIDATE_MD5: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
