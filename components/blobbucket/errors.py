
from __future__ import annotations

from typing import Optional


class BlobClientError(Exception):
    """Base class for blob bucket client errors."""


class InvalidArgument(BlobClientError):
    """Malformed call: empty name, zero or several write sources, bad query."""


class NotFound(BlobClientError):
    pass


class StoreError(BlobClientError):
    """Network or service failure. `cause` holds the underlying exception, if any."""

    def __init__(self, message: str, cause: Optional[BaseException] = None, status: Optional[int] = None):
        super().__init__(message)
        self.cause = cause
        self.status = status


class StreamError(BlobClientError):
    """I/O failure in the middle of a read or write stream."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
