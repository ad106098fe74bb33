from .httpx_transport import HttpxResponse, HttpxTransport
from .emulator import InMemoryObjectStore, create_emulator_app

__all__ = ["HttpxResponse", "HttpxTransport", "InMemoryObjectStore", "create_emulator_app"]
