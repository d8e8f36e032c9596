"""Transport adapter and per-server connection pooling."""

from .http import HEADER_DEADLINE_MS, HEADER_REQUEST_ID, HEADER_SCHEMA_VERSION, HttpTransport, Transport
from .pool import ConnectionPool, PoolStats

__all__ = [
    "Transport", "HttpTransport", "ConnectionPool", "PoolStats",
    "HEADER_REQUEST_ID", "HEADER_DEADLINE_MS", "HEADER_SCHEMA_VERSION",
]
