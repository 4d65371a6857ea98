"""Remote service boundary: contract, HTTP client and payload normalization."""

from .base import RawRecord, RemoteService
from .http_service import HttpRemoteService
from .normalize import normalize_record, normalize_records

__all__ = [
    "RawRecord",
    "RemoteService",
    "HttpRemoteService",
    "normalize_record",
    "normalize_records",
]
