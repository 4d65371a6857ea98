"""staffsync - offline-first optimistic sync for employee records."""

__version__ = "0.1.0"

from .errors import (
    InconsistentStateError,
    NotFound,
    PreconditionFailed,
    RemoteRejected,
    RemoteUnreachable,
    SyncError,
)
from .models import Record, SyncState
from .sync import RefreshResult, RefreshStatus, SyncRepository

__all__ = [
    "InconsistentStateError",
    "NotFound",
    "PreconditionFailed",
    "Record",
    "RefreshResult",
    "RefreshStatus",
    "RemoteRejected",
    "RemoteUnreachable",
    "SyncError",
    "SyncRepository",
    "SyncState",
]
