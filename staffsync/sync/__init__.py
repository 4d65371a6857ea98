"""Optimistic synchronization core.

Applies mutations to the local store immediately, mirrors them to the
remote service and rolls them back when the remote service rejects them.
"""

from .repository import RefreshResult, RefreshStatus, SyncRepository

__all__ = ["RefreshResult", "RefreshStatus", "SyncRepository"]
