"""Contract for the remote record service."""

from abc import ABC, abstractmethod
from typing import Any

RawRecord = dict[str, Any]


class RemoteService(ABC):
    """Remote CRUD endpoint for employee records.

    Implementations return raw, loosely-typed payloads; callers normalize
    them with :func:`staffsync.remote.normalize.normalize_record`. Failures
    are raised as :class:`staffsync.errors.RemoteError` subclasses.
    """

    @abstractmethod
    async def fetch_all(self) -> list[RawRecord]:
        """Fetch the full remote collection."""
        pass

    @abstractmethod
    async def fetch_one(self, record_id: int) -> RawRecord:
        """Fetch a single record by id."""
        pass

    @abstractmethod
    async def create(self, fields: dict[str, Any]) -> RawRecord:
        """Create a record and return the server's copy of it."""
        pass

    @abstractmethod
    async def update(self, record_id: int, fields: dict[str, Any]) -> Any:
        """Update a record. Returns the server's confirmation payload."""
        pass

    @abstractmethod
    async def delete(self, record_id: int) -> Any:
        """Delete a record. Returns the server's confirmation payload."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        return None
