"""Record model shared by the store, the remote boundary and the repository."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .errors import PreconditionFailed


class SyncState(Enum):
    """Whether a local row has been confirmed by the remote service."""

    SYNCED = "synced"
    PENDING = "pending"  # Optimistic write awaiting confirmation


@dataclass(frozen=True)
class Record:
    """An employee record as mirrored in the local store.

    ``id`` is None until assigned. A SYNCED record always carries the
    remote service's identifier; a PENDING one may carry a local placeholder.
    """

    name: str
    age: int
    salary: int
    id: int | None = None
    sync_state: SyncState = SyncState.SYNCED

    @property
    def is_synced(self) -> bool:
        return self.sync_state is SyncState.SYNCED

    def with_state(self, state: SyncState) -> "Record":
        return replace(self, sync_state=state)

    def with_id(self, record_id: int | None) -> "Record":
        return replace(self, id=record_id)

    def fields(self) -> dict[str, Any]:
        """Payload sent to the remote service on create/update."""
        return {"name": self.name, "age": self.age, "salary": self.salary}

    def validate(self) -> None:
        """Check a user-supplied draft before any write is attempted.

        Raises:
            PreconditionFailed: If the name is empty or the salary negative.
        """
        if not self.name or not self.name.strip():
            raise PreconditionFailed("Record name must not be empty")
        if self.salary < 0:
            raise PreconditionFailed(
                f"Record salary must be non-negative, got {self.salary}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "salary": self.salary,
            "sync_state": self.sync_state.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Create from dictionary."""
        return cls(
            id=data.get("id"),
            name=data["name"],
            age=data["age"],
            salary=data["salary"],
            sync_state=SyncState(data.get("sync_state", SyncState.SYNCED.value)),
        )
