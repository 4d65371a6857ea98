"""Local SQLite mirror of the remote record collection."""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

from ..errors import StoreError
from ..models import Record, SyncState

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    age INTEGER NOT NULL,
    salary INTEGER NOT NULL,
    sync_state TEXT NOT NULL DEFAULT 'synced'
);

CREATE INDEX IF NOT EXISTS idx_records_sync_state ON records(sync_state);

-- Placeholder ids are the negated rowids of this table: never reused and
-- never in the server's positive id space
CREATE TABLE IF NOT EXISTS placeholder_seq (
    n INTEGER PRIMARY KEY AUTOINCREMENT
);
"""


class LocalStore:
    """SQLite-backed record store with a change feed.

    Reads and writes are synchronous and individually committed. Each
    committed change pushes a fresh snapshot of the whole collection to
    every active subscriber, in commit order.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._subscribers: list[asyncio.Queue[list[Record]]] = []

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction, then notify subscribers.

        Raises:
            StoreError: If the block fails; the transaction is rolled back.
        """
        conn = self._ensure_connected()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to {action}: {e}") from e
        self._notify()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            name=row["name"],
            age=row["age"],
            salary=row["salary"],
            sync_state=SyncState(row["sync_state"]),
        )

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, record: Record) -> int:
        cursor = conn.execute(
            """
            INSERT INTO records (id, name, age, salary, sync_state)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.name,
                record.age,
                record.salary,
                record.sync_state.value,
            ),
        )
        return cursor.lastrowid

    # ==================== Reads ====================

    def all(self) -> list[Record]:
        """Point-in-time snapshot of every record, ordered by id."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT id, name, age, salary, sync_state FROM records ORDER BY id"
        )
        return [self._row_to_record(row) for row in cursor]

    def get(self, record_id: int) -> Record | None:
        """Look up a single record by id."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT id, name, age, salary, sync_state FROM records WHERE id = ?",
            (record_id,),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def count_by_state(self) -> dict[str, int]:
        """Count records per sync state."""
        conn = self._ensure_connected()
        counts = {state.value: 0 for state in SyncState}
        cursor = conn.execute(
            "SELECT sync_state, COUNT(*) FROM records GROUP BY sync_state"
        )
        for row in cursor:
            counts[row[0]] = row[1]
        return counts

    # ==================== Writes ====================

    def insert(self, record: Record) -> int:
        """Insert a record.

        An explicit ``record.id`` is kept; otherwise SQLite assigns one.

        Returns:
            The row id of the inserted record.
        """
        with self._transaction("insert record") as conn:
            record_id = self._insert_row(conn, record)
        logger.debug(f"Inserted record {record_id} ({record.sync_state.value})")
        return record_id

    def update(self, record: Record) -> bool:
        """Overwrite the row matching ``record.id``.

        Returns:
            True if a row was updated, False if the id is unknown.

        Raises:
            ValueError: If the record has no id.
        """
        if record.id is None:
            raise ValueError("Record id cannot be None for update")

        with self._transaction("update record") as conn:
            cursor = conn.execute(
                """
                UPDATE records
                SET name = ?, age = ?, salary = ?, sync_state = ?
                WHERE id = ?
                """,
                (
                    record.name,
                    record.age,
                    record.salary,
                    record.sync_state.value,
                    record.id,
                ),
            )
        return cursor.rowcount > 0

    def delete(self, record_id: int) -> int:
        """Delete a record by id. Deleting an unknown id is not an error.

        Returns:
            Number of rows deleted.
        """
        with self._transaction("delete record") as conn:
            cursor = conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        return cursor.rowcount

    def insert_placeholder(self, record: Record) -> int:
        """Insert a record under a fresh negative placeholder id.

        Any id on ``record`` is ignored.

        Returns:
            The placeholder id, always negative.
        """
        with self._transaction("insert placeholder") as conn:
            cursor = conn.execute("INSERT INTO placeholder_seq DEFAULT VALUES")
            placeholder_id = -cursor.lastrowid
            conn.execute("DELETE FROM placeholder_seq")
            self._insert_row(conn, record.with_id(placeholder_id))
        logger.debug(f"Inserted placeholder {placeholder_id}")
        return placeholder_id

    def swap(self, old_id: int, record: Record) -> int:
        """Replace row ``old_id`` with ``record`` in one transaction.

        Used to replace a placeholder row with its server-confirmed copy
        without subscribers seeing the record disappear in between. A local
        row already holding ``record.id`` is overwritten by the server copy.

        Returns:
            The id of the stored record.
        """
        with self._transaction("swap record") as conn:
            conn.execute("DELETE FROM records WHERE id = ?", (old_id,))
            conn.execute(
                """
                INSERT INTO records (id, name, age, salary, sync_state)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    age = excluded.age,
                    salary = excluded.salary,
                    sync_state = excluded.sync_state
                """,
                (
                    record.id,
                    record.name,
                    record.age,
                    record.salary,
                    record.sync_state.value,
                ),
            )
        logger.debug(f"Swapped record {old_id} for {record.id}")
        return record.id

    def replace_all(self, records: list[Record]) -> int:
        """Atomically replace the whole collection.

        Subscribers see a single snapshot after the transaction commits and
        never the empty intermediate state.

        Returns:
            Number of records inserted.
        """
        with self._transaction("replace records") as conn:
            conn.execute("DELETE FROM records")
            for record in records:
                self._insert_row(conn, record)
        logger.info(f"Replaced local mirror with {len(records)} records")
        return len(records)

    # ==================== Change feed ====================

    def _notify(self) -> None:
        """Push the committed state to every subscriber."""
        if not self._subscribers:
            return
        snapshot = self.all()
        for queue in self._subscribers:
            queue.put_nowait(snapshot)

    async def subscribe(self) -> AsyncIterator[list[Record]]:
        """Stream full-collection snapshots.

        Yields the current snapshot first, then one snapshot per committed
        change. Closing the generator unregisters it; calling subscribe()
        again starts a new feed.
        """
        queue: asyncio.Queue[list[Record]] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self.all()
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with record counts and database size.
        """
        counts = self.count_by_state()
        stats: dict[str, Any] = {
            "total_records": sum(counts.values()),
            "synced_records": counts[SyncState.SYNCED.value],
            "pending_records": counts[SyncState.PENDING.value],
            "subscribers": self.subscriber_count,
        }

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
