"""Optimistic synchronization between the local store and the remote service.

Mutations are applied to the local store first, mirrored to the remote
service, then either confirmed or compensated. A background refresh pulls
the full remote collection and replaces the local mirror.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable

from ..errors import (
    InconsistentStateError,
    InvalidResponse,
    NotFound,
    PreconditionFailed,
    RemoteError,
    RemoteUnreachable,
    StoreError,
    SyncError,
)
from ..models import Record, SyncState
from ..remote import RemoteService, normalize_record, normalize_records
from ..store import LocalStore

logger = logging.getLogger(__name__)

_UNSET = object()


class RefreshStatus(Enum):
    """Status of a refresh."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class RefreshResult:
    """Result of a refresh."""

    status: RefreshStatus
    records_fetched: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class SyncRepository:
    """Offline-first repository over a LocalStore and a RemoteService.

    Reads never wait on the network. create/update/delete write locally
    first, then call the remote service; on failure the local write is
    undone before the error is re-raised. Mutations on the same id are
    serialized.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteService,
        refresh_on_watch: bool = True,
    ):
        """Initialize the repository.

        Args:
            store: Local mirror; this repository is its only writer.
            remote: Remote record service.
            refresh_on_watch: Start a background refresh on every watch().
        """
        self._store = store
        self._remote = remote
        self._refresh_on_watch = refresh_on_watch

        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._background: set[asyncio.Task] = set()

        self._last_refresh: datetime | None = None
        self._consecutive_failures = 0

    # ==================== Reads ====================

    def snapshot(self) -> list[Record]:
        """Current local snapshot."""
        return self._store.all()

    def get(self, record_id: int) -> Record | None:
        """Current local copy of one record."""
        return self._store.get(record_id)

    async def fetch_remote(self, record_id: int) -> Record:
        """Fetch the server's copy of one record, bypassing the mirror.

        The local store is not modified.

        Raises:
            RemoteError: If the remote call fails.
        """
        raw = await self._remote.fetch_one(record_id)
        return normalize_record(raw, SyncState.SYNCED)

    async def watch(self) -> AsyncIterator[list[Record]]:
        """Stream local snapshots, starting a background refresh.

        The first snapshot is the current local state; the refresh result
        arrives later as another snapshot if it succeeds.
        """
        if self._refresh_on_watch:
            self._spawn_refresh()

        feed = self._store.subscribe()
        try:
            async for snapshot in feed:
                yield snapshot
        finally:
            await feed.aclose()

    async def watch_record(self, record_id: int) -> AsyncIterator[Record | None]:
        """Stream one record (None while absent), skipping repeats."""
        last: Any = _UNSET
        feed = self.watch()
        try:
            async for snapshot in feed:
                current = next((r for r in snapshot if r.id == record_id), None)
                if current != last:
                    last = current
                    yield current
        finally:
            await feed.aclose()

    # ==================== Refresh ====================

    def _spawn_refresh(self) -> asyncio.Task:
        task = asyncio.create_task(self._background_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except Exception:
            logger.exception("Unexpected error during background refresh")

    async def wait_background(self) -> None:
        """Wait for background refreshes started by watch()."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def refresh(self) -> RefreshResult:
        """Replace the local mirror with the remote collection.

        Failures leave the mirror untouched and are reported in the result,
        never raised.
        """
        try:
            raw = await self._remote.fetch_all()
        except RemoteError as e:
            self._consecutive_failures += 1
            status = (
                RefreshStatus.OFFLINE
                if isinstance(e, RemoteUnreachable)
                else RefreshStatus.FAILED
            )
            logger.warning(f"Background refresh failed ({status.value}): {e}")
            return RefreshResult(status=status, error=str(e))

        records = self._dedupe(normalize_records(raw))

        # A full replace must not erase rows whose rollback is still pending
        while self._inflight:
            await self._idle.wait()

        try:
            self._store.replace_all(records)
        except StoreError as e:
            self._consecutive_failures += 1
            logger.warning(f"Background refresh could not write mirror: {e}")
            return RefreshResult(status=RefreshStatus.FAILED, error=str(e))

        self._consecutive_failures = 0
        self._last_refresh = datetime.now()
        return RefreshResult(
            status=RefreshStatus.SUCCESS,
            records_fetched=len(records),
            timestamp=self._last_refresh,
        )

    @staticmethod
    def _dedupe(records: list[Record]) -> list[Record]:
        """Drop records without an id and keep the last copy of each id."""
        by_id: dict[int, Record] = {}
        skipped = 0
        for record in records:
            if record.id is None:
                skipped += 1
                continue
            by_id[record.id] = record
        if skipped:
            logger.warning(f"Skipped {skipped} remote records without an id")
        return list(by_id.values())

    async def refresh_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
        max_backoff_seconds: int = 3600,
    ) -> None:
        """Run continuous refresh loop.

        Args:
            interval_seconds: Seconds between refresh attempts.
            stop_event: Event to signal loop should stop.
            max_backoff_seconds: Upper bound on the backed-off interval.
        """
        logger.info(f"Starting refresh loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.refresh()
                logger.info(
                    f"Refresh: {result.status.value}, "
                    f"records={result.records_fetched}"
                )
            except Exception as e:
                logger.error(f"Refresh loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    max_backoff_seconds,
                )
                logger.debug(f"Backing off refresh for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Refresh loop stopped")

    # ==================== Mutations ====================

    @asynccontextmanager
    async def _record_lock(self, record_id: int) -> AsyncIterator[None]:
        """Hold the per-id lock; it is dropped once nobody uses or awaits it."""
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        self._lock_users[record_id] = self._lock_users.get(record_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[record_id] -= 1
            if not self._lock_users[record_id]:
                del self._lock_users[record_id]
                del self._locks[record_id]

    @asynccontextmanager
    async def _track_inflight(self) -> AsyncIterator[None]:
        self._inflight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if not self._inflight:
                self._idle.set()

    def _roll_back(
        self,
        error: BaseException,
        compensate: Callable[[], Any],
        description: str,
        snapshot: Record | None,
        record_id: int,
    ) -> None:
        """Undo an optimistic write after a failed remote call.

        Raises:
            InconsistentStateError: If the compensating write fails.
        """
        context = {"record_id": record_id}
        logger.warning(f"Rolling back {description}: {error}", extra=context)
        try:
            outcome = compensate()
        except Exception as store_error:
            logger.error(
                f"Rollback of {description} failed, local store is inconsistent",
                exc_info=True,
                extra=context,
            )
            raise InconsistentStateError(
                f"Rollback of {description} failed: {store_error}",
                original_error=error,
            ) from store_error

        if outcome is False:
            logger.error(
                f"Rollback of {description} found no row to restore", extra=context
            )
            raise InconsistentStateError(
                f"Rollback of {description} failed: row missing",
                original_error=error,
            )

        if isinstance(error, SyncError):
            error.snapshot = snapshot

    async def create(self, draft: Record) -> Record:
        """Create a record optimistically.

        Args:
            draft: Record to create; any id on it is ignored.

        Returns:
            The server-confirmed, SYNCED record.

        The draft is stored under a negative placeholder id until the server
        assigns the real one. If a local row already holds the server's id,
        the server copy overwrites it.

        Raises:
            PreconditionFailed: If the draft is invalid.
            RemoteError: If the remote call fails; the placeholder is removed.
            StoreError: If the server copy cannot be stored; the placeholder
                is removed.
            InconsistentStateError: If the placeholder cannot be removed.
        """
        draft.validate()

        async with self._track_inflight():
            temp_id = self._store.insert_placeholder(
                draft.with_state(SyncState.PENDING)
            )
            logger.debug(f"Optimistic insert as placeholder {temp_id}")

            try:
                raw = await self._remote.create(draft.fields())
                created = normalize_record(raw, SyncState.SYNCED)
                if created.id is None:
                    raise InvalidResponse("Create response carried no record id")
            except BaseException as e:
                self._roll_back(
                    e,
                    lambda: self._store.delete(temp_id),
                    f"create of placeholder {temp_id}",
                    None,
                    temp_id,
                )
                raise

            try:
                self._store.swap(temp_id, created)
            except StoreError as e:
                self._roll_back(
                    e,
                    lambda: self._store.delete(temp_id),
                    f"reconciliation of placeholder {temp_id}",
                    None,
                    temp_id,
                )
                raise

            logger.info(
                f"Created record {created.id} (placeholder {temp_id})",
                extra={"record_id": created.id},
            )
            return created

    async def update(self, record: Record) -> Record:
        """Update a record optimistically.

        Returns:
            The record as stored, SYNCED.

        Raises:
            PreconditionFailed: If the record has no id or is invalid.
            NotFound: If no local row has the record's id.
            RemoteError: If the remote call fails; the prior row is restored.
            InconsistentStateError: If the prior row cannot be restored.
        """
        if record.id is None:
            raise PreconditionFailed("Record id cannot be None for update")
        record.validate()

        async with self._record_lock(record.id), self._track_inflight():
            original = self._store.get(record.id)
            if original is None:
                raise NotFound(f"Record {record.id} not found in local store")

            if not self._store.update(record.with_state(SyncState.PENDING)):
                raise StoreError(f"Record {record.id} vanished before update")

            try:
                await self._remote.update(record.id, record.fields())
            except BaseException as e:
                self._roll_back(
                    e,
                    lambda: self._store.update(original),
                    f"update of record {record.id}",
                    original,
                    record.id,
                )
                raise

            synced = record.with_state(SyncState.SYNCED)
            if not self._store.update(synced):
                raise StoreError(f"Record {record.id} vanished before confirmation")
            logger.info(f"Updated record {record.id}", extra={"record_id": record.id})
            return synced

    async def delete(self, record_id: int) -> None:
        """Delete a record optimistically.

        Raises:
            NotFound: If no local row has this id.
            RemoteError: If the remote call fails; the row is re-inserted.
            InconsistentStateError: If the row cannot be re-inserted.
        """
        async with self._record_lock(record_id), self._track_inflight():
            original = self._store.get(record_id)
            if original is None:
                raise NotFound(f"Record {record_id} not found in local store")

            self._store.delete(record_id)

            try:
                await self._remote.delete(record_id)
            except BaseException as e:
                self._roll_back(
                    e,
                    lambda: self._store.insert(original),
                    f"delete of record {record_id}",
                    original,
                    record_id,
                )
                raise

            logger.info(f"Deleted record {record_id}", extra={"record_id": record_id})

    # ==================== Status ====================

    @property
    def last_refresh(self) -> datetime | None:
        """Get timestamp of last successful refresh."""
        return self._last_refresh

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with refresh and store statistics.
        """
        stats = self._store.get_stats()

        return {
            "last_refresh": (
                self._last_refresh.isoformat() if self._last_refresh else None
            ),
            "consecutive_failures": self._consecutive_failures,
            "inflight_mutations": self._inflight,
            "pending_records": stats["pending_records"],
            "total_records": stats["total_records"],
            "subscribers": stats["subscribers"],
        }

    async def close(self) -> None:
        """Cancel background refreshes and close the remote service."""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._remote.close()
