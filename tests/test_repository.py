"""Tests for the optimistic SyncRepository."""

import asyncio
import logging
from typing import Any
from unittest.mock import patch

import pytest

from staffsync.errors import (
    ConnectionFailed,
    InconsistentStateError,
    InvalidResponse,
    NotFound,
    PreconditionFailed,
    RemoteError,
    RemoteRejected,
    RemoteUnreachable,
    ServerError,
    StoreError,
)
from staffsync.models import Record, SyncState
from staffsync.remote import RemoteService
from staffsync.store import LocalStore
from staffsync.sync import RefreshStatus, SyncRepository


class FakeRemote(RemoteService):
    """Scripted remote service.

    Each operation returns its configured payload, or raises the configured
    error. ``gate`` lets a test hold a call open until it is set.
    ``next_ids`` hands out server ids to successive creates.
    """

    def __init__(self):
        self.records: list[dict[str, Any]] = []
        self.created: dict[str, Any] = {"id": 100}
        self.next_ids: list[int] = []
        self.errors: dict[str, BaseException] = {}
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if self.gate is not None:
            await self.gate.wait()
        if name in self.errors:
            raise self.errors[name]

    async def fetch_all(self):
        await self._call("fetch_all")
        return self.records

    async def fetch_one(self, record_id):
        await self._call("fetch_one", record_id)
        return next(r for r in self.records if r.get("id") == record_id)

    async def create(self, fields):
        await self._call("create", fields)
        if self.next_ids:
            return {**fields, "id": self.next_ids.pop(0)}
        return {**fields, **self.created}

    async def update(self, record_id, fields):
        await self._call("update", record_id, fields)
        return {**fields, "id": record_id}

    async def delete(self, record_id):
        await self._call("delete", record_id)
        return "Successfully! Record has been deleted"

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    """Create an in-memory LocalStore."""
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def repository(store, remote):
    return SyncRepository(store, remote, refresh_on_watch=False)


@pytest.fixture
def bo(store):
    """Seed a synced record with id 3."""
    record = Record(id=3, name="Bo", age=25, salary=40000)
    store.insert(record)
    return record


FAILURES = [
    ServerError("boom", status_code=500),
    ConnectionFailed(),
    InvalidResponse("bad envelope"),
]


class TestCreate:
    """Tests for optimistic create."""

    @pytest.mark.asyncio
    async def test_create_success(self, repository, remote, store):
        """Test create returns the synced server copy."""
        remote.created = {"id": 100}

        created = await repository.create(Record(name="Ann", age=30, salary=50000))

        assert created == Record(id=100, name="Ann", age=30, salary=50000)
        assert store.all() == [created]
        assert remote.calls == [("create", {"name": "Ann", "age": 30, "salary": 50000})]

    @pytest.mark.asyncio
    async def test_create_replaces_placeholder(self, repository, remote, store):
        """Test the placeholder row is discarded for a fresh server id."""
        remote.gate = asyncio.Event()
        task = asyncio.create_task(
            repository.create(Record(name="Ann", age=30, salary=50000))
        )
        await asyncio.sleep(0)

        (placeholder,) = store.all()
        assert placeholder.sync_state is SyncState.PENDING

        remote.gate.set()
        created = await task

        assert created.id != placeholder.id
        assert created.sync_state is SyncState.SYNCED
        assert store.get(placeholder.id) is None

    @pytest.mark.asyncio
    async def test_create_server_id_matches_stale_row(self, repository, remote, store, bo):
        """Test a server id already held locally ends as the synced server copy."""
        remote.created = {"id": 3}

        created = await repository.create(Record(name="Ann", age=30, salary=50000))

        assert created == Record(id=3, name="Ann", age=30, salary=50000)
        assert store.all() == [created]
        assert store.count_by_state()[SyncState.PENDING.value] == 0

    @pytest.mark.asyncio
    async def test_concurrent_creates_reconcile(self, repository, remote, store):
        """Test overlapping creates each end as their own synced row."""
        remote.gate = asyncio.Event()
        remote.next_ids = [2, 1]
        first = asyncio.create_task(
            repository.create(Record(name="Ann", age=30, salary=1))
        )
        second = asyncio.create_task(
            repository.create(Record(name="Bea", age=31, salary=2))
        )
        await asyncio.sleep(0)

        placeholders = store.all()
        assert len(placeholders) == 2
        assert all(r.id < 0 for r in placeholders)

        remote.gate.set()
        created = await asyncio.gather(first, second)

        assert [r.id for r in created] == [2, 1]
        assert store.all() == [
            Record(id=1, name="Bea", age=31, salary=2),
            Record(id=2, name="Ann", age=30, salary=1),
        ]

    @pytest.mark.asyncio
    async def test_create_reconciliation_failure_rolls_back(self, repository, remote, store):
        """Test a failure storing the server copy removes the placeholder."""
        with patch.object(store, "swap", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                await repository.create(Record(name="Ann", age=30, salary=1))

        assert store.all() == []

    @pytest.mark.asyncio
    async def test_create_ignores_draft_id(self, repository, store):
        """Test an id on the draft is not used as the placeholder."""
        await repository.create(Record(id=55, name="Ann", age=30, salary=1))

        assert [r.id for r in store.all()] == [100]

    @pytest.mark.asyncio
    async def test_create_normalizes_read_schema_response(self, repository, remote):
        """Test a response in the employee_* schema is accepted."""
        remote.created = {"id": "101", "employee_salary": "50000"}

        created = await repository.create(Record(name="Ann", age=30, salary=50000))

        assert created.id == 101
        assert created.salary == 50000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", FAILURES)
    async def test_create_failure_rolls_back(self, repository, remote, store, bo, error):
        """Test a failed create leaves exactly the prior rows."""
        remote.errors["create"] = error
        before = store.all()

        with pytest.raises(type(error)):
            await repository.create(Record(name="Ann", age=30, salary=50000))

        assert store.all() == before

    @pytest.mark.asyncio
    async def test_create_response_without_id_rolls_back(self, repository, remote, store):
        """Test a created record with no id is treated as a failure."""
        remote.created = {"id": None}

        with pytest.raises(InvalidResponse):
            await repository.create(Record(name="Ann", age=30, salary=50000))

        assert store.all() == []

    @pytest.mark.asyncio
    async def test_create_on_empty_store_always_failing(self, repository, remote, store):
        """Test an always-failing remote leaves an empty store empty."""
        remote.errors["create"] = ConnectionFailed()

        with pytest.raises((RemoteRejected, RemoteUnreachable)):
            await repository.create(Record(name="Ann", age=30, salary=50000))

        assert store.all() == []

    @pytest.mark.asyncio
    async def test_create_invalid_draft(self, repository, remote, store):
        """Test invalid drafts fail before any write."""
        with pytest.raises(PreconditionFailed):
            await repository.create(Record(name="", age=30, salary=1))

        assert store.all() == []
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_create_rollback_failure_is_distinct(self, repository, remote, store):
        """Test a failing compensation raises InconsistentStateError."""
        original = ServerError("boom", status_code=500)
        remote.errors["create"] = original

        with patch.object(store, "delete", side_effect=StoreError("disk full")):
            with pytest.raises(InconsistentStateError) as exc_info:
                await repository.create(Record(name="Ann", age=30, salary=1))

        assert exc_info.value.original_error is original
        assert isinstance(exc_info.value.__cause__, StoreError)


class TestUpdate:
    """Tests for optimistic update."""

    @pytest.mark.asyncio
    async def test_update_success(self, repository, remote, store, bo):
        """Test a confirmed update is stored as synced."""
        changed = Record(id=3, name="Bob", age=26, salary=41000)

        updated = await repository.update(changed)

        assert updated == changed
        assert store.get(3) == changed
        assert remote.calls == [("update", 3, changed.fields())]

    @pytest.mark.asyncio
    async def test_update_is_pending_while_in_flight(self, repository, remote, store, bo):
        """Test the optimistic row is visible as pending."""
        remote.gate = asyncio.Event()
        changed = Record(id=3, name="Bob", age=26, salary=41000)
        task = asyncio.create_task(repository.update(changed))
        await asyncio.sleep(0)

        assert store.get(3) == changed.with_state(SyncState.PENDING)

        remote.gate.set()
        await task
        assert store.get(3).sync_state is SyncState.SYNCED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", FAILURES)
    async def test_update_failure_restores_row(self, repository, remote, store, bo, error):
        """Test a failed update restores the exact prior row."""
        remote.errors["update"] = error
        before = store.all()

        with pytest.raises(type(error)) as exc_info:
            await repository.update(Record(id=3, name="Bob", age=26, salary=41000))

        assert store.get(3) == bo
        assert store.all() == before
        assert exc_info.value.snapshot == bo

    @pytest.mark.asyncio
    async def test_rollback_log_carries_record_id(self, repository, remote, store, bo, caplog):
        """Test rollback warnings are tagged with the record id."""
        remote.errors["update"] = ConnectionFailed()

        with caplog.at_level(logging.WARNING, logger="staffsync.sync"):
            with pytest.raises(ConnectionFailed):
                await repository.update(Record(id=3, name="Bob", age=26, salary=1))

        (rollback,) = [r for r in caplog.records if "Rolling back" in r.getMessage()]
        assert rollback.record_id == 3

    @pytest.mark.asyncio
    async def test_update_restores_pending_state(self, repository, remote, store):
        """Test rollback keeps a prior pending state."""
        pending = Record(id=8, name="P", age=1, salary=1, sync_state=SyncState.PENDING)
        store.insert(pending)
        remote.errors["update"] = ConnectionFailed()

        with pytest.raises(ConnectionFailed):
            await repository.update(Record(id=8, name="Q", age=2, salary=2))

        assert store.get(8) == pending

    @pytest.mark.asyncio
    async def test_update_without_id(self, repository, remote):
        """Test update requires an id."""
        with pytest.raises(PreconditionFailed):
            await repository.update(Record(name="Bob", age=26, salary=1))

        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, repository, remote, store):
        """Test update of a missing row fails without mutation."""
        with pytest.raises(NotFound):
            await repository.update(Record(id=42, name="Bob", age=26, salary=1))

        assert store.all() == []
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_update_rollback_failure_is_distinct(self, repository, remote, store, bo):
        """Test a rollback that finds no row raises InconsistentStateError."""
        remote.errors["update"] = ServerError("boom", status_code=500)
        real_update = store.update
        calls = []

        def flaky_update(record):
            calls.append(record)
            if len(calls) == 1:
                return real_update(record)
            return False

        with patch.object(store, "update", side_effect=flaky_update):
            with pytest.raises(InconsistentStateError) as exc_info:
                await repository.update(Record(id=3, name="Bob", age=26, salary=1))

        assert isinstance(exc_info.value.original_error, ServerError)


class TestDelete:
    """Tests for optimistic delete."""

    @pytest.mark.asyncio
    async def test_delete_success(self, repository, remote, store, bo):
        """Test a confirmed delete removes the row."""
        await repository.delete(3)

        assert store.get(3) is None
        assert remote.calls == [("delete", 3)]

    @pytest.mark.asyncio
    async def test_delete_is_immediate(self, repository, remote, store, bo):
        """Test the row disappears before the remote call returns."""
        remote.gate = asyncio.Event()
        task = asyncio.create_task(repository.delete(3))
        await asyncio.sleep(0)

        assert store.get(3) is None

        remote.gate.set()
        await task

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", FAILURES)
    async def test_delete_failure_restores_row(self, repository, remote, store, bo, error):
        """Test a failed delete re-inserts the exact row."""
        remote.errors["delete"] = error

        with pytest.raises(type(error)):
            await repository.delete(3)

        assert store.all() == [bo]

    @pytest.mark.asyncio
    async def test_delete_unknown_id(self, repository, remote):
        """Test delete of a missing row fails without a remote call."""
        with pytest.raises(NotFound):
            await repository.delete(3)

        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_delete_rollback_failure_is_distinct(self, repository, remote, store, bo):
        """Test a failed re-insert raises InconsistentStateError."""
        remote.errors["delete"] = ConnectionFailed()

        with patch.object(store, "insert", side_effect=StoreError("locked")):
            with pytest.raises(InconsistentStateError) as exc_info:
                await repository.delete(3)

        assert isinstance(exc_info.value.original_error, ConnectionFailed)


class TestConcurrency:
    """Tests for per-id serialization and refresh gating."""

    @pytest.mark.asyncio
    async def test_same_id_mutations_serialize(self, repository, remote, store, bo):
        """Test a second mutation on an id waits for the first."""
        remote.gate = asyncio.Event()
        first = asyncio.create_task(
            repository.update(Record(id=3, name="One", age=1, salary=1))
        )
        second = asyncio.create_task(
            repository.update(Record(id=3, name="Two", age=2, salary=2))
        )
        await asyncio.sleep(0)

        assert [c[0] for c in remote.calls] == ["update"]

        remote.gate.set()
        await asyncio.gather(first, second)

        assert store.get(3).name == "Two"
        assert len(remote.calls) == 2
        assert repository._locks == {}

    @pytest.mark.asyncio
    async def test_locks_released_after_mutations(self, repository, remote, store, bo):
        """Test per-id locks do not accumulate across distinct ids."""
        store.insert(Record(id=4, name="Cy", age=40, salary=1))
        remote.errors["delete"] = ConnectionFailed()

        await repository.update(Record(id=3, name="Bob", age=26, salary=1))
        with pytest.raises(ConnectionFailed):
            await repository.delete(4)
        with pytest.raises(NotFound):
            await repository.delete(99)

        assert repository._locks == {}
        assert repository._lock_users == {}

    @pytest.mark.asyncio
    async def test_refresh_waits_for_inflight_mutation(self, repository, remote, store, bo):
        """Test a full replace does not clobber a rollback in progress."""
        remote.records = [{"id": 9, "name": "Z", "age": 1, "salary": 1}]
        remote.errors["delete"] = ConnectionFailed()
        remote.gate = asyncio.Event()

        delete_task = asyncio.create_task(repository.delete(3))
        refresh_task = asyncio.create_task(repository.refresh())
        await asyncio.sleep(0)
        remote.gate.set()

        with pytest.raises(ConnectionFailed):
            await delete_task
        result = await refresh_task

        assert result.status is RefreshStatus.SUCCESS
        assert [r.id for r in store.all()] == [9]


class TestRefresh:
    """Tests for background refresh."""

    @pytest.mark.asyncio
    async def test_refresh_replaces_mirror(self, repository, remote, store, bo):
        """Test refresh replaces local rows with normalized remote ones."""
        remote.records = [
            {"id": "1", "employee_name": "Ann", "employee_age": "30", "employee_salary": "50000"},
            {"id": 2, "name": "Cy", "age": 40, "salary": 60000},
        ]

        result = await repository.refresh()

        assert result.status is RefreshStatus.SUCCESS
        assert result.records_fetched == 2
        assert store.all() == [
            Record(id=1, name="Ann", age=30, salary=50000),
            Record(id=2, name="Cy", age=40, salary=60000),
        ]
        assert repository.last_refresh is not None

    @pytest.mark.asyncio
    async def test_refresh_skips_records_without_id(self, repository, remote, store):
        """Test remote rows lacking an id are not mirrored."""
        remote.records = [{"name": "NoId"}, {"id": 1, "name": "A"}, {"id": 1, "name": "B"}]

        result = await repository.refresh()

        assert result.records_fetched == 1
        assert [(r.id, r.name) for r in store.all()] == [(1, "B")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status",
        [
            (ConnectionFailed(), RefreshStatus.OFFLINE),
            (ServerError("down", status_code=503), RefreshStatus.FAILED),
        ],
    )
    async def test_refresh_failure_is_swallowed(self, repository, remote, store, bo, error, status):
        """Test refresh failures leave the mirror and do not raise."""
        remote.errors["fetch_all"] = error

        result = await repository.refresh()

        assert result.status is status
        assert result.error
        assert store.all() == [bo]
        assert repository.get_sync_status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_refresh_store_failure_reported(self, repository, remote, store, bo):
        """Test a failing replace is reported, not raised."""
        remote.records = [{"id": 1, "name": "A"}]

        with patch.object(store, "replace_all", side_effect=StoreError("locked")):
            result = await repository.refresh()

        assert result.status is RefreshStatus.FAILED
        assert store.all() == [bo]

    @pytest.mark.asyncio
    async def test_refresh_loop_stops(self, repository, remote):
        """Test the refresh loop exits when stopped."""
        stop_event = asyncio.Event()
        remote.records = []

        task = asyncio.create_task(
            repository.refresh_loop(interval_seconds=60, stop_event=stop_event)
        )
        await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert remote.calls == [("fetch_all",)]


class TestWatch:
    """Tests for the read path."""

    @pytest.mark.asyncio
    async def test_watch_returns_local_state_without_waiting(self, store, remote, bo):
        """Test the first snapshot arrives while the remote is stalled."""
        repository = SyncRepository(store, remote, refresh_on_watch=True)
        remote.gate = asyncio.Event()
        feed = repository.watch()

        first = await asyncio.wait_for(anext(feed), timeout=1)

        assert first == [bo]
        remote.gate.set()
        await repository.wait_background()
        await feed.aclose()

    @pytest.mark.asyncio
    async def test_watch_receives_refresh(self, store, remote, bo):
        """Test a successful background refresh shows up on the feed."""
        repository = SyncRepository(store, remote, refresh_on_watch=True)
        remote.records = [{"id": 5, "name": "E", "age": 1, "salary": 1}]
        feed = repository.watch()

        assert await anext(feed) == [bo]
        second = await asyncio.wait_for(anext(feed), timeout=1)

        assert second == [Record(id=5, name="E", age=1, salary=1)]
        await feed.aclose()

    @pytest.mark.asyncio
    async def test_watch_survives_offline_refresh(self, store, remote, bo):
        """Test an offline refresh does not break the feed."""
        repository = SyncRepository(store, remote, refresh_on_watch=True)
        remote.errors["fetch_all"] = ConnectionFailed()
        feed = repository.watch()

        assert await anext(feed) == [bo]
        await repository.wait_background()

        store.delete(3)
        assert await asyncio.wait_for(anext(feed), timeout=1) == []
        await feed.aclose()

    @pytest.mark.asyncio
    async def test_watch_record(self, repository, store, bo):
        """Test watch_record yields changes to one id only."""
        feed = repository.watch_record(3)

        assert await anext(feed) == bo

        store.insert(Record(id=4, name="Other", age=1, salary=1))
        await repository.update(Record(id=3, name="Bob", age=25, salary=40000))

        # Pending then synced; the unrelated insert is skipped
        assert (await anext(feed)).sync_state is SyncState.PENDING
        assert (await anext(feed)).name == "Bob"

        await repository.delete(3)
        assert await anext(feed) is None
        await feed.aclose()


class TestFetchRemote:
    """Tests for reading the server copy of one record."""

    @pytest.mark.asyncio
    async def test_fetch_remote(self, repository, remote, store, bo):
        """Test the server copy is normalized and the mirror left alone."""
        remote.records = [
            {"id": 3, "employee_name": "Bo", "employee_age": "26",
             "employee_salary": "45000"},
        ]

        fetched = await repository.fetch_remote(3)

        assert fetched == Record(id=3, name="Bo", age=26, salary=45000)
        assert store.all() == [bo]
        assert remote.calls == [("fetch_one", 3)]

    @pytest.mark.asyncio
    async def test_fetch_remote_failure(self, repository, remote, store, bo):
        """Test remote failures propagate without touching the mirror."""
        remote.errors["fetch_one"] = ConnectionFailed()

        with pytest.raises(ConnectionFailed):
            await repository.fetch_remote(3)

        assert store.all() == [bo]


class TestStatus:
    """Tests for status and shutdown."""

    def test_get_sync_status(self, repository, store, bo):
        """Test status counts."""
        store.insert(Record(name="P", age=1, salary=1, sync_state=SyncState.PENDING))

        status = repository.get_sync_status()

        assert status["last_refresh"] is None
        assert status["total_records"] == 2
        assert status["pending_records"] == 1
        assert status["inflight_mutations"] == 0
        assert status["subscribers"] == 0

    @pytest.mark.asyncio
    async def test_close(self, repository, remote):
        """Test close closes the remote service."""
        await repository.close()

        assert remote.closed


class TestScenarios:
    """End-to-end scenarios on a seeded store."""

    @pytest.mark.asyncio
    async def test_delete_then_gone(self, repository, store, bo):
        """Test successful delete of id 3."""
        await repository.delete(3)

        assert all(r.id != 3 for r in store.all())

    @pytest.mark.asyncio
    async def test_failed_delete_restores_exact_row(self, repository, remote, store, bo):
        """Test failed delete of id 3 restores it bit-for-bit."""
        remote.errors["delete"] = RemoteError("rejected")

        with pytest.raises(RemoteError):
            await repository.delete(3)

        assert store.all() == [Record(id=3, name="Bo", age=25, salary=40000,
                                      sync_state=SyncState.SYNCED)]
