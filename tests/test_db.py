from __future__ import annotations

import asyncio
import sqlite3
from contextlib import closing
from pathlib import Path

import pytest
import pytest_asyncio

from task_api.db import TaskStorage
from task_api.errors import StorageError


@pytest_asyncio.fixture()
async def storage(tmp_path: Path):
    s = TaskStorage(str(tmp_path / "nested" / "todo.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.mark.asyncio
async def test_initialize_creates_schema_once(tmp_path: Path):
    path = tmp_path / "todo.db"
    s = TaskStorage(str(path))
    await s.initialize()
    await s.insert("first", "", "", "2024-01-01T00:00:00.000Z")
    # Second initialize on an existing table must not wipe data.
    await s.initialize()
    await s.close()

    reopened = TaskStorage(str(path))
    await reopened.initialize()
    rows = await reopened.fetch_all()
    await reopened.close()
    assert [r["title"] for r in rows] == ["first"]

    with closing(sqlite3.connect(path)) as conn:
        columns = [row[1] for row in conn.execute("PRAGMA table_info(tasks)")]
    assert columns == ["id", "title", "description", "due_date", "done", "created_at", "updated_at"]


@pytest.mark.asyncio
async def test_initialize_failure_raises_storage_error(tmp_path: Path):
    # A directory cannot be opened as a database file.
    s = TaskStorage(str(tmp_path))
    with pytest.raises(StorageError):
        await s.initialize()
    await s.close()


@pytest.mark.asyncio
async def test_failed_initialize_releases_connection(tmp_path: Path):
    path = tmp_path / "todo.db"
    path.write_bytes(b"this is not a database file" * 100)
    s = TaskStorage(str(path))
    with pytest.raises(StorageError):
        await s.initialize()
    assert s._conn is None
    with pytest.raises(StorageError):
        await s.ping()


def test_storage_can_be_reopened_on_another_event_loop(tmp_path: Path):
    s = TaskStorage(str(tmp_path / "todo.db"))

    async def concurrent_inserts(prefix: str):
        await s.initialize()
        await asyncio.gather(
            *(s.insert(f"{prefix}{i}", "", "", "2024-01-01T00:00:00.000Z") for i in range(5))
        )
        rows = await s.fetch_all()
        await s.close()
        return rows

    # Each asyncio.run uses a fresh loop, as a restarted server would.
    assert len(asyncio.run(concurrent_inserts("a"))) == 5
    assert len(asyncio.run(concurrent_inserts("b"))) == 10


@pytest.mark.asyncio
async def test_operations_require_initialize(tmp_path: Path):
    s = TaskStorage(str(tmp_path / "todo.db"))
    with pytest.raises(StorageError):
        await s.fetch_all()


@pytest.mark.asyncio
async def test_insert_and_fetch_one(storage: TaskStorage):
    tid = await storage.insert("Write report", "quarterly", "2030-03-31", "2024-01-01T10:00:00.000Z")
    row = await storage.fetch_one(tid)
    assert row == {
        "id": tid,
        "title": "Write report",
        "description": "quarterly",
        "due_date": "2030-03-31",
        "done": False,
        "created_at": "2024-01-01T10:00:00.000Z",
        "updated_at": "2024-01-01T10:00:00.000Z",
    }


@pytest.mark.asyncio
async def test_fetch_one_missing_returns_none(storage: TaskStorage):
    assert await storage.fetch_one(12345) is None


@pytest.mark.asyncio
async def test_fetch_all_orders_newest_first_with_id_tiebreak(storage: TaskStorage):
    a = await storage.insert("a", "", "", "2024-01-01T00:00:00.000Z")
    b = await storage.insert("b", "", "", "2024-01-02T00:00:00.000Z")
    c = await storage.insert("c", "", "", "2024-01-02T00:00:00.000Z")
    d = await storage.insert("d", "", "", "2023-12-31T00:00:00.000Z")
    rows = await storage.fetch_all()
    assert [r["id"] for r in rows] == [c, b, a, d]


@pytest.mark.asyncio
async def test_fetch_all_filters_on_done(storage: TaskStorage):
    open_id = await storage.insert("open", "", "", "2024-01-01T00:00:00.000Z")
    done_id = await storage.insert("closed", "", "", "2024-01-01T00:00:01.000Z")
    await storage.update(done_id, {"done": True}, "2024-01-01T00:00:02.000Z")

    assert [r["id"] for r in await storage.fetch_all(done=True)] == [done_id]
    assert [r["id"] for r in await storage.fetch_all(done=False)] == [open_id]
    assert len(await storage.fetch_all()) == 2


@pytest.mark.asyncio
async def test_update_only_touches_given_columns(storage: TaskStorage):
    tid = await storage.insert("title", "desc", "2030-01-01", "2024-01-01T00:00:00.000Z")
    count = await storage.update(tid, {"title": "new title"}, "2024-01-01T00:00:05.000Z")
    assert count == 1
    row = await storage.fetch_one(tid)
    assert row is not None
    assert row["title"] == "new title"
    assert row["description"] == "desc"
    assert row["due_date"] == "2030-01-01"
    assert row["done"] is False
    assert row["created_at"] == "2024-01-01T00:00:00.000Z"
    assert row["updated_at"] == "2024-01-01T00:00:05.000Z"


@pytest.mark.asyncio
async def test_update_missing_row_returns_zero(storage: TaskStorage):
    assert await storage.update(999, {"done": True}, "2024-01-01T00:00:00.000Z") == 0


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns(storage: TaskStorage):
    tid = await storage.insert("t", "", "", "2024-01-01T00:00:00.000Z")
    with pytest.raises(ValueError):
        await storage.update(tid, {"created_at": "2000-01-01T00:00:00.000Z"}, "2024-01-01T00:00:01.000Z")


@pytest.mark.asyncio
async def test_delete_returns_affected_count(storage: TaskStorage):
    tid = await storage.insert("t", "", "", "2024-01-01T00:00:00.000Z")
    assert await storage.delete(tid) == 1
    assert await storage.delete(tid) == 0
    assert await storage.fetch_one(tid) is None


@pytest.mark.asyncio
async def test_values_are_bound_not_interpolated(storage: TaskStorage):
    hostile = "x'); DROP TABLE tasks; --"
    tid = await storage.insert(hostile, hostile, "", "2024-01-01T00:00:00.000Z")
    row = await storage.fetch_one(tid)
    assert row is not None
    assert row["title"] == hostile
    assert await storage.ping() is True


@pytest.mark.asyncio
async def test_update_never_moves_updated_at_backwards(storage: TaskStorage):
    tid = await storage.insert("t", "", "", "2024-01-01T00:00:05.000Z")
    # Both writers computed their timestamp from the same stale read.
    await storage.update(tid, {"title": "first"}, "2024-01-01T00:00:05.001Z")
    await storage.update(tid, {"title": "second"}, "2024-01-01T00:00:05.001Z")
    row = await storage.fetch_one(tid)
    assert row is not None
    assert row["title"] == "second"
    assert row["updated_at"] == "2024-01-01T00:00:05.002Z"


@pytest.mark.asyncio
async def test_update_carries_the_next_millisecond_across_seconds(storage: TaskStorage):
    tid = await storage.insert("t", "", "", "2024-12-31T23:59:59.999Z")
    await storage.update(tid, {"done": True}, "2000-01-01T00:00:00.000Z")
    row = await storage.fetch_one(tid)
    assert row is not None
    assert row["updated_at"] == "2025-01-01T00:00:00.000Z"
