from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiosqlite

from .errors import StorageError
from .models import TaskRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Cols:
    table: str = "tasks"
    id: str = "id"
    title: str = "title"
    description: str = "description"
    due_date: str = "due_date"
    done: str = "done"
    created_at: str = "created_at"
    updated_at: str = "updated_at"


_COLS = _Cols()

# Columns a partial update may touch; updated_at is always set separately.
UPDATABLE_COLUMNS = frozenset({_COLS.title, _COLS.description, _COLS.due_date, _COLS.done})

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {_COLS.table} (
    {_COLS.id} INTEGER PRIMARY KEY AUTOINCREMENT,
    {_COLS.title} TEXT NOT NULL,
    {_COLS.description} TEXT NOT NULL DEFAULT '',
    {_COLS.due_date} TEXT NOT NULL DEFAULT '',
    {_COLS.done} INTEGER NOT NULL DEFAULT 0 CHECK ({_COLS.done} IN (0, 1)),
    {_COLS.created_at} TEXT NOT NULL,
    {_COLS.updated_at} TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_done ON {_COLS.table}({_COLS.done});
"""

_SELECT = (
    f"SELECT {_COLS.id}, {_COLS.title}, {_COLS.description}, {_COLS.due_date}, "
    f"{_COLS.done}, {_COLS.created_at}, {_COLS.updated_at} FROM {_COLS.table}"
)
_ORDER = f"ORDER BY {_COLS.created_at} DESC, {_COLS.id} DESC"


class TaskStorage:
    """
    Async SQLite storage for tasks over a single shared connection.

    aiosqlite runs every statement on one worker thread in submission order;
    writes additionally hold a lock so a statement and its commit are never
    split by another request's write.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        # Created with the connection so it belongs to the serving event loop.
        self._write_lock: Optional[asyncio.Lock] = None

    async def initialize(self) -> None:
        """Open the connection and create the schema on first run."""
        try:
            if self._db_path != ":memory:":
                os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
            if self._conn is None:
                self._conn = await aiosqlite.connect(self._db_path)
                self._conn.row_factory = sqlite3.Row
                self._write_lock = asyncio.Lock()
            async with self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                (_COLS.table,),
            ) as cur:
                exists = await cur.fetchone()
            if exists is None:
                await self._conn.executescript(SCHEMA)
                await self._conn.commit()
                logger.info("Database migrated: %s", self._db_path)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to initialize database at %s: %s", self._db_path, e)
            await self.close()
            raise StorageError(f"Failed to initialize database at {self._db_path}", "initialize") from e
        logger.info("Database ready at %s", self._db_path)

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            self._write_lock = None
            await conn.close()

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Database not initialized", "connect")
        return self._conn

    # ---- primitives ----

    async def _row(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        conn = self._connection()
        try:
            async with conn.execute(sql, params) as cur:
                return await cur.fetchone()
        except sqlite3.Error as e:
            logger.error("Query failed: %s", e)
            raise StorageError("Database query failed", "query") from e

    async def _rows(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        conn = self._connection()
        try:
            async with conn.execute(sql, params) as cur:
                return list(await cur.fetchall())
        except sqlite3.Error as e:
            logger.error("Query failed: %s", e)
            raise StorageError("Database query failed", "query") from e

    async def _run(self, sql: str, params: Sequence[Any] = ()) -> Tuple[Optional[int], int]:
        """Execute a write and commit it. Returns (lastrowid, rowcount)."""
        conn = self._connection()
        async with self._write_lock:
            try:
                async with conn.execute(sql, params) as cur:
                    result = (cur.lastrowid, cur.rowcount)
                await conn.commit()
                return result
            except sqlite3.Error as e:
                logger.error("Write failed: %s", e)
                await self._rollback(conn)
                raise StorageError("Database write failed", "execute") from e

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except sqlite3.Error as e:
            logger.error("Rollback failed: %s", e)

    def _row_to_task(self, row: sqlite3.Row) -> TaskRow:
        return {
            "id": int(row[_COLS.id]),
            "title": str(row[_COLS.title]),
            "description": row[_COLS.description] or "",
            "due_date": row[_COLS.due_date] or "",
            "done": row[_COLS.done] == 1,
            "created_at": str(row[_COLS.created_at]),
            "updated_at": str(row[_COLS.updated_at]),
        }

    # ---- task operations ----

    async def ping(self) -> bool:
        row = await self._row("SELECT 1")
        return row is not None

    async def fetch_all(self, done: Optional[bool] = None) -> List[TaskRow]:
        """Return tasks newest first, optionally only those with the given done flag."""
        if done is None:
            rows = await self._rows(f"{_SELECT} {_ORDER}")
        else:
            rows = await self._rows(
                f"{_SELECT} WHERE {_COLS.done} = ? {_ORDER}", (1 if done else 0,)
            )
        return [self._row_to_task(r) for r in rows]

    async def fetch_one(self, task_id: int) -> Optional[TaskRow]:
        row = await self._row(f"{_SELECT} WHERE {_COLS.id} = ?", (task_id,))
        return self._row_to_task(row) if row is not None else None

    async def insert(self, title: str, description: str, due_date: str, created_at: str) -> int:
        """Insert a not-done task and return its id."""
        new_id, _ = await self._run(
            f"""
            INSERT INTO {_COLS.table} ({_COLS.title}, {_COLS.description}, {_COLS.due_date},
                {_COLS.done}, {_COLS.created_at}, {_COLS.updated_at})
            VALUES (?, ?, ?, 0, ?, ?)
            """,
            (title, description, due_date, created_at, created_at),
        )
        if new_id is None:
            raise StorageError("Insert did not return a row id", "insert")
        return int(new_id)

    async def update(self, task_id: int, changes: Mapping[str, Any], updated_at: str) -> int:
        """
        Apply the given column changes plus updated_at to one task.

        The stored updated_at never moves backwards: when the given value is
        not later than the current one, the current value plus 1 ms is written.

        Returns:
            Number of affected rows, 0 when the task does not exist.
        """
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns cannot be updated: {', '.join(sorted(unknown))}")

        assignments: List[str] = []
        params: List[Any] = []
        values: Dict[str, Any] = dict(changes)
        for column in (_COLS.title, _COLS.description, _COLS.due_date, _COLS.done):
            if column in values:
                assignments.append(f"{column} = ?")
                value = values[column]
                params.append((1 if value else 0) if column == _COLS.done else value)
        assignments.append(
            f"{_COLS.updated_at} = MAX(?, strftime('%Y-%m-%dT%H:%M:%fZ', {_COLS.updated_at}, '+0.001 seconds'))"
        )
        params.extend([updated_at, task_id])

        _, count = await self._run(
            f"UPDATE {_COLS.table} SET {', '.join(assignments)} WHERE {_COLS.id} = ?",
            params,
        )
        return count

    async def delete(self, task_id: int) -> int:
        _, count = await self._run(f"DELETE FROM {_COLS.table} WHERE {_COLS.id} = ?", (task_id,))
        return count
