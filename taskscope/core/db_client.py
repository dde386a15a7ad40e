"""SQLite task and preference store built on aiosqlite.

This is the boundary where driver exceptions are first observed, so every
failure leaving this module is a ``StoreError`` with its kind already assigned.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import ValidationError

from taskscope.core import schema
from taskscope.core.config import settings
from taskscope.core.errors import as_store_error
from taskscope.core.query import OrderBy, Predicate, compile_order_by, compile_predicate
from taskscope.domain.task import Task
from taskscope.domain.user import UserPreferences


logger = logging.getLogger(__name__)

_TASK_COLUMNS = (
    "id",
    "tenant_id",
    "user_id",
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "completed_at",
    "tags",
    "project_id",
    "context_id",
    "area_id",
    "created_at",
    "updated_at",
)


def to_db_value(value: Any) -> Any:  # noqa: ANN401
    """Convert a Python value into its stored SQLite representation.

    Datetimes are normalised to UTC ISO-8601 text with microseconds so that
    string comparison in SQL matches chronological order.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list | dict):
        return json.dumps(value)
    return value


def _row_to_task(row: Mapping[str, Any]) -> Task:
    record = dict(row)
    record["tags"] = json.loads(record.get("tags") or "[]")
    return Task.model_validate(record)


class DatabaseClient:
    """Async SQLite client owning a single cached connection.

    ``reset_pool`` drops the cached connection so the next operation opens a
    fresh one; it is the cleanup hook used on pool exhaustion.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = Path(db_path or settings.sqlite_db_path).resolve()
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection (and ensure the schema) if not already open."""
        await self._get_connection()

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is not None:
            return self._connection

        async with self._lock:
            # Double-check after acquiring lock
            if self._connection is not None:
                return self._connection

            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self._db_path))
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode = WAL")
                if not self._schema_ready:
                    await schema.init_db(conn)
                    self._schema_ready = True
            except Exception as e:
                logger.error("Failed to connect to SQLite", extra={"db_path": str(self._db_path), "error": str(e)})
                raise as_store_error(e, context="Failed to connect to database") from e

            self._connection = conn
            logger.info("Created new SQLite connection", extra={"db_path": str(self._db_path)})
            return conn

    async def close(self) -> None:
        """Close the cached connection if one is open."""
        async with self._lock:
            conn, self._connection = self._connection, None
        if conn is None:
            return
        try:
            await conn.close()
            logger.info("Closed SQLite connection", extra={"db_path": str(self._db_path)})
        except Exception as e:
            logger.warning("Error closing SQLite connection", extra={"error": str(e)})

    async def reset_pool(self) -> None:
        """Drop every cached connection so the next operation reconnects."""
        logger.warning("Resetting SQLite connection pool", extra={"db_path": str(self._db_path)})
        await self.close()

    async def ping(self) -> bool:
        """Lightweight round-trip query used by health checks."""
        try:
            conn = await self._get_connection()
            cursor = await conn.execute("SELECT 1")
            row = await cursor.fetchone()
            return row is not None and row[0] == 1
        except Exception as e:
            raise as_store_error(e, context="Health check failed") from e

    async def list_tasks(
        self,
        *,
        where: Predicate,
        order_by: Iterable[OrderBy] = (),
        limit: int,
        offset: int = 0,
    ) -> list[Task]:
        """List tasks matching a predicate with ordering and pagination."""
        try:
            conn = await self._get_connection()
            where_clause, params = compile_predicate(where, convert=to_db_value)
            order_clause, order_params = compile_order_by(order_by)

            query = f"SELECT {', '.join(_TASK_COLUMNS)} FROM tasks WHERE {where_clause}"  # noqa: S608 - compiled from validated fields
            if order_clause:
                query += f" ORDER BY {order_clause}"
            query += " LIMIT ? OFFSET ?"

            cursor = await conn.execute(query, [*params, *map(to_db_value, order_params), limit, offset])
            rows = await cursor.fetchall()
            tasks = []
            for row in rows:
                try:
                    tasks.append(_row_to_task(row))
                except (ValidationError, json.JSONDecodeError) as e:
                    # Rows that no longer validate are left out of the page
                    logger.warning("Skipping unreadable task row", extra={"task_id": row["id"], "error": str(e)})

            logger.debug("Listed tasks", extra={"count": len(tasks), "limit": limit, "offset": offset})
            return tasks
        except Exception as e:
            logger.error("Failed to list tasks", extra={"error": str(e)})
            raise as_store_error(e, context="Failed to list tasks") from e

    async def count_tasks(self, *, where: Predicate) -> int:
        """Count tasks matching a predicate."""
        try:
            conn = await self._get_connection()
            where_clause, params = compile_predicate(where, convert=to_db_value)
            cursor = await conn.execute(f"SELECT COUNT(*) FROM tasks WHERE {where_clause}", params)  # noqa: S608
            row = await cursor.fetchone()
            return int(row[0]) if row else 0
        except Exception as e:
            logger.error("Failed to count tasks", extra={"error": str(e)})
            raise as_store_error(e, context="Failed to count tasks") from e

    async def get_user_preferences(self, user_id: str) -> UserPreferences:
        """Return the stored preferences for a user (defaults if the user has none)."""
        try:
            conn = await self._get_connection()
            cursor = await conn.execute("SELECT preferences FROM users WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
            raw = json.loads(row["preferences"]) if row and row["preferences"] else {}
            return UserPreferences.model_validate(raw)
        except Exception as e:
            logger.error("Failed to read user preferences", extra={"user_id": user_id, "error": str(e)})
            raise as_store_error(e, context=f"Failed to read preferences for {user_id}") from e

    async def update_user_preferences(self, user_id: str, changes: Mapping[str, Any]) -> UserPreferences:
        """Merge ``changes`` into the user's stored preference blob, creating the user if needed."""
        try:
            conn = await self._get_connection()
            cursor = await conn.execute("SELECT preferences FROM users WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
            current = json.loads(row["preferences"]) if row and row["preferences"] else {}
            merged = {**current, **changes}

            now = to_db_value(datetime.now(UTC))
            await conn.execute(
                """
                INSERT INTO users (id, preferences, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET preferences = excluded.preferences, updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(merged), now, now),
            )
            await conn.commit()

            logger.info("Updated user preferences", extra={"user_id": user_id, "keys": sorted(changes)})
            return UserPreferences.model_validate(merged)
        except Exception as e:
            logger.error("Failed to update user preferences", extra={"user_id": user_id, "error": str(e)})
            raise as_store_error(e, context=f"Failed to update preferences for {user_id}") from e

    async def create_task(self, data: Mapping[str, Any]) -> Task:
        """Insert a task row and return it.

        Used by seeding scripts and tests; task CRUD proper lives outside this engine.
        """
        now = datetime.now(UTC)
        record = {
            "id": uuid.uuid4().hex,
            "description": "",
            "status": "active",
            "priority": "medium",
            "tags": [],
            "created_at": now,
            "updated_at": now,
            **data,
        }
        try:
            conn = await self._get_connection()
            columns = [c for c in _TASK_COLUMNS if c in record]
            placeholders = ", ".join("?" for _ in columns)
            values = [to_db_value(record[c]) for c in columns]
            await conn.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",  # noqa: S608 - fixed column list
                values,
            )
            await conn.commit()

            cursor = await conn.execute(
                f"SELECT {', '.join(_TASK_COLUMNS)} FROM tasks WHERE id = ?",  # noqa: S608
                (record["id"],),
            )
            row = await cursor.fetchone()
            logger.info("Created task", extra={"task_id": record["id"]})
            return _row_to_task(row)
        except Exception as e:
            logger.error("Failed to create task", extra={"error": str(e)})
            raise as_store_error(e, context="Failed to create task") from e
