"""
Embedded Database Backend.

One SQLite database per runtime holds every embedded datastore, one table
per settings table name:

    CREATE TABLE <name> (key TEXT PRIMARY KEY, value TEXT)   -- JSON rows

Creating a table that does not exist yet bumps ``PRAGMA user_version``,
the persisted schema version counter.

All SQLite calls run in a worker thread (asyncio.to_thread) and are
serialized by a lock, so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any

from konduit.errors import DatastoreError
from konduit.helpers import KEY_PATTERN

logger = logging.getLogger(__name__)


class EmbeddedDatabase:
    """Lazily opened SQLite database shared by the embedded datastores of a runtime."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._connection: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._tables: set[str] = set()

    def _connect(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = sqlite3.connect(self.path, check_same_thread=False)
            logger.info(f"[embedded] Opened database {self.path}")
        return self._connection

    async def _run(self, operation, *args: Any) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(operation, *args)
            except sqlite3.Error as e:
                raise DatastoreError(f"Embedded database error: {e}") from e

    async def version(self) -> int:
        """Current schema version."""
        return await self._run(self._version)

    def _version(self) -> int:
        return self._connect().execute("PRAGMA user_version").fetchone()[0]

    async def ensure_table(self, name: str) -> None:
        """
        Create a table if it does not exist yet and bump the schema version.

        Raises:
            DatastoreError: For table names that are not plain identifiers
        """
        if not KEY_PATTERN.match(name) or name[0].isdigit():
            raise DatastoreError(f"Invalid table name: {name!r}")
        if name in self._tables:
            return
        await self._run(self._ensure_table, name)
        self._tables.add(name)

    def _ensure_table(self, name: str) -> None:
        connection = self._connect()
        exists = connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        if exists:
            return
        version = connection.execute("PRAGMA user_version").fetchone()[0] + 1
        with connection:
            connection.execute(f'CREATE TABLE "{name}" (key TEXT PRIMARY KEY, value TEXT NOT NULL)')
            connection.execute(f"PRAGMA user_version = {version}")
        logger.info(f"[embedded] Created table {name} (version {version})")

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        return await self._run(self._get, table, key)

    def _get(self, table: str, key: str) -> dict[str, Any] | None:
        row = self._connect().execute(f'SELECT value FROM "{table}" WHERE key = ?', (key,)).fetchone()
        return json.loads(row[0]) if row else None

    async def put(self, table: str, dataset: dict[str, Any]) -> None:
        await self._run(self._put, table, dataset)

    def _put(self, table: str, dataset: dict[str, Any]) -> None:
        connection = self._connect()
        with connection:
            connection.execute(
                f'INSERT OR REPLACE INTO "{table}" (key, value) VALUES (?, ?)',
                (str(dataset["key"]), json.dumps(dataset)),
            )

    async def delete(self, table: str, key: str) -> None:
        await self._run(self._delete, table, key)

    def _delete(self, table: str, key: str) -> None:
        connection = self._connect()
        with connection:
            connection.execute(f'DELETE FROM "{table}" WHERE key = ?', (key,))

    async def count(self, table: str) -> int:
        return await self._run(self._count, table)

    def _count(self, table: str) -> int:
        return self._connect().execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
        self._tables.clear()


class EmbeddedBackend:
    """Datastore backend bound to one table of the embedded database."""

    merges_remotely = False

    def __init__(self, database: EmbeddedDatabase, table: str):
        self.database = database
        self.table = table

    async def open(self) -> None:
        await self.database.ensure_table(self.table)

    async def get(self, key: Any, credentials: Any = None) -> dict[str, Any] | None:
        return await self.database.get(self.table, str(key))

    async def put(self, dataset: dict[str, Any], credentials: Any = None) -> dict[str, Any]:
        await self.database.put(self.table, dataset)
        return dataset

    async def delete(self, key: Any, credentials: Any = None) -> None:
        await self.database.delete(self.table, str(key))

    async def count(self, credentials: Any = None) -> int:
        return await self.database.count(self.table)

    async def close(self) -> None:
        """The database is shared and closed by the runtime."""

    def __repr__(self) -> str:
        return f"<EmbeddedBackend table={self.table}>"
