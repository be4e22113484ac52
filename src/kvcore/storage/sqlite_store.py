# src/kvcore/storage/sqlite_store.py
"""
SQLite key-value store.

An embedded rendition of the relational store on top of ``aiosqlite``. All
stores opened on the same URI share one connection (SQLite serializes writers
anyway); the connection runs in autocommit mode so every statement commits
on its own.

URIs:
    sqlite://:memory:           in-memory database (shared by stores on that URI)
    sqlite:////abs/path/kv.db   database file
"""

import asyncio
import logging
import weakref
from collections.abc import Sequence
from typing import Any

import aiosqlite

from ..config.models import SqliteConfig, sqlite_database
from ..models import Entry
from .base import BaseKeyValueStore, text_payload
from .identifiers import quote_sqlite
from .pool import PoolRegistry
from .schema_manager import SqliteSchemaManager

logger = logging.getLogger(__name__)


async def open_sqlite_connection(uri: str, options: dict[str, Any]) -> aiosqlite.Connection:
    options = dict(options)
    busy_timeout = int(options.pop("busy_timeout", 5000))
    database = sqlite_database(uri)
    conn = await aiosqlite.connect(database, isolation_level=None, **options)
    try:
        await conn.execute(f"PRAGMA busy_timeout = {busy_timeout}")
    except Exception:
        await conn.close()
        raise
    logger.info(f"SQLite database opened: {database}")
    return conn


async def close_sqlite_connection(conn: aiosqlite.Connection) -> None:
    await conn.close()


sqlite_connections = PoolRegistry("sqlite", open_sqlite_connection, close_sqlite_connection)

# Stores sharing a connection bootstrap one at a time: the legacy table rebuild
# reads the table shape before rewriting it.
_bootstrap_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


class SqliteStore(BaseKeyValueStore):
    """Namespaced key-value store backed by one SQLite table."""

    dialect = "sqlite"
    config_class = SqliteConfig
    registry = sqlite_connections

    config: SqliteConfig

    @property
    def table(self) -> str:
        return quote_sqlite(self.config.table)

    async def _bootstrap(self, handle: aiosqlite.Connection) -> None:
        async with _bootstrap_locks.setdefault(handle, asyncio.Lock()):
            await SqliteSchemaManager(handle, self.config).ensure_schema()

    async def _fetch(self, conn: aiosqlite.Connection, sql: str, params: Sequence[Any]) -> list[tuple]:
        async with conn.execute(sql, params) as cursor:
            return [tuple(row) for row in await cursor.fetchall()]

    async def _execute(self, conn: aiosqlite.Connection, sql: str, params: Sequence[Any]) -> int:
        async with conn.execute(sql, params) as cursor:
            return cursor.rowcount

    async def _get(self, handle: aiosqlite.Connection, key: str, namespace: str) -> Any:
        rows = await self._fetch(
            handle,
            f"SELECT value FROM {self.table} WHERE key = ? AND namespace = ?",
            (key, namespace),
        )
        return rows[0][0] if rows else None

    async def _get_many(self, handle: aiosqlite.Connection, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        rows = await self._fetch(
            handle,
            f"SELECT key, value FROM {self.table} WHERE key IN ({_placeholders(len(keys))}) AND namespace = ?",
            (*keys, namespace),
        )
        return {key: value for key, value in rows}

    async def _set_many(self, handle: aiosqlite.Connection, entries: Sequence[Entry], namespace: str) -> None:
        rows = [
            (entry.key, text_payload(entry.value), namespace, self._expires_for(entry))
            for entry in entries
        ]
        await handle.executemany(
            f"INSERT INTO {self.table} (key, value, namespace, expires) VALUES (?, ?, ?, ?) "
            f"ON CONFLICT(key, namespace) DO UPDATE SET value = excluded.value, expires = excluded.expires",
            rows,
        )

    async def _delete(self, handle: aiosqlite.Connection, key: str, namespace: str) -> bool:
        removed = await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE key = ? AND namespace = ?",
            (key, namespace),
        )
        return removed > 0

    async def _delete_many(self, handle: aiosqlite.Connection, keys: Sequence[str], namespace: str) -> int:
        return await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE key IN ({_placeholders(len(keys))}) AND namespace = ?",
            (*keys, namespace),
        )

    async def _has_many(self, handle: aiosqlite.Connection, keys: Sequence[str], namespace: str) -> set[str]:
        rows = await self._fetch(
            handle,
            f"SELECT key FROM {self.table} WHERE key IN ({_placeholders(len(keys))}) AND namespace = ?",
            (*keys, namespace),
        )
        return {row[0] for row in rows}

    async def _clear(self, handle: aiosqlite.Connection, namespace: str) -> None:
        await self._execute(handle, f"DELETE FROM {self.table} WHERE namespace = ?", (namespace,))

    async def _fetch_page(
        self, handle: aiosqlite.Connection, namespace: str, cursor: str | None, limit: int
    ) -> list[tuple[str, Any]]:
        if cursor is None:
            return await self._fetch(
                handle,
                f"SELECT key, value FROM {self.table} WHERE namespace = ? ORDER BY key LIMIT ?",
                (namespace, limit),
            )
        return await self._fetch(
            handle,
            f"SELECT key, value FROM {self.table} WHERE namespace = ? AND key > ? ORDER BY key LIMIT ?",
            (namespace, cursor, limit),
        )

    async def _clear_expired(self, handle: aiosqlite.Connection, now: int) -> int:
        return await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE expires IS NOT NULL AND expires < ?",
            (now,),
        )
