# src/kvcore/storage/postgres_store.py
"""
PostgreSQL key-value store.

Uses psycopg 3 with a shared ``psycopg_pool.AsyncConnectionPool`` per
(URI, pool options). Pool connections run in autocommit mode: every
operation is a single statement, so the database's own row locking makes
concurrent upserts and deletes safe without any transaction handling here.

Table layout (default ``public.keyv``):

    key        VARCHAR(key_length)       NOT NULL
    value      TEXT
    namespace  VARCHAR(namespace_length) NOT NULL DEFAULT ''
    expires    BIGINT                    NULL
    UNIQUE (key, namespace), INDEX (expires)
"""

import logging
from collections.abc import Sequence
from typing import Any

from psycopg_pool import AsyncConnectionPool

from ..config.models import PostgresConfig
from ..models import Entry
from .base import BaseKeyValueStore, text_payload
from .identifiers import quote_postgres
from .pool import PoolRegistry
from .schema_manager import PostgresSchemaManager

logger = logging.getLogger(__name__)


async def open_postgres_pool(uri: str, options: dict[str, Any]) -> AsyncConnectionPool:
    """
    Open an autocommit connection pool.

    ``options`` carries ``min_size``/``max_size``/``ssl`` plus the allow-listed
    driver options: pool settings go to the pool, the rest to each connection.
    """
    options = dict(options)
    min_size = options.pop("min_size", 1)
    max_size = options.pop("max_size", 10)
    ssl = options.pop("ssl", None)
    pool_kwargs = {key: options.pop(key) for key in list(options) if key in PostgresConfig.pool_keys}

    connection_kwargs: dict[str, Any] = {"autocommit": True, **options}
    if isinstance(ssl, dict):
        connection_kwargs.update(ssl)
    elif ssl:
        connection_kwargs.setdefault("sslmode", "require")

    pool = AsyncConnectionPool(
        conninfo=uri,
        min_size=min_size,
        max_size=max_size,
        kwargs=connection_kwargs,
        open=False,
        **pool_kwargs,
    )
    try:
        await pool.open(wait=True)
    except Exception:
        await pool.close()
        raise
    logger.info(f"PostgreSQL connection pool opened (min: {min_size}, max: {max_size})")
    return pool


async def close_postgres_pool(pool: AsyncConnectionPool) -> None:
    await pool.close()


postgres_pools = PoolRegistry("postgres", open_postgres_pool, close_postgres_pool)


class PostgresStore(BaseKeyValueStore):
    """Namespaced key-value store backed by one PostgreSQL table."""

    dialect = "postgres"
    config_class = PostgresConfig
    registry = postgres_pools

    config: PostgresConfig

    @property
    def table(self) -> str:
        """Quoted ``schema.table`` name."""
        return f"{quote_postgres.segment(self.config.schema_name)}.{quote_postgres.segment(self.config.table)}"

    async def _bootstrap(self, handle: AsyncConnectionPool) -> None:
        await PostgresSchemaManager(handle, self.config).ensure_schema()

    async def _fetch(self, pool: AsyncConnectionPool, sql: str, params: Sequence[Any]) -> list[tuple]:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql, params)
                return await cur.fetchall()

    async def _execute(self, pool: AsyncConnectionPool, sql: str, params: Sequence[Any]) -> int:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql, params)
                return cur.rowcount

    async def _get(self, handle: AsyncConnectionPool, key: str, namespace: str) -> Any:
        rows = await self._fetch(
            handle,
            f"SELECT value FROM {self.table} WHERE key = %s AND namespace = %s",
            (key, namespace),
        )
        return rows[0][0] if rows else None

    async def _get_many(self, handle: AsyncConnectionPool, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        rows = await self._fetch(
            handle,
            f"SELECT key, value FROM {self.table} WHERE key = ANY(%s) AND namespace = %s",
            (list(keys), namespace),
        )
        return {key: value for key, value in rows}

    async def _set_many(self, handle: AsyncConnectionPool, entries: Sequence[Entry], namespace: str) -> None:
        keys = [entry.key for entry in entries]
        values = [text_payload(entry.value) for entry in entries]
        expires = [self._expires_for(entry) for entry in entries]
        await self._execute(
            handle,
            f"INSERT INTO {self.table} (key, value, namespace, expires) "
            f"SELECT k, v, %s, e FROM UNNEST(%s::text[], %s::text[], %s::bigint[]) AS t(k, v, e) "
            f"ON CONFLICT (key, namespace) DO UPDATE SET value = EXCLUDED.value, expires = EXCLUDED.expires",
            (namespace, keys, values, expires),
        )

    async def _delete(self, handle: AsyncConnectionPool, key: str, namespace: str) -> bool:
        removed = await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE key = %s AND namespace = %s",
            (key, namespace),
        )
        return removed > 0

    async def _delete_many(self, handle: AsyncConnectionPool, keys: Sequence[str], namespace: str) -> int:
        return await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE key = ANY(%s) AND namespace = %s",
            (list(keys), namespace),
        )

    async def _has_many(self, handle: AsyncConnectionPool, keys: Sequence[str], namespace: str) -> set[str]:
        rows = await self._fetch(
            handle,
            f"SELECT key FROM {self.table} WHERE key = ANY(%s) AND namespace = %s",
            (list(keys), namespace),
        )
        return {row[0] for row in rows}

    async def _clear(self, handle: AsyncConnectionPool, namespace: str) -> None:
        await self._execute(handle, f"DELETE FROM {self.table} WHERE namespace = %s", (namespace,))

    async def _fetch_page(
        self, handle: AsyncConnectionPool, namespace: str, cursor: str | None, limit: int
    ) -> list[tuple[str, Any]]:
        if cursor is None:
            return await self._fetch(
                handle,
                f"SELECT key, value FROM {self.table} WHERE namespace = %s ORDER BY key LIMIT %s",
                (namespace, limit),
            )
        return await self._fetch(
            handle,
            f"SELECT key, value FROM {self.table} WHERE namespace = %s AND key > %s ORDER BY key LIMIT %s",
            (namespace, cursor, limit),
        )

    async def _clear_expired(self, handle: AsyncConnectionPool, now: int) -> int:
        return await self._execute(
            handle,
            f"DELETE FROM {self.table} WHERE expires IS NOT NULL AND expires < %s",
            (now,),
        )
