# src/kvcore/storage/migrate.py
"""
One-time namespace migration for relational stores.

Older releases stored the namespace inside the key (``key="sessions:abc"``,
namespace empty). The current layout keeps it in its own column
(``key="abc"``, ``namespace="sessions"``). This module rewrites legacy rows:

1. Upgrade the table shape (add ``namespace``/``expires``, swap the key-only
   primary key for the ``(key, namespace)`` unique index). This DDL runs
   outside any transaction, so it sticks even on a dry run.
2. Open a transaction and collect the rows to rewrite: empty namespace and a
   key containing ``:`` after at least one character.
3. Report the preview. On a dry run, roll back and stop.
4. Otherwise rewrite every candidate with one set-based UPDATE (the part
   before the first ``:`` becomes the namespace, the rest the key), back-fill
   ``expires`` from payloads that carry it, and commit.

Any failure in steps 2-4 rolls the whole transaction back.

Limitation: the split always happens at the first ``:``. Namespaces that
themselves contain ``:`` cannot be recovered by this tool. Keys starting with
``:`` are left untouched, as are rows whose namespace is already set.
"""

import abc
import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from ..config.models import MysqlConfig, PostgresConfig, SqliteConfig, SqlStoreConfig
from ..exceptions import MigrationError
from .base import NAMESPACE_SEPARATOR
from .expiry import extract_expires
from .identifiers import quote_mysql, quote_postgres, quote_sqlite
from .mysql_store import close_mysql_pool, open_mysql_pool
from .postgres_store import close_postgres_pool, open_postgres_pool
from .schema_manager import BaseSchemaManager, MysqlSchemaManager, PostgresSchemaManager, SqliteSchemaManager
from .sqlite_store import close_sqlite_connection, open_sqlite_connection

logger = logging.getLogger(__name__)


def split_legacy_key(key: str) -> tuple[str, str] | None:
    """
    Split ``"<namespace>:<key>"`` at the first separator.

    Returns:
        ``(namespace, key)``, or None when the key has no separator or an
        empty namespace part.
    """
    namespace, separator, rest = key.partition(NAMESPACE_SEPARATOR)
    if not separator or not namespace:
        return None
    return namespace, rest


@dataclass
class MigrationRow:
    old_key: str
    new_namespace: str
    new_key: str


@dataclass
class MigrationReport:
    """Outcome of one migration run."""

    dialect: str
    table: str
    dry_run: bool
    rows: list[MigrationRow] = field(default_factory=list)
    schema_steps: list[str] = field(default_factory=list)
    migrated: int = 0
    expires_backfilled: int = 0

    @property
    def nothing_to_do(self) -> bool:
        return not self.rows and not self.expires_backfilled

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["nothing_to_do"] = self.nothing_to_do
        return data


PreviewCallback = Callable[[MigrationReport], None]


class NamespaceMigration(abc.ABC):
    """
    Runs the namespace migration against one table.

    Subclasses provide the connection handling and the dialect's SQL; the
    transaction protocol lives in :meth:`run`.
    """

    dialect: str = "base"
    key_column: str = "key"
    placeholder: str = "%s"

    def __init__(self, config: SqlStoreConfig):
        self.config = config

    # --- connection hooks -------------------------------------------------

    @abc.abstractmethod
    async def connect(self) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @abc.abstractmethod
    def schema_manager(self) -> BaseSchemaManager: ...

    @abc.abstractmethod
    async def begin(self) -> None: ...

    @abc.abstractmethod
    async def commit(self) -> None: ...

    @abc.abstractmethod
    async def rollback(self) -> None: ...

    @abc.abstractmethod
    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]: ...

    @abc.abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int: ...

    @abc.abstractmethod
    async def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None: ...

    # --- dialect SQL ------------------------------------------------------

    @property
    @abc.abstractmethod
    def table(self) -> str:
        """Quoted table name."""

    @abc.abstractmethod
    def rewrite_sql(self) -> str:
        """Set-based UPDATE moving the key prefix into the namespace column."""

    # --- protocol ---------------------------------------------------------

    async def preview(self) -> list[MigrationRow]:
        p = self.placeholder
        rows = await self.fetch(
            f"SELECT {self.key_column} FROM {self.table} "
            f"WHERE namespace = '' AND {self.key_column} LIKE {p} ORDER BY {self.key_column}",
            (f"%{NAMESPACE_SEPARATOR}%",),
        )
        preview = []
        for (key,) in rows:
            split = split_legacy_key(key)
            if split is not None:
                preview.append(MigrationRow(old_key=key, new_namespace=split[0], new_key=split[1]))
        return preview

    async def backfill_candidates(self) -> list[tuple[int, str, str]]:
        """``(expires, key, namespace)`` for rows whose payload carries an expiry."""
        p = self.placeholder
        rows = await self.fetch(
            f"SELECT {self.key_column}, namespace, value FROM {self.table} "
            f"WHERE expires IS NULL AND value LIKE {p}",
            ("%expires%",),
        )
        candidates = []
        for key, namespace, value in rows:
            expires = extract_expires(value)
            if expires is not None:
                candidates.append((expires, key, namespace))
        return candidates

    async def backfill_expires(self, candidates: Sequence[tuple[int, str, str]]) -> int:
        if not candidates:
            return 0
        p = self.placeholder
        await self.executemany(
            f"UPDATE {self.table} SET expires = {p} WHERE {self.key_column} = {p} AND namespace = {p}",
            candidates,
        )
        return len(candidates)

    async def run(self, dry_run: bool = False, on_preview: PreviewCallback | None = None) -> MigrationReport:
        """
        Execute the migration.

        Args:
            dry_run: Compute and report the changes, then roll back.
            on_preview: Called with the report (preview filled in) before
                anything is committed.

        Raises:
            MigrationError: On any failure; data changes are rolled back.
        """
        report = MigrationReport(dialect=self.dialect, table=self.config.table, dry_run=dry_run)
        try:
            await self.connect()
        except Exception as e:
            raise MigrationError(self.config.table, f"Could not connect: {e}") from e

        try:
            try:
                report.schema_steps = await self.schema_manager().ensure_schema(include_create=False)
            except Exception as e:
                raise MigrationError(self.config.table, f"Schema upgrade failed: {e}") from e

            try:
                await self.begin()
                report.rows = await self.preview()
                if dry_run:
                    report.expires_backfilled = len(await self.backfill_candidates())
                    if on_preview is not None:
                        on_preview(report)
                    await self.rollback()
                    logger.info(f"Dry run on {self.config.table}: {len(report.rows)} row(s) would be migrated")
                    return report

                if report.rows:
                    report.migrated = await self.execute(self.rewrite_sql())
                report.expires_backfilled = await self.backfill_expires(await self.backfill_candidates())
                if on_preview is not None:
                    on_preview(report)
                await self.commit()
            except Exception as e:
                logger.error(f"Migration of {self.config.table} failed, rolling back: {e}", exc_info=True)
                await self.rollback()
                raise MigrationError(self.config.table, f"Migration failed, all changes rolled back: {e}") from e

            logger.info(
                f"Migrated {report.migrated} row(s) in {self.config.table}; "
                f"back-filled expires on {report.expires_backfilled} row(s)"
            )
            return report
        finally:
            await self.close()


# =============================================================================
# BACKENDS
# =============================================================================


class PostgresNamespaceMigration(NamespaceMigration):
    dialect = "postgres"
    config: PostgresConfig

    def __init__(self, config: PostgresConfig):
        super().__init__(config)
        self._pool = None
        self._conn = None

    @property
    def table(self) -> str:
        return f"{quote_postgres.segment(self.config.schema_name)}.{quote_postgres.segment(self.config.table)}"

    async def connect(self) -> None:
        self._pool = await open_postgres_pool(self.config.uri, {"min_size": 1, "max_size": 2})

    async def close(self) -> None:
        if self._pool is not None:
            await close_postgres_pool(self._pool)
            self._pool = None

    def schema_manager(self) -> BaseSchemaManager:
        return PostgresSchemaManager(self._pool, self.config)

    async def begin(self) -> None:
        self._conn = await self._pool.getconn()
        await self._conn.execute("BEGIN")

    async def _finish(self, statement: str) -> None:
        try:
            await self._conn.execute(statement)
        finally:
            await self._pool.putconn(self._conn)
            self._conn = None

    async def commit(self) -> None:
        await self._finish("COMMIT")

    async def rollback(self) -> None:
        if self._conn is not None:
            await self._finish("ROLLBACK")

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        async with self._conn.cursor() as cur:
            await cur.execute(sql, params)
            return await cur.fetchall()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._conn.cursor() as cur:
            await cur.execute(sql, params)
            return cur.rowcount

    async def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        async with self._conn.cursor() as cur:
            await cur.executemany(sql, rows)

    def rewrite_sql(self) -> str:
        return (
            f"UPDATE {self.table} "
            f"SET namespace = SPLIT_PART(key, ':', 1), key = SUBSTR(key, POSITION(':' IN key) + 1) "
            f"WHERE namespace = '' AND POSITION(':' IN key) > 1"
        )


class MysqlNamespaceMigration(NamespaceMigration):
    dialect = "mysql"
    key_column = "id"
    config: MysqlConfig

    def __init__(self, config: MysqlConfig):
        super().__init__(config)
        self._pool = None
        self._conn = None

    @property
    def table(self) -> str:
        return quote_mysql(self.config.table)

    async def connect(self) -> None:
        self._pool = await open_mysql_pool(self.config.uri, {"minsize": 1, "maxsize": 2})

    async def close(self) -> None:
        if self._pool is not None:
            await close_mysql_pool(self._pool)
            self._pool = None

    def schema_manager(self) -> BaseSchemaManager:
        return MysqlSchemaManager(self._pool, self.config)

    async def begin(self) -> None:
        self._conn = await self._pool.acquire()
        await self._conn.begin()

    async def _release(self) -> None:
        self._pool.release(self._conn)
        self._conn = None

    async def commit(self) -> None:
        try:
            await self._conn.commit()
        finally:
            await self._release()

    async def rollback(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.rollback()
        finally:
            await self._release()

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        async with self._conn.cursor() as cur:
            await cur.execute(sql, params)
            return list(await cur.fetchall())

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._conn.cursor() as cur:
            await cur.execute(sql, params)
            return cur.rowcount

    async def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        async with self._conn.cursor() as cur:
            await cur.executemany(sql, rows)

    def rewrite_sql(self) -> str:
        # MySQL evaluates SET assignments left to right; namespace must be
        # derived before id is rewritten.
        return (
            f"UPDATE {self.table} "
            f"SET namespace = SUBSTRING_INDEX(id, ':', 1), id = SUBSTRING(id, LOCATE(':', id) + 1) "
            f"WHERE namespace = '' AND LOCATE(':', id) > 1"
        )


class SqliteNamespaceMigration(NamespaceMigration):
    dialect = "sqlite"
    placeholder = "?"
    config: SqliteConfig

    def __init__(self, config: SqliteConfig):
        super().__init__(config)
        self._conn = None

    @property
    def table(self) -> str:
        return quote_sqlite(self.config.table)

    async def connect(self) -> None:
        self._conn = await open_sqlite_connection(self.config.uri, {"busy_timeout": self.config.busy_timeout})

    async def close(self) -> None:
        if self._conn is not None:
            await close_sqlite_connection(self._conn)
            self._conn = None

    def schema_manager(self) -> BaseSchemaManager:
        return SqliteSchemaManager(self._conn, self.config)

    async def begin(self) -> None:
        await self._conn.execute("BEGIN")

    async def commit(self) -> None:
        await self._conn.execute("COMMIT")

    async def rollback(self) -> None:
        if self._conn is not None and self._conn.in_transaction:
            await self._conn.execute("ROLLBACK")

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        async with self._conn.execute(sql, params) as cursor:
            return [tuple(row) for row in await cursor.fetchall()]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._conn.execute(sql, params) as cursor:
            return cursor.rowcount

    async def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        await self._conn.executemany(sql, rows)

    def rewrite_sql(self) -> str:
        return (
            f"UPDATE {self.table} "
            f"SET namespace = substr(key, 1, instr(key, ':') - 1), key = substr(key, instr(key, ':') + 1) "
            f"WHERE namespace = '' AND instr(key, ':') > 1"
        )


MIGRATIONS: dict[str, tuple[type[NamespaceMigration], type[SqlStoreConfig]]] = {
    "postgres": (PostgresNamespaceMigration, PostgresConfig),
    "mysql": (MysqlNamespaceMigration, MysqlConfig),
    "sqlite": (SqliteNamespaceMigration, SqliteConfig),
}


def create_migration(dialect: str, **options: Any) -> NamespaceMigration:
    """
    Build the migration for ``dialect`` from store options.

    Raises:
        ConfigError: For invalid options.
        ValueError: For an unknown dialect.
    """
    try:
        migration_cls, config_cls = MIGRATIONS[dialect]
    except KeyError:
        raise ValueError(f"Unsupported migration dialect: {dialect}") from None
    return migration_cls(config_cls.from_options(None, **options))
