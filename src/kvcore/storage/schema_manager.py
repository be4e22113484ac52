# src/kvcore/storage/schema_manager.py
"""
Schema bootstrap for the relational stores.

Every store runs the bootstrap once per instance before serving its first
query. The sequence brings a table of any earlier shape up to the current one:

    1. create the table (and schema) with the full current shape
    2. add the ``namespace`` column (default ``''``) to older tables
    3. drop the old primary key on ``key`` alone
    4. create the unique index on ``(key, namespace)``
    5. add the ``expires`` column
    6. create the index on ``expires``
    7. optionally install a backend-native job deleting expired rows

Each step is safe to re-run and to race against other processes running the
same bootstrap: errors that only mean "someone already applied this" are
recognised by their backend error code and skipped. Any other error is fatal
and propagates to the caller. DDL is never retried.

The same upgrade steps (2-6) are reused by the offline namespace migration
tool, which runs them outside its data transaction.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pymysql.err import MySQLError

from ..config.models import MysqlConfig, PostgresConfig, SqliteConfig, SqlStoreConfig
from .identifiers import quote_mysql, quote_postgres, quote_sqlite

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# PostgreSQL SQLSTATE codes
PG_UNIQUE_VIOLATION = "23505"  # concurrent CREATE ... IF NOT EXISTS on the catalog
PG_DUPLICATE_TABLE = "42P07"  # also raised for duplicate index names
PG_DUPLICATE_COLUMN = "42701"
PG_DUPLICATE_SCHEMA = "42P06"
PG_UNDEFINED_OBJECT = "42704"

# MySQL error numbers
MYSQL_TABLE_EXISTS = 1050
MYSQL_DUPLICATE_COLUMN = 1060
MYSQL_DUPLICATE_KEY_NAME = 1061
MYSQL_CANT_DROP = 1091

# SQLite has no error codes for these cases; messages are normalised instead.
SQLITE_DUPLICATE_COLUMN = "duplicate column"
SQLITE_ALREADY_EXISTS = "already exists"


class SchemaBackend(str, Enum):
    """Supported relational backends for schema management."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"


@dataclass
class SchemaStep:
    """
    One idempotent bootstrap step.

    Attributes:
        description: Human readable step name used in logs.
        statements: DDL executed in order.
        ignore_codes: Error codes meaning "already applied".
        creates_table: Part of table creation; skipped when only upgrading.
        best_effort: Failures are logged instead of aborting the bootstrap.
        action: Custom coroutine run instead of ``statements``.
    """

    description: str
    statements: tuple[str, ...] = ()
    ignore_codes: frozenset = field(default_factory=frozenset)
    creates_table: bool = False
    best_effort: bool = False
    action: Callable[[], Awaitable[None]] | None = None


# =============================================================================
# BASE SCHEMA MANAGER
# =============================================================================


class BaseSchemaManager(ABC):
    """
    Runs the bootstrap steps of one table.

    Subclasses supply statement execution, error-code extraction and the
    step list for their dialect.
    """

    def __init__(self, backend: SchemaBackend, config: SqlStoreConfig):
        self.backend = backend
        self.config = config

    @abstractmethod
    async def _execute_ddl(self, sql: str) -> None:
        """Execute a single DDL statement."""

    @abstractmethod
    def _error_code(self, error: Exception) -> Any:
        """Backend error code of ``error`` or None if it is not a driver error."""

    @abstractmethod
    def build_steps(self) -> list[SchemaStep]:
        """Bootstrap steps in execution order."""

    @property
    def table_label(self) -> str:
        return self.config.table

    async def apply_step(self, step: SchemaStep) -> bool:
        """
        Apply one step.

        Returns:
            True if the step ran (or was already applied), False if a
            best-effort step failed.
        """
        try:
            if step.action is not None:
                await step.action()
                return True
            for sql in step.statements:
                try:
                    await self._execute_ddl(sql)
                except Exception as e:
                    code = self._error_code(e)
                    if code is not None and code in step.ignore_codes:
                        logger.debug(f"[{self.table_label}] {step.description}: already applied ({code})")
                        continue
                    raise
        except Exception as e:
            if step.best_effort:
                logger.warning(f"[{self.table_label}] {step.description} skipped: {e}")
                return False
            logger.error(f"[{self.table_label}] {step.description} failed: {e}")
            raise
        return True

    async def ensure_schema(self, include_create: bool = True) -> list[str]:
        """
        Run the bootstrap sequence; each step awaits the previous one.

        Args:
            include_create: False runs only the upgrade steps (the migration
                tool uses this against an existing table).

        Returns:
            Descriptions of the steps that completed.
        """
        applied = []
        for step in self.build_steps():
            if step.creates_table and not include_create:
                continue
            if await self.apply_step(step):
                applied.append(step.description)
        logger.info(f"[{self.table_label}] {self.backend.value} schema ready ({len(applied)} step(s) checked)")
        return applied


# =============================================================================
# POSTGRES SCHEMA MANAGER
# =============================================================================


class PostgresSchemaManager(BaseSchemaManager):
    """PostgreSQL bootstrap; DDL runs on autocommit connections from the pool."""

    config: PostgresConfig

    def __init__(self, pool: Any, config: PostgresConfig):
        super().__init__(SchemaBackend.POSTGRES, config)
        self._pool = pool

    @property
    def qualified_table(self) -> str:
        return f"{quote_postgres.segment(self.config.schema_name)}.{quote_postgres.segment(self.config.table)}"

    async def _execute_ddl(self, sql: str) -> None:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql)

    def _error_code(self, error: Exception) -> Any:
        return getattr(error, "sqlstate", None)

    def build_steps(self) -> list[SchemaStep]:
        cfg = self.config
        table = self.qualified_table
        key_length = int(cfg.key_length)
        namespace_length = int(cfg.namespace_length)
        already = frozenset({PG_DUPLICATE_TABLE, PG_UNIQUE_VIOLATION})

        create_statements = []
        if cfg.schema_name != "public":
            create_statements.append(f"CREATE SCHEMA IF NOT EXISTS {quote_postgres.segment(cfg.schema_name)}")
        unlogged = " UNLOGGED" if cfg.use_unlogged_table else ""
        create_statements.append(
            f"CREATE{unlogged} TABLE IF NOT EXISTS {table} ("
            f"key VARCHAR({key_length}) NOT NULL, "
            f"value TEXT, "
            f"namespace VARCHAR({namespace_length}) NOT NULL DEFAULT '', "
            f"expires BIGINT DEFAULT NULL)"
        )

        return [
            SchemaStep(
                "create table",
                tuple(create_statements),
                already | {PG_DUPLICATE_SCHEMA},
                creates_table=True,
            ),
            SchemaStep(
                "add namespace column",
                (
                    f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS namespace VARCHAR({namespace_length}) NOT NULL DEFAULT ''",
                    f"UPDATE {table} SET namespace = '' WHERE namespace IS NULL",
                    f"ALTER TABLE {table} ALTER COLUMN namespace SET DEFAULT ''",
                    f"ALTER TABLE {table} ALTER COLUMN namespace SET NOT NULL",
                ),
                frozenset({PG_DUPLICATE_COLUMN}),
            ),
            SchemaStep(
                "drop key-only primary key",
                (
                    f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS "
                    f"{quote_postgres.segment(cfg.table + '_pkey')}",
                ),
                frozenset({PG_UNDEFINED_OBJECT}),
            ),
            SchemaStep(
                "create (key, namespace) unique index",
                (
                    f"CREATE UNIQUE INDEX IF NOT EXISTS "
                    f"{quote_postgres.segment(cfg.table + '_key_namespace_uidx')} ON {table} (key, namespace)",
                ),
                already,
            ),
            SchemaStep(
                "add expires column",
                (f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS expires BIGINT DEFAULT NULL",),
                frozenset({PG_DUPLICATE_COLUMN}),
            ),
            SchemaStep(
                "create expires index",
                (
                    f"CREATE INDEX IF NOT EXISTS "
                    f"{quote_postgres.segment(cfg.table + '_expires_idx')} ON {table} (expires)",
                ),
                already,
            ),
        ]


# =============================================================================
# MYSQL SCHEMA MANAGER
# =============================================================================


class MysqlSchemaManager(BaseSchemaManager):
    """MySQL bootstrap; the key column is ``id``."""

    config: MysqlConfig

    def __init__(self, pool: Any, config: MysqlConfig):
        super().__init__(SchemaBackend.MYSQL, config)
        self._pool = pool

    async def _execute_ddl(self, sql: str) -> None:
        async with self._pool.acquire() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql)

    def _error_code(self, error: Exception) -> Any:
        if isinstance(error, MySQLError) and error.args:
            return error.args[0]
        return None

    def _index_name(self, suffix: str) -> str:
        # Index names are per table; drop any database qualifier.
        return quote_mysql.segment(f"{self.config.table.split('.')[-1]}_{suffix}")

    @property
    def event_name(self) -> str:
        return quote_mysql.segment(f"{self.config.table.split('.')[-1]}_delete_expired_keys")

    def build_steps(self) -> list[SchemaStep]:
        cfg = self.config
        table = quote_mysql(cfg.table)
        key_length = int(cfg.key_length)
        namespace_length = int(cfg.namespace_length)
        key_namespace_idx = self._index_name("key_namespace_idx")
        expires_idx = self._index_name("expires_idx")

        steps = [
            SchemaStep(
                "create table",
                (
                    f"CREATE TABLE IF NOT EXISTS {table}("
                    f"id VARCHAR({key_length}) NOT NULL, "
                    f"value TEXT, "
                    f"namespace VARCHAR({namespace_length}) NOT NULL DEFAULT '', "
                    f"expires BIGINT UNSIGNED DEFAULT NULL, "
                    f"UNIQUE INDEX {key_namespace_idx} (id, namespace), "
                    f"INDEX {expires_idx} (expires))",
                ),
                frozenset({MYSQL_TABLE_EXISTS}),
                creates_table=True,
            ),
            SchemaStep(
                "add namespace column",
                (f"ALTER TABLE {table} ADD COLUMN namespace VARCHAR({namespace_length}) NOT NULL DEFAULT ''",),
                frozenset({MYSQL_DUPLICATE_COLUMN}),
            ),
            SchemaStep(
                "drop key-only primary key",
                (f"ALTER TABLE {table} DROP PRIMARY KEY",),
                frozenset({MYSQL_CANT_DROP}),
            ),
            SchemaStep(
                "create (id, namespace) unique index",
                (f"CREATE UNIQUE INDEX {key_namespace_idx} ON {table} (id, namespace)",),
                frozenset({MYSQL_DUPLICATE_KEY_NAME}),
            ),
            SchemaStep(
                "add expires column",
                (f"ALTER TABLE {table} ADD COLUMN expires BIGINT UNSIGNED DEFAULT NULL",),
                frozenset({MYSQL_DUPLICATE_COLUMN}),
            ),
            SchemaStep(
                "create expires index",
                (f"CREATE INDEX {expires_idx} ON {table} (expires)",),
                frozenset({MYSQL_DUPLICATE_KEY_NAME}),
            ),
        ]

        if cfg.interval_expiration:
            steps.append(
                SchemaStep(
                    "install expiry event",
                    (
                        "SET GLOBAL event_scheduler = ON",
                        f"DROP EVENT IF EXISTS {self.event_name}",
                        f"CREATE EVENT IF NOT EXISTS {self.event_name} "
                        f"ON SCHEDULE EVERY {int(cfg.interval_expiration)} SECOND "
                        f"DO DELETE FROM {table} WHERE expires BETWEEN 1 AND UNIX_TIMESTAMP(NOW(3)) * 1000",
                    ),
                    creates_table=True,
                    best_effort=True,
                )
            )
        return steps


# =============================================================================
# SQLITE SCHEMA MANAGER
# =============================================================================


class SqliteSchemaManager(BaseSchemaManager):
    """
    SQLite bootstrap.

    SQLite cannot drop a primary key in place, so a legacy table whose
    ``key`` column is the primary key is rebuilt in a single script.
    """

    config: SqliteConfig

    def __init__(self, conn: Any, config: SqliteConfig):
        super().__init__(SchemaBackend.SQLITE, config)
        self._conn = conn

    @property
    def table(self) -> str:
        return quote_sqlite(self.config.table)

    async def _execute_ddl(self, sql: str) -> None:
        await self._conn.execute(sql)
        await self._conn.commit()

    def _error_code(self, error: Exception) -> Any:
        if not isinstance(error, sqlite3.Error):
            return None
        message = str(error).lower()
        if "duplicate column" in message:
            return SQLITE_DUPLICATE_COLUMN
        if "already exists" in message:
            return SQLITE_ALREADY_EXISTS
        return message

    def _create_table_sql(self, table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {table} ("
            f"key TEXT NOT NULL, "
            f"value TEXT, "
            f"namespace TEXT NOT NULL DEFAULT '', "
            f"expires INTEGER DEFAULT NULL)"
        )

    async def table_columns(self) -> dict[str, int]:
        """Column name -> primary-key position (0 if not part of the key)."""
        cursor = await self._conn.execute(f"PRAGMA table_info({self.table})")
        rows = await cursor.fetchall()
        await cursor.close()
        return {row[1]: row[5] for row in rows}

    async def _rebuild_without_primary_key(self) -> None:
        columns = await self.table_columns()
        if not any(columns.values()):
            return

        rebuild = quote_sqlite(f"{self.config.table}__kvcore_rebuild")
        namespace_expr = "COALESCE(namespace, '')" if "namespace" in columns else "''"
        expires_expr = "expires" if "expires" in columns else "NULL"
        logger.info(f"[{self.table_label}] rebuilding legacy table without key-only primary key")
        try:
            await self._conn.executescript(
                "BEGIN;\n"
                f"DROP TABLE IF EXISTS {rebuild};\n"
                f"{self._create_table_sql(rebuild)};\n"
                f"INSERT INTO {rebuild} (key, value, namespace, expires) "
                f"SELECT key, value, {namespace_expr}, {expires_expr} FROM {self.table};\n"
                f"DROP TABLE {self.table};\n"
                f"ALTER TABLE {rebuild} RENAME TO {self.table};\n"
                "COMMIT;"
            )
        except Exception:
            if self._conn.in_transaction:
                await self._conn.rollback()
            raise

    def build_steps(self) -> list[SchemaStep]:
        table = self.table
        duplicate = frozenset({SQLITE_DUPLICATE_COLUMN})
        return [
            SchemaStep("create table", (self._create_table_sql(table),), creates_table=True),
            SchemaStep(
                "add namespace column",
                (
                    f"ALTER TABLE {table} ADD COLUMN namespace TEXT NOT NULL DEFAULT ''",
                    f"UPDATE {table} SET namespace = '' WHERE namespace IS NULL",
                ),
                duplicate,
            ),
            SchemaStep("drop key-only primary key", action=self._rebuild_without_primary_key),
            SchemaStep(
                "create (key, namespace) unique index",
                (
                    f"CREATE UNIQUE INDEX IF NOT EXISTS "
                    f"{quote_sqlite.segment(self.config.table + '_key_namespace_idx')} ON {table} (key, namespace)",
                ),
                frozenset({SQLITE_ALREADY_EXISTS}),
            ),
            SchemaStep(
                "add expires column",
                (f"ALTER TABLE {table} ADD COLUMN expires INTEGER DEFAULT NULL",),
                duplicate,
            ),
            SchemaStep(
                "create expires index",
                (
                    f"CREATE INDEX IF NOT EXISTS "
                    f"{quote_sqlite.segment(self.config.table + '_expires_idx')} ON {table} (expires)",
                ),
                frozenset({SQLITE_ALREADY_EXISTS}),
            ),
        ]


# =============================================================================
# FACTORY FUNCTION
# =============================================================================


def create_schema_manager(backend: SchemaBackend | str, connection: Any, config: SqlStoreConfig) -> BaseSchemaManager:
    """
    Create the schema manager for ``backend``.

    Args:
        backend: The database backend type.
        connection: Pool (Postgres, MySQL) or connection (SQLite).
        config: The store configuration describing the table.
    """
    backend = SchemaBackend(backend)
    if backend == SchemaBackend.POSTGRES:
        return PostgresSchemaManager(connection, config)
    elif backend == SchemaBackend.MYSQL:
        return MysqlSchemaManager(connection, config)
    elif backend == SchemaBackend.SQLITE:
        return SqliteSchemaManager(connection, config)
    raise ValueError(f"Unsupported backend: {backend}")
