# src/kvcore/__init__.py
"""
kvcore - namespaced, TTL-aware key-value storage adapters.

Exposes one store per backend (PostgreSQL, MySQL, SQLite, MongoDB) behind a
uniform async contract, plus the one-time namespace migration tool
(``kvcore-migrate``).
"""

from importlib.metadata import PackageNotFoundError, version

from .config import MongoConfig, MysqlConfig, PostgresConfig, SqliteConfig, StoreConfig
from .exceptions import (
    BootstrapError,
    ConfigError,
    ConnectionPoolError,
    KVCoreError,
    MigrationError,
    StorageError,
    StoreClosedError,
)
from .models import Entry
from .storage import (
    BaseKeyValueStore,
    MongoStore,
    MysqlStore,
    PostgresStore,
    SqliteStore,
    StorageManager,
    create_store,
    release_all_pools,
)

try:
    __version__ = version("kvcore")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "BaseKeyValueStore",
    "MongoStore",
    "MysqlStore",
    "PostgresStore",
    "SqliteStore",
    "StorageManager",
    "create_store",
    "release_all_pools",
    "Entry",
    "StoreConfig",
    "PostgresConfig",
    "MysqlConfig",
    "SqliteConfig",
    "MongoConfig",
    "KVCoreError",
    "ConfigError",
    "StorageError",
    "ConnectionPoolError",
    "BootstrapError",
    "StoreClosedError",
    "MigrationError",
    "__version__",
]
