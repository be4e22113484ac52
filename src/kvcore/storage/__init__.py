# src/kvcore/storage/__init__.py
"""
Storage backends for the kvcore library.

Each store implements the same namespaced, TTL-aware key-value contract on top
of a different database, sharing pooled connections per configuration.
"""

# Import key storage components for easier access
from .base import NAMESPACE_SEPARATOR, BaseKeyValueStore
from .events import EventType
from .expiry import ExpiryReaper, extract_expires
from .manager import STORE_MAP, StorageManager, create_store
from .pool import PoolRegistry, release_all_pools

# Import concrete implementations
from .mongo_store import MongoStore
from .mysql_store import MysqlStore
from .postgres_store import PostgresStore
from .sqlite_store import SqliteStore

__all__ = [
    "NAMESPACE_SEPARATOR",
    "BaseKeyValueStore",
    "EventType",
    "ExpiryReaper",
    "extract_expires",
    "STORE_MAP",
    "StorageManager",
    "create_store",
    "PoolRegistry",
    "release_all_pools",
    "MongoStore",
    "MysqlStore",
    "PostgresStore",
    "SqliteStore",
]
