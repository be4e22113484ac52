# src/kvcore/config/__init__.py
"""
Configuration models for kvcore stores.

Loading configuration files is left to the application; stores accept a
model instance, a connection URI or plain keyword options.
"""

from .models import (
    CONFIG_MODELS,
    DEFAULT_ITERATION_LIMIT,
    DEFAULT_TABLE,
    MongoConfig,
    MysqlConfig,
    PostgresConfig,
    SqliteConfig,
    SqlStoreConfig,
    StoreConfig,
    sqlite_database,
)

__all__ = [
    "CONFIG_MODELS",
    "DEFAULT_ITERATION_LIMIT",
    "DEFAULT_TABLE",
    "MongoConfig",
    "MysqlConfig",
    "PostgresConfig",
    "SqliteConfig",
    "SqlStoreConfig",
    "StoreConfig",
    "sqlite_database",
]
