# src/kvcore/storage/manager.py
"""
Store factory for kvcore.

Maps a backend ``type`` string from application configuration to the store
class implementing it, and keeps track of the stores it handed out so they can
be disconnected together at shutdown.

Example configuration mapping::

    {"type": "postgres", "uri": "postgresql://localhost/app", "table": "cache"}
"""

import logging
from collections.abc import Mapping
from typing import Any

from ..config.models import StoreConfig
from ..exceptions import ConfigError
from .base import BaseKeyValueStore
from .mongo_store import MongoStore
from .mysql_store import MysqlStore
from .postgres_store import PostgresStore
from .sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

# --- Mapping from config type string to class ---
STORE_MAP: dict[str, type[BaseKeyValueStore]] = {
    "postgres": PostgresStore,
    "postgresql": PostgresStore,
    "mysql": MysqlStore,
    "sqlite": SqliteStore,
    "mongo": MongoStore,
    "mongodb": MongoStore,
}
# --- End Mapping ---


def create_store(config: Mapping[str, Any] | StoreConfig, **overrides: Any) -> BaseKeyValueStore:
    """
    Build a store from a configuration mapping or a config model.

    Args:
        config: Either a backend config model, or a mapping with a ``type``
            key naming the backend plus that backend's options.
        **overrides: Options overriding the ones in ``config``.

    Raises:
        ConfigError: If the type is unknown or the options do not validate.
    """
    if isinstance(config, StoreConfig):
        store_type = config.dialect
        options: Any = config
    elif isinstance(config, Mapping):
        options = dict(config)
        store_type = options.pop("type", None)
        if not store_type:
            raise ConfigError("Store configuration is missing 'type'.")
    else:
        raise ConfigError(f"Unsupported store configuration type: {type(config).__name__}")

    store_cls = STORE_MAP.get(str(store_type).lower())
    if store_cls is None:
        raise ConfigError(f"Unsupported store type: '{store_type}'. Available types: {sorted(set(STORE_MAP))}")

    store = store_cls(options, **overrides)
    logger.debug(f"Created {store_cls.__name__} (namespace={store.namespace!r})")
    return store


class StorageManager:
    """
    Creates stores from one base configuration and disconnects them on close.

    Stores created here for different namespaces share the same pool, so
    closing the manager tears the pool down once for all of them. Pools of
    stores built outside the manager are left alone.
    """

    def __init__(self, config: Mapping[str, Any] | StoreConfig):
        self._config = config
        self._stores: dict[str | None, BaseKeyValueStore] = {}
        logger.info("StorageManager initialized.")

    def get_store(self, namespace: str | None = None) -> BaseKeyValueStore:
        """Return the store for ``namespace``, creating it on first use."""
        store = self._stores.get(namespace)
        if store is None or store.closed:
            store = create_store(self._config, namespace=namespace)
            self._stores[namespace] = store
        return store

    async def close(self) -> None:
        """Disconnect every store this manager created."""
        stores = list(self._stores.values())
        self._stores.clear()
        for store in stores:
            try:
                await store.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting {store!r}: {e}", exc_info=True)
        logger.info("StorageManager closed.")
