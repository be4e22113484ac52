# src/kvcore/storage/pool.py
"""
Shared connection pool registry.

Stores constructed with the same URI and the same pool configuration share one
live pool (or client). Each backend owns one :class:`PoolRegistry` built from
an ``opener`` and a ``closer`` coroutine; every registry is also tracked in a
process-wide list so :func:`release_all_pools` can tear everything down at
shutdown or between tests.

The get-or-create step is atomic under asyncio: the pending open is stored in
the registry before the first suspension point, so concurrent first users of a
configuration await the same future instead of opening two pools.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from functools import partial
from typing import Any

from ..exceptions import ConnectionPoolError

logger = logging.getLogger(__name__)

Opener = Callable[[str, dict[str, Any]], Awaitable[Any]]
Closer = Callable[[Any], Awaitable[None]]

_REGISTRIES: list["PoolRegistry"] = []


def pool_cache_key(uri: str, config: Mapping[str, Any] | None = None) -> str:
    """Deterministic key: equal configs in different key order map to the same pool."""
    return f"{uri}::{json.dumps(dict(config or {}), sort_keys=True, default=str)}"


class PoolRegistry:
    """Caches one pool handle per (URI, configuration) pair."""

    def __init__(self, dialect: str, opener: Opener, closer: Closer):
        self.dialect = dialect
        self._opener = opener
        self._closer = closer
        self._entries: dict[str, asyncio.Future] = {}
        _REGISTRIES.append(self)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def acquire(self, uri: str, config: Mapping[str, Any] | None = None) -> Any:
        """
        Return the shared handle for ``(uri, config)``, opening it on first use.

        Raises:
            ConnectionPoolError: If the pool cannot be opened.
        """
        key = pool_cache_key(uri, config)
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"Opening {self.dialect} pool for {redact_uri(uri)}")
            entry = asyncio.ensure_future(self._opener(uri, dict(config or {})))
            self._entries[key] = entry
            entry.add_done_callback(partial(self._forget_failed, key))

        try:
            return await asyncio.shield(entry)
        except asyncio.CancelledError:
            raise
        except ConnectionPoolError:
            raise
        except Exception as e:
            raise ConnectionPoolError(self.dialect, f"Could not open pool for {redact_uri(uri)}: {e}") from e

    def _forget_failed(self, key: str, entry: asyncio.Future) -> None:
        if entry.cancelled() or entry.exception() is not None:
            if self._entries.get(key) is entry:
                del self._entries[key]

    async def release(self, uri: str, config: Mapping[str, Any] | None = None) -> None:
        """
        Close and evict the handle for ``(uri, config)``; no-op if absent.

        The entry is removed before the close is awaited, so a concurrent
        release of the same pair finds nothing and does not close twice.

        Raises:
            ConnectionPoolError: If closing the pool fails.
        """
        entry = self._entries.pop(pool_cache_key(uri, config), None)
        if entry is None:
            return
        await self._close_entry(entry, uri)

    async def release_all(self) -> None:
        """Close and evict every cached handle. Close failures are logged."""
        entries = list(self._entries.items())
        self._entries.clear()
        for key, entry in entries:
            uri = key.split("::", 1)[0]
            try:
                await self._close_entry(entry, uri)
            except ConnectionPoolError as e:
                logger.error(str(e))

    async def _close_entry(self, entry: asyncio.Future, uri: str) -> None:
        try:
            handle = await entry
        except Exception:
            # The open never succeeded; nothing to close.
            return
        try:
            await self._closer(handle)
            logger.debug(f"Closed {self.dialect} pool for {redact_uri(uri)}")
        except Exception as e:
            raise ConnectionPoolError(self.dialect, f"Failed to close pool for {redact_uri(uri)}: {e}") from e


async def release_all_pools() -> None:
    """Tear down every pool of every backend."""
    for registry in list(_REGISTRIES):
        await registry.release_all()


def redact_uri(uri: str) -> str:
    """Hide the password part of a connection URI for log output."""
    scheme, sep, rest = uri.partition("://")
    if not sep or "@" not in rest:
        return uri
    credentials, _, host = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
