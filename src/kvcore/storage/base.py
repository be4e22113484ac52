# src/kvcore/storage/base.py
"""
Abstract base class for kvcore key-value stores.

Every backend implements the same namespaced, TTL-aware contract:

    get / get_many / set / set_many / delete / delete_many /
    has / has_many / clear / iterator / clear_expired / disconnect

The base class owns everything that must behave identically across backends:

- namespace resolution (``None`` and ``""`` both mean the ``""`` namespace)
- stripping the ``"<namespace>:"`` key prefix added by the caller-side facade
  and re-attaching it to keys yielded by ``iterator()``
- result ordering of ``get_many``/``has_many``
- gating every operation behind the one-time schema bootstrap
- the error signal channel, the expiry reaper and the closed state

Subclasses implement the backend half through the ``_``-prefixed hooks, each
of which receives the live pool handle and the already-normalized key(s) and
namespace.
"""

import abc
import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any, ClassVar

from ..config.models import StoreConfig
from ..exceptions import BootstrapError, KVCoreError, StoreClosedError
from ..models import Entry
from .events import EventEmitter, EventType, Listener
from .expiry import ExpiryReaper, extract_expires, now_ms
from .keyset import iterate_keyset
from .pool import PoolRegistry

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = ":"


def text_payload(value: Any) -> str | None:
    """
    Payload as stored in a TEXT column: strings as-is, bytes decoded, other values as JSON.

    Raises:
        TypeError: For bytes that are not valid UTF-8; relational stores
            only keep text payloads.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise TypeError(f"Binary payloads must be UTF-8 text for a TEXT column: {e}") from None
    return json.dumps(value)


class BaseKeyValueStore(abc.ABC):
    """
    Abstract base class for namespaced key-value stores.

    Construction never blocks: when an event loop is running, the schema
    bootstrap is scheduled immediately; otherwise it starts on first use.
    Operations issued while the bootstrap is in flight wait for it. If the
    bootstrap fails, the error is logged, emitted on the ``"error"`` channel
    and every later operation raises :class:`BootstrapError`.
    """

    dialect: ClassVar[str] = "base"
    config_class: ClassVar[type[StoreConfig]] = StoreConfig
    registry: ClassVar[PoolRegistry]

    def __init__(self, config: Any = None, **options: Any):
        """
        Args:
            config: A config model, a connection URI or a mapping of options.
            **options: Individual options; these override ``config``.

        Raises:
            ConfigError: If the options do not validate.
        """
        self.config = self.config_class.from_options(config, **options)
        self._events = EventEmitter()
        self._reaper = ExpiryReaper(
            self.clear_expired,
            on_error=self._emit_error,
            name=f"kvcore-{self.dialect}-reaper",
        )
        self._bootstrap_task: asyncio.Task | None = None
        self._closed = False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            self._start_bootstrap()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace!r})"

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _acquire_handle(self) -> Any:
        """Get the shared pool handle for this configuration."""
        return await self.registry.acquire(self.config.uri, self.config.pool_options())

    async def _release_handle(self) -> None:
        """Release the shared pool handle for this configuration."""
        await self.registry.release(self.config.uri, self.config.pool_options())

    @abc.abstractmethod
    async def _bootstrap(self, handle: Any) -> None:
        """Bring the backing table/collection up to the current shape."""

    @abc.abstractmethod
    async def _get(self, handle: Any, key: str, namespace: str) -> Any:
        """Return the stored payload or None."""

    @abc.abstractmethod
    async def _get_many(self, handle: Any, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        """Return ``{key: payload}`` for the keys that exist (any order)."""

    @abc.abstractmethod
    async def _set_many(self, handle: Any, entries: Sequence[Entry], namespace: str) -> None:
        """Upsert already stripped, de-duplicated, non-empty ``entries``."""

    @abc.abstractmethod
    async def _delete(self, handle: Any, key: str, namespace: str) -> bool:
        """Delete one entry; True only if this call removed it."""

    @abc.abstractmethod
    async def _delete_many(self, handle: Any, keys: Sequence[str], namespace: str) -> int:
        """Delete entries; return the number removed."""

    @abc.abstractmethod
    async def _has_many(self, handle: Any, keys: Sequence[str], namespace: str) -> set[str]:
        """Return the subset of ``keys`` that exist."""

    @abc.abstractmethod
    async def _clear(self, handle: Any, namespace: str) -> None:
        """Delete every entry of ``namespace``."""

    @abc.abstractmethod
    async def _fetch_page(
        self, handle: Any, namespace: str, cursor: str | None, limit: int
    ) -> Sequence[tuple[str, Any]]:
        """Return up to ``limit`` ``(key, payload)`` rows with key > cursor, ordered by key."""

    @abc.abstractmethod
    async def _clear_expired(self, handle: Any, now: int) -> int:
        """Delete entries whose expiry is non-null and before ``now``; return the count."""

    def _expires_for(self, entry: Entry) -> int | None:
        """Expiry (epoch ms) recorded for ``entry``; taken from the payload by default."""
        return extract_expires(entry.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_bootstrap(self) -> asyncio.Task:
        if self._bootstrap_task is None:
            self._bootstrap_task = asyncio.get_running_loop().create_task(
                self._run_bootstrap(), name=f"kvcore-{self.dialect}-bootstrap"
            )
            self._bootstrap_task.add_done_callback(self._bootstrap_done)
        return self._bootstrap_task

    async def _run_bootstrap(self) -> Any:
        handle = await self._acquire_handle()
        await self._bootstrap(handle)
        return handle

    def _bootstrap_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self.dialect}] Schema bootstrap failed: {error}", exc_info=error)
            self._emit_error(error)
            return
        logger.debug(f"[{self.dialect}] Store ready (namespace={self.namespace!r})")
        if self.config.reap_interval > 0 and not self._closed:
            self._reaper.start(self.config.reap_interval)
        self._events.emit(EventType.BOOTSTRAPPED, self)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError(self.dialect)

    async def _connected(self) -> Any:
        """Wait for the bootstrap and return the pool handle."""
        self._check_open()
        task = self._start_bootstrap()
        try:
            handle = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._closed:
                raise StoreClosedError(self.dialect) from None
            raise
        except KVCoreError:
            raise
        except Exception as e:
            raise BootstrapError(self.dialect, f"Schema bootstrap failed: {e}") from e
        if self._closed:
            raise StoreClosedError(self.dialect)
        return handle

    async def initialize(self) -> None:
        """Wait for the schema bootstrap; raises if it failed."""
        await self._connected()

    async def disconnect(self) -> None:
        """
        Release the pooled connection and close this store.

        The pool is shared with every store built from the same URI and pool
        options; releasing it tears it down for all of them. Later
        operations on this instance raise :class:`StoreClosedError`.
        """
        if self._closed:
            return
        self._closed = True
        await self._reaper.stop()

        task = self._bootstrap_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                # Bootstrap failures were already reported on the error channel.
                pass

        await self._release_handle()
        logger.debug(f"[{self.dialect}] Store disconnected (namespace={self.namespace!r})")
        self._events.emit(EventType.DISCONNECTED, self)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "BaseKeyValueStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: EventType | str, listener: Listener) -> None:
        """Subscribe to ``"error"``, ``"bootstrapped"``, ``"expired_cleared"`` or ``"disconnected"``."""
        self._events.on(event, listener)

    def off(self, event: EventType | str, listener: Listener) -> None:
        self._events.off(event, listener)

    def _emit_error(self, error: BaseException) -> None:
        self._events.emit(EventType.ERROR, error)

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str | None:
        return self.config.namespace

    @namespace.setter
    def namespace(self, value: str | None) -> None:
        self.config.namespace = value

    @property
    def opts(self) -> dict[str, Any]:
        """Read-only dict projection of the configuration."""
        return self.config.to_opts()

    @property
    def reap_interval(self) -> float:
        return self.config.reap_interval

    @reap_interval.setter
    def reap_interval(self, seconds: float) -> None:
        """Restart the reaper with ``seconds``; 0 stops it."""
        self.config.reap_interval = seconds
        if self._closed:
            return
        if seconds <= 0:
            self._reaper.cancel()
            return
        task = self._bootstrap_task
        if task is not None and task.done() and not task.cancelled() and task.exception() is None:
            self._reaper.start(seconds)

    @property
    def iteration_limit(self) -> int:
        return self.config.effective_iteration_limit

    def _namespace_value(self) -> str:
        return self.config.namespace or ""

    def _strip_prefix(self, key: str) -> str:
        namespace = self.config.namespace
        if namespace:
            prefix = f"{namespace}{NAMESPACE_SEPARATOR}"
            if key.startswith(prefix):
                return key[len(prefix):]
        return key

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        """Return the raw stored payload for ``key`` or None."""
        handle = await self._connected()
        return await self._get(handle, self._strip_prefix(key), self._namespace_value())

    async def get_many(self, keys: Iterable[str]) -> list[Any]:
        """Return payloads in input order, with None for missing keys."""
        stripped = [self._strip_prefix(key) for key in keys]
        if not stripped:
            self._check_open()
            return []
        handle = await self._connected()
        found = await self._get_many(handle, list(dict.fromkeys(stripped)), self._namespace_value())
        return [found.get(key) for key in stripped]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Upsert ``value`` under ``key`` in the current namespace."""
        await self.set_many([Entry(key=key, value=value, ttl=ttl)])

    async def set_many(self, entries: Iterable[Any]) -> None:
        """
        Upsert a batch of entries in as few round trips as the backend allows.

        Entries may be :class:`Entry` objects, ``{"key", "value", "ttl"}``
        mappings or ``(key, value[, ttl])`` tuples. When a key appears more
        than once the last occurrence wins.
        """
        batch: dict[str, Entry] = {}
        for item in entries:
            entry = Entry.coerce(item)
            stripped = self._strip_prefix(entry.key)
            batch.pop(stripped, None)
            batch[stripped] = entry.model_copy(update={"key": stripped})
        if not batch:
            self._check_open()
            return
        handle = await self._connected()
        await self._set_many(handle, list(batch.values()), self._namespace_value())

    async def delete(self, key: str) -> bool:
        """True iff this call removed an existing entry."""
        handle = await self._connected()
        return await self._delete(handle, self._strip_prefix(key), self._namespace_value())

    async def delete_many(self, keys: Iterable[str]) -> bool:
        """True iff at least one of ``keys`` existed and was removed."""
        stripped = list(dict.fromkeys(self._strip_prefix(key) for key in keys))
        if not stripped:
            self._check_open()
            return False
        handle = await self._connected()
        return await self._delete_many(handle, stripped, self._namespace_value()) > 0

    async def has(self, key: str) -> bool:
        handle = await self._connected()
        stripped = self._strip_prefix(key)
        return stripped in await self._has_many(handle, [stripped], self._namespace_value())

    async def has_many(self, keys: Iterable[str]) -> list[bool]:
        """Existence flags in input order."""
        stripped = [self._strip_prefix(key) for key in keys]
        if not stripped:
            self._check_open()
            return []
        handle = await self._connected()
        existing = await self._has_many(handle, list(dict.fromkeys(stripped)), self._namespace_value())
        return [key in existing for key in stripped]

    async def clear(self) -> None:
        """Delete every entry of the current namespace and nothing else."""
        handle = await self._connected()
        await self._clear(handle, self._namespace_value())

    async def iterator(self, namespace: str | None = None) -> AsyncIterator[tuple[str, Any]]:
        """
        Yield ``(key, payload)`` pairs of a namespace using keyset pagination.

        Args:
            namespace: Namespace to walk; defaults to the store's own. Keys of
                a non-empty namespace are yielded as ``"<namespace>:<key>"``.
        """
        handle = await self._connected()
        if namespace is None:
            namespace = self._namespace_value()
        prefix = f"{namespace}{NAMESPACE_SEPARATOR}" if namespace else ""

        async def fetch_page(cursor: str | None, limit: int) -> Sequence[tuple[str, Any]]:
            if self._closed:
                raise StoreClosedError(self.dialect)
            return await self._fetch_page(handle, namespace, cursor, limit)

        async for item in iterate_keyset(fetch_page, self.iteration_limit, prefix):
            yield item

    async def clear_expired(self) -> int:
        """
        Delete every entry whose expiry lies in the past.

        Returns:
            The number of entries removed.
        """
        handle = await self._connected()
        removed = await self._clear_expired(handle, now_ms())
        if removed:
            logger.info(f"[{self.dialect}] Cleared {removed} expired entr{'y' if removed == 1 else 'ies'}")
            self._events.emit(EventType.EXPIRED_CLEARED, removed)
        return removed
