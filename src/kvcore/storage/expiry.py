# src/kvcore/storage/expiry.py
"""
Expiry extraction and reaping.

The authoritative TTL of an entry lives inside its serialized payload
(``{"value": ..., "expires": <epoch ms>}``). Stores copy that number into a
queryable ``expires`` column on every write, and :class:`ExpiryReaper`
periodically calls ``clear_expired()`` when an application-level interval is
configured.
"""

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

# Largest value a signed 64-bit expires column holds.
MAX_EXPIRES = 2**63 - 1


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def extract_expires(value: Any) -> int | None:
    """
    Read the numeric ``expires`` field of a stored payload.

    Strings and bytes are parsed as JSON; mappings are read directly. Anything
    that does not parse, is not an object, or carries an ``expires`` that is
    not a finite number in ``0..MAX_EXPIRES`` yields None (the entry never
    expires through the column).
    """
    data = value
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(value, str):
        try:
            data = json.loads(value)
        except (ValueError, RecursionError):
            return None

    if not isinstance(data, Mapping):
        return None

    expires = data.get("expires")
    if isinstance(expires, bool) or not isinstance(expires, (int, float)):
        return None
    if isinstance(expires, float) and not math.isfinite(expires):
        return None
    expires = int(expires)
    if not 0 <= expires <= MAX_EXPIRES:
        return None
    return expires


class ExpiryReaper:
    """
    Background task that calls ``reap()`` every ``interval`` seconds.

    Failures are logged and handed to ``on_error``; the loop keeps running.
    The task is an ordinary asyncio task, so it never keeps the process
    alive on its own and is cancelled by :meth:`stop`.
    """

    def __init__(
        self,
        reap: Callable[[], Awaitable[int]],
        on_error: Callable[[Exception], Any] | None = None,
        name: str = "kvcore-reaper",
    ):
        self._reap = reap
        self._on_error = on_error
        self._name = name
        self._task: asyncio.Task | None = None
        self._interval: float = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        return self._interval

    def start(self, interval: float) -> None:
        """(Re)start the loop; an interval of 0 or less just cancels it."""
        self.cancel()
        self._interval = interval
        if interval <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(interval), name=self._name)
        logger.debug(f"{self._name}: reaping expired entries every {interval}s")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self._reap()
                if removed:
                    logger.debug(f"{self._name}: removed {removed} expired entr{'y' if removed == 1 else 'ies'}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self._name}: scheduled clear_expired failed: {e}")
                if self._on_error is not None:
                    self._on_error(e)
