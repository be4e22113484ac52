# src/kvcore/storage/events.py
"""
Out-of-band event signals for stores.

Failures that happen without a caller to receive them (the schema bootstrap
started at construction time, timer-driven expiry reaping) are reported
through this channel in addition to being logged:

    store.on("error", lambda error: alerts.notify(error))

Listeners are plain callables invoked synchronously in registration order.
A listener that raises is logged and does not stop the others.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Signals emitted by stores."""

    ERROR = "error"
    BOOTSTRAPPED = "bootstrapped"
    EXPIRED_CLEARED = "expired_cleared"
    DISCONNECTED = "disconnected"


Listener = Callable[..., Any]


class EventEmitter:
    """Minimal listener registry keyed by event type."""

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = defaultdict(list)

    def on(self, event: EventType | str, listener: Listener) -> None:
        """Register ``listener`` for ``event``."""
        self._listeners[EventType(event)].append(listener)

    def off(self, event: EventType | str, listener: Listener) -> None:
        """Remove a previously registered listener; unknown listeners are ignored."""
        listeners = self._listeners.get(EventType(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: EventType | str) -> int:
        return len(self._listeners.get(EventType(event), []))

    def emit(self, event: EventType | str, *args: Any) -> int:
        """
        Call every listener of ``event`` with ``args``.

        Returns:
            The number of listeners notified.
        """
        event = EventType(event)
        listeners = list(self._listeners.get(event, []))
        if not listeners and event is EventType.ERROR:
            logger.debug("Error signal emitted with no listeners attached.")
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Listener for '{event.value}' raised: {e}", exc_info=True)
        return len(listeners)
