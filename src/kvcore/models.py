# src/kvcore/models.py
"""
Core data models for the kvcore library.

Values are opaque to the stores: the caller serializes them before ``set`` and
receives the raw payload back from ``get``. The only field a store ever looks
at inside a payload is ``expires`` (see :mod:`kvcore.storage.expiry`).
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field


class Entry(BaseModel):
    """
    One item of a ``set_many`` batch.

    Attributes:
        key: Entry key, optionally carrying the ``"<namespace>:"`` prefix.
        value: Serialized payload stored as-is.
        ttl: Optional time-to-live in milliseconds supplied by the caller.
            Relational stores take the expiry from the payload instead.
    """
    key: str = Field(description="Entry key.")
    value: Any = Field(default=None, description="Serialized payload.")
    ttl: int | None = Field(default=None, ge=0, description="Time-to-live in milliseconds.")

    @classmethod
    def coerce(cls, item: Any) -> "Entry":
        """Accept an Entry, a ``{"key", "value", "ttl"}`` mapping or a ``(key, value[, ttl])`` tuple."""
        if isinstance(item, cls):
            return item
        if isinstance(item, Mapping):
            return cls(**item)
        if isinstance(item, (tuple, list)) and len(item) in (2, 3):
            return cls(key=item[0], value=item[1], ttl=item[2] if len(item) == 3 else None)
        raise TypeError(f"Cannot interpret {type(item).__name__} as a store entry")
