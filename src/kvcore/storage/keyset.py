# src/kvcore/storage/keyset.py
"""
Keyset (cursor) pagination over a namespace.

Pages are fetched as ``key > cursor ORDER BY key LIMIT n`` instead of using an
OFFSET, so deleting rows that were already yielded cannot shift later rows out
of the next page. Rows inserted behind the cursor before their page is read
show up in the same pass, which matches per-page read-committed semantics.

The cursor lives only inside one :func:`iterate_keyset` call; every new
iteration starts from the beginning.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

logger = logging.getLogger(__name__)

# fetch_page(cursor, limit) -> [(key, value), ...] ordered by key ascending
PageFetcher = Callable[[str | None, int], Awaitable[Sequence[tuple[str, Any]]]]


async def iterate_keyset(
    fetch_page: PageFetcher,
    limit: int,
    prefix: str = "",
) -> AsyncIterator[tuple[str, Any]]:
    """
    Yield ``(prefix + key, value)`` pairs page by page.

    Args:
        fetch_page: Coroutine returning at most ``limit`` rows after ``cursor``
            (``None`` for the first page), ordered by key.
        limit: Page size; must be positive.
        prefix: Re-attached to every yielded key (``"<namespace>:"`` or ``""``).
    """
    if limit <= 0:
        raise ValueError("Keyset page size must be positive")

    cursor: str | None = None
    pages = 0
    while True:
        rows = await fetch_page(cursor, limit)
        pages += 1
        if not rows:
            break

        for key, value in rows:
            yield f"{prefix}{key}", value

        cursor = rows[-1][0]
        if len(rows) < limit:
            break

    logger.debug(f"Keyset iteration finished after {pages} page(s)")
