"""Keyset-paginated batch iteration over integer primary keys.

Used for the receipt-exclusion pass of a tier change, which can touch
every receipt a power user ever created.  Each batch re-queries with
``id > last_seen`` instead of OFFSET, so rows updated by a previous batch
(and therefore no longer matching the filter) never shift the window.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, List

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession


async def iter_id_batches(
    session: AsyncSession,
    stmt: Select[Any],
    id_column: Any,
    batch_size: int,
) -> AsyncIterator[List[int]]:
    """Yield lists of at most ``batch_size`` ids selected by ``stmt``.

    ``stmt`` must select ``id_column`` only; ordering and the cursor
    predicate are added here.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    cursor: int | None = None
    while True:
        page = stmt.order_by(id_column).limit(batch_size)
        if cursor is not None:
            page = page.where(id_column > cursor)
        ids = list((await session.scalars(page)).all())
        if not ids:
            return
        yield ids
        if len(ids) < batch_size:
            return
        cursor = ids[-1]
