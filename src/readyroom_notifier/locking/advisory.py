"""
Advisory lock protocol shared by every processor.

Each row a processor touches is guarded by a PostgreSQL session advisory lock
whose key is derived from the row's UUID. Acquisition is non-blocking: a
worker that loses the race simply skips the row for this tick.

Usage:
    async with row_lock(store, publication.id, publication.event_id) as acquired:
        if not acquired:
            return  # another worker owns it
        ...
"""

from __future__ import annotations

import hashlib
import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

logger = logging.getLogger(__name__)

_INT64_MAX = 0x7FFFFFFFFFFFFFFF
_UINT64_RANGE = 0x10000000000000000
_HEX_PREFIX = re.compile(r"^[0-9a-f]{16}")


class LockStore(Protocol):
    async def try_acquire_lock(self, key: int) -> bool: ...

    async def release_lock(self, key: int) -> None: ...


def derive_lock_key(row_id: str) -> int:
    """
    Map a row identifier to a signed 64-bit advisory lock key.

    The first 16 hex characters (64 bits) of the identifier's canonical form
    (dashes removed, lower-case) are read as an unsigned integer and shifted
    into the signed range PostgreSQL's ``bigint`` expects. Identifiers that
    are not hex-shaped are hashed first so every input maps to a key.

    Args:
        row_id: Row identifier, normally a UUID string.

    Returns:
        Integer in [-2**63, 2**63 - 1].
    """
    canonical = str(row_id).replace("-", "").lower()
    if not _HEX_PREFIX.match(canonical):
        canonical = hashlib.sha256(str(row_id).encode("utf-8")).hexdigest()

    value = int(canonical[:16], 16)
    if value > _INT64_MAX:
        value -= _UINT64_RANGE
    return value


@asynccontextmanager
async def row_lock(store: LockStore, *row_ids: str) -> AsyncIterator[bool]:
    """
    Hold advisory locks for every id in ``row_ids`` for the duration of the block.

    All locks are acquired or none are: if any key is taken by another worker
    the ones already held are released and the block sees ``False``. Keys
    are always released in reverse order when the block exits, whatever the
    exit path. Release failures are logged and never raised.

    Yields:
        True if every lock was acquired.
    """
    keys: list[int] = []
    for row_id in row_ids:
        key = derive_lock_key(row_id)
        if key not in keys:
            keys.append(key)

    held: list[int] = []
    try:
        acquired = True
        for key in keys:
            if await store.try_acquire_lock(key):
                held.append(key)
            else:
                acquired = False
                break

        if not acquired:
            logger.info("Lock contention on %s, skipping", ", ".join(str(r) for r in row_ids))
            await _release_all(store, held)
            held = []

        yield acquired
    finally:
        await _release_all(store, held)


async def _release_all(store: LockStore, keys: list[int]) -> None:
    for key in reversed(keys):
        try:
            await store.release_lock(key)
        except Exception as e:
            logger.warning("Failed to release advisory lock %s: %s", key, e)
