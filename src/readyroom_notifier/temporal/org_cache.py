"""
Per-run cache of organizational units.

A processor run looks up the same units many times (once per row, once per
destination). The cache collapses those into one store query per unseen
unit. It is created at the start of a run and dropped at the end, so it
never outlives the data it was read from by more than one tick.
"""
import logging
from typing import Iterable, Optional, Protocol

from readyroom_notifier.core.models import OrgUnit

logger = logging.getLogger(__name__)


class OrgUnitStore(Protocol):
    async def get_org_units(self, org_ids: Iterable[str]) -> list[OrgUnit]: ...


class OrgUnitCache:
    """In-memory cache of :class:`OrgUnit` rows keyed by id.

    Attributes:
        _store: Store the units are read from.
        _cache: Known units. ``None`` marks ids the store did not return,
            so missing units are not queried again during the run.
    """

    def __init__(self, store: OrgUnitStore) -> None:
        self._store = store
        self._cache: dict[str, Optional[OrgUnit]] = {}

    async def get_many(self, org_ids: Iterable[str]) -> dict[str, OrgUnit]:
        """Return the known units among ``org_ids``, loading unseen ids in one query."""
        ids = list(dict.fromkeys(str(o) for o in org_ids))
        missing = [org_id for org_id in ids if org_id not in self._cache]
        if missing:
            loaded = {unit.id: unit for unit in await self._store.get_org_units(missing)}
            for org_id in missing:
                self._cache[org_id] = loaded.get(org_id)
                if org_id not in loaded:
                    logger.warning("Org unit %s not found", org_id)
        return {org_id: self._cache[org_id] for org_id in ids if self._cache.get(org_id) is not None}

    async def get(self, org_id: str) -> Optional[OrgUnit]:
        return (await self.get_many([org_id])).get(str(org_id))

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
