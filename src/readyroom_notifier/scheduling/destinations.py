"""
Destination deduplication shared by the publication and reminder processors.

Several units can point at the same (server, channel). Both processors work
per unique destination, never per unit, so a shared channel receives exactly
one event post and exactly one reminder per dispatch.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable

from readyroom_notifier.core.models import Destination, OrgUnit

logger = logging.getLogger(__name__)


@dataclass
class DestinationGroup:
    """One unique destination and every unit that maps to it."""
    destination: Destination
    units: list[OrgUnit] = field(default_factory=list)

    @property
    def org_ids(self) -> list[str]:
        return [unit.id for unit in self.units]

    @property
    def first_org_id(self) -> str:
        return self.units[0].id


def build_destination_map(
    org_ids: Iterable[str],
    units: dict[str, OrgUnit],
) -> dict[tuple[str, str], DestinationGroup]:
    """
    Group participating units by their configured destination.

    Units that are unknown or lack a server/channel are skipped with a
    warning. Insertion order follows ``org_ids``, so the first unit listed
    for a destination is its first writer.

    Args:
        org_ids: Participating unit ids, in event order.
        units: Loaded units keyed by id.

    Returns:
        Mapping of (server_id, channel_id) to the group of units sharing it.
    """
    groups: dict[tuple[str, str], DestinationGroup] = {}
    for org_id in dict.fromkeys(org_ids):
        unit = units.get(org_id)
        if unit is None:
            logger.warning("Skipping unit %s: not found", org_id)
            continue
        destination = unit.destination
        if destination is None:
            logger.warning("Skipping unit %s (%s): no destination configured", unit.name or org_id, org_id)
            continue
        group = groups.setdefault(destination.key, DestinationGroup(destination=destination))
        group.units.append(unit)
    return groups
