"""Short-lived per-run caches."""

from readyroom_notifier.temporal.org_cache import OrgUnitCache

__all__ = ["OrgUnitCache"]
