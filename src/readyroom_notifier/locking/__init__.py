"""Distributed advisory lock protocol."""

from readyroom_notifier.locking.advisory import derive_lock_key, row_lock

__all__ = ["derive_lock_key", "row_lock"]
