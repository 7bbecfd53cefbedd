"""Database pool, migrations and the event store."""

from readyroom_notifier.database.init import close_pool, get_pool, run_migrations
from readyroom_notifier.database.store import EventStore

__all__ = [
    "EventStore",
    "close_pool",
    "get_pool",
    "run_migrations",
]
