"""
ReadyRoom Notifier - scheduled event publication and reminder delivery.

This package turns scheduled rows in PostgreSQL into notifications on a
messaging platform: it publishes events to every participating unit's channel,
sends reminders to the pilots who still need them, and keeps each published
message's countdown fresh. Several worker processes may run it at once;
advisory locks and fresh re-reads keep them from duplicating work.
"""

__version__ = "1.0.0"
