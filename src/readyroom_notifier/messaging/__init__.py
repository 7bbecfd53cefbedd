"""Messaging platform interface and text rendering."""

from readyroom_notifier.messaging.base import MessagingClient
from readyroom_notifier.messaging.formatting import (
    format_reminder_message,
    render_event_content,
    time_until,
)

__all__ = [
    "MessagingClient",
    "format_reminder_message",
    "render_event_content",
    "time_until",
]
