"""Core notifier models, configuration and errors."""

from readyroom_notifier.core.models import (
    Destination,
    Event,
    Publication,
    Reminder,
    ScheduledPublication,
    ThreadState,
    ProcessorResult,
    ProcessingError,
    ErrorKind,
    ResponseType,
)
from readyroom_notifier.core.config import NotifierConfig

__all__ = [
    "Destination",
    "Event",
    "Publication",
    "Reminder",
    "ScheduledPublication",
    "ThreadState",
    "ProcessorResult",
    "ProcessingError",
    "ErrorKind",
    "ResponseType",
    "NotifierConfig",
]
