"""Publication, reminder and countdown scheduling."""

from readyroom_notifier.scheduling.countdown import CountdownUpdater, calculate_interval
from readyroom_notifier.scheduling.orchestrator import ProcessorOrchestrator
from readyroom_notifier.scheduling.peer_jobs import ConcludedEventsJob, MissionStatusJob
from readyroom_notifier.scheduling.publication_processor import PublicationProcessor, build_reminders
from readyroom_notifier.scheduling.reminder_processor import ReminderProcessor

__all__ = [
    "CountdownUpdater",
    "calculate_interval",
    "ProcessorOrchestrator",
    "ConcludedEventsJob",
    "MissionStatusJob",
    "PublicationProcessor",
    "build_reminders",
    "ReminderProcessor",
]
