"""
Simple time-driven jobs that run alongside the processors on every tick.

- ConcludedEventsJob flags finished, published events with
  ``buttons_removed`` so their posts stop accepting responses.
- MissionStatusJob moves missions through planning -> in_progress ->
  completed as their event starts and ends.
"""
import logging
from datetime import datetime
from typing import Optional

from readyroom_notifier.core.clock import Clock, utc_now
from readyroom_notifier.core.models import ErrorKind, Mission, MissionStatus, ProcessorResult
from readyroom_notifier.database.store import EventStore

logger = logging.getLogger(__name__)


class ConcludedEventsJob:
    """Marks events whose end time has passed as concluded."""

    def __init__(self, store: EventStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def run(self) -> ProcessorResult:
        result = ProcessorResult()
        events = await self.store.fetch_concluded_events(self.clock())
        for event in events:
            try:
                await self.store.mark_buttons_removed(event.id)
                result.processed += 1
                logger.info("Marked concluded event %r (%s)", event.name, event.id)
            except Exception as e:
                logger.error("Failed to mark event %s concluded: %s", event.id, e)
                result.add_error(event.id, ErrorKind.STORE, str(e))
        return result


def next_mission_status(mission: Mission, now: datetime) -> Optional[MissionStatus]:
    """The status ``mission`` should move to at ``now``, or None to leave it."""
    if mission.event_start is None:
        return None
    if mission.status == MissionStatus.PLANNING and now >= mission.event_start:
        return MissionStatus.IN_PROGRESS
    if mission.status == MissionStatus.IN_PROGRESS and mission.event_end and now >= mission.event_end:
        return MissionStatus.COMPLETED
    return None


class MissionStatusJob:
    """Advances mission status from its event's timing."""

    def __init__(self, store: EventStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def run(self) -> ProcessorResult:
        result = ProcessorResult()
        now = self.clock()
        for mission in await self.store.fetch_active_missions():
            new_status = next_mission_status(mission, now)
            if new_status is None:
                continue
            try:
                updated = await self.store.update_mission_status(mission.id, new_status, mission.status)
            except Exception as e:
                logger.error("Failed to update mission %s: %s", mission.id, e)
                result.add_error(mission.id, ErrorKind.STORE, str(e))
                continue
            if updated:
                result.processed += 1
                logger.info(
                    "Mission %r (%s): %s -> %s",
                    mission.name,
                    mission.id,
                    mission.status.value,
                    new_status.value,
                )
            else:
                result.skipped += 1
        return result
