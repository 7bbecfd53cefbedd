"""In-memory store and recording messenger used across the test suite."""
import itertools
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from readyroom_notifier.core.models import (
    AttendanceRecord,
    Destination,
    Event,
    Member,
    Mission,
    MissionStatus,
    OrgUnit,
    Publication,
    Reminder,
    ScheduledPublication,
)
from readyroom_notifier.messaging.base import MessagingClient

NOW = datetime(2025, 3, 15, 18, 0, tzinfo=timezone.utc)


class FakeStore:
    """
    Dict-backed stand-in for EventStore.

    Pass the same ``locks`` set to several stores to simulate workers
    sharing one database.
    """

    def __init__(self, locks: Optional[set] = None):
        self.events: dict[str, Event] = {}
        self.scheduled: dict[str, ScheduledPublication] = {}
        self.reminders: dict[str, Reminder] = {}
        self.org_units: dict[str, OrgUnit] = {}
        self.attendance: list[AttendanceRecord] = []
        self.members: dict[str, Member] = {}
        self.inactive: set[str] = set()
        self.missions: dict[str, Mission] = {}
        self.default_timezone: Optional[str] = None
        self.locks = locks if locks is not None else set()
        self.lock_calls: list[tuple[str, int]] = []
        self.fail_event_reads = False
        self.failing_publication_writes = 0  # next N publication writes raise
        self.publication_writes = 0
        self._ids = itertools.count(1)

    # setup helpers

    def add_event(self, event: Event) -> Event:
        self.events[event.id] = event
        return event

    def add_unit(self, unit: OrgUnit) -> OrgUnit:
        self.org_units[unit.id] = unit
        return unit

    def add_member(self, member: Member, active: bool = True) -> Member:
        self.members[member.identity] = member
        if not active:
            self.inactive.add(member.identity)
        return member

    def respond(
        self,
        identity: str,
        response: str,
        at: datetime,
        message_id: str = "m1",
        name: Optional[str] = None,
        channel_id: str = "chan-1",
    ):
        self.attendance.append(
            AttendanceRecord(
                identity=identity,
                display_name=name or identity,
                response=response,
                updated_at=at,
                channel_id=channel_id,
                message_id=message_id,
            )
        )

    # locks

    async def try_acquire_lock(self, key: int) -> bool:
        self.lock_calls.append(("acquire", key))
        if key in self.locks:
            return False
        self.locks.add(key)
        return True

    async def release_lock(self, key: int) -> None:
        self.lock_calls.append(("release", key))
        self.locks.discard(key)

    # scheduled publications

    async def fetch_due_publications(self, now: datetime) -> list[ScheduledPublication]:
        due = [p for p in self.scheduled.values() if not p.sent and p.scheduled_time <= now]
        return sorted((p.model_copy() for p in due), key=lambda p: p.scheduled_time)

    async def mark_publication_sent(self, publication_id: str) -> bool:
        row = self.scheduled.get(publication_id)
        if row is None or row.sent:
            return False
        row.sent = True
        return True

    # events

    async def get_event(self, event_id: str) -> Optional[Event]:
        if self.fail_event_reads:
            raise ConnectionError("database unavailable")
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def get_event_publications(self, event_id: str) -> list[Publication]:
        event = self.events.get(event_id)
        return [p.model_copy(deep=True) for p in event.publications] if event else []

    async def update_event_publications(self, event_id: str, publications: Iterable[Publication]) -> None:
        if self.failing_publication_writes:
            self.failing_publication_writes -= 1
            raise ConnectionError("database unavailable")
        self.publication_writes += 1
        self.events[event_id].publications = [p.model_copy(deep=True) for p in publications]

    async def fetch_countdown_events(self, now: datetime) -> list[Event]:
        return [
            e.model_copy(deep=True)
            for e in self.events.values()
            if e.publications and e.effective_end >= now
        ]

    async def fetch_concluded_events(self, now: datetime) -> list[Event]:
        return [
            e.model_copy(deep=True)
            for e in self.events.values()
            if e.end_datetime and e.end_datetime <= now and e.publications and not e.buttons_removed
        ]

    async def mark_buttons_removed(self, event_id: str) -> None:
        self.events[event_id].buttons_removed = True

    # reminders

    async def insert_reminder(self, reminder: Reminder) -> str:
        reminder_id = f"r{next(self._ids)}"
        self.reminders[reminder_id] = reminder.model_copy(update={"id": reminder_id})
        return reminder_id

    async def fetch_due_reminders(self, now: datetime) -> list[Reminder]:
        due = [r for r in self.reminders.values() if not r.sent and r.scheduled_time <= now]
        return sorted((r.model_copy() for r in due), key=lambda r: r.scheduled_time)

    async def is_reminder_sent(self, reminder_id: str) -> bool:
        row = self.reminders.get(reminder_id)
        return row is None or row.sent

    async def mark_reminder_sent(self, reminder_id: str) -> None:
        self.reminders[reminder_id].sent = True

    # org units and roster

    async def get_org_units(self, org_ids: Iterable[str]) -> list[OrgUnit]:
        return [self.org_units[o] for o in org_ids if o in self.org_units]

    async def get_default_timezone(self) -> Optional[str]:
        return self.default_timezone

    async def fetch_attendance(self, message_keys: Iterable[tuple[str, str]]) -> list[AttendanceRecord]:
        keys = set(message_keys)
        rows = [r for r in self.attendance if (r.channel_id, r.message_id) in keys]
        return sorted(rows, key=lambda r: r.updated_at, reverse=True)

    async def fetch_member_orgs(self, identities: Iterable[str]) -> dict[str, str]:
        return {
            i: self.members[i].org_id
            for i in identities
            if i in self.members and self.members[i].org_id
        }

    async def fetch_active_members_in_orgs(self, org_ids: Iterable[str]) -> list[Member]:
        orgs = set(org_ids)
        return [
            m for m in self.members.values()
            if m.org_id in orgs and m.identity not in self.inactive
        ]

    async def filter_active_identities(self, identities: Iterable[str]) -> set[str]:
        return {i for i in identities if i in self.members and i not in self.inactive}

    # missions

    async def fetch_active_missions(self) -> list[Mission]:
        return [
            m.model_copy()
            for m in self.missions.values()
            if m.status in (MissionStatus.PLANNING, MissionStatus.IN_PROGRESS)
        ]

    async def update_mission_status(self, mission_id: str, new_status: MissionStatus, expected_status: MissionStatus) -> bool:
        mission = self.missions.get(mission_id)
        if mission is None or mission.status != expected_status:
            return False
        mission.status = new_status
        return True


class FakeMessenger(MessagingClient):
    """
    Records every platform call.

    Failures are injected per channel id (``send_errors``) or per operation
    (``create_thread_error``, ``edit_error``).
    """

    def __init__(self):
        self.sent: list[tuple[Destination, str, str]] = []
        self.edits: list[tuple[Destination, str, str]] = []
        self.thread_posts: list[tuple[Destination, str, str]] = []
        self.threads_created: list[tuple[Destination, str, str, int]] = []
        self.lookups: list[tuple[Destination, str]] = []
        self.deleted: list[str] = []
        self.send_errors: dict[str, Exception] = {}
        self.create_thread_error: Optional[Exception] = None
        self.existing_thread: Optional[str] = None
        self.edit_error: Optional[Exception] = None
        self._ids = itertools.count(100)

    def sent_to(self, channel_id: str) -> list[str]:
        return [content for dest, content, _ in self.sent if dest.channel_id == channel_id]

    async def send_message(self, destination: Destination, content: str) -> str:
        error = self.send_errors.get(destination.channel_id)
        if error is not None:
            raise error
        message_id = f"msg-{next(self._ids)}"
        self.sent.append((destination, content, message_id))
        return message_id

    async def edit_message(self, destination: Destination, message_id: str, content: str) -> None:
        if self.edit_error is not None:
            raise self.edit_error
        self.edits.append((destination, message_id, content))

    async def create_thread(self, destination: Destination, message_id: str, name: str, auto_archive_minutes: int) -> str:
        if self.create_thread_error is not None:
            raise self.create_thread_error
        thread_id = f"thread-{next(self._ids)}"
        self.threads_created.append((destination, message_id, thread_id, auto_archive_minutes))
        return thread_id

    async def get_existing_thread(self, destination: Destination, message_id: str, name: Optional[str] = None) -> Optional[str]:
        self.lookups.append((destination, message_id))
        return self.existing_thread

    async def post_to_thread(self, destination: Destination, thread_id: str, content: str) -> str:
        message_id = f"msg-{next(self._ids)}"
        self.thread_posts.append((destination, thread_id, content))
        return message_id

    async def delete_message(self, destination: Destination, message_id: str) -> None:
        self.deleted.append(message_id)

    async def delete_thread(self, destination: Destination, thread_id: str) -> None:
        self.deleted.append(thread_id)

    def format_mention(self, identity: str, display_name: Optional[str] = None) -> str:
        return f"<@{identity}>"


def make_event(event_id: str = "evt-1", participants=("unit-a",), start_in=timedelta(hours=2), **kwargs) -> Event:
    start = NOW + start_in
    return Event(
        id=event_id,
        name=kwargs.pop("name", "Strike Package Alpha"),
        start_datetime=start,
        end_datetime=kwargs.pop("end_datetime", start + timedelta(hours=2)),
        participants=list(participants),
        **kwargs,
    )


def make_unit(unit_id: str, server: Optional[str] = "srv-1", channel: Optional[str] = "chan-1", use_threads: bool = False, **settings) -> OrgUnit:
    threading = {"use_threads": use_threads}
    threading.update(settings)
    return OrgUnit(
        id=unit_id,
        name=unit_id.upper(),
        server_id=server,
        channel_id=channel,
        settings={"threading": threading},
    )
