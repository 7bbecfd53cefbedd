"""
Pydantic models for the notifier core.

Rows coming out of PostgreSQL are validated into these models, and the
JSON-shaped columns (event settings, publications) round-trip through
``model_dump(mode="json")``.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Legacy marker written into publications before the tagged thread state existed
LEGACY_THREAD_DISABLED = "DISABLED"

VALID_AUTO_ARCHIVE_MINUTES = (60, 1440, 4320, 10080)
DEFAULT_AUTO_ARCHIVE_MINUTES = 1440

class ResponseType(str, Enum):
    """A pilot's answer to an event, plus the synthetic no-response bucket."""
    ACCEPTED = "accepted"
    TENTATIVE = "tentative"
    DECLINED = "declined"
    NO_RESPONSE = "no_response"

class ReminderType(str, Enum):
    """Which of the two configurable reminders a row represents."""
    FIRST = "first"
    SECOND = "second"

class DurationUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

class MissionStatus(str, Enum):
    """Time-driven mission lifecycle: planning -> in_progress -> completed."""
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

class ErrorKind(str, Enum):
    """Categories recorded in ProcessingError entries."""
    CONFIGURATION = "configuration"
    MESSAGING = "messaging"
    DATA_INTEGRITY = "data_integrity"
    STORE = "store"
    UNEXPECTED = "unexpected"

# =============================================================================
# DESTINATIONS AND THREADS
# =============================================================================

class Destination(BaseModel):
    """A (server_id, channel_id) pair identifying one conversation surface."""
    server_id: str
    channel_id: str

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str]:
        return (self.server_id, self.channel_id)

class ThreadStatus(str, Enum):
    NONE = "none"
    CREATED = "created"
    DISABLED = "disabled"  # never retry thread creation for this event

class ThreadState(BaseModel):
    """
    Tagged thread routing state of a publication.

    ``NONE`` -> ``CREATED`` | ``DISABLED``. ``CREATED`` is reused by every
    later reminder and ``DISABLED`` is sticky; the only way out of it is a
    successful lookup of a thread that already exists on the message.
    """
    status: ThreadStatus = ThreadStatus.NONE
    thread_id: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_thread_id(self) -> "ThreadState":
        if self.status == ThreadStatus.CREATED and not self.thread_id:
            raise ValueError("created thread state requires a thread_id")
        if self.status != ThreadStatus.CREATED and self.thread_id is not None:
            raise ValueError(f"{self.status.value} thread state cannot carry a thread_id")
        return self

    @classmethod
    def none(cls) -> "ThreadState":
        return cls()

    @classmethod
    def created(cls, thread_id: str) -> "ThreadState":
        return cls(status=ThreadStatus.CREATED, thread_id=str(thread_id))

    @classmethod
    def disabled(cls) -> "ThreadState":
        return cls(status=ThreadStatus.DISABLED)

    @property
    def is_created(self) -> bool:
        return self.status == ThreadStatus.CREATED

    @property
    def is_disabled(self) -> bool:
        return self.status == ThreadStatus.DISABLED

class Publication(BaseModel):
    """One destination an event has been posted to."""
    message_id: str
    server_id: str
    channel_id: str
    org_id: Optional[str] = None  # first unit that wrote this destination
    thread: ThreadState = Field(default_factory=ThreadState)
    reminder_message_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_thread_id(cls, data: Any) -> Any:
        """Accept rows written with the old ``thread_id`` string column."""
        if not isinstance(data, dict) or "thread" in data:
            return data
        data = dict(data)
        legacy = data.pop("thread_id", None)
        if legacy == LEGACY_THREAD_DISABLED:
            data["thread"] = ThreadState.disabled()
        elif legacy:
            data["thread"] = ThreadState.created(legacy)
        return data

    @field_validator("message_id", "server_id", "channel_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v: Any) -> Any:
        # Platform ids arrive as ints from some clients
        return str(v) if isinstance(v, int) else v

    @property
    def destination(self) -> Destination:
        return Destination(server_id=self.server_id, channel_id=self.channel_id)

    @property
    def message_key(self) -> tuple[str, str]:
        """Message ids are only unique within their chat."""
        return (self.channel_id, self.message_id)

# =============================================================================
# EVENTS AND SETTINGS
# =============================================================================

class ReminderTime(BaseModel):
    value: int = 15
    unit: DurationUnit = DurationUnit.MINUTES

    @field_validator("unit", mode="before")
    @classmethod
    def _unknown_unit_is_minutes(cls, v: Any) -> Any:
        if v not in {u.value for u in DurationUnit} and not isinstance(v, DurationUnit):
            return DurationUnit.MINUTES
        return v

    def to_timedelta(self) -> timedelta:
        if self.unit == DurationUnit.DAYS:
            return timedelta(days=self.value)
        if self.unit == DurationUnit.HOURS:
            return timedelta(hours=self.value)
        return timedelta(minutes=self.value)

class ReminderRecipients(BaseModel):
    accepted: bool = False
    tentative: bool = True
    declined: bool = False
    no_response: bool = True

class ReminderConfig(BaseModel):
    enabled: bool = False
    time: ReminderTime = Field(default_factory=ReminderTime)
    recipients: ReminderRecipients = Field(default_factory=ReminderRecipients)

def _default_second_reminder() -> ReminderConfig:
    return ReminderConfig(
        time=ReminderTime(value=3, unit=DurationUnit.DAYS),
        recipients=ReminderRecipients(accepted=True, tentative=True, declined=False, no_response=False),
    )

class EventSettings(BaseModel):
    """Per-event notification settings stored in ``events.event_settings``."""
    initial_notification_roles: list[str] = Field(default_factory=list)
    group_by_unit: bool = False
    show_no_response: bool = False
    timezone: Optional[str] = None
    first_reminder: ReminderConfig = Field(default_factory=ReminderConfig)
    second_reminder: ReminderConfig = Field(default_factory=_default_second_reminder)

    @field_validator("second_reminder", mode="before")
    @classmethod
    def _second_reminder_defaults(cls, v: Any) -> Any:
        # Partially specified second reminders inherit the second reminder's own defaults
        if isinstance(v, dict):
            merged = _default_second_reminder().model_dump(mode="json")
            for key, value in v.items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            return merged
        return v

class Event(BaseModel):
    """An event and every destination it has been published to."""
    id: str
    name: str
    description: str = ""
    start_datetime: datetime
    end_datetime: Optional[datetime] = None
    participants: list[str] = Field(default_factory=list)
    settings: EventSettings = Field(default_factory=EventSettings)
    publications: list[Publication] = Field(default_factory=list)
    buttons_removed: bool = False

    @property
    def effective_end(self) -> datetime:
        """End time, defaulting to one hour after start when unset."""
        return self.end_datetime or self.start_datetime + timedelta(hours=1)

    @property
    def message_keys(self) -> list[tuple[str, str]]:
        return [pub.message_key for pub in self.publications]

    def publication_for(self, destination: Destination) -> Optional[Publication]:
        for pub in self.publications:
            if pub.destination.key == destination.key:
                return pub
        return None

class ScheduledPublication(BaseModel):
    """A request to publish an event at ``scheduled_time``."""
    id: str
    event_id: str
    scheduled_time: datetime
    sent: bool = False

class Reminder(BaseModel):
    """A reminder row derived from event settings at publication time."""
    id: Optional[str] = None  # generated by the database
    event_id: str
    reminder_type: ReminderType
    scheduled_time: datetime
    sent: bool = False
    notify_accepted: bool = False
    notify_tentative: bool = False
    notify_declined: bool = False
    notify_no_response: bool = False

    class Config:
        use_enum_values = True

    @property
    def response_filter(self) -> set[ResponseType]:
        """Explicit response types this reminder targets (no-response excluded)."""
        selected = set()
        if self.notify_accepted:
            selected.add(ResponseType.ACCEPTED)
        if self.notify_tentative:
            selected.add(ResponseType.TENTATIVE)
        if self.notify_declined:
            selected.add(ResponseType.DECLINED)
        return selected

# =============================================================================
# ROSTER AND ATTENDANCE
# =============================================================================

class AttendanceRecord(BaseModel):
    """One entry of the append-only attendance audit trail."""
    identity: str
    display_name: Optional[str] = None
    response: str
    updated_at: datetime
    channel_id: Optional[str] = None
    message_id: Optional[str] = None

class Member(BaseModel):
    """A roster member with their platform identity and current unit."""
    id: str
    identity: str
    display_name: Optional[str] = None
    callsign: Optional[str] = None
    board_number: Optional[str] = None
    org_id: Optional[str] = None

class Recipient(BaseModel):
    """A resolved reminder recipient."""
    identity: str
    display_name: Optional[str] = None
    response: ResponseType
    org_id: Optional[str] = None

class ThreadingSettings(BaseModel):
    use_threads: bool = False
    auto_archive_minutes: Optional[int] = None

class OrgSettings(BaseModel):
    threading: ThreadingSettings = Field(default_factory=ThreadingSettings)
    reference_timezone: Optional[str] = None

class OrgUnit(BaseModel):
    """A participating unit (squadron) and its configured destination."""
    id: str
    name: str = ""
    designation: Optional[str] = None
    server_id: Optional[str] = None
    channel_id: Optional[str] = None
    settings: OrgSettings = Field(default_factory=OrgSettings)

    @property
    def destination(self) -> Optional[Destination]:
        if not self.server_id or not self.channel_id:
            return None
        return Destination(server_id=self.server_id, channel_id=self.channel_id)

class Mission(BaseModel):
    id: str
    event_id: Optional[str] = None
    name: str = ""
    status: MissionStatus = MissionStatus.PLANNING
    event_start: Optional[datetime] = None
    event_end: Optional[datetime] = None

# =============================================================================
# PROCESSOR RESULTS
# =============================================================================

class ProcessingError(BaseModel):
    """A structured, non-fatal error collected during a processor run."""
    row_id: str
    kind: ErrorKind
    message: str
    org_id: Optional[str] = None

    class Config:
        use_enum_values = True

class ProcessorResult(BaseModel):
    """Outcome of one processor run."""
    processed: int = 0
    skipped: int = 0
    errors: list[ProcessingError] = Field(default_factory=list)

    def add_error(
        self,
        row_id: str,
        kind: ErrorKind,
        message: str,
        org_id: Optional[str] = None,
    ) -> None:
        self.errors.append(ProcessingError(row_id=row_id, kind=kind, message=message, org_id=org_id))
