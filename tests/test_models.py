"""Tests for model parsing and the tagged thread state."""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from readyroom_notifier.core.models import (
    DurationUnit,
    EventSettings,
    Publication,
    Reminder,
    ReminderTime,
    ResponseType,
    ThreadState,
    ThreadStatus,
)

from fakes import NOW, make_event


class TestThreadState:
    def test_created_requires_id(self):
        with pytest.raises(ValidationError):
            ThreadState(status=ThreadStatus.CREATED)

    def test_disabled_cannot_carry_id(self):
        with pytest.raises(ValidationError):
            ThreadState(status=ThreadStatus.DISABLED, thread_id="123")

    def test_factories(self):
        assert ThreadState.none().status == ThreadStatus.NONE
        assert ThreadState.created("42").is_created
        assert ThreadState.disabled().is_disabled


class TestPublicationParsing:
    def test_legacy_disabled_sentinel(self):
        pub = Publication.model_validate(
            {"message_id": "1", "server_id": "s", "channel_id": "c", "thread_id": "DISABLED"}
        )
        assert pub.thread.is_disabled

    def test_legacy_thread_id(self):
        pub = Publication.model_validate(
            {"message_id": "1", "server_id": "s", "channel_id": "c", "thread_id": "987"}
        )
        assert pub.thread == ThreadState.created("987")

    def test_legacy_null_thread(self):
        pub = Publication.model_validate(
            {"message_id": "1", "server_id": "s", "channel_id": "c", "thread_id": None}
        )
        assert pub.thread.status == ThreadStatus.NONE

    def test_int_ids_are_coerced(self):
        pub = Publication.model_validate({"message_id": 5, "server_id": 6, "channel_id": 7})
        assert (pub.message_id, pub.server_id, pub.channel_id) == ("5", "6", "7")

    def test_dump_round_trips_through_json(self):
        pub = Publication(message_id="1", server_id="s", channel_id="c", thread=ThreadState.created("t"))
        assert Publication.model_validate(pub.model_dump(mode="json")) == pub


class TestSettings:
    def test_reminder_time_units(self):
        assert ReminderTime(value=3, unit="days").to_timedelta() == timedelta(days=3)
        assert ReminderTime(value=2, unit="hours").to_timedelta() == timedelta(hours=2)
        assert ReminderTime(value=15).to_timedelta() == timedelta(minutes=15)

    def test_unknown_unit_means_minutes(self):
        assert ReminderTime(value=10, unit="fortnights").unit == DurationUnit.MINUTES

    def test_defaults(self):
        settings = EventSettings()
        assert settings.first_reminder.time.to_timedelta() == timedelta(minutes=15)
        assert settings.first_reminder.recipients.no_response is True
        assert settings.second_reminder.time.to_timedelta() == timedelta(days=3)
        assert settings.second_reminder.recipients.accepted is True
        assert settings.second_reminder.recipients.no_response is False

    def test_partial_second_reminder_keeps_its_defaults(self):
        settings = EventSettings.model_validate({"second_reminder": {"enabled": True}})
        assert settings.second_reminder.enabled is True
        assert settings.second_reminder.time.unit == DurationUnit.DAYS
        assert settings.second_reminder.recipients.accepted is True


class TestEvent:
    def test_effective_end_defaults_to_one_hour(self):
        event = make_event(end_datetime=None)
        assert event.effective_end == event.start_datetime + timedelta(hours=1)

    def test_reminder_response_filter(self):
        reminder = Reminder(
            event_id="e",
            reminder_type="first",
            scheduled_time=NOW,
            notify_accepted=True,
            notify_declined=True,
            notify_no_response=True,
        )
        assert reminder.response_filter == {ResponseType.ACCEPTED, ResponseType.DECLINED}
