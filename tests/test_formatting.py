"""Tests for message rendering."""
from datetime import timedelta

from readyroom_notifier.messaging.formatting import (
    format_event_time,
    format_reminder_message,
    render_event_content,
    time_until,
)

from fakes import NOW, make_event


class TestTimeUntil:
    def test_days_and_hours(self):
        assert time_until(NOW + timedelta(days=2, hours=3, minutes=10), NOW) == "2 days and 3 hours"

    def test_whole_day(self):
        assert time_until(NOW + timedelta(days=1, minutes=30), NOW) == "1 day"

    def test_hours_and_minutes(self):
        assert time_until(NOW + timedelta(hours=1, minutes=1), NOW) == "1 hour and 1 minute"

    def test_minutes(self):
        assert time_until(NOW + timedelta(minutes=45), NOW) == "45 minutes"

    def test_now_when_started(self):
        assert time_until(NOW, NOW) == "now"
        assert time_until(NOW - timedelta(minutes=5), NOW) == "now"


class TestReminderMessage:
    def test_uses_event_timezone(self):
        event = make_event(start_in=timedelta(minutes=45), settings={"timezone": "Europe/London"})
        text = format_reminder_message(event, NOW)
        lines = text.splitlines()
        assert lines[0] == "REMINDER: Event starting in 45 minutes!"
        assert lines[1] == "Strike Package Alpha"
        # 18:45 UTC on 15 March is 18:45 GMT in London
        assert lines[2] == "Saturday, March 15, 2025 at 6:45 PM GMT"

    def test_default_timezone_fallback(self):
        event = make_event(start_in=timedelta(hours=1))
        assert format_event_time(event.start_datetime, None) == "Saturday, March 15, 2025 at 3:00 PM EDT"

    def test_unknown_timezone_falls_back(self):
        event = make_event(start_in=timedelta(hours=1))
        assert format_event_time(event.start_datetime, "Mars/Olympus") == format_event_time(event.start_datetime, None)


class TestEventContent:
    def test_groups_responses(self, store):
        store.respond("u1", "accepted", NOW, name="Viper")
        store.respond("u2", "declined", NOW, name="Goose")
        event = make_event()
        content = render_event_content(event, NOW, responses=store.attendance)
        assert "Starts in 2 hours" in content
        assert "Accepted (1)\nViper" in content
        assert "Declined (1)\nGoose" in content
        assert "Tentative (0)\n-" in content
        assert "No response" not in content

    def test_no_response_section_when_enabled(self):
        event = make_event(settings={"show_no_response": True})
        content = render_event_content(event, NOW, no_response_names=["Maverick"])
        assert "No response (1)\nMaverick" in content

    def test_finished_event(self):
        event = make_event(start_in=-timedelta(hours=5))
        assert "Event finished" in render_event_content(event, NOW)
