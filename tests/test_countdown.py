"""Tests for the adaptive countdown updater."""
from datetime import timedelta

import pytest

from readyroom_notifier.core.errors import NotFoundError, RateLimitedError
from readyroom_notifier.core.models import Member, Publication
from readyroom_notifier.scheduling.countdown import (
    CIRCUIT_OPEN_FOR,
    FAILURE_THRESHOLD,
    RETRY_DELAY,
    CountdownUpdater,
    calculate_interval,
    next_fire_time,
)

from fakes import NOW, make_event


def _published(store, event_id="evt-1", message_id="m1", channel="chan-1", **kwargs):
    event = store.add_event(make_event(event_id=event_id, **kwargs))
    event.publications = [Publication(message_id=message_id, server_id="srv-1", channel_id=channel)]
    return event


def _key(message_id, channel="chan-1"):
    return ("srv-1", channel, message_id)


class TestCalculateInterval:
    @pytest.mark.parametrize(
        "remaining, expected",
        [
            (timedelta(days=3), timedelta(hours=24)),
            (timedelta(hours=24, minutes=1), timedelta(hours=24)),
            (timedelta(hours=24), timedelta(hours=1)),
            (timedelta(hours=7), timedelta(hours=1)),
            (timedelta(hours=6), timedelta(minutes=15)),
            (timedelta(hours=1, minutes=1), timedelta(minutes=15)),
            (timedelta(hours=1), timedelta(minutes=1)),
            (timedelta(seconds=30), timedelta(minutes=1)),
        ],
    )
    def test_interval_shrinks_near_start(self, remaining, expected):
        assert calculate_interval(NOW + remaining, NOW) == expected

    def test_started_event_has_no_interval(self):
        assert calculate_interval(NOW, NOW) is None
        assert calculate_interval(NOW - timedelta(minutes=1), NOW) is None


class TestNextFireTime:
    def test_upcoming_event(self):
        event = make_event(start_in=timedelta(hours=2))
        assert next_fire_time(event, NOW) == NOW + timedelta(minutes=15)

    def test_in_progress_fires_at_end(self):
        event = make_event(start_in=-timedelta(minutes=30))
        assert next_fire_time(event, NOW) == event.end_datetime

    def test_missing_end_uses_one_hour(self):
        event = make_event(start_in=-timedelta(minutes=30), end_datetime=None)
        assert next_fire_time(event, NOW) == event.start_datetime + timedelta(hours=1)

    def test_finished_event_stops(self):
        event = make_event(start_in=-timedelta(hours=3))
        assert next_fire_time(event, NOW) is None


class TestScheduling:
    def test_add_and_replace(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)

        assert updater.add_event_to_schedule(event, event.publications[0]) is True
        assert updater.next_fire_at(_key("m1")) == NOW + timedelta(minutes=15)

        later = NOW + timedelta(hours=1, minutes=30)
        updater.add_event_to_schedule(event, event.publications[0], now=later)
        assert len(updater) == 1
        assert updater.next_fire_at(_key("m1")) == later + timedelta(minutes=1)

    def test_finished_event_is_not_scheduled(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store, start_in=-timedelta(hours=5))
        assert updater.add_event_to_schedule(event, event.publications[0]) is False
        assert len(updater) == 0

    async def test_replaced_entries_never_fire(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        publication = event.publications[0]
        updater.add_event_to_schedule(event, publication)
        # replaced by a later entry; the old heap entry is now stale
        updater.add_event_to_schedule(event, publication, now=NOW + timedelta(minutes=10))

        assert await updater.run_due(NOW + timedelta(minutes=15)) == 0
        assert messenger.edits == []
        assert await updater.run_due(NOW + timedelta(minutes=25)) == 1
        assert len(messenger.edits) == 1

    async def test_removed_timer_never_fires(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        updater.remove(_key("m1"))

        assert await updater.run_due(NOW + timedelta(hours=1)) == 0
        assert messenger.edits == []


class TestFiring:
    async def test_edit_and_reschedule(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        store.respond("u1", "accepted", NOW, name="Viper")
        updater.add_event_to_schedule(event, event.publications[0])

        fired_at = NOW + timedelta(minutes=15)
        await updater.run_due(fired_at)

        [(destination, message_id, content)] = messenger.edits
        assert (destination.channel_id, message_id) == ("chan-1", "m1")
        assert "Starts in 1 hour and 45 minutes" in content
        assert "Accepted (1)\nViper" in content
        assert updater.next_fire_at(_key("m1")) == fired_at + timedelta(minutes=15)
        assert updater.stats["updates"] == 1

    async def test_no_response_names_rendered(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store, settings={"show_no_response": True})
        store.add_member(Member(id="1", identity="u2", org_id="unit-a", callsign="Goose"))
        updater.add_event_to_schedule(event, event.publications[0])

        await updater.run_due(NOW + timedelta(minutes=15))

        assert "No response (1)\nGoose" in messenger.edits[0][2]

    async def test_final_update_at_end(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store, start_in=-timedelta(minutes=30))
        updater.add_event_to_schedule(event, event.publications[0])
        assert updater.next_fire_at(_key("m1")) == event.end_datetime

        await updater.run_due(event.end_datetime)

        assert "Event finished" in messenger.edits[0][2]
        assert len(updater) == 0

    async def test_deleted_message_is_dropped(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        messenger.edit_error = NotFoundError("unknown message")

        await updater.run_due(NOW + timedelta(minutes=15))

        assert len(updater) == 0
        assert updater.stats["removed"] == 1

    async def test_other_edit_errors_keep_timer(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        messenger.edit_error = RateLimitedError("slow down", retry_after=5)

        fired_at = NOW + timedelta(minutes=15)
        await updater.run_due(fired_at)

        assert updater.stats["failures"] == 1
        assert updater.next_fire_at(_key("m1")) == fired_at + timedelta(minutes=15)

    async def test_read_failure_leaves_post_untouched(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        store.fail_event_reads = True

        fired_at = NOW + timedelta(minutes=15)
        await updater.run_due(fired_at)

        assert messenger.edits == []
        assert updater.next_fire_at(_key("m1")) == fired_at + RETRY_DELAY

    async def test_unpublished_message_is_dropped(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        store.events["evt-1"].publications = []

        await updater.run_due(NOW + timedelta(minutes=15))

        assert messenger.edits == []
        assert len(updater) == 0

    async def test_deleted_event_is_dropped(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store)
        updater.add_event_to_schedule(event, event.publications[0])
        del store.events["evt-1"]

        await updater.run_due(NOW + timedelta(minutes=15))

        assert len(updater) == 0


class TestLifecycle:
    async def test_start_rebuilds_from_store(self, store, messenger, clock):
        _published(store, event_id="evt-1", message_id="m1")
        _published(store, event_id="evt-2", message_id="m2", start_in=timedelta(days=2))
        _published(store, event_id="evt-3", message_id="m3", start_in=-timedelta(hours=5))
        store.default_timezone = "Europe/London"
        updater = CountdownUpdater(store, messenger, clock=clock)
        updater.add_event_to_schedule(store.events["evt-1"], store.events["evt-1"].publications[0])

        try:
            assert await updater.start() == 2
            assert updater.is_running
            assert updater.default_timezone == "Europe/London"
            assert updater.next_fire_at(_key("m2")) == NOW + timedelta(hours=24)
            assert updater.next_fire_at(_key("m3")) is None
        finally:
            await updater.stop()

        assert not updater.is_running
        assert len(updater) == 0


class TestMessageKeys:
    def test_same_message_id_in_two_chats(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        first = _published(store, event_id="evt-1", message_id="42", channel="chat-a")
        second = _published(store, event_id="evt-2", message_id="42", channel="chat-b", start_in=timedelta(days=2))

        updater.add_event_to_schedule(first, first.publications[0])
        updater.add_event_to_schedule(second, second.publications[0])

        assert len(updater) == 2
        assert updater.next_fire_at(_key("42", "chat-a")) == NOW + timedelta(minutes=15)
        assert updater.next_fire_at(_key("42", "chat-b")) == NOW + timedelta(hours=24)

    async def test_responses_in_other_chat_are_not_rendered(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        event = _published(store, message_id="42", channel="chat-a")
        store.respond("u1", "accepted", NOW, message_id="42", channel_id="chat-a", name="Viper")
        store.respond("u9", "accepted", NOW, message_id="42", channel_id="chat-b", name="Iceman")
        updater.add_event_to_schedule(event, event.publications[0])

        await updater.run_due(NOW + timedelta(minutes=15))

        [(destination, message_id, content)] = messenger.edits
        assert (destination.channel_id, message_id) == ("chat-a", "42")
        assert "Accepted (1)\nViper" in content
        assert "Iceman" not in content


class TestCircuitBreaker:
    def _schedule(self, store, updater, count):
        for i in range(1, count + 1):
            event = _published(store, event_id=f"evt-{i}", message_id=f"m{i}")
            updater.add_event_to_schedule(event, event.publications[0])

    async def test_opens_after_repeated_read_failures(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        self._schedule(store, updater, FAILURE_THRESHOLD + 1)
        store.fail_event_reads = True

        fired_at = NOW + timedelta(minutes=15)
        assert await updater.run_due(fired_at) == FAILURE_THRESHOLD

        assert updater.circuit_open(fired_at)
        assert updater.stats["skipped"] == 1
        assert updater.next_fire_at(_key("m4")) == fired_at + CIRCUIT_OPEN_FOR

    async def test_open_circuit_skips_fires_until_window_ends(self, store, messenger, clock):
        window = timedelta(minutes=5)
        updater = CountdownUpdater(store, messenger, clock=clock, circuit_open_for=window)
        self._schedule(store, updater, FAILURE_THRESHOLD)
        store.fail_event_reads = True
        fired_at = NOW + timedelta(minutes=15)
        await updater.run_due(fired_at)
        store.fail_event_reads = False

        # retries come due inside the window and are pushed past it
        assert await updater.run_due(fired_at + RETRY_DELAY) == 0
        assert messenger.edits == []
        assert updater.stats["skipped"] == FAILURE_THRESHOLD
        assert updater.next_fire_at(_key("m1")) == fired_at + window

        assert await updater.run_due(fired_at + window) == FAILURE_THRESHOLD
        assert len(messenger.edits) == FAILURE_THRESHOLD
        assert not updater.circuit_open(fired_at + window)

    async def test_success_resets_failure_count(self, store, messenger, clock):
        updater = CountdownUpdater(store, messenger, clock=clock)
        self._schedule(store, updater, FAILURE_THRESHOLD - 1)
        store.fail_event_reads = True
        fired_at = NOW + timedelta(minutes=15)
        await updater.run_due(fired_at)

        store.fail_event_reads = False
        await updater.run_due(fired_at + RETRY_DELAY)
        store.fail_event_reads = True
        event = _published(store, event_id="evt-9", message_id="m9")
        updater.add_event_to_schedule(event, event.publications[0], now=fired_at)
        await updater.run_due(fired_at + timedelta(minutes=15))

        assert not updater.circuit_open(fired_at + timedelta(minutes=15))
        assert len(messenger.edits) == FAILURE_THRESHOLD - 1
