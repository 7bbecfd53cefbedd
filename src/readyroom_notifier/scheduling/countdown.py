"""
Countdown Updater - keeps published event posts current.

Each published message has one logical timer, keyed by
``(server_id, channel_id, message_id)`` because message ids are only unique
within a chat. Timers live in a min-heap of ``(next_fire_at, seq, key)``
drained by a single asyncio task; a timer is replaced by pushing a new entry
with a higher ``seq``, and heap entries that no longer match the live timer
are discarded when popped.

The update interval shrinks as the event approaches:

    more than 24h  -> every 24 hours
    6h to 24h      -> every hour
    1h to 6h       -> every 15 minutes
    under 1h       -> every minute

Once the event has started one last update is scheduled at its end so the
post shows it as finished. All state is rebuilt from the store by
:meth:`CountdownUpdater.start`; nothing here survives a restart.

After ``FAILURE_THRESHOLD`` consecutive store read failures the updater stops
firing for ``CIRCUIT_OPEN_FOR``; due timers are pushed past the window so
posts keep their last good content while the database is unreachable.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from readyroom_notifier.core.clock import Clock, utc_now
from readyroom_notifier.core.config import DEFAULT_TIMEZONE
from readyroom_notifier.core.errors import MessagingError, NotFoundError
from readyroom_notifier.core.models import Destination, Event, Publication
from readyroom_notifier.database.store import EventStore
from readyroom_notifier.messaging.base import MessagingClient
from readyroom_notifier.messaging.formatting import render_event_content
from readyroom_notifier.recipients.resolver import RecipientResolver

logger = logging.getLogger(__name__)

MAX_SLEEP_SECONDS = 60.0
RETRY_DELAY = timedelta(minutes=1)
FAILURE_THRESHOLD = 3
CIRCUIT_OPEN_FOR = timedelta(seconds=60)

TimerKey = tuple[str, str, str]


def timer_key(destination: Destination, message_id: str) -> TimerKey:
    return (*destination.key, message_id)


def calculate_interval(start: datetime, now: datetime) -> Optional[timedelta]:
    """Time until the next countdown update, or None once the event has started."""
    remaining = start - now
    if remaining <= timedelta(0):
        return None
    if remaining <= timedelta(hours=1):
        return timedelta(minutes=1)
    if remaining <= timedelta(hours=6):
        return timedelta(minutes=15)
    if remaining <= timedelta(hours=24):
        return timedelta(hours=1)
    return timedelta(hours=24)


def next_fire_time(event: Event, now: datetime) -> Optional[datetime]:
    """When the post of ``event`` should next be refreshed, or None to stop."""
    interval = calculate_interval(event.start_datetime, now)
    if interval is not None:
        return now + interval
    if now < event.effective_end:
        return event.effective_end
    return None


@dataclass
class CountdownTimer:
    message_id: str
    event_id: str
    destination: Destination
    next_fire_at: datetime
    seq: int

    @property
    def key(self) -> TimerKey:
        return timer_key(self.destination, self.message_id)


class CountdownUpdater:
    """
    Adaptive per-message countdown scheduler.

    Attributes:
        store: Durable store, read fresh on every fire.
        messenger: Client used to edit the posts.
        resolver: Used to load current responses for rendering.
        default_timezone: Timezone for events without one; replaced on
            :meth:`start` by the store-wide reference timezone if set.
        failure_threshold: Consecutive read failures that open the circuit.
        circuit_open_for: How long an open circuit suppresses every fire.
    """

    def __init__(
        self,
        store: EventStore,
        messenger: MessagingClient,
        resolver: Optional[RecipientResolver] = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Clock = utc_now,
        max_sleep_seconds: float = MAX_SLEEP_SECONDS,
        failure_threshold: int = FAILURE_THRESHOLD,
        circuit_open_for: timedelta = CIRCUIT_OPEN_FOR,
    ):
        self.store = store
        self.messenger = messenger
        self.resolver = resolver or RecipientResolver(store)
        self.default_timezone = default_timezone
        self.clock = clock
        self.max_sleep_seconds = max_sleep_seconds
        self.failure_threshold = failure_threshold
        self.circuit_open_for = circuit_open_for
        self._heap: list[tuple[datetime, int, TimerKey]] = []
        self._timers: dict[TimerKey, CountdownTimer] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._read_failures = 0
        self._last_read_failure: Optional[datetime] = None
        self.stats = {"updates": 0, "failures": 0, "removed": 0, "skipped": 0}

    def __len__(self) -> int:
        return len(self._timers)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """
        Rebuild every timer from the store and start the drain task.

        Returns:
            Number of timers scheduled.
        """
        self.clear()
        reference_tz = await self.store.get_default_timezone()
        if reference_tz:
            self.default_timezone = reference_tz

        now = self.clock()
        for event in await self.store.fetch_countdown_events(now):
            for publication in event.publications:
                self.add_event_to_schedule(event, publication, now=now)

        logger.info("Countdown updater scheduled %d message(s)", len(self._timers))
        if not self._running:
            self._running = True
            self._task = asyncio.create_task(self._run_loop())
        return len(self._timers)

    async def stop(self) -> None:
        """Stop the drain task and drop every timer."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.clear()

    def clear(self) -> None:
        self._heap.clear()
        self._timers.clear()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def add_event_to_schedule(
        self,
        event: Event,
        publication: Publication,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Schedule (or reschedule) the countdown of one published message.

        Returns:
            False if the event is already over and nothing was scheduled.
        """
        now = now or self.clock()
        fire_at = next_fire_time(event, now)
        if fire_at is None:
            self.remove(timer_key(publication.destination, publication.message_id))
            return False
        self._push(publication.message_id, event.id, publication.destination, fire_at)
        return True

    def remove(self, key: TimerKey) -> None:
        # Heap entries for the message become stale and are dropped when popped
        self._timers.pop(key, None)

    def next_fire_at(self, key: TimerKey) -> Optional[datetime]:
        timer = self._timers.get(key)
        return timer.next_fire_at if timer else None

    def _push(self, message_id: str, event_id: str, destination: Destination, fire_at: datetime) -> None:
        timer = CountdownTimer(
            message_id=message_id,
            event_id=event_id,
            destination=destination,
            next_fire_at=fire_at,
            seq=next(self._seq),
        )
        self._timers[timer.key] = timer
        heapq.heappush(self._heap, (fire_at, timer.seq, timer.key))
        self._wakeup.set()

    def _pop_due(self, now: datetime) -> list[CountdownTimer]:
        due: list[CountdownTimer] = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, key = heapq.heappop(self._heap)
            timer = self._timers.get(key)
            if timer is None or timer.seq != seq:
                continue
            due.append(timer)
        return due

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def circuit_open(self, now: datetime) -> bool:
        """True while recent read failures suppress every fire."""
        if self._read_failures < self.failure_threshold:
            return False
        if now - self._last_read_failure < self.circuit_open_for:
            return True
        # Window elapsed: let one fire through; a single failure reopens it
        self._read_failures = self.failure_threshold - 1
        return False

    def _record_read_failure(self, now: datetime) -> None:
        self._read_failures += 1
        self._last_read_failure = now
        if self._read_failures == self.failure_threshold:
            logger.error(
                "Countdown circuit open after %d read failures, pausing updates for %s",
                self._read_failures,
                self.circuit_open_for,
            )

    def _record_read_success(self) -> None:
        if self._read_failures >= self.failure_threshold:
            logger.info("Countdown store reads recovered, circuit closed")
        self._read_failures = 0
        self._last_read_failure = None

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Fire every timer due at ``now``. Returns the number fired."""
        now = now or self.clock()
        fired = 0
        for timer in self._pop_due(now):
            if self.circuit_open(now):
                self.stats["skipped"] += 1
                self._push(
                    timer.message_id,
                    timer.event_id,
                    timer.destination,
                    self._last_read_failure + self.circuit_open_for,
                )
                continue
            fired += 1
            try:
                await self._fire(timer, now)
            except Exception:
                logger.exception("Countdown update for message %s failed", timer.message_id)
                self.stats["failures"] += 1
                self._retry_later(timer, now)
        return fired

    async def _fire(self, timer: CountdownTimer, now: datetime) -> None:
        try:
            event = await self.store.get_event(timer.event_id)
            if event is not None:
                responses = await self.resolver.fetch_latest_responses(event)
                no_response = None
                if event.settings.show_no_response:
                    members = await self.resolver.no_response_members(event, {r.identity for r in responses})
                    no_response = [m.display_name or m.callsign or m.identity for m in members]
        except Exception as e:
            # Never render from stale data: leave the post untouched and retry
            logger.warning("Countdown read for event %s failed, retrying later: %s", timer.event_id, e)
            self.stats["failures"] += 1
            self._record_read_failure(now)
            self._retry_later(timer, now)
            return
        self._record_read_success()

        message_key = (timer.destination.channel_id, timer.message_id)
        if event is None or message_key not in event.message_keys:
            logger.info("Message %s no longer belongs to a live event, dropping countdown", timer.message_id)
            self._drop(timer)
            return

        content = render_event_content(
            event,
            now,
            responses=responses,
            no_response_names=no_response,
            default_tz=self.default_timezone,
        )
        try:
            await self.messenger.edit_message(timer.destination, timer.message_id, content)
            self.stats["updates"] += 1
        except NotFoundError:
            logger.info("Message %s was deleted, dropping countdown", timer.message_id)
            self._drop(timer)
            return
        except MessagingError as e:
            logger.warning("Countdown edit of message %s failed: %s", timer.message_id, e)
            self.stats["failures"] += 1

        fire_at = next_fire_time(event, now)
        if fire_at is None:
            self._drop(timer)
            return
        self._push(timer.message_id, event.id, timer.destination, fire_at)

    def _drop(self, timer: CountdownTimer) -> None:
        self.remove(timer.key)
        self.stats["removed"] += 1

    def _retry_later(self, timer: CountdownTimer, now: datetime) -> None:
        self._push(timer.message_id, timer.event_id, timer.destination, now + RETRY_DELAY)

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    def _seconds_until_next(self) -> float:
        if not self._heap:
            return self.max_sleep_seconds
        delta = (self._heap[0][0] - self.clock()).total_seconds()
        return min(self.max_sleep_seconds, max(0.0, delta))

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Countdown drain cycle failed")

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._seconds_until_next())
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
