"""
Scheduled Publication Processor - publishes events when their time comes.

Each tick picks up every due ``scheduled_event_publications`` row and, under
an advisory lock on both the row and its event, fans the event out to the
unique destinations of its participating units. Units sharing a destination
get a single post. Successful posts are recorded on the event, reminder rows
are derived from the event settings, and the row is marked sent.

A destination that fails does not block the others; the row is marked sent
as soon as one destination succeeded. Rows where every destination failed
stay unsent and are retried next tick.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from readyroom_notifier.core.clock import Clock, utc_now
from readyroom_notifier.core.config import DEFAULT_TIMEZONE
from readyroom_notifier.core.errors import MessagingError
from readyroom_notifier.core.models import (
    ErrorKind,
    Event,
    ProcessorResult,
    Publication,
    Reminder,
    ReminderType,
    ScheduledPublication,
)
from readyroom_notifier.database.store import EventStore
from readyroom_notifier.locking.advisory import row_lock
from readyroom_notifier.messaging.base import MessagingClient
from readyroom_notifier.messaging.formatting import render_event_content, with_mentions
from readyroom_notifier.scheduling.countdown import CountdownUpdater
from readyroom_notifier.scheduling.destinations import build_destination_map
from readyroom_notifier.temporal.org_cache import OrgUnitCache

logger = logging.getLogger(__name__)


def build_reminders(event: Event, now: datetime) -> list[Reminder]:
    """
    Reminder rows for an event's enabled reminder configs.

    ``scheduled_time = start - duration``. Reminders whose time is not in
    the future are dropped, never back-filled.
    """
    reminders: list[Reminder] = []
    configs = (
        (ReminderType.FIRST, event.settings.first_reminder),
        (ReminderType.SECOND, event.settings.second_reminder),
    )
    for reminder_type, config in configs:
        if not config.enabled:
            continue
        scheduled_time = event.start_datetime - config.time.to_timedelta()
        if scheduled_time <= now:
            logger.debug(
                "Dropping %s reminder for event %s: %s already passed",
                reminder_type.value,
                event.id,
                scheduled_time.isoformat(),
            )
            continue
        reminders.append(
            Reminder(
                event_id=event.id,
                reminder_type=reminder_type,
                scheduled_time=scheduled_time,
                notify_accepted=config.recipients.accepted,
                notify_tentative=config.recipients.tentative,
                notify_declined=config.recipients.declined,
                notify_no_response=config.recipients.no_response,
            )
        )
    return reminders


class PublicationProcessor:
    """
    Publishes due scheduled events.

    Attributes:
        store: Durable store.
        messenger: Messaging platform client.
        countdown: Optional countdown updater told about every fresh post.
        instance_id: Worker id included in log lines.
        default_timezone: Timezone used to render events without one.
    """

    def __init__(
        self,
        store: EventStore,
        messenger: MessagingClient,
        countdown: Optional[CountdownUpdater] = None,
        instance_id: str = "local",
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.messenger = messenger
        self.countdown = countdown
        self.instance_id = instance_id
        self.default_timezone = default_timezone
        self.clock = clock

    async def run(self) -> ProcessorResult:
        """Process every due scheduled publication once."""
        result = ProcessorResult()
        now = self.clock()
        rows = await self.store.fetch_due_publications(now)
        if not rows:
            return result

        logger.info("[%s] %d scheduled publication(s) due", self.instance_id, len(rows))
        org_cache = OrgUnitCache(self.store)

        for row in rows:
            try:
                async with row_lock(self.store, row.id, row.event_id) as acquired:
                    if not acquired:
                        logger.info("[%s] Publication %s locked by another instance", self.instance_id, row.id)
                        result.skipped += 1
                        continue
                    await self._process_row(row, now, org_cache, result)
            except Exception as e:
                logger.exception("[%s] Error processing publication %s", self.instance_id, row.id)
                result.add_error(row.id, ErrorKind.UNEXPECTED, str(e))

        logger.info(
            "[%s] Publications: %d processed, %d skipped, %d errors",
            self.instance_id,
            result.processed,
            result.skipped,
            len(result.errors),
        )
        return result

    async def _process_row(
        self,
        row: ScheduledPublication,
        now: datetime,
        org_cache: OrgUnitCache,
        result: ProcessorResult,
    ) -> None:
        event = await self.store.get_event(row.event_id)
        if event is None:
            logger.error("Event %s for publication %s not found, marking sent", row.event_id, row.id)
            await self.store.mark_publication_sent(row.id)
            result.add_error(row.id, ErrorKind.DATA_INTEGRITY, f"event {row.event_id} not found")
            return

        if event.publications:
            logger.info("Event %s already published, marking publication %s sent", event.id, row.id)
            await self.store.mark_publication_sent(row.id)
            result.processed += 1
            return

        if not event.participants:
            logger.warning("Event %s has no participating units", event.id)
            result.add_error(row.id, ErrorKind.CONFIGURATION, "no participating units")
            return

        units = await org_cache.get_many(event.participants)
        groups = build_destination_map(event.participants, units)
        logger.info(
            "Publishing event %r to %d unique destination(s) for %d unit(s)",
            event.name,
            len(groups),
            len(event.participants),
        )

        content = with_mentions(
            (self.messenger.format_role_mention(r) for r in event.settings.initial_notification_roles),
            render_event_content(event, now, default_tz=self.default_timezone),
        )

        published: list[Publication] = []
        fresh_posts: list[Publication] = []
        for group in groups.values():
            existing = _find(await self.store.get_event_publications(event.id), group.destination.key)
            if existing is not None:
                logger.info(
                    "Event %s already posted to %s, reusing message %s",
                    event.id,
                    group.destination.channel_id,
                    existing.message_id,
                )
                published.append(existing)
                continue

            try:
                message_id = await self.messenger.send_message(group.destination, content)
            except MessagingError as e:
                logger.error("Failed to publish event %s to %s: %s", event.id, group.destination.channel_id, e)
                for org_id in group.org_ids:
                    result.add_error(row.id, ErrorKind.MESSAGING, str(e), org_id=org_id)
                continue

            publication = Publication(
                message_id=message_id,
                server_id=group.destination.server_id,
                channel_id=group.destination.channel_id,
                org_id=group.first_org_id,
            )
            published.append(publication)
            fresh_posts.append(publication)

        if not published:
            logger.error("Event %s could not be published to any destination", event.id)
            result.add_error(row.id, ErrorKind.MESSAGING, "failed to publish to any destination")
            return

        try:
            await self._persist_publications(event.id, published)
        except Exception as e:
            logger.error("Failed to record posts of event %s, retrying once: %s", event.id, e)
            result.add_error(row.id, ErrorKind.STORE, f"publication write failed: {e}")
            try:
                await self._persist_publications(event.id, published)
            except Exception as e:
                logger.error(
                    "Posts of event %s still unrecorded, leaving publication %s unsent: %s", event.id, row.id, e
                )
                return

        for reminder in build_reminders(event, now):
            try:
                await self.store.insert_reminder(reminder)
                logger.info("Scheduled %s reminder for event %s", reminder.reminder_type, event.id)
            except Exception as e:
                logger.error("Failed to schedule %s reminder for event %s: %s", reminder.reminder_type, event.id, e)
                result.add_error(row.id, ErrorKind.STORE, f"reminder insert failed: {e}")

        await self.store.mark_publication_sent(row.id)
        result.processed += 1

        if self.countdown is not None:
            for publication in fresh_posts:
                self.countdown.add_event_to_schedule(event, publication)

    async def _persist_publications(self, event_id: str, published: list[Publication]) -> None:
        """Append new destinations to a fresh copy of the event's publications."""
        current = await self.store.get_event_publications(event_id)
        merged = list(current)
        for publication in published:
            if _find(merged, publication.destination.key) is None:
                merged.append(publication)
        await self.store.update_event_publications(event_id, merged)


def _find(publications: list[Publication], key: tuple[str, str]) -> Optional[Publication]:
    return next((p for p in publications if p.destination.key == key), None)
