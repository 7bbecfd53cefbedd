"""
Reminder Processor - sends due event reminders.

For every due ``event_reminders`` row, under an advisory lock and after a
fresh check of its ``sent`` flag:

1. Resolve the event. A vanished event is logged and the reminder marked
   sent, since it can never succeed.
2. Resolve recipients from the latest attendance answers, optionally the
   members who never answered, and the active roster.
3. Dispatch once per unique destination, mentioning every recipient from
   every unit that shares it, into the event's reminder thread when there
   is one.
4. Re-send to the event's first post for recipients no destination covered.
5. Mark the reminder sent. Dispatch failures are logged and not retried.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from readyroom_notifier.core.clock import Clock, utc_now
from readyroom_notifier.core.config import DEFAULT_TIMEZONE
from readyroom_notifier.core.models import (
    ErrorKind,
    Event,
    ProcessorResult,
    Publication,
    Recipient,
    Reminder,
)
from readyroom_notifier.database.store import EventStore
from readyroom_notifier.locking.advisory import row_lock
from readyroom_notifier.messaging.base import MessagingClient
from readyroom_notifier.messaging.formatting import format_reminder_message, with_mentions
from readyroom_notifier.recipients.resolver import RecipientResolver
from readyroom_notifier.scheduling.destinations import build_destination_map
from readyroom_notifier.scheduling.threads import ThreadRoute, ThreadRouter, threading_policy
from readyroom_notifier.temporal.org_cache import OrgUnitCache

logger = logging.getLogger(__name__)


class ReminderProcessor:
    """
    Sends due reminders to every destination of their event.

    Attributes:
        store: Durable store.
        messenger: Messaging platform client.
        resolver: Recipient resolver (built from ``store`` by default).
        instance_id: Worker id included in log lines.
        default_timezone: Timezone used to render events without one.
    """

    def __init__(
        self,
        store: EventStore,
        messenger: MessagingClient,
        resolver: Optional[RecipientResolver] = None,
        instance_id: str = "local",
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.messenger = messenger
        self.resolver = resolver or RecipientResolver(store)
        self.instance_id = instance_id
        self.default_timezone = default_timezone
        self.clock = clock

    async def run(self) -> ProcessorResult:
        """Process every due reminder once."""
        result = ProcessorResult()
        now = self.clock()
        reminders = await self.store.fetch_due_reminders(now)
        if not reminders:
            return result

        logger.info("[%s] %d reminder(s) due", self.instance_id, len(reminders))
        org_cache = OrgUnitCache(self.store)

        for reminder in reminders:
            try:
                async with row_lock(self.store, reminder.id) as acquired:
                    if not acquired:
                        logger.info("[%s] Reminder %s locked by another instance", self.instance_id, reminder.id)
                        result.skipped += 1
                        continue
                    if await self.store.is_reminder_sent(reminder.id):
                        logger.info("Reminder %s already sent, skipping", reminder.id)
                        result.skipped += 1
                        continue
                    await self._process_reminder(reminder, now, org_cache, result)
            except Exception as e:
                logger.exception("[%s] Error processing reminder %s", self.instance_id, reminder.id)
                result.add_error(reminder.id, ErrorKind.UNEXPECTED, str(e))

        logger.info(
            "[%s] Reminders: %d processed, %d skipped, %d errors",
            self.instance_id,
            result.processed,
            result.skipped,
            len(result.errors),
        )
        return result

    async def _process_reminder(
        self,
        reminder: Reminder,
        now: datetime,
        org_cache: OrgUnitCache,
        result: ProcessorResult,
    ) -> None:
        event = await self.store.get_event(reminder.event_id)
        if event is None:
            logger.error("Event %s for reminder %s not found, marking sent", reminder.event_id, reminder.id)
            await self.store.mark_reminder_sent(reminder.id)
            result.add_error(reminder.id, ErrorKind.DATA_INTEGRITY, f"event {reminder.event_id} not found")
            return

        if not event.publications:
            logger.info("Event %s has no posts, nothing to remind", event.id)
            await self.store.mark_reminder_sent(reminder.id)
            result.processed += 1
            return

        recipients = await self.resolver.resolve(event, reminder)
        if not recipients:
            logger.info("No recipients for %s reminder of event %s", reminder.reminder_type, event.id)
            await self.store.mark_reminder_sent(reminder.id)
            result.processed += 1
            return

        message = format_reminder_message(event, now, self.default_timezone)
        await self.dispatch(event, reminder, recipients, message, org_cache, result)

        await self.store.mark_reminder_sent(reminder.id)
        result.processed += 1

    async def dispatch(
        self,
        event: Event,
        reminder: Reminder,
        recipients: list[Recipient],
        message: str,
        org_cache: OrgUnitCache,
        result: ProcessorResult,
    ) -> None:
        """
        Send ``message`` once per unique destination, then cover orphans.

        Recipients are grouped by the destination of their unit; a unit's
        destination only counts if the event was actually posted there.
        """
        units = await org_cache.get_many(event.participants)
        groups = build_destination_map(event.participants, units)
        use_threads, auto_archive = threading_policy(units.values())
        router = ThreadRouter(self.store, self.messenger, use_threads, auto_archive)

        covered: set[str] = set()
        for group in groups.values():
            publication = event.publication_for(group.destination)
            if publication is None:
                logger.warning(
                    "Event %s has no post in %s, its recipients fall back to the first post",
                    event.id,
                    group.destination.channel_id,
                )
                continue

            members = _unique([r for r in recipients if r.org_id in group.org_ids])
            if not members:
                continue
            covered.update(r.identity for r in members)

            try:
                await self._send(event, publication, router, members, message)
                logger.info(
                    "Sent %s reminder for event %s to %d unit(s) in %s",
                    reminder.reminder_type,
                    event.id,
                    len(group.units),
                    group.destination.channel_id,
                )
            except Exception as e:
                logger.error("Failed to send reminder %s to %s: %s", reminder.id, group.destination.channel_id, e)
                for org_id in group.org_ids:
                    result.add_error(reminder.id, ErrorKind.MESSAGING, str(e), org_id=org_id)

        orphans = _unique([r for r in recipients if r.identity not in covered])
        if not orphans:
            return

        logger.info("%d orphaned recipient(s) for event %s, sending to first post", len(orphans), event.id)
        first = event.publications[0]
        try:
            await self._send(event, first, router, orphans, message)
        except Exception as e:
            logger.error("Failed to send orphan reminder %s: %s", reminder.id, e)
            result.add_error(reminder.id, ErrorKind.MESSAGING, f"orphan dispatch failed: {e}")

    async def _send(
        self,
        event: Event,
        publication: Publication,
        router: ThreadRouter,
        recipients: Iterable[Recipient],
        message: str,
    ) -> None:
        content = with_mentions(
            (self.messenger.format_mention(r.identity, r.display_name) for r in recipients),
            message,
        )
        route = await router.route(event, publication)
        if route.is_thread:
            await self.messenger.post_to_thread(route.destination, route.thread_id, content)
            return

        message_id = await self.messenger.send_message(route.destination, content)
        await self._record_reminder_message(event.id, route, message_id)

    async def _record_reminder_message(self, event_id: str, route: ThreadRoute, message_id: str) -> None:
        """Append a channel reminder's id to its publication, on a fresh read."""
        try:
            publications = await self.store.get_event_publications(event_id)
            updated = [
                pub.model_copy(update={"reminder_message_ids": [*pub.reminder_message_ids, message_id]})
                if pub.destination.key == route.destination.key
                else pub
                for pub in publications
            ]
            await self.store.update_event_publications(event_id, updated)
        except Exception as e:
            logger.warning("Failed to record reminder message %s on event %s: %s", message_id, event_id, e)


def _unique(recipients: Iterable[Recipient]) -> list[Recipient]:
    seen: set[str] = set()
    unique: list[Recipient] = []
    for recipient in recipients:
        if recipient.identity not in seen:
            seen.add(recipient.identity)
            unique.append(recipient)
    return unique
