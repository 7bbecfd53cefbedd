"""
Reminder recipient resolution.

Turns an event's attendance audit trail plus the roster into the list of
identities a reminder should mention:

1. Attendance for the event's messages, newest first, deduplicated so only
   the latest answer of each identity counts.
2. Optionally, every active member of a participating unit who never
   answered, as a synthetic ``no_response`` entry.
3. A final pass dropping anyone who is no longer an active member.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from readyroom_notifier.core.models import (
    AttendanceRecord,
    Event,
    Member,
    Recipient,
    Reminder,
    ResponseType,
)

logger = logging.getLogger(__name__)


class RosterStore(Protocol):
    async def fetch_attendance(self, message_keys: Iterable[tuple[str, str]]) -> list[AttendanceRecord]: ...

    async def fetch_member_orgs(self, identities: Iterable[str]) -> dict[str, str]: ...

    async def fetch_active_members_in_orgs(self, org_ids: Iterable[str]) -> list[Member]: ...

    async def filter_active_identities(self, identities: Iterable[str]) -> set[str]: ...


def latest_responses(records: Iterable[AttendanceRecord]) -> list[AttendanceRecord]:
    """
    Keep only the most recent record per identity.

    Records are sorted newest first (stable, so store order breaks ties) and
    the first record seen for each identity wins.
    """
    ordered = sorted(records, key=lambda r: r.updated_at, reverse=True)
    seen: set[str] = set()
    latest: list[AttendanceRecord] = []
    for record in ordered:
        if record.identity in seen:
            continue
        seen.add(record.identity)
        latest.append(record)
    return latest


class RecipientResolver:
    """Computes reminder recipients for an event from attendance and roster data."""

    def __init__(self, store: RosterStore):
        self.store = store

    async def fetch_latest_responses(self, event: Event) -> list[AttendanceRecord]:
        """Current response of every identity that answered ``event``."""
        if not event.message_keys:
            return []
        records = await self.store.fetch_attendance(event.message_keys)
        return latest_responses(records)

    async def no_response_members(
        self,
        event: Event,
        responded: set[str],
    ) -> list[Member]:
        """Active members of the participating units with no attendance record at all."""
        if not event.participants:
            return []
        members = await self.store.fetch_active_members_in_orgs(event.participants)
        return [m for m in members if m.identity not in responded]

    async def resolve(self, event: Event, reminder: Reminder) -> list[Recipient]:
        """
        Recipients for one reminder of ``event``.

        Args:
            event: The event being reminded about.
            reminder: Reminder row whose notify flags select response types.

        Returns:
            Deduplicated recipients, each with the unit they belong to when
            the roster knows it.
        """
        wanted = reminder.response_filter
        latest = await self.fetch_latest_responses(event)
        responded = {record.identity for record in latest}

        selected = [r for r in latest if _response_type(r.response) in wanted]
        org_by_identity: dict[str, str] = {}
        if selected:
            org_by_identity = await self.store.fetch_member_orgs(r.identity for r in selected)

        recipients = [
            Recipient(
                identity=record.identity,
                display_name=record.display_name,
                response=_response_type(record.response),
                org_id=org_by_identity.get(record.identity),
            )
            for record in selected
        ]

        if reminder.notify_no_response:
            for member in await self.no_response_members(event, responded):
                recipients.append(
                    Recipient(
                        identity=member.identity,
                        display_name=member.display_name or member.callsign,
                        response=ResponseType.NO_RESPONSE,
                        org_id=member.org_id,
                    )
                )

        if not recipients:
            return []

        active = await self.store.filter_active_identities({r.identity for r in recipients})
        filtered = [r for r in recipients if r.identity in active]
        logger.info(
            "Reminder %s for event %s: %d recipients before active filter, %d after",
            reminder.id,
            event.id,
            len(recipients),
            len(filtered),
        )
        return filtered


def _response_type(value: str) -> Optional[ResponseType]:
    try:
        return ResponseType(value)
    except ValueError:
        logger.warning("Ignoring unknown attendance response %r", value)
        return None
