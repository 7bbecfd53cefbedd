"""
Event Store - asyncpg-backed persistence for the notifier processors.

Every query the processors issue lives here, together with the advisory lock
primitives. Methods that back a "fresh check" (``get_event_publications``,
``is_reminder_sent``) always hit the database; nothing is cached in this
class except the connections pinned by held advisory locks.

Usage:
    from readyroom_notifier.database.init import get_pool
    from readyroom_notifier.database.store import EventStore

    store = EventStore(await get_pool())
    due = await store.fetch_due_publications(datetime.now(timezone.utc))
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from readyroom_notifier.core.models import (
    AttendanceRecord,
    Event,
    Member,
    Mission,
    MissionStatus,
    OrgUnit,
    Publication,
    Reminder,
    ScheduledPublication,
)

logger = logging.getLogger(__name__)

ACQUIRE_TIMEOUT_SECONDS = 30.0

# =============================================================================
# ROW CONVERSION
# =============================================================================

def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None

def _row_to_event(row: asyncpg.Record) -> Event:
    """Convert an ``events`` row to an Event model."""
    return Event(
        id=str(row["id"]),
        name=row["name"],
        description=row["description"] or "",
        start_datetime=row["start_datetime"],
        end_datetime=row["end_datetime"],
        participants=[str(p) for p in (row["participants"] or [])],
        settings=row["event_settings"] or {},
        publications=row["publications"] or [],
        buttons_removed=row["buttons_removed"],
    )

def _row_to_reminder(row: asyncpg.Record) -> Reminder:
    result = dict(row)
    result["id"] = str(result["id"])
    result["event_id"] = str(result["event_id"])
    return Reminder(**{k: v for k, v in result.items() if k in Reminder.model_fields})

def _row_to_org_unit(row: asyncpg.Record) -> OrgUnit:
    return OrgUnit(
        id=str(row["id"]),
        name=row["name"],
        designation=row["designation"],
        server_id=row["server_id"],
        channel_id=row["channel_id"],
        settings=row["settings"] or {},
    )

_EVENT_COLUMNS = """
    id, name, description, start_datetime, end_datetime, participants,
    event_settings, publications, buttons_removed
"""

class EventStore:
    """
    Durable store used by every processor.

    Attributes:
        pool: asyncpg connection pool.
        acquire_timeout: Seconds to wait for a pooled connection before
            raising ``asyncio.TimeoutError``.
        max_held_locks: Upper bound on connections pinned by advisory
            locks. Defaults to one less than the pool size so queries
            issued under a lock always find a free connection.
        _lock_connections: Connections pinned by currently held advisory
            locks, keyed by lock key. Session-level advisory locks belong to
            the connection that took them, so the same connection must
            release them.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        acquire_timeout: float = ACQUIRE_TIMEOUT_SECONDS,
        max_held_locks: Optional[int] = None,
    ):
        self.pool = pool
        self.acquire_timeout = acquire_timeout
        if max_held_locks is None:
            max_held_locks = max(1, pool.get_max_size() - 1)
        self.max_held_locks = max_held_locks
        self._lock_connections: dict[int, asyncpg.Connection] = {}
        self._pending_locks = 0

    def _acquire(self):
        return self.pool.acquire(timeout=self.acquire_timeout)

    # ------------------------------------------------------------------
    # Advisory locks
    # ------------------------------------------------------------------

    async def try_acquire_lock(self, key: int) -> bool:
        """
        Try to take the advisory lock ``key`` without blocking.

        Args:
            key: Signed 64-bit lock key.

        Returns:
            True if this process now holds the lock, False if any worker
            (including another coroutine in this process) already holds it,
            or if ``max_held_locks`` connections are already pinned.
        """
        if key in self._lock_connections:
            return False
        if len(self._lock_connections) + self._pending_locks >= self.max_held_locks:
            logger.info("Lock %s deferred: %d lock connection(s) already pinned", key, self.max_held_locks)
            return False

        self._pending_locks += 1
        try:
            conn = await self.pool.acquire(timeout=self.acquire_timeout)
            try:
                acquired = await conn.fetchval("SELECT try_acquire_reminder_lock($1)", key)
            except Exception:
                await self.pool.release(conn)
                raise
        finally:
            self._pending_locks -= 1

        if not acquired:
            await self.pool.release(conn)
            return False

        self._lock_connections[key] = conn
        return True

    async def release_lock(self, key: int) -> None:
        """Release the advisory lock ``key``. Releasing an unheld key is a no-op."""
        conn = self._lock_connections.pop(key, None)
        if conn is None:
            logger.debug("Lock %s not held by this process, nothing to release", key)
            return
        try:
            released = await conn.fetchval("SELECT release_reminder_lock($1)", key)
            if not released:
                logger.warning("Database reported lock %s was not held", key)
        finally:
            await self.pool.release(conn)

    # ------------------------------------------------------------------
    # Scheduled publications
    # ------------------------------------------------------------------

    async def fetch_due_publications(self, now: datetime) -> list[ScheduledPublication]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, event_id, scheduled_time, sent
                FROM scheduled_event_publications
                WHERE sent = FALSE AND scheduled_time <= $1
                ORDER BY scheduled_time ASC
                """,
                now,
            )
        return [
            ScheduledPublication(
                id=str(row["id"]),
                event_id=str(row["event_id"]),
                scheduled_time=row["scheduled_time"],
                sent=row["sent"],
            )
            for row in rows
        ]

    async def mark_publication_sent(self, publication_id: str) -> bool:
        """Flip ``sent`` to true. Returns False if it was already sent."""
        async with self._acquire() as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_event_publications
                SET sent = TRUE, updated_at = NOW()
                WHERE id = $1 AND sent = FALSE
                """,
                publication_id,
            )
        return result == "UPDATE 1"

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1",
                event_id,
            )
        return _row_to_event(row) if row else None

    async def get_event_publications(self, event_id: str) -> list[Publication]:
        """Fresh read of an event's publications, bypassing any caller state."""
        async with self._acquire() as conn:
            raw = await conn.fetchval(
                "SELECT publications FROM events WHERE id = $1",
                event_id,
            )
        return [Publication.model_validate(p) for p in (raw or [])]

    async def update_event_publications(
        self,
        event_id: str,
        publications: Iterable[Publication],
    ) -> None:
        payload = [pub.model_dump(mode="json") for pub in publications]
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE events
                SET publications = $2::jsonb, updated_at = NOW()
                WHERE id = $1
                """,
                event_id,
                payload,
            )

    async def fetch_countdown_events(self, now: datetime) -> list[Event]:
        """Events that still need countdown updates: published and not yet over."""
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE jsonb_array_length(publications) > 0
                  AND COALESCE(end_datetime, start_datetime + INTERVAL '1 hour') >= $1
                ORDER BY start_datetime ASC
                """,
                now,
            )
        return [_row_to_event(row) for row in rows]

    async def fetch_concluded_events(self, now: datetime) -> list[Event]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE end_datetime <= $1
                  AND buttons_removed = FALSE
                  AND jsonb_array_length(publications) > 0
                """,
                now,
            )
        return [_row_to_event(row) for row in rows]

    async def mark_buttons_removed(self, event_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                "UPDATE events SET buttons_removed = TRUE, updated_at = NOW() WHERE id = $1",
                event_id,
            )

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def insert_reminder(self, reminder: Reminder) -> str:
        async with self._acquire() as conn:
            reminder_id = await conn.fetchval(
                """
                INSERT INTO event_reminders (
                    event_id, reminder_type, scheduled_time, sent,
                    notify_accepted, notify_tentative, notify_declined, notify_no_response
                )
                VALUES ($1, $2, $3, FALSE, $4, $5, $6, $7)
                RETURNING id
                """,
                reminder.event_id,
                reminder.reminder_type,
                reminder.scheduled_time,
                reminder.notify_accepted,
                reminder.notify_tentative,
                reminder.notify_declined,
                reminder.notify_no_response,
            )
        return str(reminder_id)

    async def fetch_due_reminders(self, now: datetime) -> list[Reminder]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, event_id, reminder_type, scheduled_time, sent,
                       notify_accepted, notify_tentative, notify_declined, notify_no_response
                FROM event_reminders
                WHERE sent = FALSE AND scheduled_time <= $1
                ORDER BY scheduled_time ASC
                """,
                now,
            )
        return [_row_to_reminder(row) for row in rows]

    async def is_reminder_sent(self, reminder_id: str) -> bool:
        """Fresh read of the ``sent`` flag. A vanished row counts as sent."""
        async with self._acquire() as conn:
            sent = await conn.fetchval(
                "SELECT sent FROM event_reminders WHERE id = $1",
                reminder_id,
            )
        return sent is None or bool(sent)

    async def mark_reminder_sent(self, reminder_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                "UPDATE event_reminders SET sent = TRUE, updated_at = NOW() WHERE id = $1",
                reminder_id,
            )

    # ------------------------------------------------------------------
    # Org units
    # ------------------------------------------------------------------

    async def get_org_units(self, org_ids: Iterable[str]) -> list[OrgUnit]:
        ids = list(org_ids)
        if not ids:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, designation, server_id, channel_id, settings
                FROM org_units
                WHERE id = ANY($1::uuid[])
                """,
                ids,
            )
        return [_row_to_org_unit(row) for row in rows]

    async def get_default_timezone(self) -> Optional[str]:
        """Store-wide reference timezone, taken from the oldest unit that sets one."""
        async with self._acquire() as conn:
            return await conn.fetchval(
                """
                SELECT settings->>'reference_timezone'
                FROM org_units
                WHERE settings ? 'reference_timezone'
                ORDER BY created_at ASC
                LIMIT 1
                """
            )

    # ------------------------------------------------------------------
    # Attendance and roster
    # ------------------------------------------------------------------

    async def fetch_attendance(self, message_keys: Iterable[tuple[str, str]]) -> list[AttendanceRecord]:
        """
        All attendance records for the given messages, newest first.

        Args:
            message_keys: ``(channel_id, message_id)`` pairs. Message ids are
                only unique within a chat, so both halves must match.
        """
        keys = [(str(channel), str(message)) for channel, message in message_keys]
        if not keys:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT a.identity, a.display_name, a.user_response, a.updated_at,
                       a.channel_id, a.message_id
                FROM event_attendance a
                JOIN unnest($1::text[], $2::text[]) AS k(channel_id, message_id)
                  ON a.channel_id = k.channel_id AND a.message_id = k.message_id
                ORDER BY a.updated_at DESC
                """,
                [channel for channel, _ in keys],
                [message for _, message in keys],
            )
        return [
            AttendanceRecord(
                identity=row["identity"],
                display_name=row["display_name"],
                response=row["user_response"],
                updated_at=row["updated_at"],
                channel_id=row["channel_id"],
                message_id=row["message_id"],
            )
            for row in rows
        ]

    async def fetch_member_orgs(self, identities: Iterable[str]) -> dict[str, str]:
        """
        Map identities to the unit of their most recent active assignment.

        Two steps: identities to member ids, then active assignments for those
        members, newest first.
        """
        identities = list(identities)
        if not identities:
            return {}
        async with self._acquire() as conn:
            members = await conn.fetch(
                "SELECT id, identity FROM members WHERE identity = ANY($1::text[])",
                identities,
            )
            if not members:
                return {}
            identity_by_member = {row["id"]: row["identity"] for row in members}
            assignments = await conn.fetch(
                """
                SELECT member_id, org_id
                FROM member_assignments
                WHERE member_id = ANY($1::uuid[]) AND end_date IS NULL
                ORDER BY created_at DESC
                """,
                list(identity_by_member.keys()),
            )

        result: dict[str, str] = {}
        for row in assignments:
            identity = identity_by_member.get(row["member_id"])
            if identity and identity not in result:
                result[identity] = str(row["org_id"])
        return result

    async def fetch_active_members_in_orgs(self, org_ids: Iterable[str]) -> list[Member]:
        """
        Active members currently assigned to any of ``org_ids``.

        Two steps: active assignments in the units, then the active members
        behind them that have a platform identity.
        """
        ids = list(org_ids)
        if not ids:
            return []
        async with self._acquire() as conn:
            assignments = await conn.fetch(
                """
                SELECT member_id, org_id
                FROM member_assignments
                WHERE org_id = ANY($1::uuid[]) AND end_date IS NULL
                ORDER BY created_at DESC
                """,
                ids,
            )
            if not assignments:
                return []
            org_by_member: dict[Any, str] = {}
            for row in assignments:
                org_by_member.setdefault(row["member_id"], str(row["org_id"]))

            rows = await conn.fetch(
                """
                SELECT id, identity, display_name, callsign, board_number
                FROM members
                WHERE id = ANY($1::uuid[])
                  AND is_active = TRUE
                  AND identity IS NOT NULL
                """,
                list(org_by_member.keys()),
            )

        return [
            Member(
                id=str(row["id"]),
                identity=row["identity"],
                display_name=row["display_name"],
                callsign=row["callsign"],
                board_number=_str_or_none(row["board_number"]),
                org_id=org_by_member.get(row["id"]),
            )
            for row in rows
        ]

    async def filter_active_identities(self, identities: Iterable[str]) -> set[str]:
        identities = list(identities)
        if not identities:
            return set()
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT identity FROM members
                WHERE identity = ANY($1::text[]) AND is_active = TRUE
                """,
                identities,
            )
        return {row["identity"] for row in rows}

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------

    async def fetch_active_missions(self) -> list[Mission]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT m.id, m.event_id, m.name, m.status,
                       e.start_datetime AS event_start, e.end_datetime AS event_end
                FROM missions m
                LEFT JOIN events e ON e.id = m.event_id
                WHERE m.status IN ('planning', 'in_progress')
                """
            )
        return [
            Mission(
                id=str(row["id"]),
                event_id=_str_or_none(row["event_id"]),
                name=row["name"],
                status=row["status"],
                event_start=row["event_start"],
                event_end=row["event_end"],
            )
            for row in rows
        ]

    async def update_mission_status(
        self,
        mission_id: str,
        new_status: MissionStatus,
        expected_status: MissionStatus,
    ) -> bool:
        """Conditional status transition. Returns False if someone moved it first."""
        async with self._acquire() as conn:
            result = await conn.execute(
                """
                UPDATE missions
                SET status = $2, updated_at = NOW()
                WHERE id = $1 AND status = $3
                """,
                mission_id,
                new_status.value,
                expected_status.value,
            )
        return result == "UPDATE 1"
