"""
Text rendering for event posts, reminders and countdown updates.

Times are rendered in the event's timezone (falling back to the store-wide
default) using pytz, the same way the scheduling code localizes meeting
slots.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

import pytz

from readyroom_notifier.core.config import DEFAULT_TIMEZONE
from readyroom_notifier.core.models import AttendanceRecord, Event, ResponseType

logger = logging.getLogger(__name__)

_RESPONSE_SECTIONS = (
    (ResponseType.ACCEPTED, "Accepted"),
    (ResponseType.TENTATIVE, "Tentative"),
    (ResponseType.DECLINED, "Declined"),
)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def time_until(start: datetime, now: datetime) -> str:
    """
    Human readable time until ``start``.

    Uses the two largest non-zero units among days, hours and minutes:
    "2 days and 3 hours", "1 hour and 5 minutes", "45 minutes". Returns
    "now" once the start has been reached.
    """
    delta_seconds = (start - now).total_seconds()
    if delta_seconds <= 0:
        return "now"

    total_minutes = int(delta_seconds // 60)
    total_hours = total_minutes // 60
    days = total_hours // 24

    if days > 0:
        hours = total_hours % 24
        text = _plural(days, "day")
        return f"{text} and {_plural(hours, 'hour')}" if hours else text
    if total_hours > 0:
        minutes = total_minutes % 60
        text = _plural(total_hours, "hour")
        return f"{text} and {_plural(minutes, 'minute')}" if minutes else text
    return _plural(total_minutes, "minute")


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> pytz.BaseTzInfo:
    """pytz timezone for ``name``; unknown or empty names fall back to ``default``."""
    for candidate in (name, default, DEFAULT_TIMEZONE):
        if not candidate:
            continue
        try:
            return pytz.timezone(candidate)
        except pytz.UnknownTimeZoneError:
            logger.warning("Unknown timezone %r, falling back", candidate)
    return pytz.utc


def format_event_time(moment: datetime, tz_name: Optional[str], default_tz: str = DEFAULT_TIMEZONE) -> str:
    """Format like "Saturday, March 15, 2025 at 8:00 PM EDT" in the event's timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(resolve_timezone(tz_name, default_tz))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{local.strftime('%A, %B')} {local.day}, {local.year} at {hour}:{local.strftime('%M %p %Z')}"


def format_reminder_message(event: Event, now: datetime, default_tz: str = DEFAULT_TIMEZONE) -> str:
    until = time_until(event.start_datetime, now)
    starting = "now" if until == "now" else f"in {until}"
    when = format_event_time(event.start_datetime, event.settings.timezone, default_tz)
    return f"REMINDER: Event starting {starting}!\n{event.name}\n{when}"


def with_mentions(mentions: Iterable[str], body: str) -> str:
    """Prefix ``body`` with a line of mentions, if any."""
    line = " ".join(mentions)
    return f"{line}\n{body}" if line else body


def countdown_line(event: Event, now: datetime) -> str:
    if now < event.start_datetime:
        return f"Starts in {time_until(event.start_datetime, now)}"
    if now < event.effective_end:
        return f"In progress, ends in {time_until(event.effective_end, now)}"
    return "Event finished"


def render_event_content(
    event: Event,
    now: datetime,
    responses: Iterable[AttendanceRecord] = (),
    no_response_names: Optional[Iterable[str]] = None,
    default_tz: str = DEFAULT_TIMEZONE,
) -> str:
    """
    Render the live status text of an event post.

    Args:
        event: Event to render.
        now: Current time, used for the countdown line.
        responses: Current (already deduplicated) attendance records.
        no_response_names: Names of members who have not answered; only
            rendered when the event settings ask for it.
        default_tz: Timezone used when the event has none.
    """
    lines = [f"**{event.name}**"]
    if event.description:
        lines.append(event.description)
    lines.append(format_event_time(event.start_datetime, event.settings.timezone, default_tz))
    lines.append(countdown_line(event, now))

    by_type: dict[str, list[str]] = {}
    for record in responses:
        by_type.setdefault(record.response, []).append(record.display_name or record.identity)

    for response_type, label in _RESPONSE_SECTIONS:
        names = sorted(by_type.get(response_type.value, []), key=str.lower)
        lines.append("")
        lines.append(f"{label} ({len(names)})")
        lines.append(", ".join(names) if names else "-")

    if event.settings.show_no_response and no_response_names is not None:
        names = sorted(no_response_names, key=str.lower)
        lines.append("")
        lines.append(f"No response ({len(names)})")
        lines.append(", ".join(names) if names else "-")

    return "\n".join(lines)
