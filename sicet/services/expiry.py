"""
Time-window rules for todolist instances.

A todolist is due on the calendar day of its ``scheduled_execution``. With a
``standard`` slot the window closes at the end of that day; with a ``custom``
slot it closes at ``time_slot_end`` (minutes from midnight), moved to the
following day when the slot spans midnight.

All datetimes here are naive local wall-clock times in the configured
timezone, which is how ``scheduled_execution`` is stored.
"""
from datetime import datetime, date, time, timedelta
from typing import Optional, Union

import pytz

SlotValue = Union[int, str, time, None]

MINUTES_PER_DAY = 24 * 60


def slot_minutes(value: SlotValue) -> Optional[int]:
    """Normalize a slot bound to minutes from midnight.

    Accepts an int (minutes), ``"HH:MM"`` / ``"HH:MM:SS"`` strings, a digit
    string or a ``datetime.time``. Returns None when the value is missing or
    cannot be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if isinstance(value, int):
        return value if 0 <= value <= MINUTES_PER_DAY else None
    if isinstance(value, str):
        raw = value.strip()
        if raw.isdigit():
            return slot_minutes(int(raw))
        parts = raw.split(":")
        if len(parts) in (2, 3) and all(p.isdigit() for p in parts):
            hours, minutes = int(parts[0]), int(parts[1])
            if 0 <= hours <= 24 and 0 <= minutes < 60 and hours * 60 + minutes <= MINUTES_PER_DAY:
                return hours * 60 + minutes
    return None


def format_slot(minutes: Optional[int]) -> Optional[str]:
    if minutes is None:
        return None
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def local_now(tz_name: str) -> datetime:
    """Current wall-clock time in ``tz_name``, without tzinfo."""
    return datetime.now(pytz.timezone(tz_name)).replace(tzinfo=None)


def _as_local(value: Union[datetime, date], tz_name: Optional[str]) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is not None and tz_name:
        return value.astimezone(pytz.timezone(tz_name)).replace(tzinfo=None)
    return value.replace(tzinfo=None)


def todolist_deadline(
    scheduled_execution: Union[datetime, date],
    time_slot_type: Optional[str] = None,
    time_slot_end: SlotValue = None,
    time_slot_start: SlotValue = None,
    tz_name: Optional[str] = None,
) -> datetime:
    """Last instant at which the instance can still be completed on time."""
    scheduled = _as_local(scheduled_execution, tz_name)
    day_start = datetime.combine(scheduled.date(), time.min)

    if time_slot_type == "custom":
        end = slot_minutes(time_slot_end)
        if end is not None:
            deadline = day_start + timedelta(minutes=end)
            start = slot_minutes(time_slot_start)
            if start is not None and end < start:
                deadline += timedelta(days=1)
            return deadline

    # standard, unknown or malformed slots close at end of day
    return datetime.combine(scheduled.date(), time.max)


def is_todolist_expired(
    scheduled_execution: Union[datetime, date],
    time_slot_type: Optional[str] = None,
    time_slot_end: SlotValue = None,
    time_slot_start: SlotValue = None,
    now: Optional[datetime] = None,
    tz_name: str = "Europe/Rome",
) -> bool:
    if now is None:
        now = local_now(tz_name)
    else:
        now = _as_local(now, tz_name)
    deadline = todolist_deadline(scheduled_execution, time_slot_type, time_slot_end, time_slot_start, tz_name)
    return now > deadline


def is_todolist_overdue(todolist, now: Optional[datetime] = None, tz_name: str = "Europe/Rome") -> bool:
    """Expired and still open. Completed instances are never overdue."""
    if todolist.status == "completed":
        return False
    return is_todolist_expired(
        todolist.scheduled_execution,
        todolist.time_slot_type,
        todolist.time_slot_end,
        todolist.time_slot_start,
        now=now,
        tz_name=tz_name,
    )
