"""
Recurrence config -> cron expression.

Expressions use the standard five fields (minute hour day month day-of-week).
Days of week are written as names because APScheduler numbers them from Monday,
unlike classic cron; names read the same in both.
"""

from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo

from loadpilot.core.errors import InvalidScheduleError
from loadpilot.models.scheduler import CronConfig, RecurrenceType

_HH_MM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

WEEKDAYS = "mon-fri"
WEEKEND = "sat,sun"
MONDAY = "mon"


def _localize(value: datetime, timezone: str | None) -> datetime:
    if value.tzinfo is None or not timezone:
        return value
    return value.astimezone(ZoneInfo(timezone))


def hour_minute(value: str | None, timezone: str | None = None) -> tuple[int, int]:
    """(hour, minute) from "HH:MM" or an ISO timestamp."""
    text = str(value or "").strip()
    m = _HH_MM_RE.match(text)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
    else:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidScheduleError(f"Invalid time of day: {value!r}") from e
        parsed = _localize(parsed, timezone)
        hour, minute = parsed.hour, parsed.minute
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidScheduleError(f"Invalid time of day: {value!r}")
    return hour, minute


def to_cron_expression(config: CronConfig, timezone: str | None = None) -> str:
    """
    Cron expression for a recurrence config.

    ``timezone`` only matters for absolute timestamps (``once`` and ISO ``time``
    values), which are converted to the schedule's wall clock first.
    """
    kind = config.type

    if kind == RecurrenceType.EVERY_X_HOURS:
        hours = int(config.hours or 0)
        if not 1 <= hours <= 23:
            raise InvalidScheduleError(f"every_x_hours needs 1-23 hours, got {config.hours}")
        return f"0 */{hours} * * *"

    if kind == RecurrenceType.ONCE:
        if config.date is None:
            raise InvalidScheduleError("once requires a date")
        at = _localize(config.date, timezone)
        return f"{at.minute} {at.hour} {at.day} {at.month} *"

    hour, minute = hour_minute(config.time, timezone)
    if kind == RecurrenceType.EVERY_DAY:
        return f"{minute} {hour} * * *"
    if kind == RecurrenceType.EVERY_WEEKDAY:
        return f"{minute} {hour} * * {WEEKDAYS}"
    if kind == RecurrenceType.EVERY_WEEKEND:
        return f"{minute} {hour} * * {WEEKEND}"
    if kind == RecurrenceType.EVERY_MONDAY:
        return f"{minute} {hour} * * {MONDAY}"
    if kind == RecurrenceType.MONTHLY_DAY:
        day = int(config.day or 0)
        if not 1 <= day <= 31:
            raise InvalidScheduleError(f"monthly_day needs a day 1-31, got {config.day}")
        return f"{minute} {hour} {day} * *"

    raise InvalidScheduleError(f"Unsupported recurrence type: {kind}")
