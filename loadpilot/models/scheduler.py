"""
Scheduler Models

A scheduler re-triggers a scenario on a recurring, timezone-aware timetable. The
structured recurrence config is stored alongside the cron expression derived from it.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

_TIME_OF_DAY_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class RecurrenceType(str, Enum):
    EVERY_DAY = "every_day"
    EVERY_X_HOURS = "every_x_hours"
    EVERY_WEEKDAY = "every_weekday"
    EVERY_WEEKEND = "every_weekend"
    EVERY_MONDAY = "every_monday"
    MONTHLY_DAY = "monthly_day"
    ONCE = "once"


TIME_OF_DAY_TYPES = {
    RecurrenceType.EVERY_DAY,
    RecurrenceType.EVERY_WEEKDAY,
    RecurrenceType.EVERY_WEEKEND,
    RecurrenceType.EVERY_MONDAY,
    RecurrenceType.MONTHLY_DAY,
}


class CronConfig(BaseModel):
    """
    Structured recurrence config.

    Which fields are required depends on ``type``:
    - every_day / every_weekday / every_weekend / every_monday: ``time`` ("HH:MM")
    - every_x_hours: ``hours`` (1-23)
    - monthly_day: ``day`` (1-31) and ``time``
    - once: ``date`` (absolute date/time)
    """

    type: RecurrenceType
    time: Optional[str] = Field(None, description="Time of day, HH:MM (24h) or ISO timestamp")
    hours: Optional[int] = Field(None, ge=1, le=23)
    day: Optional[int] = Field(None, ge=1, le=31)
    date: Optional[datetime] = None

    @field_validator("time")
    @classmethod
    def _validate_time(cls, v):
        if v is None:
            return v
        v = str(v).strip()
        if _TIME_OF_DAY_RE.match(v):
            return v
        # Older clients send a full timestamp and only mean its time of day.
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"time must be HH:MM or an ISO timestamp, got {v!r}") from None
        return v

    @model_validator(mode="after")
    def _validate_required_fields(self):
        if self.type in TIME_OF_DAY_TYPES and not self.time:
            raise ValueError(f"{self.type.value} requires 'time'")
        if self.type == RecurrenceType.EVERY_X_HOURS and self.hours is None:
            raise ValueError("every_x_hours requires 'hours'")
        if self.type == RecurrenceType.MONTHLY_DAY and self.day is None:
            raise ValueError("monthly_day requires 'day'")
        if self.type == RecurrenceType.ONCE and self.date is None:
            raise ValueError("once requires 'date'")
        return self


def _validate_timezone(v: str) -> str:
    v = str(v or "").strip()
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ValueError(f"Unknown timezone: {v!r}") from e
    return v


def localize(value: datetime, timezone: str) -> datetime:
    """Read a naive datetime as wall time in ``timezone``; aware values pass through."""
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=ZoneInfo(timezone))


def window_is_ordered(
    time_start: Optional[datetime], time_end: Optional[datetime], timezone: str
) -> bool:
    if time_start is None or time_end is None:
        return True
    return localize(time_start, timezone) < localize(time_end, timezone)


class Scheduler(BaseModel):
    id: str
    scenario_id: str
    user_id: str
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None
    timezone: str = "UTC"
    cron_expression: str
    config: CronConfig
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SchedulerCreate(BaseModel):
    """Payload for creating a scheduler."""

    scenario_id: str = Field(..., alias="scenarioId")
    time_start: Optional[datetime] = Field(None, alias="timeStart")
    time_end: Optional[datetime] = Field(None, alias="timeEnd")
    timezone: str = "UTC"
    config: CronConfig
    is_active: bool = Field(True, alias="isActive")

    model_config = {"populate_by_name": True}

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v):
        return _validate_timezone(v)

    @model_validator(mode="after")
    def _validate_window(self):
        if not window_is_ordered(self.time_start, self.time_end, self.timezone):
            raise ValueError("timeStart must be before timeEnd")
        return self


class SchedulerUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    time_start: Optional[datetime] = Field(None, alias="timeStart")
    time_end: Optional[datetime] = Field(None, alias="timeEnd")
    timezone: Optional[str] = None
    config: Optional[CronConfig] = None
    is_active: Optional[bool] = Field(None, alias="isActive")

    model_config = {"populate_by_name": True}

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v):
        if v is None:
            return v
        return _validate_timezone(v)
