"""Next-run computation for schedules.

A schedule's (type, value) pair is parsed into one of the trigger classes
below, each of which knows its next firing instant after a given ``now``.
Computation is pure and total: malformed input degrades to
``FallbackTrigger`` (one day from now) instead of raising, so a bad
schedule keeps moving instead of wedging.

Weekly values use 0=Sunday .. 6=Saturday.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from croniter import croniter

from .models import ScheduleType

logger = logging.getLogger(__name__)

FAR_FUTURE = datetime(2099, 12, 31)


def _midnight(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_months(dt: datetime, months: int, day: int) -> datetime:
    """Move ``dt`` by whole months, pinning to ``day`` clamped to month length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(day, last_day))


@dataclass(frozen=True)
class OnceTrigger:
    """Fires once; afterwards parks the schedule far in the future."""

    def next_after(self, now: datetime) -> datetime:
        return FAR_FUTURE.replace(tzinfo=now.tzinfo)


@dataclass(frozen=True)
class HourlyTrigger:
    """Top of the next hour, counted in absolute time across DST transitions."""

    def next_after(self, now: datetime) -> datetime:
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        if now.tzinfo is None:
            return hour_start + timedelta(hours=1)
        return (hour_start.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(now.tzinfo)


@dataclass(frozen=True)
class DailyTrigger:
    hour: Optional[int] = None
    minute: int = 0

    def next_after(self, now: datetime) -> datetime:
        if self.hour is None:
            return now + timedelta(days=1)
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate


@dataclass(frozen=True)
class WeeklyTrigger:
    day_of_week: Optional[int] = None

    def next_after(self, now: datetime) -> datetime:
        if self.day_of_week is None:
            return now + timedelta(days=7)
        # datetime.weekday() is Monday=0; schedules count from Sunday=0
        current = (now.weekday() + 1) % 7
        delta = self.day_of_week - current
        if delta <= 0:
            delta += 7
        return _midnight(now + timedelta(days=delta))


@dataclass(frozen=True)
class MonthlyTrigger:
    """Day-of-month trigger; days past a short month's end clamp to its last day."""
    day: Optional[int] = None

    def next_after(self, now: datetime) -> datetime:
        if self.day is None:
            return _midnight(_add_months(now, 1, 1))
        candidate = _midnight(_add_months(now, 0, self.day))
        if candidate <= now:
            candidate = _midnight(_add_months(now, 1, self.day))
        return candidate


@dataclass(frozen=True)
class CronTrigger:
    expression: str

    def next_after(self, now: datetime) -> datetime:
        return croniter(self.expression, now).get_next(datetime)


@dataclass(frozen=True)
class FallbackTrigger:
    """Used for unknown types and unparseable values."""
    reason: str = ""

    def next_after(self, now: datetime) -> datetime:
        return now + timedelta(days=1)


Trigger = Union[
    OnceTrigger,
    HourlyTrigger,
    DailyTrigger,
    WeeklyTrigger,
    MonthlyTrigger,
    CronTrigger,
    FallbackTrigger,
]


def parse_trigger(schedule_type: str, schedule_value: Optional[str]) -> Trigger:
    """Turn a stored (type, value) pair into a trigger object."""
    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        return FallbackTrigger(f"unknown schedule type {schedule_type!r}")

    value = (schedule_value or "").strip()
    try:
        if kind == ScheduleType.ONCE:
            return OnceTrigger()
        if kind == ScheduleType.HOURLY:
            return HourlyTrigger()
        if kind == ScheduleType.DAILY:
            if not value:
                return DailyTrigger()
            hours, minutes = value.split(":")
            hour, minute = int(hours), int(minutes)
            if not (0 <= hour <= 23 and 0 <= minute <= 59):
                raise ValueError(value)
            return DailyTrigger(hour, minute)
        if kind == ScheduleType.WEEKLY:
            if not value:
                return WeeklyTrigger()
            day_of_week = int(value)
            if not 0 <= day_of_week <= 6:
                raise ValueError(value)
            return WeeklyTrigger(day_of_week)
        if kind == ScheduleType.MONTHLY:
            if not value:
                return MonthlyTrigger()
            day = int(value)
            if not 1 <= day <= 31:
                raise ValueError(value)
            return MonthlyTrigger(day)
        if kind == ScheduleType.CRON:
            if not croniter.is_valid(value):
                raise ValueError(value)
            return CronTrigger(value)
    except ValueError:
        return FallbackTrigger(f"invalid {kind.value} value {schedule_value!r}")
    return FallbackTrigger(f"unhandled schedule type {kind.value}")


def compute_next_run(schedule_type: str, schedule_value: Optional[str], now: datetime) -> datetime:
    """Next trigger instant for a schedule. Never raises."""
    trigger = parse_trigger(schedule_type, schedule_value)
    if isinstance(trigger, FallbackTrigger):
        logger.warning("Falling back to +1 day: %s", trigger.reason)
    try:
        return trigger.next_after(now)
    except Exception:
        logger.exception("Trigger %r failed, falling back to +1 day", trigger)
        return now + timedelta(days=1)


def initial_next_run(schedule_type: str, schedule_value: Optional[str], now: datetime) -> datetime:
    """First trigger instant for a newly created schedule.

    A ``once`` schedule with an explicit instant fires at that instant; all
    other schedules start from their regular next occurrence.
    """
    if schedule_type == ScheduleType.ONCE.value and schedule_value:
        try:
            at = datetime.fromisoformat(schedule_value)
        except ValueError:
            return now
        if at.tzinfo is None:
            at = at.replace(tzinfo=now.tzinfo)
        return at
    if schedule_type == ScheduleType.ONCE.value:
        return now
    return compute_next_run(schedule_type, schedule_value, now)
