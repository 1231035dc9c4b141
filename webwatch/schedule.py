# webwatch/schedule.py
"""
Schedule strings -> six-field cron specs -> APScheduler CronTriggers.

A schedule is either a symbolic alias (daily, hourly, weekly, monthly) or a
raw six-field cron expression with seconds precision:

    sec  min  hour  day-of-month  month  day-of-week

Day-of-week uses cron numbering (0 or 7 = Sunday ... 6 = Saturday) or
three-letter names. APScheduler numbers weekdays from Monday, so the field
is rewritten into names before the trigger is built.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo

from apscheduler.triggers.cron import CronTrigger

LOG = logging.getLogger(__name__)

ALIASES: dict[str, str] = {
    "daily": "0 0 0 * * *",
    "hourly": "0 0 * * * *",
    "weekly": "0 0 0 * * 0",
    "monthly": "0 0 0 1 * *",
}

_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class InvalidScheduleError(ValueError):
    """Schedule is neither a known alias nor a valid six-field cron expression."""

    def __init__(self, schedule: str, reason: str):
        super().__init__(f"Invalid schedule format {schedule!r}: {reason}")
        self.schedule = schedule
        self.reason = reason


# ---- Public API -------------------------------------------------------------


def parse(schedule: str) -> str:
    """
    Resolve `schedule` into a six-field cron expression.

    Aliases are case-insensitive. Any other input must already be a valid
    six-field expression; it is validated by building a trial trigger and
    returned unchanged.
    """
    if not isinstance(schedule, str) or not schedule.strip():
        raise InvalidScheduleError(str(schedule), "schedule is empty")
    alias = ALIASES.get(schedule.strip().lower())
    if alias is not None:
        return alias
    build_trigger(schedule)
    return schedule


def build_trigger(spec: str, tz: tzinfo | None = None) -> CronTrigger:
    """Build a CronTrigger from a six-field expression (aliases accepted)."""
    spec = ALIASES.get(spec.strip().lower(), spec)
    fields = spec.split()
    if len(fields) != 6:
        raise InvalidScheduleError(spec, f"expected 6 fields (sec min hour day month weekday), got {len(fields)}")

    second, minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day="*" if day == "?" else day,
            month=month,
            day_of_week=_translate_weekdays(day_of_week),
            timezone=tz or timezone.utc,
        )
    except ValueError as e:
        raise InvalidScheduleError(spec, str(e)) from e


def preview(schedule: str, tz: tzinfo | None = None, count: int = 5, start: datetime | None = None) -> list[datetime]:
    """
    Return the next `count` fire times for `schedule`, strictly after `start`
    (default: now). Each lookup starts 1µs past the previous hit.
    """
    trigger = build_trigger(parse(schedule), tz)
    now = (start or datetime.now(tz=tz or timezone.utc)) + timedelta(microseconds=1)
    prev = now
    times: list[datetime] = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev = nxt
        now = nxt + timedelta(microseconds=1)
    return times


# ---- Helpers ----------------------------------------------------------------


def _translate_weekdays(field: str) -> str:
    """
    Rewrite a cron day-of-week field into APScheduler weekday names.

      "0"      -> "sun"
      "1-5"    -> "mon,tue,wed,thu,fri"
      "*/2"    -> "sun,tue,thu,sat"
      "fri-7"  -> "fri,sat,sun"
    """
    field = field.strip().lower()
    if field in ("*", "?"):
        return "*"

    days: list[int] = []
    for part in field.split(","):
        for d in _expand_weekday_part(part.strip()):
            if d not in days:
                days.append(d)
    return ",".join(_WEEKDAYS[d] for d in days)


def _expand_weekday_part(part: str) -> list[int]:
    if not part:
        raise ValueError("empty day-of-week entry")

    base, sep, step_raw = part.partition("/")
    step = 1
    if sep:
        if not step_raw.isdigit() or int(step_raw) == 0:
            raise ValueError(f"invalid day-of-week step in {part!r}")
        step = int(step_raw)

    if base in ("*", "?"):
        first, last = 0, 6
    elif "-" in base:
        lo, _, hi = base.partition("-")
        first = _weekday_index(lo)
        last = _weekday_index(hi)
        if last == 0 and first > 0:
            last = 7  # "fri-sun" / "5-0": Sunday closes the range
        if first > last:
            raise ValueError(f"day-of-week range {part!r} runs backwards")
    else:
        first = _weekday_index(base)
        last = 6 if sep else first

    return [d % 7 for d in range(first, last + 1, step)]


def _weekday_index(token: str) -> int:
    token = token.strip()
    if token.isdigit():
        n = int(token)
        if n > 7:
            raise ValueError(f"day-of-week value {n} out of range (0-7)")
        return n
    if token in _WEEKDAYS:
        return _WEEKDAYS.index(token)
    raise ValueError(f"unrecognized day-of-week value {token!r}")
