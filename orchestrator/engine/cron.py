# ============================================================================
# CRON EXPRESSIONS
# ============================================================================
# STATUS: Core - Schedule trigger matching
# PURPOSE: Parse 5-field cron expressions and test minute boundaries
# CREATED: 19 OCT 2026
# ============================================================================
"""
Cron Expressions

Standard 5-field syntax, evaluated in UTC:

    minute  hour  day-of-month  month  day-of-week
    0-59    0-23  1-31          1-12   0-6 (0 = Sunday, 7 also Sunday)

Each field accepts '*', values, ranges 'a-b', lists 'a,b' and steps
'*/n' or 'a-b/n'. Month and weekday names (JAN, MON, ...) are accepted.
When both day-of-month and day-of-week are restricted, either may match;
a field starting with '*' (including '*/n') counts as unrestricted.

A schedule fires only on the exact boundary: second 0 of a matching
minute. Ticks missed during downtime are never replayed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import FrozenSet, Optional, Tuple

_MONTHS = {name: i for i, name in enumerate(
    ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"], start=1
)}
_DAYS = {name: i for i, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])}

# (low, high, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day of week", 0, 7, _DAYS),
)


class CronError(ValueError):
    """Malformed cron expression."""
    pass


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    def matches_minute(self, when: datetime) -> bool:
        """True if the minute containing `when` is a scheduled minute."""
        when = _as_utc(when)
        if when.minute not in self.minutes or when.hour not in self.hours:
            return False
        if when.month not in self.months:
            return False
        weekday = (when.weekday() + 1) % 7
        day_ok = when.day in self.days
        weekday_ok = weekday in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def is_tick(self, when: datetime) -> bool:
        """True only at second 0 of a matching minute."""
        when = _as_utc(when)
        return when.second == 0 and when.microsecond == 0 and self.matches_minute(when)

    def next_tick(self, after: datetime, limit_days: int = 366 * 4) -> Optional[datetime]:
        """First tick strictly after `after`."""
        current = _as_utc(after).replace(second=0, microsecond=0) + timedelta(minutes=1)
        end = current + timedelta(days=limit_days)
        while current < end:
            if current.month not in self.months:
                current = (current.replace(day=1, hour=0, minute=0) + timedelta(days=32)).replace(day=1)
                continue
            if self.matches_minute(current):
                return current
            if current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            current += timedelta(minutes=1)
        return None


def _as_utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


def _parse_value(token: str, names: dict, field_name: str) -> int:
    upper = token.upper()
    if upper in names:
        return names[upper]
    try:
        return int(token)
    except ValueError:
        raise CronError(f"invalid {field_name} value '{token}'")


def _parse_field(text: str, field_name: str, low: int, high: int, names: dict) -> Tuple[FrozenSet[int], bool]:
    values = set()
    # Vixie cron: a field starting with "*" (e.g. "*/2") leaves the day unrestricted
    restricted = not text.startswith("*")
    for part in text.split(","):
        if not part:
            raise CronError(f"empty {field_name} list entry")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise CronError(f"invalid {field_name} step '{step_text}'")
            if step < 1:
                raise CronError(f"{field_name} step must be positive")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = _parse_value(a, names, field_name), _parse_value(b, names, field_name)
        else:
            start = _parse_value(part, names, field_name)
            end = high if step > 1 else start
        if start < low or end > high or start > end:
            raise CronError(f"{field_name} range {start}-{end} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values), restricted


@lru_cache(maxsize=256)
def parse_cron(expression: str) -> CronSchedule:
    """
    Parse a cron expression.

    Raises:
        CronError: wrong field count or out-of-range values
    """
    fields = expression.split()
    if len(fields) != 5:
        raise CronError(f"cron expression '{expression}' must have 5 fields, got {len(fields)}")
    parsed = []
    for text, (field_name, low, high, names) in zip(fields, _FIELDS):
        try:
            parsed.append(_parse_field(text, field_name, low, high, names))
        except CronError as e:
            raise CronError(f"cron expression '{expression}': {e}")
    weekdays, weekdays_restricted = parsed[4]
    if 7 in weekdays:
        weekdays = frozenset((weekdays - {7}) | {0})
    return CronSchedule(
        expression=expression,
        minutes=parsed[0][0],
        hours=parsed[1][0],
        days=parsed[2][0],
        months=parsed[3][0],
        weekdays=weekdays,
        days_restricted=parsed[2][1],
        weekdays_restricted=weekdays_restricted,
    )


def floor_minute(when: datetime) -> datetime:
    return _as_utc(when).replace(second=0, microsecond=0)


__all__ = ["CronError", "CronSchedule", "parse_cron", "floor_minute"]
