"""Five-field cron expressions at minute granularity.

Supports ``*``, single values, lists, ranges and ``/step``. Day of week runs
0-6 from Sunday, with 7 also meaning Sunday. When both day-of-month and
day-of-week are restricted a day matches if either field does.
"""
from datetime import datetime, timedelta
from typing import FrozenSet, Optional, Tuple

from .errors import ValidationError

_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# ~4 years of days: enough to find Feb 29 matches
_MAX_SEARCH_DAYS = 366 * 4 + 1


def _parse_field(text: str, name: str, lo: int, hi: int) -> FrozenSet[int]:
    values = set()
    for part in text.split(","):
        if not part:
            raise ValidationError(f"empty {name} field element in cron expression")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) < 1:
                raise ValidationError(f"invalid step '{step_text}' in cron {name} field")
            step = int(step_text)
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            if not (a.isdigit() and b.isdigit()):
                raise ValidationError(f"invalid range '{part}' in cron {name} field")
            start, end = int(a), int(b)
        elif part.isdigit():
            start = int(part)
            end = hi if step > 1 else start
        else:
            raise ValidationError(f"invalid value '{part}' in cron {name} field")
        if start < lo or end > hi or start > end:
            raise ValidationError(f"cron {name} field out of range: {part}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronExpression:
    def __init__(self, expression: str):
        parts = expression.split()
        if len(parts) != 5:
            raise ValidationError(f"cron expression must have 5 fields: {expression!r}")
        self.expression = expression
        parsed = [_parse_field(text, *spec) for text, spec in zip(parts, _FIELDS)]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        self.weekdays = frozenset(0 if d == 7 else d for d in weekdays)
        self._day_any = parts[2] == "*"
        self._weekday_any = parts[4] == "*"

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        return cls(expression)

    def _day_matches(self, dt: datetime) -> bool:
        # datetime.weekday(): Monday=0; cron: Sunday=0
        cron_weekday = (dt.weekday() + 1) % 7
        day_ok = dt.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self._day_any and self._weekday_any:
            return True
        if self._day_any:
            return weekday_ok
        if self._weekday_any:
            return day_ok
        return day_ok or weekday_ok

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, dt: datetime) -> Optional[datetime]:
        """First matching minute strictly after ``dt``; keeps ``dt``'s tzinfo."""
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = candidate.replace(hour=0, minute=0)
        first = True
        for _ in range(_MAX_SEARCH_DAYS):
            if day.month in self.months and self._day_matches(day):
                for hour in sorted(self.hours):
                    for minute in sorted(self.minutes):
                        at = day.replace(hour=hour, minute=minute)
                        if first and at < candidate:
                            continue
                        return at
            day = day + timedelta(days=1)
            first = False
        return None

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"
