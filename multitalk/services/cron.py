"""Five-field cron expressions (``minute hour day_of_month month day_of_week``).

Supports ``*``, single values, lists (``1,15``), ranges (``1-5``) and steps
(``*/5``, ``1-10/2``). Day of week uses cron numbering: 0 and 7 are Sunday.
When both day fields are restricted a time matches if either does, as in
classic cron.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CronSpec:
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    day_of_month_any: bool = True
    day_of_week_any: bool = True

    def matches(self, moment: datetime) -> bool:
        if moment.minute not in self.minutes or moment.hour not in self.hours or moment.month not in self.months:
            return False
        # datetime.weekday() is 0=Monday, cron is 0=Sunday
        dom = moment.day in self.days_of_month
        dow = (moment.weekday() + 1) % 7 in self.days_of_week
        if self.day_of_month_any or self.day_of_week_any:
            return dom and dow
        return dom or dow


def _parse_field(text: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"empty cron field element in '{text}'")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"step must be positive: {step}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
            if start > end:
                raise ValueError(f"range start > end: {part}")
        else:
            start = int(part)
            end = high if step != 1 else start
        if start < low or end > high:
            raise ValueError(f"value outside [{low}, {high}]: {part}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(f"cron expression must have 5 fields, got {len(parts)}: '{expression}'")
    days_of_week = _parse_field(parts[4], 0, 7)
    if 7 in days_of_week:
        days_of_week = (days_of_week - {7}) | {0}
    return CronSpec(
        minutes=_parse_field(parts[0], 0, 59),
        hours=_parse_field(parts[1], 0, 23),
        days_of_month=_parse_field(parts[2], 1, 31),
        months=_parse_field(parts[3], 1, 12),
        days_of_week=frozenset(days_of_week),
        day_of_month_any=parts[2] == "*",
        day_of_week_any=parts[4] == "*",
    )
