"""Recurrence calendars attached to subscriptions."""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

_ADJECTIVES = {
    "minutely": "minute",
    "hourly": "hour",
    "daily": "day",
    "weekly": "week",
    "monthly": "month",
    "yearly": "year",
}
_UNITS = {unit: adjective for adjective, unit in _ADJECTIVES.items()}
_ABBREVIATIONS = {"minute": "min", "hour": "h", "day": "d", "week": "w", "month": "mo", "year": "y"}
_FIXED_STEPS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}
_EVERY = re.compile(r"^every\s+(\d+)\s+(minute|hour|day|week|month|year)s?$")


@runtime_checkable
class CalendarLike(Protocol):
    """Anything the codec treats as a calendar value."""

    def to_calendar_string(self) -> str: ...

    def next_occurrence(self, after: int) -> int | None: ...

    def to_human_readable(self, abbreviated: bool = False) -> str: ...


def is_calendar(value: object) -> bool:
    return (
        not isinstance(value, type)
        and isinstance(value, CalendarLike)
        and callable(getattr(value, "to_calendar_string"))
    )


@dataclass(frozen=True)
class Calendar:
    """A fixed-interval recurrence, e.g. monthly or every 2 weeks."""

    unit: str
    interval: int = 1

    def __post_init__(self) -> None:
        if self.unit not in _UNITS:
            raise ValueError(f"Unknown calendar unit: {self.unit}")
        if self.interval < 1:
            raise ValueError(f"Calendar interval must be >= 1, got {self.interval}")

    def to_calendar_string(self) -> str:
        if self.interval == 1:
            return _UNITS[self.unit]
        return f"every {self.interval} {self.unit}s"

    def to_human_readable(self, abbreviated: bool = False) -> str:
        if abbreviated:
            return f"{self.interval}{_ABBREVIATIONS[self.unit]}"
        if self.interval == 1:
            return _UNITS[self.unit].capitalize()
        return f"Every {self.interval} {self.unit}s"

    def next_occurrence(self, after: int) -> int | None:
        """First occurrence strictly after the unix timestamp `after`."""
        start = datetime.fromtimestamp(after, tz=timezone.utc)
        if self.unit in _FIXED_STEPS:
            return int((start + _FIXED_STEPS[self.unit] * self.interval).timestamp())
        months = self.interval * (12 if self.unit == "year" else 1)
        return int(_add_months(start, months).timestamp())


def _add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_calendar(text: str) -> Calendar:
    """Parse `daily`, `monthly`, `every 3 days` and similar forms."""
    normalized = " ".join(text.strip().lower().split())
    if normalized in _ADJECTIVES:
        return Calendar(_ADJECTIVES[normalized])
    match = _EVERY.match(normalized)
    if match is None:
        raise ValueError(f"Invalid calendar string: {text!r}")
    return Calendar(match.group(2), int(match.group(1)))
