"""Derivation of per-period progress from raw daily records.

Everything here is pure: no session, no clock, no I/O. Callers load the rows
and the student's overrides and get back the authoritative coins and
completion percentage for one (student, period, section) dataset.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Iterable, Mapping, Optional

MIN_MINUTES = 31
MIN_TOPICS = 1


def as_date(value) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _field(obj: Any, name: str, default=None):
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def meets_threshold(minutes: int, topics: int) -> bool:
    return minutes >= MIN_MINUTES and topics >= MIN_TOPICS


def describe_day(minutes: int, topics: int, is_excluded: bool) -> str:
    if is_excluded:
        return "Exempt day - does not count toward progress"
    if meets_threshold(minutes, topics):
        return f"Met requirement: {minutes} mins + {topics} topic{'s' if topics != 1 else ''}"
    missing = []
    if minutes < MIN_MINUTES:
        missing.append(f"{minutes} mins (needs {MIN_MINUTES} mins)")
    if topics < MIN_TOPICS:
        missing.append(f"{topics} topics (needs {MIN_TOPICS} topic)")
    return "Not enough: " + " and ".join(missing)


def percent_of(numerator: int, denominator: int) -> float:
    """Percentage rounded half-up to one decimal; 0 when there is nothing to divide by."""
    if denominator <= 0:
        return 0.0
    return math.floor(numerator / denominator * 100 * 10 + 0.5) / 10


@dataclass(frozen=True)
class DayEntry:
    day: int
    date: date
    qualified: bool
    minutes: int = 0
    topics: int = 0
    reason: str = ""
    is_excluded: bool = False
    would_have_qualified: bool = False
    overridden: bool = False

    @classmethod
    def from_record(cls, record) -> "DayEntry":
        return cls(
            day=int(_field(record, "day")),
            date=as_date(_field(record, "date")),
            qualified=bool(_field(record, "qualified", False)),
            minutes=int(_field(record, "minutes", 0) or 0),
            topics=int(_field(record, "topics", 0) or 0),
            reason=_field(record, "reason", "") or "",
            is_excluded=bool(_field(record, "is_excluded", False)),
            would_have_qualified=bool(_field(record, "would_have_qualified", False)),
        )

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "date": self.date.isoformat(),
            "qualified": self.qualified,
            "minutes": self.minutes,
            "topics": self.topics,
            "reason": self.reason,
            "is_excluded": self.is_excluded,
            "would_have_qualified": self.would_have_qualified,
            "overridden": self.overridden,
        }


@dataclass(frozen=True)
class Progress:
    percent_complete: float
    coins: int
    exempt_day_credits: int
    qualified_working_days: int
    working_days: int
    daily_log: tuple[DayEntry, ...] = ()

    def summary(self) -> dict:
        return {
            "percent_complete": self.percent_complete,
            "coins": self.coins,
            "exempt_day_credits": self.exempt_day_credits,
        }


def index_overrides(overrides: Iterable) -> dict[date, tuple[bool, Optional[str]]]:
    by_date: dict[date, tuple[bool, Optional[str]]] = {}
    for o in overrides:
        by_date[as_date(_field(o, "date"))] = (_field(o, "override_type") == "qualified", _field(o, "reason"))
    return by_date


def apply_overrides(records: Iterable, overrides: Iterable = ()) -> list[DayEntry]:
    """Return the daily log with overrides applied by calendar date. Inputs are not mutated."""
    by_date = index_overrides(overrides)
    out = []
    for record in records:
        entry = record if isinstance(record, DayEntry) else DayEntry.from_record(record)
        hit = by_date.get(entry.date)
        if hit is not None:
            qualified, reason = hit
            entry = replace(entry, qualified=qualified, reason=reason or entry.reason, overridden=True)
        out.append(entry)
    return out


def derive_progress(records: Iterable, overrides: Iterable = ()) -> Progress:
    log = apply_overrides(records, overrides)
    working = [d for d in log if not d.is_excluded]
    qualified_working = sum(1 for d in working if d.qualified)
    # Exempt days never count as qualified working days, but qualifying work on them earns a bonus coin.
    exempt_credits = sum(1 for d in log if d.is_excluded and d.would_have_qualified)
    return Progress(
        percent_complete=percent_of(qualified_working + exempt_credits, len(working)),
        coins=qualified_working + exempt_credits,
        exempt_day_credits=exempt_credits,
        qualified_working_days=qualified_working,
        working_days=len(working),
        daily_log=tuple(log),
    )
