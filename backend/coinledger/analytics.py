from __future__ import annotations

import math
import threading
import time
from collections import defaultdict
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from coinledger.app_logger import get_logger
from coinledger.models import GLOBAL_PERIOD, CoinAdjustment, DailyRecord, DayOverride, StudentDataset
from coinledger.progress import derive_progress
from coinledger.settings import settings

log = get_logger(__name__)

_cache_lock = threading.Lock()
_cache: dict = {"data": None, "timestamp": 0.0, "generation": 0}


def invalidate_analytics_cache() -> None:
    with _cache_lock:
        _cache["data"] = None
        _cache["timestamp"] = 0.0
        _cache["generation"] += 1


def _load_progress(datasets: list[StudentDataset], db: Session) -> dict[str, object]:
    """Derived progress per dataset id, overrides applied."""
    if not datasets:
        return {}
    ids = [d.id for d in datasets]
    students = {d.student_id for d in datasets}
    records: dict[str, list[DailyRecord]] = defaultdict(list)
    for r in db.scalars(select(DailyRecord).where(DailyRecord.dataset_id.in_(ids)).order_by(DailyRecord.day.asc())).all():
        records[r.dataset_id].append(r)
    by_student: dict[str, list[DayOverride]] = defaultdict(list)
    for o in db.scalars(select(DayOverride).where(DayOverride.student_id.in_(students))).all():
        by_student[o.student_id].append(o)
    return {d.id: derive_progress(records[d.id], by_student[d.student_id]) for d in datasets}


def avg_minutes_per_working_day(progress) -> float:
    working = [d for d in progress.daily_log if not d.is_excluded]
    if not working:
        return 0.0
    return sum(d.minutes for d in working) / len(working)


def leaderboard(period: str, section_number: str, db: Session, page: int = 1, page_size: int = 20) -> dict:
    """Rank a section by derived coins plus period-scoped adjustments. Redemptions are global and never count here."""
    datasets = db.scalars(
        select(StudentDataset).where(StudentDataset.period_key == period, StudentDataset.section_number == section_number)
    ).all()
    progress = _load_progress(datasets, db)
    adjustments: dict[str, int] = defaultdict(int)
    for adj in db.scalars(
        select(CoinAdjustment).where(
            CoinAdjustment.period == period,
            CoinAdjustment.period != GLOBAL_PERIOD,
            CoinAdjustment.section_number == section_number,
            CoinAdjustment.is_active.is_(True),
        )
    ).all():
        adjustments[adj.student_id] += adj.amount

    rows = []
    for d in datasets:
        p = progress[d.id]
        rows.append(
            {
                "student_id": d.student_id,
                "name": d.student_name,
                "email": d.student_email,
                "total_coins": p.coins + adjustments[d.student_id],
                "avg_minutes_per_day": avg_minutes_per_working_day(p),
                "base_coins": p.coins,
                "adjustments": adjustments[d.student_id],
                "exempt_day_credits": p.exempt_day_credits,
                "percent_complete": p.percent_complete,
            }
        )
    rows.sort(key=lambda r: (-r["total_coins"], -r["avg_minutes_per_day"]))

    start = (page - 1) * page_size
    window = rows[start:start + page_size]
    for i, row in enumerate(window):
        row["rank"] = start + i + 1
    return {
        "students": window,
        "total_students": len(rows),
        "total_pages": math.ceil(len(rows) / page_size) if rows else 0,
        "current_page": page,
        "page_size": page_size,
        "period": period,
        "section_number": section_number,
    }


def _round1(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def _period_stats(period: str, datasets: list[StudentDataset], progress: dict) -> Optional[dict]:
    sections: list[str] = []
    students: dict[str, tuple[str, object]] = {}
    for d in sorted(datasets, key=lambda x: (x.section_number, x.uploaded_at)):
        if d.section_number not in sections:
            sections.append(d.section_number)
        # First section wins for a student who appears in more than one.
        students.setdefault(d.student_id, (d.section_number, progress[d.id]))
    if not students:
        return None

    total_completion = 0.0
    total_time = 0
    days_with_time = 0
    days: dict[int, dict] = {}
    for section, p in students.values():
        total_completion += p.percent_complete
        for entry in p.daily_log:
            if entry.minutes > 0:
                total_time += entry.minutes
                days_with_time += 1
            stats = days.setdefault(
                entry.day,
                {"day": entry.day, "date": entry.date.isoformat(), "is_excluded": entry.is_excluded, "students": 0,
                 "qualified": 0, "time": 0, "time_count": 0, "sections": {}},
            )
            sec = stats["sections"].setdefault(section, {"students": 0, "qualified": 0, "time": 0, "time_count": 0})
            counted = entry.qualified or (entry.is_excluded and entry.would_have_qualified)
            for bucket in (stats, sec):
                bucket["students"] += 1
                bucket["qualified"] += 1 if counted else 0
                if entry.minutes > 0:
                    bucket["time"] += entry.minutes
                    bucket["time_count"] += 1

    day_stats = []
    for day in sorted(days):
        s = days[day]
        section_data = [
            {
                "section_number": name,
                "completion": v["qualified"] / v["students"] * 100 if v["students"] else 0.0,
                "time": v["time"] / v["time_count"] if v["time_count"] else 0.0,
                "students": v["students"],
                "qualified": v["qualified"],
            }
            for name, v in s["sections"].items()
        ]
        completions = [x["completion"] for x in section_data]
        day_stats.append(
            {
                "day": s["day"],
                "date": s["date"],
                "is_excluded": s["is_excluded"],
                "average_completion": s["qualified"] / s["students"] * 100 if s["students"] else 0.0,
                "average_time": s["time"] / s["time_count"] if s["time_count"] else 0.0,
                "total_students": s["students"],
                "qualified_students": s["qualified"],
                "section_data": section_data,
                "discrepancy": max(completions) - min(completions) if len(completions) > 1 else 0.0,
            }
        )
    return {
        "period": period,
        "sections": sections,
        "total_students": len(students),
        "average_completion": _round1(total_completion / len(students)),
        "average_time": _round1(total_time / days_with_time) if days_with_time else 0.0,
        "day_stats": day_stats,
        "latest_upload": max(d.uploaded_at for d in datasets),
    }


def build_analytics(db: Session) -> list[dict]:
    datasets = db.scalars(select(StudentDataset)).all()
    progress = _load_progress(datasets, db)
    grouped: dict[str, list[StudentDataset]] = defaultdict(list)
    for d in datasets:
        grouped[d.period_key].append(d)
    periods = []
    for key, group in grouped.items():
        stats = _period_stats(key, group, progress)
        if stats:
            periods.append(stats)
    periods.sort(key=lambda s: s["latest_upload"], reverse=True)
    return periods


def period_analytics(db: Session, period: Optional[str] = None) -> dict:
    now = time.monotonic()
    with _cache_lock:
        data = _cache["data"]
        fresh = data is not None and now - _cache["timestamp"] < settings.analytics_cache_seconds
        generation = _cache["generation"]
    cached = fresh
    if not fresh:
        data = build_analytics(db)
        with _cache_lock:
            # An invalidation during the build means this snapshot may be stale.
            if _cache["generation"] == generation:
                _cache["data"] = data
                _cache["timestamp"] = now
        log.debug("analytics rebuilt for %d period(s)", len(data))
    if period:
        data = [p for p in data if p["period"] == period]
    return {"periods": data, "cached": cached}
