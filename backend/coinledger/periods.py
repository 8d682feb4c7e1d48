from __future__ import annotations

import json
from datetime import date
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from coinledger import analytics
from coinledger.app_logger import get_logger
from coinledger.errors import NotFound, ValidationFailed
from coinledger.models import (
    DailyRecord,
    Period,
    StudentDataset,
    normalize_student_id,
    unit_of_work,
    utcnow,
    write_audit,
)
from coinledger.progress import describe_day, meets_threshold
from coinledger.schemas import DatasetIn, PeriodIn

log = get_logger(__name__)


def default_periods(year: int) -> dict[str, dict]:
    y = year
    return {
        "spring_exam1": {"name": f"Spring {y} - Exam 1 Period", "start": f"{y}-01-15", "end": f"{y}-02-10", "excluded": [f"{y}-01-20", f"{y}-02-03"]},
        "spring_exam2": {"name": f"Spring {y} - Exam 2 Period", "start": f"{y}-02-11", "end": f"{y}-03-10", "excluded": [f"{y}-02-17", f"{y}-03-03"]},
        "spring_exam3": {"name": f"Spring {y} - Exam 3 Period", "start": f"{y}-03-11", "end": f"{y}-04-07", "excluded": [f"{y}-03-17", f"{y}-03-31"]},
        "spring_final": {"name": f"Spring {y} - Final Exam Period", "start": f"{y}-04-08", "end": f"{y}-04-28", "excluded": [f"{y}-04-21"]},
        "summer_exam1": {"name": f"Summer {y} - Exam 1 Period", "start": f"{y}-05-31", "end": f"{y}-06-23", "excluded": [f"{y}-06-07", f"{y}-06-08"]},
        "summer_exam2": {"name": f"Summer {y} - Exam 2 Period", "start": f"{y}-06-24", "end": f"{y}-07-17", "excluded": [f"{y}-07-04", f"{y}-07-05", f"{y}-07-06"]},
        "summer_exam3": {"name": f"Summer {y} - Exam 3 Period", "start": f"{y}-07-18", "end": f"{y}-08-03", "excluded": [f"{y}-07-26", f"{y}-07-27"]},
        "summer_final": {"name": f"Summer {y} - Final Exam Period", "start": f"{y}-08-04", "end": f"{y}-08-10", "excluded": []},
        "fall_exam1": {"name": f"Fall {y} - Exam 1 Period", "start": f"{y}-08-26", "end": f"{y}-09-20", "excluded": [f"{y}-09-02", f"{y}-09-16"]},
        "fall_exam2": {"name": f"Fall {y} - Exam 2 Period", "start": f"{y}-09-21", "end": f"{y}-10-18", "excluded": [f"{y}-10-14"]},
        "fall_exam3": {"name": f"Fall {y} - Exam 3 Period", "start": f"{y}-10-19", "end": f"{y}-11-15", "excluded": [f"{y}-11-11"]},
        "fall_final": {
            "name": f"Fall {y} - Final Exam Period",
            "start": f"{y}-11-16",
            "end": f"{y}-12-13",
            "excluded": [f"{y}-11-25", f"{y}-11-26", f"{y}-11-27", f"{y}-11-28", f"{y}-11-29"],
        },
    }


def period_out(p: Period) -> dict:
    return {
        "key": p.key,
        "name": p.name,
        "start_date": p.start_date,
        "end_date": p.end_date,
        "excluded_dates": sorted(p.excluded_dates),
        "updated_at": p.updated_at,
    }


def validate_period(start_date: date, end_date: date, excluded_dates: list[date]) -> None:
    if start_date > end_date:
        raise ValidationFailed("start_date must not be after end_date")
    outside = sorted(d for d in excluded_dates if d < start_date or d > end_date)
    if outside:
        raise ValidationFailed(
            "excluded dates must fall inside the period", extra={"outside": [d.isoformat() for d in outside]}
        )


def get_period(key: str, db: Session) -> Period:
    period = db.scalar(select(Period).where(Period.key == key))
    if not period:
        raise NotFound(f"Period '{key}' not found")
    return period


def list_periods(db: Session) -> list[Period]:
    return db.scalars(select(Period).order_by(Period.start_date.asc())).all()


def upsert_period(payload: PeriodIn, db: Session, actor: str = "admin") -> Period:
    """Create or replace a period definition. Edits are last-write-wins; stored daily records keep their exempt flags."""
    key = payload.key.strip()
    if not key or not payload.name.strip():
        raise ValidationFailed("key and name are required")
    validate_period(payload.start_date, payload.end_date, payload.excluded_dates)
    excluded_json = json.dumps(sorted({d.isoformat() for d in payload.excluded_dates}))
    with unit_of_work(db, "period upsert"):
        period = db.scalar(select(Period).where(Period.key == key))
        action = "UPDATE"
        if not period:
            period = Period(key=key)
            db.add(period)
            action = "CREATE"
        period.name = payload.name.strip()
        period.start_date = payload.start_date
        period.end_date = payload.end_date
        period.excluded_dates_json = excluded_json
        period.updated_at = utcnow()
        write_audit(db, actor, action, "Period", key, payload.model_dump(mode="json"))
    db.refresh(period)
    log.info("period %s saved (%s)", key, action.lower())
    return period


def delete_period(key: str, db: Session, actor: str = "admin") -> None:
    with unit_of_work(db, "period delete"):
        period = get_period(key, db)
        db.delete(period)
        write_audit(db, actor, "DELETE", "Period", key)
    log.info("period %s deleted", key)


def init_default_periods(db: Session, year: Optional[int] = None, actor: str = "system") -> int:
    """Seed the standard exam periods when the catalog is empty. Returns how many were inserted."""
    if db.scalar(select(Period.id).limit(1)):
        return 0
    year = year or utcnow().year
    inserted = 0
    with unit_of_work(db, "period init"):
        for key, entry in default_periods(year).items():
            db.add(
                Period(
                    key=key,
                    name=entry["name"],
                    start_date=date.fromisoformat(entry["start"]),
                    end_date=date.fromisoformat(entry["end"]),
                    excluded_dates_json=json.dumps(entry["excluded"]),
                )
            )
            inserted += 1
        write_audit(db, actor, "INIT", "Period", "defaults", {"year": year, "count": inserted})
    log.info("seeded %d default periods for %d", inserted, year)
    return inserted


def ingest_dataset(payload: DatasetIn, db: Session, actor: str = "admin") -> dict:
    """Store already-parsed daily logs for one (period, section).

    The upload is the complete roster for that (period, section): each listed
    student's previous log is replaced wholesale and students missing from it
    lose their dataset there. Exempt flags come from the period catalog at ingestion time;
    missing qualification flags are computed from the minute/topic thresholds.
    """
    period = get_period(payload.period, db)
    excluded = period.excluded_dates
    section = (payload.section_number or "").strip() or "default"

    seen: set[str] = set()
    for student in payload.students:
        sid = normalize_student_id(student.student_id)
        if not sid:
            raise ValidationFailed("student_id is required for every student")
        if sid in seen:
            raise ValidationFailed(f"student '{sid}' appears twice in the dataset")
        seen.add(sid)
        days = [d.day for d in student.daily_log]
        if len(days) != len(set(days)):
            raise ValidationFailed(f"student '{sid}' has duplicate day numbers")
        outside = [d.date for d in student.daily_log if d.date < period.start_date or d.date > period.end_date]
        if outside:
            raise ValidationFailed(
                f"student '{sid}' has days outside period '{period.key}'",
                extra={"outside": [d.isoformat() for d in outside]},
            )

    created = 0
    replaced = 0
    record_count = 0
    with unit_of_work(db, "dataset ingestion"):
        for student in payload.students:
            sid = normalize_student_id(student.student_id)
            dataset = db.scalar(
                select(StudentDataset).where(
                    StudentDataset.student_id == sid,
                    StudentDataset.period_key == period.key,
                    StudentDataset.section_number == section,
                )
            )
            if dataset:
                db.execute(delete(DailyRecord).where(DailyRecord.dataset_id == dataset.id))
                replaced += 1
            else:
                dataset = StudentDataset(student_id=sid, period_key=period.key, section_number=section)
                db.add(dataset)
                created += 1
            dataset.student_name = student.name
            dataset.student_email = student.email
            dataset.uploaded_at = utcnow()
            db.flush()

            for entry in sorted(student.daily_log, key=lambda d: d.day):
                is_excluded = entry.date in excluded
                met = meets_threshold(entry.minutes, entry.topics)
                if is_excluded:
                    qualified = False
                    would = met if entry.would_have_qualified is None else entry.would_have_qualified
                else:
                    qualified = met if entry.qualified is None else entry.qualified
                    would = False
                db.add(
                    DailyRecord(
                        dataset_id=dataset.id,
                        student_id=sid,
                        day=entry.day,
                        date=entry.date,
                        qualified=qualified,
                        minutes=entry.minutes,
                        topics=entry.topics,
                        reason=entry.reason or describe_day(entry.minutes, entry.topics, is_excluded),
                        is_excluded=is_excluded,
                        would_have_qualified=would,
                    )
                )
                record_count += 1

        stale = db.scalars(
            select(StudentDataset).where(
                StudentDataset.period_key == period.key,
                StudentDataset.section_number == section,
                StudentDataset.student_id.not_in(seen),
            )
        ).all()
        for dataset in stale:
            db.execute(delete(DailyRecord).where(DailyRecord.dataset_id == dataset.id))
            db.delete(dataset)
        summary = {
            "period": period.key,
            "section_number": section,
            "students": len(payload.students),
            "created": created,
            "replaced": replaced,
            "removed": len(stale),
            "records": record_count,
        }
        write_audit(db, actor, "INGEST", "StudentDataset", f"{period.key}:{section}", summary)
    analytics.invalidate_analytics_cache()
    log.info("ingested %s/%s: %d students, %d records", period.key, section, len(payload.students), record_count)
    return summary


def datasets_for_student(student_id: str, db: Session) -> list[StudentDataset]:
    sid = normalize_student_id(student_id)
    return db.scalars(
        select(StudentDataset).where(StudentDataset.student_id == sid).order_by(StudentDataset.uploaded_at.desc())
    ).all()


def datasets_for_section(period_key: str, section_number: str, db: Session) -> list[StudentDataset]:
    return db.scalars(
        select(StudentDataset).where(
            StudentDataset.period_key == period_key, StudentDataset.section_number == section_number
        )
    ).all()


def records_for_dataset(dataset_id: str, db: Session) -> list[DailyRecord]:
    return db.scalars(select(DailyRecord).where(DailyRecord.dataset_id == dataset_id).order_by(DailyRecord.day.asc())).all()
