from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coinledger import analytics
from coinledger.app_logger import get_logger
from coinledger.errors import NotFound, ValidationFailed
from coinledger.models import OVERRIDE_TYPES, DayOverride, normalize_student_id, unit_of_work, utcnow, write_audit

log = get_logger(__name__)


def _apply(row: DayOverride, day_number: int, override_type: str, reason: Optional[str], actor: str) -> None:
    row.day_number = day_number
    row.override_type = override_type
    row.reason = reason
    row.created_by = actor
    row.updated_at = utcnow()


def stage_override(
    student_id: str,
    on_date: date,
    day_number: int,
    override_type: str,
    reason: Optional[str],
    db: Session,
    actor: str = "admin",
) -> DayOverride:
    """Create or replace the override for (student, date) inside the caller's transaction.

    The (student_id, date) unique constraint settles concurrent inserts: a
    losing insert is rolled back to its savepoint and turned into an update.
    """
    sid = normalize_student_id(student_id)
    if not sid:
        raise ValidationFailed("student_id is required")
    if override_type not in OVERRIDE_TYPES:
        raise ValidationFailed(f"override_type must be one of {', '.join(OVERRIDE_TYPES)}")
    if day_number is None or day_number < 1:
        raise ValidationFailed("day_number must be a positive integer")

    row = db.scalar(select(DayOverride).where(DayOverride.student_id == sid, DayOverride.date == on_date))
    if row:
        _apply(row, day_number, override_type, reason, actor)
        db.flush()
        return row

    row = DayOverride(student_id=sid, date=on_date)
    _apply(row, day_number, override_type, reason, actor)
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        log.warning("override for %s on %s inserted concurrently, updating instead", sid, on_date)
        row = db.scalar(select(DayOverride).where(DayOverride.student_id == sid, DayOverride.date == on_date))
        if row is None:
            raise
        _apply(row, day_number, override_type, reason, actor)
        db.flush()
    return row


def upsert_override(
    student_id: str,
    on_date: date,
    day_number: int,
    override_type: str,
    reason: Optional[str],
    db: Session,
    actor: str = "admin",
) -> DayOverride:
    with unit_of_work(db, "override upsert"):
        row = stage_override(student_id, on_date, day_number, override_type, reason, db, actor=actor)
        write_audit(
            db,
            actor,
            "UPSERT",
            "DayOverride",
            row.id,
            {"student_id": row.student_id, "date": on_date, "day_number": day_number, "override_type": override_type, "reason": reason},
        )
    db.refresh(row)
    analytics.invalidate_analytics_cache()
    log.info("override %s %s -> %s", row.student_id, on_date, override_type)
    return row


def list_overrides(student_id: str, db: Session) -> list[DayOverride]:
    sid = normalize_student_id(student_id)
    return db.scalars(select(DayOverride).where(DayOverride.student_id == sid).order_by(DayOverride.date.asc())).all()


def overrides_by_student(student_ids, db: Session) -> dict[str, list[DayOverride]]:
    ids = {normalize_student_id(s) for s in student_ids}
    out: dict[str, list[DayOverride]] = {sid: [] for sid in ids}
    if not ids:
        return out
    for row in db.scalars(select(DayOverride).where(DayOverride.student_id.in_(ids))).all():
        out[row.student_id].append(row)
    return out


def delete_override(student_id: str, day_number: int, db: Session, on_date: Optional[date] = None, actor: str = "admin") -> int:
    """Remove the student's overrides for a day number, narrowed to one date when given."""
    sid = normalize_student_id(student_id)
    stmt = select(DayOverride).where(DayOverride.student_id == sid, DayOverride.day_number == day_number)
    if on_date is not None:
        stmt = stmt.where(DayOverride.date == on_date)
    with unit_of_work(db, "override delete"):
        rows = db.scalars(stmt).all()
        if not rows:
            raise NotFound(f"No override for student '{sid}' on day {day_number}")
        for row in rows:
            write_audit(db, actor, "DELETE", "DayOverride", row.id, {"student_id": sid, "date": row.date, "day_number": day_number})
            db.delete(row)
    analytics.invalidate_analytics_cache()
    log.info("removed %d override(s) for %s day %d", len(rows), sid, day_number)
    return len(rows)
