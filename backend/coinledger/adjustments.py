from __future__ import annotations

from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from coinledger.app_logger import get_logger
from coinledger.errors import NotFound, ValidationFailed
from coinledger.models import GLOBAL_PERIOD, CoinAdjustment, normalize_student_id, unit_of_work, write_audit
from coinledger.schemas import AdjustmentIn

log = get_logger(__name__)


def is_global_clause():
    return or_(CoinAdjustment.period.is_(None), CoinAdjustment.period == GLOBAL_PERIOD)


def create_adjustment(payload: AdjustmentIn, db: Session, actor: str = "admin") -> CoinAdjustment:
    sid = normalize_student_id(payload.student_id)
    if not sid:
        raise ValidationFailed("student_id is required")
    if not payload.reason.strip():
        raise ValidationFailed("reason is required")
    if payload.amount == 0:
        raise ValidationFailed("amount must be non-zero")
    period = (payload.period or "").strip() or GLOBAL_PERIOD
    section = None if period == GLOBAL_PERIOD else ((payload.section_number or "").strip() or "default")
    with unit_of_work(db, "adjustment create"):
        adj = CoinAdjustment(
            student_id=sid,
            student_name=payload.student_name,
            period=period,
            section_number=section,
            amount=payload.amount,
            reason=payload.reason.strip(),
            created_by=actor,
        )
        db.add(adj)
        db.flush()
        write_audit(db, actor, "CREATE", "CoinAdjustment", adj.id, payload.model_dump())
    db.refresh(adj)
    log.info("adjustment %+d for %s (%s/%s)", adj.amount, sid, period, section)
    return adj


def list_adjustments(
    db: Session,
    student_id: Optional[str] = None,
    period: Optional[str] = None,
    section_number: Optional[str] = None,
) -> list[CoinAdjustment]:
    stmt = select(CoinAdjustment).where(CoinAdjustment.is_active.is_(True))
    if student_id:
        stmt = stmt.where(CoinAdjustment.student_id == normalize_student_id(student_id))
    elif period and section_number:
        stmt = stmt.where(CoinAdjustment.period == period, CoinAdjustment.section_number == section_number)
    return db.scalars(stmt.order_by(CoinAdjustment.created_at.desc())).all()


def deactivate_adjustment(adjustment_id: str, db: Session, actor: str = "admin") -> CoinAdjustment:
    with unit_of_work(db, "adjustment deactivate"):
        adj = db.get(CoinAdjustment, adjustment_id)
        if not adj:
            raise NotFound("Coin adjustment not found")
        if adj.is_active:
            adj.is_active = False
            write_audit(db, actor, "DEACTIVATE", "CoinAdjustment", adj.id, {"amount": adj.amount})
    log.info("adjustment %s deactivated", adjustment_id)
    return adj


def period_adjustment_total(student_id: str, period: str, section_number: str, db: Session) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(CoinAdjustment.amount), 0)).where(
            CoinAdjustment.student_id == normalize_student_id(student_id),
            CoinAdjustment.period == period,
            CoinAdjustment.section_number == section_number,
            CoinAdjustment.is_active.is_(True),
        )
    )
    return int(total or 0)


def global_adjustment_total(student_id: str, db: Session) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(CoinAdjustment.amount), 0)).where(
            CoinAdjustment.student_id == normalize_student_id(student_id),
            is_global_clause(),
            CoinAdjustment.is_active.is_(True),
        )
    )
    return int(total or 0)


def section_adjustment_totals(period: str, section_number: str, db: Session) -> dict[str, int]:
    rows = db.execute(
        select(CoinAdjustment.student_id, func.sum(CoinAdjustment.amount))
        .where(
            CoinAdjustment.period == period,
            CoinAdjustment.section_number == section_number,
            CoinAdjustment.is_active.is_(True),
        )
        .group_by(CoinAdjustment.student_id)
    ).all()
    return {sid: int(total or 0) for sid, total in rows}


def adjustments_for_request(request_id: int, db: Session) -> list[CoinAdjustment]:
    return db.scalars(select(CoinAdjustment).where(CoinAdjustment.request_id == request_id)).all()
