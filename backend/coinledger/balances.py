"""Aggregate coin balance: derived coins per dataset, plus adjustments, clamped at zero.

Balances are recomputed from storage on every call and are never cached, since
redemption eligibility depends on them.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from coinledger.adjustments import global_adjustment_total, period_adjustment_total
from coinledger.models import normalize_student_id
from coinledger.overrides import list_overrides
from coinledger.periods import datasets_for_student, records_for_dataset
from coinledger.progress import derive_progress


def compute_balance(student_id: str, db: Session) -> dict:
    sid = normalize_student_id(student_id)
    overrides = list_overrides(sid, db)
    per_period = []
    running = 0
    for dataset in datasets_for_student(sid, db):
        progress = derive_progress(records_for_dataset(dataset.id, db), overrides)
        adjustment = period_adjustment_total(sid, dataset.period_key, dataset.section_number, db)
        total = progress.coins + adjustment
        running += total
        per_period.append(
            {
                "period": dataset.period_key,
                "section": dataset.section_number,
                "coins": progress.coins,
                "adjustment": adjustment,
                "total": total,
                "percent_complete": progress.percent_complete,
                "exempt_day_credits": progress.exempt_day_credits,
            }
        )
    global_adjustment = global_adjustment_total(sid, db)
    return {
        "student_id": sid,
        "total": max(0, running + global_adjustment),
        "global_adjustment": global_adjustment,
        "per_period": per_period,
    }


def total_balance(student_id: str, db: Session) -> int:
    return compute_balance(student_id, db)["total"]


def bulk_balances(student_ids: list[str], db: Session) -> dict[str, int]:
    out: dict[str, int] = {}
    for raw in student_ids:
        sid = normalize_student_id(raw)
        if sid and sid not in out:
            out[sid] = total_balance(sid, db)
    return out
