"""Consistency checks between requests, their coin deductions and overrides, plus repairs.

Every unit of work in the workflow commits atomically, so these only find
damage from interrupted writes, manual edits or data loaded before the
request link existed.

Deduction links carry no ON DELETE action, so a deleted request leaves its
deduction pointing at the missing id and it is reported as `request_missing`.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from coinledger import analytics, overrides
from coinledger.app_logger import get_logger
from coinledger.models import (
    GLOBAL_PERIOD,
    REDEMPTION_TYPES,
    CoinAdjustment,
    DayOverride,
    StudentRequest,
    unit_of_work,
    utcnow,
    write_audit,
)
from coinledger.schemas import RepairIn
from coinledger.workflow import extract_stated_reason

log = get_logger(__name__)

UNFUNDED_NOTE = (
    "Automatically rejected: this redemption request has no coin deduction on record. "
    "Please resubmit if you still need this redemption."
)


def _adjustment_issue(adj: CoinAdjustment, req) -> str | None:
    if req is None:
        return "request_missing"
    if req.request_type not in REDEMPTION_TYPES:
        return "not_redemption"
    if req.status == "rejected" and adj.is_active:
        return "active_on_rejected"
    if req.status != "rejected" and not adj.is_active:
        return "inactive_on_open"
    if not adj.is_global:
        return "not_global"
    return None


def find_inconsistent_adjustments(db: Session) -> list[dict]:
    rows = db.execute(
        select(CoinAdjustment, StudentRequest)
        .outerjoin(StudentRequest, StudentRequest.id == CoinAdjustment.request_id)
        .where(CoinAdjustment.request_id.is_not(None))
        .order_by(CoinAdjustment.created_at.asc())
    ).all()
    found = []
    for adj, req in rows:
        issue = _adjustment_issue(adj, req)
        if issue:
            found.append(
                {
                    "adjustment_id": adj.id,
                    "request_id": adj.request_id,
                    "student_id": adj.student_id,
                    "amount": adj.amount,
                    "is_active": adj.is_active,
                    "period": adj.period,
                    "request_status": req.status if req else None,
                    "issue": issue,
                }
            )
    return found


def find_unfunded_redemptions(db: Session) -> list[StudentRequest]:
    funded = (
        select(CoinAdjustment.id)
        .where(CoinAdjustment.request_id == StudentRequest.id, CoinAdjustment.is_active.is_(True))
        .exists()
    )
    return db.scalars(
        select(StudentRequest)
        .where(
            StudentRequest.status == "pending",
            StudentRequest.request_type.in_(REDEMPTION_TYPES),
            ~funded,
        )
        .order_by(StudentRequest.submitted_at.asc())
    ).all()


def find_missing_overrides(db: Session) -> list[StudentRequest]:
    present = (
        select(DayOverride.id)
        .where(DayOverride.student_id == StudentRequest.student_id, DayOverride.date == StudentRequest.override_date)
        .exists()
    )
    return db.scalars(
        select(StudentRequest)
        .where(
            StudentRequest.status == "approved",
            StudentRequest.request_type == "override_request",
            StudentRequest.override_date.is_not(None),
            StudentRequest.day_number.is_not(None),
            ~present,
        )
        .order_by(StudentRequest.processed_at.asc())
    ).all()


def reconciliation_report(db: Session) -> dict:
    return {
        "inconsistent_adjustments": find_inconsistent_adjustments(db),
        "unfunded_redemptions": [r.id for r in find_unfunded_redemptions(db)],
        "missing_overrides": [r.id for r in find_missing_overrides(db)],
    }


def reject_unfunded_redemptions(db: Session, actor: str = "system") -> list[int]:
    with unit_of_work(db, "reject unfunded redemptions"):
        rejected = []
        for req in find_unfunded_redemptions(db):
            req.status = "rejected"
            req.admin_notes = UNFUNDED_NOTE
            req.processed_at = utcnow()
            req.processed_by = actor
            write_audit(db, actor, "REPAIR_REJECT", "StudentRequest", req.id, {"request_type": req.request_type})
            rejected.append(req.id)
    log.info("rejected %d unfunded redemption request(s)", len(rejected))
    return rejected


def restore_missing_overrides(db: Session, actor: str = "system") -> list[int]:
    with unit_of_work(db, "restore missing overrides"):
        restored = []
        for req in find_missing_overrides(db):
            reason = req.admin_notes or extract_stated_reason(req.request_details) or "Override approved"
            row = overrides.stage_override(
                req.student_id, req.override_date, req.day_number, "qualified", reason, db, actor=actor
            )
            write_audit(db, actor, "REPAIR_OVERRIDE", "DayOverride", row.id, {"request_id": req.id, "date": req.override_date})
            restored.append(req.id)
    if restored:
        analytics.invalidate_analytics_cache()
    log.info("restored %d missing override(s)", len(restored))
    return restored


def globalize_redemption_adjustments(db: Session, actor: str = "system") -> list[str]:
    """Move redemption deductions that were booked against a period onto the global ledger."""
    with unit_of_work(db, "globalize redemption adjustments"):
        moved = []
        for item in find_inconsistent_adjustments(db):
            if item["issue"] != "not_global":
                continue
            adj = db.get(CoinAdjustment, item["adjustment_id"])
            write_audit(db, actor, "REPAIR_GLOBALIZE", "CoinAdjustment", adj.id, {"old_period": adj.period})
            adj.period = GLOBAL_PERIOD
            adj.section_number = None
            moved.append(adj.id)
    log.info("moved %d redemption adjustment(s) to %s", len(moved), GLOBAL_PERIOD)
    return moved


def deactivate_orphaned_adjustments(db: Session, actor: str = "system") -> list[str]:
    """Deactivate active deductions whose request is gone or was rejected."""
    with unit_of_work(db, "deactivate orphaned adjustments"):
        deactivated = []
        for item in find_inconsistent_adjustments(db):
            if not item["is_active"] or item["issue"] not in ("request_missing", "active_on_rejected"):
                continue
            adj = db.get(CoinAdjustment, item["adjustment_id"])
            adj.is_active = False
            write_audit(db, actor, "REPAIR_DEACTIVATE", "CoinAdjustment", adj.id, {"issue": item["issue"]})
            deactivated.append(adj.id)
    log.info("deactivated %d orphaned adjustment(s)", len(deactivated))
    return deactivated


def run_repairs(options: RepairIn, db: Session, actor: str = "system") -> dict:
    out = {}
    if options.deactivate_orphaned_adjustments:
        out["deactivated_adjustments"] = deactivate_orphaned_adjustments(db, actor=actor)
    if options.globalize_redemption_adjustments:
        out["globalized_adjustments"] = globalize_redemption_adjustments(db, actor=actor)
    if options.reject_unfunded_redemptions:
        out["rejected_requests"] = reject_unfunded_redemptions(db, actor=actor)
    if options.restore_missing_overrides:
        out["restored_overrides"] = restore_missing_overrides(db, actor=actor)
    return out
