"""Student request workflow.

A request is created ``pending`` and moves exactly once to ``approved`` or
``rejected``. Redemptions deduct their cost at submission through a global,
request-linked coin adjustment; rejecting a pending redemption deactivates that
adjustment. Approving an override request writes a qualified override for the
requested date in the same transaction as the status change.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coinledger import analytics, overrides
from coinledger.app_logger import get_logger
from coinledger.balances import total_balance
from coinledger.errors import (
    AlreadyProcessed,
    CoinLedgerError,
    FeatureDisabled,
    InsufficientBalance,
    NotFound,
    OverrideCreateFailed,
    ValidationFailed,
)
from coinledger.models import (
    GLOBAL_PERIOD,
    REDEMPTION_TYPES,
    TERMINAL_STATUSES,
    AdminSetting,
    CoinAdjustment,
    DailyRecord,
    StudentDataset,
    StudentRequest,
    normalize_student_id,
    unit_of_work,
    utcnow,
    write_audit,
)
from coinledger.progress import MIN_MINUTES
from coinledger.schemas import RequestIn, SettingsIn

log = get_logger(__name__)

REDEMPTION_COSTS = {"assignment_replacement": 10, "quiz_replacement": 20}
REDEMPTION_LABELS = {"assignment_replacement": "Assignment Replacement", "quiz_replacement": "Quiz Replacement"}
MAGIC_KEYWORD = "review"

_REASON_RE = re.compile(r"Reason:\s*(.+)", re.DOTALL)


@dataclass(frozen=True)
class FeatureFlags:
    overrides_enabled: bool = True
    redemption_requests_enabled: bool = True


def load_feature_flags(db: Session) -> FeatureFlags:
    stored = {row.key: row.value for row in db.scalars(select(AdminSetting)).all()}
    defaults = FeatureFlags()
    return FeatureFlags(
        overrides_enabled=stored.get("overrides_enabled", defaults.overrides_enabled),
        redemption_requests_enabled=stored.get("redemption_requests_enabled", defaults.redemption_requests_enabled),
    )


def update_feature_flags(payload: SettingsIn, db: Session, actor: str = "admin") -> FeatureFlags:
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No settings to update")
    with unit_of_work(db, "settings update"):
        for key, value in changes.items():
            row = db.get(AdminSetting, key)
            if row:
                row.value = value
                row.updated_at = utcnow()
            else:
                db.add(AdminSetting(key=key, value=value))
        write_audit(db, actor, "UPDATE", "AdminSetting", ",".join(sorted(changes)), changes)
    flags = load_feature_flags(db)
    log.info("feature flags now %s", asdict(flags))
    return flags


def extract_stated_reason(details: Optional[str]) -> str:
    """The text after "Reason:" in a request's details, or an empty string."""
    match = _REASON_RE.search(details or "")
    return match.group(1).strip() if match else ""


def _require_enabled(request_type: str, flags: FeatureFlags) -> None:
    if request_type in REDEMPTION_TYPES and not flags.redemption_requests_enabled:
        raise FeatureDisabled("Redemption requests are currently disabled")
    if request_type == "override_request" and not flags.overrides_enabled:
        raise FeatureDisabled("Day override requests are currently disabled")


def submit_request(payload: RequestIn, flags: FeatureFlags, db: Session) -> StudentRequest:
    sid = normalize_student_id(payload.student_id)
    required = {
        "student_id": sid,
        "student_name": payload.student_name.strip(),
        "student_email": payload.student_email.strip(),
        "period": payload.period.strip(),
        "section_number": payload.section_number.strip(),
        "request_details": payload.request_details.strip(),
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ValidationFailed("Missing required fields", extra={"missing": missing})
    if payload.request_type == "override_request" and (payload.day_number is None or payload.override_date is None):
        raise ValidationFailed("Override requests need day_number and override_date")

    _require_enabled(payload.request_type, flags)

    cost = REDEMPTION_COSTS.get(payload.request_type, 0)
    with unit_of_work(db, "request submission"):
        if cost:
            balance = total_balance(sid, db)
            if balance < cost:
                raise InsufficientBalance(
                    f"Insufficient coins. You need {cost} coins but only have {balance}.",
                    extra={"required": cost, "available": balance},
                )
        req = StudentRequest(
            student_id=sid,
            student_name=required["student_name"],
            student_email=required["student_email"],
            period=required["period"],
            section_number=required["section_number"],
            request_type=payload.request_type,
            request_details=required["request_details"],
            day_number=payload.day_number,
            override_date=payload.override_date,
            status="pending",
        )
        db.add(req)
        db.flush()
        if cost:
            db.add(
                CoinAdjustment(
                    student_id=sid,
                    student_name=req.student_name,
                    period=GLOBAL_PERIOD,
                    section_number=None,
                    amount=-cost,
                    reason=f"{REDEMPTION_LABELS[payload.request_type]} - Request #{req.id}",
                    created_by="system",
                    request_id=req.id,
                )
            )
        write_audit(db, sid, "SUBMIT", "StudentRequest", req.id, {"request_type": req.request_type, "cost": cost})
    db.refresh(req)
    log.info("request #%s (%s) submitted by %s, cost %d", req.id, req.request_type, sid, cost)
    return req


def _get_request(request_id: int, db: Session) -> StudentRequest:
    req = db.get(StudentRequest, request_id)
    if not req:
        raise NotFound(f"Request #{request_id} not found")
    return req


def _transition(
    req: StudentRequest,
    decision: str,
    notes: Optional[str],
    flags: FeatureFlags,
    db: Session,
    actor: str,
    override_reason: Optional[str] = None,
) -> dict:
    """Stage one pending -> terminal transition and its side effects. Does not commit."""
    if req.status in TERMINAL_STATUSES:
        raise AlreadyProcessed(f"Request #{req.id} was already {req.status}", extra={"status": req.status})
    if decision not in TERMINAL_STATUSES:
        raise ValidationFailed("status must be 'approved' or 'rejected'")

    override_id = None
    deactivated = 0
    if decision == "approved" and req.request_type == "override_request":
        if not flags.overrides_enabled:
            raise FeatureDisabled("Day overrides are currently disabled. Cannot approve override requests.")
        if req.day_number is None or req.override_date is None:
            raise ValidationFailed(f"Request #{req.id} has no day_number/override_date to override")
        reason = override_reason or notes or extract_stated_reason(req.request_details) or "Override approved"
        try:
            with db.begin_nested():
                row = overrides.stage_override(
                    req.student_id, req.override_date, req.day_number, "qualified", reason, db, actor=actor
                )
                override_id = row.id
        except SQLAlchemyError as exc:
            log.error("override for request #%s failed: %s", req.id, exc)
            raise OverrideCreateFailed("Failed to create day override. Request was not approved.") from exc
        if not override_id:
            raise OverrideCreateFailed("Failed to create day override. Request was not approved.")
    elif decision == "rejected" and req.request_type in REDEMPTION_TYPES:
        linked = db.scalars(
            select(CoinAdjustment).where(CoinAdjustment.request_id == req.id, CoinAdjustment.is_active.is_(True))
        ).all()
        for adj in linked:
            adj.is_active = False
            deactivated += 1
        if not linked:
            log.warning("rejected redemption #%s had no active deduction to refund", req.id)

    req.status = decision
    req.admin_notes = notes or None
    req.processed_at = utcnow()
    req.processed_by = actor
    write_audit(
        db,
        actor,
        decision.upper(),
        "StudentRequest",
        req.id,
        {"request_type": req.request_type, "override_id": override_id, "adjustments_deactivated": deactivated},
    )
    return {"request_id": req.id, "status": decision, "override_id": override_id, "adjustment_deactivated": deactivated > 0}


def process_request(
    request_id: int,
    decision: str,
    notes: Optional[str],
    flags: FeatureFlags,
    db: Session,
    actor: str = "admin",
) -> dict:
    with unit_of_work(db, f"processing request #{request_id}"):
        req = _get_request(request_id, db)
        result = _transition(req, decision, notes, flags, db, actor)
    if result["override_id"]:
        analytics.invalidate_analytics_cache()
    log.info("request #%s %s by %s", request_id, decision, actor)
    return result


def _pending_for_student(student_id: str, db: Session, request_type: Optional[str] = None) -> list[StudentRequest]:
    stmt = select(StudentRequest).where(
        StudentRequest.student_id == normalize_student_id(student_id), StudentRequest.status == "pending"
    )
    if request_type:
        stmt = stmt.where(StudentRequest.request_type == request_type)
    return db.scalars(stmt.order_by(StudentRequest.submitted_at.asc(), StudentRequest.id.asc())).all()


def _try_transition(req: StudentRequest, failed: list, db: Session, **kwargs) -> Optional[dict]:
    try:
        with db.begin_nested():
            return _transition(req, "approved", db=db, **kwargs)
    except (CoinLedgerError, SQLAlchemyError) as exc:
        log.error("request #%s could not be approved: %s", req.id, exc)
        failed.append({"request_id": req.id, "error": getattr(exc, "code", "STORE_ERROR"), "detail": str(exc)})
        return None


def approve_all_pending(
    student_id: str, notes: Optional[str], flags: FeatureFlags, db: Session, actor: str = "admin"
) -> dict:
    """Approve every pending request of one student. Override requests are skipped while overrides are disabled."""
    sid = normalize_student_id(student_id)
    if not sid:
        raise ValidationFailed("student_id is required")
    approved, skipped, failed, created_overrides = [], [], [], 0
    with unit_of_work(db, f"approve-all for {sid}"):
        for req in _pending_for_student(sid, db):
            if req.request_type == "override_request" and not flags.overrides_enabled:
                skipped.append(req.id)
                continue
            result = _try_transition(req, failed, db, notes=notes, flags=flags, actor=actor)
            if result:
                approved.append(req.id)
                created_overrides += 1 if result["override_id"] else 0
    if created_overrides:
        analytics.invalidate_analytics_cache()
    log.info("approve-all for %s: %d approved, %d skipped, %d failed", sid, len(approved), len(skipped), len(failed))
    return {"approved": approved, "skipped": skipped, "failed": failed, "overrides_written": created_overrides}


def day_minutes(req: StudentRequest, db: Session) -> int:
    """Minutes the student logged on the requested day, 0 when no record exists."""
    if req.override_date is not None:
        minutes = db.scalar(
            select(func.max(DailyRecord.minutes)).where(
                DailyRecord.student_id == req.student_id, DailyRecord.date == req.override_date
            )
        )
        if minutes is not None:
            return int(minutes)
    if req.day_number is None:
        return 0
    minutes = db.scalar(
        select(DailyRecord.minutes)
        .join(StudentDataset, StudentDataset.id == DailyRecord.dataset_id)
        .where(
            StudentDataset.student_id == req.student_id,
            StudentDataset.period_key == req.period,
            StudentDataset.section_number == req.section_number,
            DailyRecord.day == req.day_number,
        )
    )
    return int(minutes or 0)


def magic_approve(student_id: str, notes: Optional[str], flags: FeatureFlags, db: Session, actor: str = "admin") -> dict:
    """Auto-approve a student's pending override requests that are backed by the data.

    A request qualifies when its day shows at least MIN_MINUTES minutes and its
    stated reason mentions a review. Everything else stays pending.
    """
    sid = normalize_student_id(student_id)
    if not sid:
        raise ValidationFailed("student_id is required")
    if not flags.overrides_enabled:
        raise FeatureDisabled("Day overrides are currently disabled. Cannot approve override requests.")
    approved, skipped, failed = [], [], []
    with unit_of_work(db, f"magic approve for {sid}"):
        for req in _pending_for_student(sid, db, request_type="override_request"):
            if req.day_number is None:
                skipped.append(req.id)
                continue
            minutes = day_minutes(req, db)
            stated = extract_stated_reason(req.request_details) or (req.request_details or "").strip()
            if minutes < MIN_MINUTES or MAGIC_KEYWORD not in stated.lower():
                skipped.append(req.id)
                continue
            auto_note = f"Magic approved: {minutes} minutes logged"
            result = _try_transition(
                req,
                failed,
                db,
                notes=notes or auto_note,
                flags=flags,
                actor=actor,
                override_reason=notes or stated or auto_note,
            )
            if result:
                approved.append(req.id)
    if approved:
        analytics.invalidate_analytics_cache()
    log.info("magic approve for %s: %d approved, %d skipped", sid, len(approved), len(skipped))
    return {"approved": approved, "skipped": skipped, "failed": failed, "approved_count": len(approved), "skipped_count": len(skipped)}


def list_requests(db: Session, status: Optional[str] = None) -> list[StudentRequest]:
    stmt = select(StudentRequest)
    if status:
        stmt = stmt.where(StudentRequest.status == status)
    return db.scalars(
        stmt.order_by(
            StudentRequest.section_number.asc(), StudentRequest.student_name.asc(), StudentRequest.submitted_at.desc()
        )
    ).all()


def student_requests(student_id: str, db: Session) -> list[StudentRequest]:
    return db.scalars(
        select(StudentRequest)
        .where(StudentRequest.student_id == normalize_student_id(student_id))
        .order_by(StudentRequest.submitted_at.desc(), StudentRequest.id.desc())
    ).all()


def request_stats(db: Session) -> dict:
    pending_overrides, pending_redemptions = db.execute(
        select(
            func.coalesce(func.sum(case((StudentRequest.request_type == "override_request", 1), else_=0)), 0),
            func.coalesce(func.sum(case((StudentRequest.request_type.in_(REDEMPTION_TYPES), 1), else_=0)), 0),
        ).where(StudentRequest.status == "pending")
    ).one()
    return {"pending_overrides": int(pending_overrides), "pending_redemptions": int(pending_redemptions)}
