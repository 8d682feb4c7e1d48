from __future__ import annotations

from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from coinledger import adjustments, analytics, balances, overrides, periods, reconciliation, workflow
from coinledger.app_logger import get_logger
from coinledger.errors import CoinLedgerError, NotFound, StoreUnavailable
from coinledger.models import (
    AuditLog,
    Base,
    SessionLocal,
    User,
    engine,
    ensure_runtime_migrations,
    normalize_student_id,
    serialize,
)
from coinledger.progress import derive_progress
from coinledger.schemas import (
    AdjustmentIn,
    BalancesIn,
    DatasetIn,
    LoginIn,
    OverrideDeleteIn,
    OverrideIn,
    PeriodIn,
    PeriodOut,
    ProcessRequestIn,
    RepairIn,
    RequestIn,
    RequestOut,
    SettingsIn,
    StudentBulkIn,
)
from coinledger.settings import settings

log = get_logger(__name__)
serializer = URLSafeSerializer(settings.session_secret, salt="coinledger")

app = FastAPI(title="Coin Ledger API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoinLedgerError)
async def coinledger_error_handler(_: Request, exc: CoinLedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def store_error_handler(_: Request, exc: OperationalError):
    log.error("store unavailable: %s", exc)
    err = StoreUnavailable("Database unavailable")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(session_token: str = Query(...), db: Session = Depends(get_db)) -> User:
    try:
        payload = serializer.loads(session_token)
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload["user_id"])
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "ADMIN":
        raise HTTPException(status_code=403, detail="ADMIN role required")
    return user


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    ensure_runtime_migrations()
    with SessionLocal() as db:
        if not db.scalar(select(User).where(User.username == settings.admin_username)):
            db.add(User(username=settings.admin_username, password=settings.admin_password, role="ADMIN"))
            db.commit()
        seeded = periods.init_default_periods(db)
    log.info("startup complete (%d default periods seeded)", seeded)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if not user or user.password != payload.password:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"user_id": user.id}), "role": user.role}


# Period catalog


@app.get("/periods", response_model=list[PeriodOut])
def list_periods(db: Session = Depends(get_db)):
    return [periods.period_out(p) for p in periods.list_periods(db)]


@app.post("/admin/periods", response_model=PeriodOut)
def upsert_period(payload: PeriodIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    return periods.period_out(periods.upsert_period(payload, db, actor=user.username))


@app.delete("/admin/periods/{key}")
def delete_period(key: str, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    periods.delete_period(key, db, actor=user.username)
    return {"status": "deleted"}


@app.post("/admin/periods/init")
def init_periods(year: Optional[int] = None, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    inserted = periods.init_default_periods(db, year=year, actor=user.username)
    return {"status": "ok", "inserted": inserted}


@app.post("/admin/datasets")
def ingest_dataset(payload: DatasetIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    return {"status": "ok", "summary": periods.ingest_dataset(payload, db, actor=user.username)}


# Student-facing


@app.get("/settings")
def public_settings(db: Session = Depends(get_db)):
    return asdict(workflow.load_feature_flags(db))


@app.get("/student/{student_id}")
def student_view(student_id: str, db: Session = Depends(get_db)):
    sid = normalize_student_id(student_id)
    datasets = periods.datasets_for_student(sid, db)
    if not datasets:
        raise NotFound(f"No data found for student '{sid}'")
    student_overrides = overrides.list_overrides(sid, db)
    views = []
    for d in datasets:
        progress = derive_progress(periods.records_for_dataset(d.id, db), student_overrides)
        views.append(
            {
                "period": d.period_key,
                "section_number": d.section_number,
                "uploaded_at": d.uploaded_at,
                **progress.summary(),
                "daily_log": [entry.to_dict() for entry in progress.daily_log],
            }
        )
    return {
        "student_id": sid,
        "name": datasets[0].student_name,
        "email": datasets[0].student_email,
        "datasets": views,
        "overrides": [serialize(o) for o in student_overrides],
        "balance": balances.compute_balance(sid, db),
    }


@app.get("/student/{student_id}/balance")
def student_balance(student_id: str, db: Session = Depends(get_db)):
    return balances.compute_balance(student_id, db)


@app.get("/student/{student_id}/requests", response_model=list[RequestOut])
def student_requests(student_id: str, db: Session = Depends(get_db)):
    return workflow.student_requests(student_id, db)


@app.post("/student/requests")
def submit_request(payload: RequestIn, db: Session = Depends(get_db)):
    flags = workflow.load_feature_flags(db)
    req = workflow.submit_request(payload, flags, db)
    return {"success": True, "request_id": req.id, "request": RequestOut.model_validate(req)}


# Admin: settings and requests


@app.get("/admin/settings")
def get_settings(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return asdict(workflow.load_feature_flags(db))


@app.put("/admin/settings")
def put_settings(payload: SettingsIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    return asdict(workflow.update_feature_flags(payload, db, actor=user.username))


@app.get("/admin/requests", response_model=list[RequestOut])
def list_requests(
    status: Optional[str] = Query(None, pattern="^(pending|approved|rejected)$"),
    db: Session = Depends(get_db),
    _: User = Depends(require_admin),
):
    return workflow.list_requests(db, status=status)


@app.put("/admin/requests/{request_id}")
def process_request(
    request_id: int, payload: ProcessRequestIn, db: Session = Depends(get_db), user: User = Depends(require_admin)
):
    flags = workflow.load_feature_flags(db)
    result = workflow.process_request(request_id, payload.status, payload.admin_notes, flags, db, actor=user.username)
    return {"success": True, **result}


@app.post("/admin/requests/approve-all")
def approve_all(payload: StudentBulkIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    flags = workflow.load_feature_flags(db)
    return workflow.approve_all_pending(payload.student_id, payload.admin_notes, flags, db, actor=user.username)


@app.post("/admin/requests/magic-approve")
def magic_approve(payload: StudentBulkIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    flags = workflow.load_feature_flags(db)
    return workflow.magic_approve(payload.student_id, payload.admin_notes, flags, db, actor=user.username)


@app.get("/admin/request-stats")
def request_stats(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return workflow.request_stats(db)


# Admin: overrides, adjustments, balances


@app.post("/admin/overrides")
def upsert_override(payload: OverrideIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    row = overrides.upsert_override(
        payload.student_id, payload.date, payload.day_number, payload.override_type, payload.reason, db, actor=user.username
    )
    return serialize(row)


@app.get("/admin/overrides")
def list_overrides(student_id: str, db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return [serialize(o) for o in overrides.list_overrides(student_id, db)]


@app.delete("/admin/overrides")
def delete_override(options: OverrideDeleteIn = Depends(), db: Session = Depends(get_db), user: User = Depends(require_admin)):
    removed = overrides.delete_override(options.student_id, options.day_number, db, on_date=options.date, actor=user.username)
    return {"status": "deleted", "removed": removed}


@app.get("/admin/coin-adjustments")
def list_adjustments(
    student_id: Optional[str] = None,
    period: Optional[str] = None,
    section_number: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_admin),
):
    rows = adjustments.list_adjustments(db, student_id=student_id, period=period, section_number=section_number)
    return [serialize(a) for a in rows]


@app.post("/admin/coin-adjustments")
def create_adjustment(payload: AdjustmentIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    return serialize(adjustments.create_adjustment(payload, db, actor=user.username))


@app.delete("/admin/coin-adjustments/{adjustment_id}")
def delete_adjustment(adjustment_id: str, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    adjustments.deactivate_adjustment(adjustment_id, db, actor=user.username)
    return {"status": "deactivated"}


@app.post("/admin/student-balances")
def student_balances(payload: BalancesIn, db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return {"balances": balances.bulk_balances(payload.student_ids, db)}


# Admin: reconciliation, reporting


@app.get("/admin/reconciliation")
def reconciliation_report(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return reconciliation.reconciliation_report(db)


@app.post("/admin/reconciliation/repair")
def reconciliation_repair(payload: RepairIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    return {"repaired": reconciliation.run_repairs(payload, db, actor=user.username), "remaining": reconciliation.reconciliation_report(db)}


@app.get("/admin/leaderboard")
def leaderboard(
    period: str,
    section_number: str = "default",
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    _: User = Depends(require_admin),
):
    return analytics.leaderboard(period, section_number, db, page=page, page_size=page_size)


@app.get("/analytics")
def period_analytics(period: Optional[str] = None, db: Session = Depends(get_db)):
    return analytics.period_analytics(db, period=period)


@app.get("/admin/audit")
def list_audit(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db), _: User = Depends(require_admin)):
    rows = db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()
    return [serialize(r) for r in rows]


def serve() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    serve()
