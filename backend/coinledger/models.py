from __future__ import annotations

import datetime as dt
import json
import uuid
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from coinledger.app_logger import get_logger
from coinledger.errors import StoreUnavailable
from coinledger.settings import settings

log = get_logger(__name__)

GLOBAL_PERIOD = "__GLOBAL__"

REQUEST_TYPES = ("assignment_replacement", "quiz_replacement", "override_request", "extra_credit", "data_correction")
REDEMPTION_TYPES = ("assignment_replacement", "quiz_replacement")
REQUEST_STATUSES = ("pending", "approved", "rejected")
TERMINAL_STATUSES = ("approved", "rejected")
OVERRIDE_TYPES = ("qualified", "not_qualified")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="ADMIN")


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    actor: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)


class Period(Base):
    __tablename__ = "periods"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    key: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    start_date: Mapped[dt.date] = mapped_column(Date)
    end_date: Mapped[dt.date] = mapped_column(Date)
    excluded_dates_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def excluded_dates(self) -> set[dt.date]:
        return {dt.date.fromisoformat(d) for d in json.loads(self.excluded_dates_json or "[]")}


class StudentDataset(Base):
    """One student's ingested daily log for a (period, section)."""

    __tablename__ = "student_datasets"
    __table_args__ = (UniqueConstraint("student_id", "period_key", "section_number", name="uq_dataset_student_period_section"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, index=True)
    period_key: Mapped[str] = mapped_column(String, index=True)
    section_number: Mapped[str] = mapped_column(String, default="default")
    student_name: Mapped[str] = mapped_column(String, default="")
    student_email: Mapped[str] = mapped_column(String, default="")
    uploaded_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)


class DailyRecord(Base):
    __tablename__ = "daily_records"
    __table_args__ = (UniqueConstraint("dataset_id", "day", name="uq_daily_record_dataset_day"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    dataset_id: Mapped[str] = mapped_column(String, ForeignKey("student_datasets.id", ondelete="CASCADE"), index=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    day: Mapped[int] = mapped_column(Integer)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    qualified: Mapped[bool] = mapped_column(Boolean, default=False)
    minutes: Mapped[int] = mapped_column(Integer, default=0)
    topics: Mapped[int] = mapped_column(Integer, default=0)
    reason: Mapped[str] = mapped_column(Text, default="")
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False)
    would_have_qualified: Mapped[bool] = mapped_column(Boolean, default=False)


class DayOverride(Base):
    __tablename__ = "day_overrides"
    __table_args__ = (UniqueConstraint("student_id", "date", name="uq_day_override_student_date"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, index=True)
    date: Mapped[dt.date] = mapped_column(Date)
    day_number: Mapped[int] = mapped_column(Integer)
    override_type: Mapped[str] = mapped_column(String)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String, default="admin")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)


class StudentRequest(Base):
    __tablename__ = "student_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    student_name: Mapped[str] = mapped_column(String)
    student_email: Mapped[str] = mapped_column(String)
    period: Mapped[str] = mapped_column(String)
    section_number: Mapped[str] = mapped_column(String)
    request_type: Mapped[str] = mapped_column(String, index=True)
    request_details: Mapped[str] = mapped_column(Text)
    day_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    override_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    submitted_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class CoinAdjustment(Base):
    __tablename__ = "coin_adjustments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, index=True)
    student_name: Mapped[str] = mapped_column(String, default="")
    # NULL and GLOBAL_PERIOD both mean "applies to the aggregate balance only".
    period: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    section_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(String, default="admin")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    request_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("student_requests.id"), nullable=True, index=True
    )

    @property
    def is_global(self) -> bool:
        return self.period is None or self.period == GLOBAL_PERIOD


class AdminSetting(Base):
    __tablename__ = "admin_settings"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)


def make_engine(url: str, **kwargs):
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, **kwargs)
    connect_args = kwargs.pop("connect_args", {})
    connect_args.setdefault("check_same_thread", False)
    eng = create_engine(url, future=True, connect_args=connect_args, **kwargs)

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy issue it.
    @event.listens_for(eng, "connect")
    def _sqlite_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return eng


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def ensure_runtime_migrations(bind=None) -> None:
    bind = bind or engine
    if bind.dialect.name != "sqlite":
        return
    with bind.begin() as conn:
        cols = conn.execute(text("PRAGMA table_info(coin_adjustments)")).fetchall()
        col_names = {c[1] for c in cols}
        if col_names and "request_id" not in col_names:
            conn.execute(text("ALTER TABLE coin_adjustments ADD COLUMN request_id INTEGER REFERENCES student_requests(id)"))
        override_cols = conn.execute(text("PRAGMA table_info(day_overrides)")).fetchall()
        override_col_names = {c[1] for c in override_cols}
        if override_col_names and "updated_at" not in override_col_names:
            conn.execute(text("ALTER TABLE day_overrides ADD COLUMN updated_at DATETIME"))
        if override_col_names and "created_by" not in override_col_names:
            conn.execute(text("ALTER TABLE day_overrides ADD COLUMN created_by TEXT DEFAULT 'admin'"))


def normalize_student_id(raw: Optional[str]) -> str:
    return str(raw or "").strip().lower()


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def write_audit(db: Session, actor: str, action: str, entity: str, entity_id, payload=None) -> None:
    """Stage an audit row in the caller's transaction; the caller commits."""
    if payload is not None and not isinstance(payload, str):
        payload = json.dumps(payload, default=str)
    db.add(AuditLog(actor=actor, action=action, entity_type=entity, entity_id=str(entity_id), payload=payload))


@contextmanager
def unit_of_work(db: Session, label: str):
    """Commit everything staged inside the block, or roll all of it back."""
    try:
        yield
        db.commit()
    except OperationalError as exc:
        db.rollback()
        log.error("store unavailable during %s: %s", label, exc)
        raise StoreUnavailable(f"Database unavailable during {label}") from exc
    except Exception:
        db.rollback()
        raise
