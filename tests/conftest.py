from __future__ import annotations

import os
from datetime import date, timedelta

os.environ.setdefault("COINLEDGER_DATABASE_URL", "sqlite://")
os.environ.setdefault("COINLEDGER_SESSION_SECRET", "test-secret")
os.environ.setdefault("COINLEDGER_LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from coinledger import analytics  # noqa: E402
from coinledger.main import app, get_db, serializer  # noqa: E402
from coinledger.models import Base, User, make_engine  # noqa: E402
from coinledger.periods import ingest_dataset, upsert_period  # noqa: E402
from coinledger.schemas import DatasetIn, PeriodIn  # noqa: E402

SUMMER = PeriodIn(
    key="summer_exam3",
    name="Summer 2025 - Exam 3 Period",
    start_date=date(2025, 7, 18),
    end_date=date(2025, 8, 3),
    excluded_dates=[date(2025, 7, 26), date(2025, 7, 27)],
)
FALL = PeriodIn(
    key="fall_exam1",
    name="Fall 2025 - Exam 1 Period",
    start_date=date(2025, 8, 26),
    end_date=date(2025, 9, 20),
    excluded_dates=[date(2025, 9, 2)],
)


def day_log(start: date, count: int, minutes: int = 45, topics: int = 2, first_day: int = 1) -> list[dict]:
    """Consecutive calendar days starting at ``start``, numbered from ``first_day``."""
    return [
        {"day": first_day + i, "date": start + timedelta(days=i), "minutes": minutes, "topics": topics}
        for i in range(count)
    ]


@pytest.fixture(autouse=True)
def _fresh_analytics_cache():
    analytics.invalidate_analytics_cache()
    yield
    analytics.invalidate_analytics_cache()


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog(db):
    return {p.key: upsert_period(p, db) for p in (SUMMER, FALL)}


@pytest.fixture
def ingest(db, catalog):
    def _ingest(student_id: str, days: list[dict], period: str = "summer_exam3", section: str = "default", name: str = "Test Student"):
        payload = DatasetIn.model_validate(
            {
                "period": period,
                "section_number": section,
                "students": [
                    {"student_id": student_id, "name": name, "email": f"{student_id.strip().lower()}@example.edu", "daily_log": days}
                ],
            }
        )
        return ingest_dataset(payload, db)

    return _ingest


@pytest.fixture
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_token(session_factory):
    with session_factory() as session:
        user = User(username="admin", password="secret", role="ADMIN")
        session.add(user)
        session.commit()
        token = serializer.dumps({"user_id": user.id})
    return token
