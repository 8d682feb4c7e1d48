from datetime import date

import pytest
from sqlalchemy import select

from coinledger.balances import total_balance
from coinledger.errors import NotFound, ValidationFailed
from coinledger.models import DailyRecord, Period, StudentDataset
from coinledger.periods import (
    default_periods,
    delete_period,
    ingest_dataset,
    init_default_periods,
    list_periods,
    upsert_period,
)
from coinledger.schemas import DatasetIn, PeriodIn

from conftest import SUMMER, day_log


def test_upsert_period_is_last_write_wins(db):
    upsert_period(SUMMER, db)
    edited = SUMMER.model_copy(update={"name": "Renamed", "excluded_dates": [date(2025, 7, 30)]})
    period = upsert_period(edited, db)

    assert period.name == "Renamed"
    assert period.excluded_dates == {date(2025, 7, 30)}
    assert len(db.scalars(select(Period)).all()) == 1


def test_invalid_periods_are_rejected(db):
    with pytest.raises(ValidationFailed):
        upsert_period(PeriodIn(key="bad", name="Bad", start_date=date(2025, 8, 1), end_date=date(2025, 7, 1)), db)
    with pytest.raises(ValidationFailed):
        upsert_period(SUMMER.model_copy(update={"excluded_dates": [date(2025, 12, 25)]}), db)
    assert list_periods(db) == []


def test_init_default_periods_only_seeds_an_empty_catalog(db):
    assert init_default_periods(db, year=2026) == len(default_periods(2026))
    assert init_default_periods(db, year=2026) == 0
    fall_final = next(p for p in list_periods(db) if p.key == "fall_final")
    assert fall_final.start_date == date(2026, 11, 16)
    assert date(2026, 11, 27) in fall_final.excluded_dates


def test_delete_period(db, catalog):
    delete_period("fall_exam1", db)
    assert [p.key for p in list_periods(db)] == ["summer_exam3"]
    with pytest.raises(NotFound):
        delete_period("fall_exam1", db)


def test_ingest_computes_flags_from_thresholds_and_catalog(db, ingest):
    days = day_log(date(2025, 7, 24), 4)
    days[0].update(minutes=20)  # 07-24 too short
    days[1].update(topics=0)  # 07-25 no topic
    # 07-26 and 07-27 are exempt in the catalog
    days[3].update(minutes=5)
    summary = ingest("S1", days)

    assert summary["created"] == 1
    rows = db.scalars(select(DailyRecord).order_by(DailyRecord.day)).all()
    assert [r.qualified for r in rows] == [False, False, False, False]
    assert [r.is_excluded for r in rows] == [False, False, True, True]
    assert [r.would_have_qualified for r in rows] == [False, False, True, False]
    assert rows[0].reason.startswith("Not enough")
    assert rows[2].reason == "Exempt day - does not count toward progress"
    assert all(r.student_id == "s1" for r in rows)


def test_exempt_days_are_never_qualified_even_if_supplied(db, ingest):
    days = day_log(date(2025, 7, 26), 1)
    days[0]["qualified"] = True
    ingest("s1", days)
    record = db.scalar(select(DailyRecord))
    assert record.is_excluded is True
    assert record.qualified is False
    assert record.would_have_qualified is True


def test_reingest_replaces_previous_records(db, ingest):
    ingest("s1", day_log(date(2025, 7, 18), 5))
    summary = ingest("s1", day_log(date(2025, 7, 18), 2))

    assert summary["replaced"] == 1
    assert len(db.scalars(select(StudentDataset)).all()) == 1
    assert len(db.scalars(select(DailyRecord)).all()) == 2


def test_same_student_in_another_section_keeps_both(db, ingest):
    ingest("s1", day_log(date(2025, 7, 18), 2), section="A")
    ingest("s1", day_log(date(2025, 7, 18), 3), section="B")
    assert len(db.scalars(select(StudentDataset)).all()) == 2


def test_ingest_rejects_dates_outside_period_and_unknown_periods(db, ingest):
    with pytest.raises(ValidationFailed):
        ingest("s1", day_log(date(2025, 8, 2), 5))
    with pytest.raises(NotFound):
        ingest("s1", day_log(date(2025, 7, 18), 1), period="winter")
    assert db.scalars(select(StudentDataset)).all() == []


def test_reingest_drops_students_missing_from_the_new_roster(db, catalog):
    def roster(*student_ids):
        return DatasetIn.model_validate(
            {
                "period": "summer_exam3",
                "section_number": "A",
                "students": [
                    {"student_id": sid, "name": sid.upper(), "daily_log": day_log(date(2025, 7, 18), 5)}
                    for sid in student_ids
                ],
            }
        )

    ingest_dataset(roster("s1", "s2"), db)
    assert total_balance("s2", db) == 5

    summary = ingest_dataset(roster("s1"), db)

    assert summary["replaced"] == 1
    assert summary["removed"] == 1
    assert total_balance("s1", db) == 5
    assert total_balance("s2", db) == 0
    assert db.scalars(select(StudentDataset.student_id)).all() == ["s1"]
    assert db.scalars(select(DailyRecord).where(DailyRecord.student_id == "s2")).all() == []


def test_reingest_leaves_other_sections_alone(db, ingest):
    ingest("s2", day_log(date(2025, 7, 18), 3), section="B")
    ingest("s1", day_log(date(2025, 7, 18), 3), section="A")
    summary = ingest("s1", day_log(date(2025, 7, 18), 2), section="A")

    assert summary["removed"] == 0
    assert total_balance("s2", db) == 3
