from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from coinledger import overrides
from coinledger.adjustments import create_adjustment
from coinledger.balances import total_balance
from coinledger.errors import AlreadyProcessed, FeatureDisabled, InsufficientBalance, OverrideCreateFailed, ValidationFailed
from coinledger.models import GLOBAL_PERIOD, CoinAdjustment, DayOverride, StudentRequest
from coinledger.overrides import list_overrides
from coinledger.periods import datasets_for_student, records_for_dataset
from coinledger.progress import derive_progress
from coinledger.schemas import AdjustmentIn, RequestIn, SettingsIn
from coinledger.workflow import (
    FeatureFlags,
    approve_all_pending,
    extract_stated_reason,
    load_feature_flags,
    magic_approve,
    process_request,
    request_stats,
    submit_request,
    update_feature_flags,
)

from conftest import day_log

FLAGS = FeatureFlags()


def grant(db, student_id, amount):
    create_adjustment(AdjustmentIn(student_id=student_id, amount=amount, reason="starting balance"), db)


def request_in(request_type="quiz_replacement", student_id="s1", **extra):
    data = {
        "student_id": student_id,
        "student_name": "Sam Student",
        "student_email": "sam@example.edu",
        "period": "summer_exam3",
        "section_number": "default",
        "request_type": request_type,
        "request_details": "Reason: please",
    }
    data.update(extra)
    return RequestIn(**data)


def override_request(student_id="s1", day=12, on=date(2025, 7, 20), details="Day 12. Reason: I did the review"):
    return request_in("override_request", student_id=student_id, day_number=day, override_date=on, request_details=details)


def count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def test_quiz_needs_twenty_coins(db):
    grant(db, "s1", 19)
    with pytest.raises(InsufficientBalance) as exc:
        submit_request(request_in(), FLAGS, db)
    assert exc.value.extra == {"required": 20, "available": 19}
    assert count(db, StudentRequest) == 0
    assert count(db, CoinAdjustment) == 1

    grant(db, "s1", 1)
    req = submit_request(request_in(), FLAGS, db)
    assert req.status == "pending"
    assert total_balance("s1", db) == 0

    deduction = db.scalar(select(CoinAdjustment).where(CoinAdjustment.request_id == req.id))
    assert deduction.amount == -20
    assert deduction.period == GLOBAL_PERIOD
    assert deduction.is_active is True


def test_assignment_costs_ten(db):
    grant(db, "s1", 15)
    submit_request(request_in("assignment_replacement"), FLAGS, db)
    assert total_balance("s1", db) == 5


def test_pending_deduction_blocks_double_spending(db):
    grant(db, "s1", 25)
    submit_request(request_in(), FLAGS, db)
    with pytest.raises(InsufficientBalance):
        submit_request(request_in(), FLAGS, db)


def test_disabled_features_block_submission_without_side_effects(db):
    grant(db, "s1", 50)
    with pytest.raises(FeatureDisabled):
        submit_request(request_in(), FeatureFlags(redemption_requests_enabled=False), db)
    with pytest.raises(FeatureDisabled):
        submit_request(override_request(), FeatureFlags(overrides_enabled=False), db)
    assert count(db, StudentRequest) == 0
    assert total_balance("s1", db) == 50


def test_submission_validation(db):
    with pytest.raises(ValidationFailed):
        submit_request(request_in(request_details="   "), FLAGS, db)
    with pytest.raises(ValidationFailed):
        submit_request(request_in("override_request", day_number=3), FLAGS, db)
    assert count(db, StudentRequest) == 0


def test_reject_pending_redemption_refunds_exactly_once(db):
    grant(db, "s1", 30)
    req = submit_request(request_in(), FLAGS, db)
    assert total_balance("s1", db) == 10

    result = process_request(req.id, "rejected", "not eligible", FLAGS, db)
    assert result["adjustment_deactivated"] is True
    assert total_balance("s1", db) == 30

    with pytest.raises(AlreadyProcessed):
        process_request(req.id, "rejected", None, FLAGS, db)
    assert total_balance("s1", db) == 30


def test_rejecting_an_approved_redemption_is_refused(db):
    grant(db, "s1", 20)
    req = submit_request(request_in(), FLAGS, db)
    process_request(req.id, "approved", None, FLAGS, db, actor="alice")

    with pytest.raises(AlreadyProcessed):
        process_request(req.id, "rejected", None, FLAGS, db)
    assert total_balance("s1", db) == 0
    db.refresh(req)
    assert req.status == "approved"
    assert req.processed_by == "alice"
    assert req.processed_at is not None


def test_approving_override_request_materializes_one_override(db, ingest):
    days = day_log(date(2025, 7, 18), 12, minutes=40)
    days[2]["minutes"] = 10  # day 3 / 2025-07-20 not qualified as ingested
    days[2]["day"], days[11]["day"] = 12, 3
    ingest("s1", days)
    dataset = datasets_for_student("s1", db)[0]
    before = derive_progress(records_for_dataset(dataset.id, db), list_overrides("s1", db))
    assert not next(d for d in before.daily_log if d.date == date(2025, 7, 20)).qualified

    req = submit_request(override_request(), FLAGS, db)
    result = process_request(req.id, "approved", None, FLAGS, db)

    rows = db.scalars(select(DayOverride)).all()
    assert len(rows) == 1
    assert rows[0].id == result["override_id"]
    assert rows[0].override_type == "qualified"
    assert rows[0].date == date(2025, 7, 20)
    assert rows[0].day_number == 12
    assert rows[0].reason == "I did the review"

    after = derive_progress(records_for_dataset(dataset.id, db), list_overrides("s1", db))
    assert next(d for d in after.daily_log if d.date == date(2025, 7, 20)).qualified
    assert after.coins == before.coins + 1

    with pytest.raises(AlreadyProcessed):
        process_request(req.id, "approved", None, FLAGS, db)
    assert count(db, DayOverride) == 1


def test_admin_notes_become_the_override_reason(db):
    req = submit_request(override_request(), FLAGS, db)
    process_request(req.id, "approved", "Verified in logs", FLAGS, db)
    assert db.scalar(select(DayOverride)).reason == "Verified in logs"


def test_override_write_failure_leaves_request_pending(db, monkeypatch):
    req = submit_request(override_request(), FLAGS, db)

    def boom(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(overrides, "stage_override", boom)
    with pytest.raises(OverrideCreateFailed):
        process_request(req.id, "approved", None, FLAGS, db)

    db.refresh(req)
    assert req.status == "pending"
    assert req.processed_at is None
    assert count(db, DayOverride) == 0


def test_override_approval_respects_overrides_flag(db):
    req = submit_request(override_request(), FLAGS, db)
    with pytest.raises(FeatureDisabled):
        process_request(req.id, "approved", None, FeatureFlags(overrides_enabled=False), db)
    db.refresh(req)
    assert req.status == "pending"

    # Rejection has no override side effect and is still allowed.
    process_request(req.id, "rejected", None, FeatureFlags(overrides_enabled=False), db)
    assert count(db, DayOverride) == 0


def test_invalid_decision(db):
    req = submit_request(override_request(), FLAGS, db)
    with pytest.raises(ValidationFailed):
        process_request(req.id, "maybe", None, FLAGS, db)


def test_magic_approve_only_takes_reviewed_days_with_enough_minutes(db, ingest):
    days = day_log(date(2025, 7, 18), 5, minutes=45)
    days[1]["minutes"] = 10
    ingest("s1", days)
    good = submit_request(override_request(day=1, on=date(2025, 7, 18), details="Reason: Review session"), FLAGS, db)
    no_keyword = submit_request(override_request(day=3, on=date(2025, 7, 20), details="Reason: forgot"), FLAGS, db)
    too_short = submit_request(override_request(day=2, on=date(2025, 7, 19), details="Reason: review"), FLAGS, db)
    other = submit_request(override_request(student_id="s2", day=1, on=date(2025, 7, 18), details="Reason: review"), FLAGS, db)

    result = magic_approve("S1", None, FLAGS, db)

    assert result["approved"] == [good.id]
    assert sorted(result["skipped"]) == sorted([no_keyword.id, too_short.id])
    statuses = {r.id: r.status for r in db.scalars(select(StudentRequest)).all()}
    assert statuses == {good.id: "approved", no_keyword.id: "pending", too_short.id: "pending", other.id: "pending"}
    db.refresh(good)
    assert good.admin_notes == "Magic approved: 45 minutes logged"
    override = db.scalar(select(DayOverride))
    assert override.date == date(2025, 7, 18)
    assert override.reason == "Review session"


def test_magic_approve_uses_whole_details_without_reason_prefix(db, ingest):
    ingest("s1", day_log(date(2025, 7, 18), 1, minutes=31))
    req = submit_request(override_request(day=1, on=date(2025, 7, 18), details="Watched the REVIEW video"), FLAGS, db)
    assert magic_approve("s1", None, FLAGS, db)["approved"] == [req.id]


def test_magic_approve_requires_overrides_enabled(db):
    with pytest.raises(FeatureDisabled):
        magic_approve("s1", None, FeatureFlags(overrides_enabled=False), db)


def test_approve_all_pending(db):
    grant(db, "s1", 20)
    redemption = submit_request(request_in("assignment_replacement"), FLAGS, db)
    day_override = submit_request(override_request(), FLAGS, db)

    result = approve_all_pending("s1", "bulk", FeatureFlags(overrides_enabled=False), db)
    assert result["approved"] == [redemption.id]
    assert result["skipped"] == [day_override.id]

    result = approve_all_pending("s1", "bulk", FLAGS, db)
    assert result["approved"] == [day_override.id]
    assert result["overrides_written"] == 1
    assert result["failed"] == []
    assert total_balance("s1", db) == 10


def test_request_stats(db):
    grant(db, "s1", 40)
    submit_request(request_in(), FLAGS, db)
    submit_request(request_in("assignment_replacement"), FLAGS, db)
    submit_request(override_request(), FLAGS, db)
    submit_request(request_in("extra_credit"), FLAGS, db)
    assert request_stats(db) == {"pending_overrides": 1, "pending_redemptions": 2}


def test_feature_flags_round_trip_through_settings(db):
    assert load_feature_flags(db) == FeatureFlags(True, True)
    flags = update_feature_flags(SettingsIn(redemption_requests_enabled=False), db)
    assert flags == FeatureFlags(overrides_enabled=True, redemption_requests_enabled=False)
    assert load_feature_flags(db) == flags
    with pytest.raises(ValidationFailed):
        update_feature_flags(SettingsIn(), db)


def test_extract_stated_reason():
    assert extract_stated_reason("Day 4 (2025-07-21)\nReason: was sick\nsecond line") == "was sick\nsecond line"
    assert extract_stated_reason("no prefix here") == ""
    assert extract_stated_reason(None) == ""


def test_store_failure_surfaces_as_store_unavailable_and_rolls_back(db, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from coinledger import workflow
    from coinledger.errors import StoreUnavailable

    def locked(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(workflow, "total_balance", locked)
    with pytest.raises(StoreUnavailable):
        submit_request(request_in(), FLAGS, db)
    assert count(db, StudentRequest) == 0
