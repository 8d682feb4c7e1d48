from datetime import date

from coinledger import analytics

from conftest import day_log


def test_snapshot_is_reused_until_invalidated(db, ingest):
    ingest("s1", day_log(date(2025, 7, 18), 2))
    assert analytics.period_analytics(db)["cached"] is False
    assert analytics.period_analytics(db)["cached"] is True

    analytics.invalidate_analytics_cache()
    assert analytics.period_analytics(db)["cached"] is False


def test_invalidation_during_rebuild_discards_the_snapshot(db, ingest, monkeypatch):
    ingest("s1", day_log(date(2025, 7, 18), 2))
    real_build = analytics.build_analytics

    def build_then_invalidate(session):
        data = real_build(session)
        # An override change lands while the rebuild is in flight.
        analytics.invalidate_analytics_cache()
        return data

    monkeypatch.setattr(analytics, "build_analytics", build_then_invalidate)
    first = analytics.period_analytics(db)
    monkeypatch.undo()

    assert first["cached"] is False
    assert first["periods"][0]["total_students"] == 1
    assert analytics.period_analytics(db)["cached"] is False
    assert analytics.period_analytics(db)["cached"] is True
