from datetime import datetime, timedelta

from tenantbill.extensions import db
from tenantbill.models.usage_record import UsageRecord
from tenantbill.services.usage import UsageMeter


def test_record_event_is_staged_until_caller_commits(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        meter = UsageMeter(clock=clock)
        meter.record_event(org_id)
        db.session.rollback()
        assert UsageRecord.query.count() == 0

        meter.record_event(org_id, outcome="failed")
        db.session.commit()
        row = UsageRecord.query.one()
        assert row.outcome == "failed"
        assert row.created_at == clock.now


def test_count_since_filters_by_window_and_category(app, make_org, clock):
    org_id = make_org()
    other = make_org()
    with app.app_context():
        meter = UsageMeter(clock=clock)
        meter.record_event(org_id, at=clock.now - timedelta(days=40))
        meter.record_event(org_id, at=clock.now - timedelta(days=1))
        meter.record_event(org_id, category="export", at=clock.now)
        meter.record_event(other, at=clock.now)
        db.session.commit()

        since = clock.now - timedelta(days=7)
        assert meter.count_since(org_id, since) == 2
        assert meter.count_since(org_id, since, category="request") == 1


def test_month_window_uses_org_timezone(app, make_org, clock):
    org_id = make_org(timezone="Asia/Tokyo")
    with app.app_context():
        # 2026-03-31 16:00 UTC is already April 1st in Tokyo (UTC+9)
        clock.now = datetime(2026, 3, 31, 16, 0)
        assert UsageMeter(clock=clock).month_window(org_id) == datetime(2026, 3, 31, 15, 0)


def test_quota_status(app, make_org, clock):
    org_id = make_org(max_requests=3)
    with app.app_context():
        meter = UsageMeter(clock=clock)
        for _ in range(3):
            meter.record_event(org_id)
        db.session.commit()
        status = meter.quota_status(org_id)
        assert status["used"] == 3
        assert status["limit"] == 3
        assert status["remaining"] == 0
        assert status["reached"] is True
        assert status["resets_at"] == "2026-04-01T03:00:00"
