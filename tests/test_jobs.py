from datetime import date, timedelta

from tenantbill.extensions import db
from tenantbill.jobs import JobRegistry, JobReport
from tenantbill.jobs.expiry_sweep import run_expiry_sweep
from tenantbill.jobs.monthly_invoices import run_monthly_invoice_generation
from tenantbill.jobs.usage_cleanup import run_usage_cleanup
from tenantbill.models import Invoice, JobRun, NotificationLog
from tenantbill.models.usage_record import UsageRecord
from tenantbill.services.ledger import LedgerStore
from tenantbill.utils.clock import utcnow


def _status(org_id):
    return LedgerStore().require_subscription(org_id).status


# ---- expiry sweep ---------------------------------------------------------------
def test_expiry_warnings_and_cancellation(app, make_org, clock, notifier):
    three = make_org(period_end=clock.now + timedelta(days=3))
    one = make_org(period_end=clock.now + timedelta(days=1))
    ended = make_org(period_end=clock.now - timedelta(hours=1))
    fine = make_org(period_end=clock.now + timedelta(days=10))
    with app.app_context():
        report = run_expiry_sweep(clock=clock)
        assert report.ok
        assert report.processed == 4
        assert _status(ended) == "canceled"
        assert _status(fine) == "active"
        assert _status(three) == "active"

    sent = {(kind, org) for kind, org, _ in notifier.sent}
    assert sent == {
        ("subscription.expiring", three),
        ("subscription.final-warning", one),
        ("subscription.expired", ended),
    }


def test_expiry_sweep_rerun_does_not_renotify(app, make_org, clock, notifier):
    make_org(period_end=clock.now + timedelta(days=3))
    with app.app_context():
        run_expiry_sweep(clock=clock)
        run_expiry_sweep(clock=clock)
        assert NotificationLog.query.count() == 1
    assert notifier.kinds() == ["subscription.expiring"]


def test_trial_expires(app, make_org, clock, notifier):
    org_id = make_org("trial", status="trialing", period_end=clock.now - timedelta(days=1))
    with app.app_context():
        run_expiry_sweep(clock=clock)
        assert _status(org_id) == "canceled"


def test_past_due_invoice_cancels_after_grace(app, make_org, clock, notifier):
    org_id = make_org()
    with app.app_context():
        db.session.add(Invoice(organization_id=org_id, kind="renewal", amount=47000, due_date=date(2026, 3, 10)))
        db.session.commit()
        run_expiry_sweep(clock=clock)
        assert _status(org_id) == "canceled"
        assert Invoice.query.one().status == "overdue"
    assert notifier.kinds() == ["subscription.canceled-nonpayment"]


def test_grace_window_holds_subscription_overdue(app, make_org, clock, notifier):
    org_id = make_org()
    app.config["INVOICE_OVERDUE_GRACE_DAYS"] = 10
    try:
        with app.app_context():
            db.session.add(Invoice(organization_id=org_id, kind="renewal", amount=47000, due_date=date(2026, 3, 10)))
            db.session.commit()
            run_expiry_sweep(clock=clock)
            assert _status(org_id) == "overdue"
            # Still overdue on re-run, no repeated notice
            run_expiry_sweep(clock=clock)
            assert _status(org_id) == "overdue"
    finally:
        app.config["INVOICE_OVERDUE_GRACE_DAYS"] = 0
    assert notifier.kinds() == ["subscription.overdue"]


def test_invoice_due_today_is_not_past_due(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        db.session.add(Invoice(organization_id=org_id, kind="addon", amount=1000, due_date=date(2026, 3, 15)))
        db.session.commit()
        run_expiry_sweep(clock=clock)
        assert _status(org_id) == "active"
        assert Invoice.query.one().status == "pending"


def test_one_failing_org_does_not_stop_the_sweep(app, make_org, clock, notifier, monkeypatch):
    bad = make_org(period_end=clock.now - timedelta(days=1))
    good = make_org(period_end=clock.now - timedelta(days=1))
    real = LedgerStore.zone_for

    def flaky(self, org):
        if org.id == bad:
            raise RuntimeError("corrupt row")
        return real(self, org)

    monkeypatch.setattr(LedgerStore, "zone_for", flaky)
    with app.app_context():
        report = run_expiry_sweep(clock=clock)
        assert [e["organization_id"] for e in report.errors] == [bad]
        assert _status(good) == "canceled"
        assert _status(bad) == "active"


# ---- monthly invoices -----------------------------------------------------------
def test_monthly_generation_only_for_active_and_idempotent(app, make_org, clock):
    active = make_org()
    make_org(status="canceled")
    make_org("trial", status="trialing")
    with app.app_context():
        first = run_monthly_invoice_generation(clock=clock)
        assert first.changed == 1
        second = run_monthly_invoice_generation(clock=clock)
        assert second.changed == 0
        assert second.skipped == 1
        assert [i.organization_id for i in Invoice.query.all()] == [active]


# ---- usage cleanup --------------------------------------------------------------
def test_usage_cleanup_respects_retention(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        db.session.add(UsageRecord(organization_id=org_id, created_at=clock.now - timedelta(days=91)))
        db.session.add(UsageRecord(organization_id=org_id, created_at=clock.now - timedelta(days=89)))
        db.session.commit()
        report = run_usage_cleanup(clock=clock)
        assert report.changed == 1
        assert UsageRecord.query.count() == 1


# ---- registry -------------------------------------------------------------------
def _lease(name):
    db.session.expire_all()
    return db.session.get(JobRun, name)


def test_registry_skips_run_while_another_registry_holds_the_lease(app):
    # Two registries stand in for two scheduler processes sharing one database
    first, second = JobRegistry(), JobRegistry()
    overlapping = []

    def slow():
        overlapping.append(second.run("slow"))
        return JobReport(name="slow").finish()

    first.register("slow", "* * * * *", slow)
    second.register("slow", "* * * * *", lambda: JobReport(name="slow").finish())
    with app.app_context():
        report = first.run("slow")
        assert report.name == "slow"
        assert overlapping == [None]

        lease = _lease("slow")
        assert lease.holder is None
        assert lease.last_status == "ok"

        # Free again once the first run is over
        assert second.run("slow").ok


def test_registry_reclaims_abandoned_lease(app):
    registry = JobRegistry()
    registry.register("sweep", "* * * * *", lambda: JobReport(name="sweep").finish())
    with app.app_context():
        db.session.add(JobRun(name="sweep", holder="crashed-host:1:dead", locked_at=utcnow() - timedelta(hours=7)))
        db.session.commit()
        assert registry.run("sweep") is not None
        assert _lease("sweep").holder is None


def test_registry_respects_fresh_lease(app):
    registry = JobRegistry()
    registry.register("sweep", "* * * * *", lambda: JobReport(name="sweep").finish())
    with app.app_context():
        db.session.add(JobRun(name="sweep", holder="other-host:1:live", locked_at=utcnow() - timedelta(minutes=5)))
        db.session.commit()
        assert registry.run("sweep") is None
        assert _lease("sweep").holder == "other-host:1:live"


def test_registry_reports_crashed_job(app):
    registry = JobRegistry()

    def broken():
        raise RuntimeError("db down")

    registry.register("broken", "0 * * * *", broken)
    with app.app_context():
        report = registry.run("broken")
        lease = _lease("broken")
        assert lease.holder is None
        assert lease.last_status == "failed"
    assert not report.ok
    assert report.errors[0]["error"] == "RuntimeError"


def test_default_registry_and_crontab(app):
    registry = app.extensions["tenantbill.jobs"]
    assert {j.name for j in registry} == {"expiry-sweep", "monthly-invoices", "usage-cleanup"}
    lines = registry.crontab_lines(timezone="America/Sao_Paulo")
    assert lines[0] == "CRON_TZ=America/Sao_Paulo"
    assert "5 0 * * * flask jobs run expiry-sweep" in lines
    assert "0 6 1 * * flask jobs run monthly-invoices" in lines
