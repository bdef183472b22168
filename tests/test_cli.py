from tenantbill.extensions import db
from tenantbill.models import Organization, Plan, Subscription


def test_plans_seed_is_repeatable(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["plans", "seed"])
    assert result.exit_code == 0
    assert "created=4 updated=0" in result.output

    result = runner.invoke(args=["plans", "seed"])
    assert "created=0 updated=4" in result.output
    with app.app_context():
        assert db.session.query(Plan).count() == 4


def test_bootstrap_owner_starts_trial(app, plans):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        "bootstrap", "owner", "--org-name", "Acme", "--slug", "acme", "--email", "ops@acme.test",
    ])
    assert result.exit_code == 0, result.output
    assert "subscription=trialing" in result.output
    with app.app_context():
        org = Organization.query.filter_by(slug="acme").one()
        assert Subscription.query.filter_by(organization_id=org.id).one().status == "trialing"

    again = runner.invoke(args=[
        "bootstrap", "owner", "--org-name", "Acme", "--slug", "acme2", "--email", "ops@acme.test",
    ])
    assert again.exit_code != 0
    assert "already exists" in again.output


def test_jobs_crontab(app):
    result = app.test_cli_runner().invoke(args=["jobs", "crontab"])
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0] == "CRON_TZ=America/Sao_Paulo"
    assert "0 4 * * * flask jobs run usage-cleanup" in lines


def test_jobs_run_prints_report(app, plans):
    result = app.test_cli_runner().invoke(args=["jobs", "run", "usage-cleanup"])
    assert result.exit_code == 0
    assert '"job": "usage-cleanup"' in result.output

    result = app.test_cli_runner().invoke(args=["jobs", "run", "nope"])
    assert result.exit_code != 0
