import json
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
from flask import current_app
from flask.cli import with_appcontext

from tenantbill.errors import BillingError
from tenantbill.extensions import db
from tenantbill.models import Organization, OrgMembership, Plan, User, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from tenantbill.models.plan import PLAN_CATALOG, TIER_TRIAL


def _registry():
    return current_app.extensions["tenantbill.jobs"]


# ---- plans --------------------------------------------------------------------
@click.group()
def plans():
    """Plan catalog."""


@plans.command("seed")
@with_appcontext
def plans_seed():
    """Create or update the four catalog tiers."""
    created = updated = 0
    for row in PLAN_CATALOG:
        plan = db.session.query(Plan).filter_by(tier=row["tier"]).one_or_none()
        if plan is None:
            db.session.add(Plan(**row))
            created += 1
        else:
            for field, value in row.items():
                setattr(plan, field, value)
            updated += 1
    db.session.commit()
    click.echo(f"Plans seeded: created={created} updated={updated}")


@plans.command("list")
@with_appcontext
def plans_list():
    for p in db.session.query(Plan).order_by(Plan.price).all():
        click.echo(f"{p.id:>3} {p.tier:<13} {p.name:<11} price={p.price} ips={p.max_ips} requests={p.max_requests}")


# ---- bootstrap / members -----------------------------------------------------
@click.group()
def bootstrap():
    """Bootstrap helpers."""


@bootstrap.command("owner")
@click.option("--org-name", required=True)
@click.option("--slug", required=True)
@click.option("--email", required=True)
@click.option("--tier", default=TIER_TRIAL, show_default=True, help="Plan tier to start on")
@click.option("--timezone", "tz", default=None, help="IANA zone; defaults to BILLING_TIMEZONE")
@with_appcontext
def bootstrap_owner(org_name, slug, email, tier, tz):
    """Create an organization, its owner and its subscription."""
    from tenantbill.services.subscriptions import start_subscription

    email = email.strip().lower()
    if tz:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            raise click.BadParameter(f"unknown time zone {tz!r}", param_hint="--timezone")
    if db.session.query(User).filter_by(email=email).first() is not None:
        raise click.ClickException(f"A user with email {email} already exists")
    if db.session.query(Organization).filter_by(slug=slug).first() is not None:
        raise click.ClickException(f"Slug {slug!r} is taken")
    plan = db.session.query(Plan).filter_by(tier=tier).one_or_none()
    if plan is None:
        raise click.ClickException(f"Plan tier {tier!r} not found; run `flask plans seed` first")

    owner = User(email=email)
    db.session.add(owner)
    db.session.flush()
    org = Organization(name=org_name, slug=slug, owner_id=owner.id, timezone=tz)
    db.session.add(org)
    db.session.flush()
    db.session.add(OrgMembership(org_id=org.id, user_id=owner.id, role=ROLE_OWNER))
    db.session.commit()

    sub = start_subscription(org.id, plan.id)
    click.echo(f"organization={org.id} owner={owner.id} ({email}) plan={plan.tier} subscription={sub.status}")


def _user_by_email(email: str) -> User:
    user = db.session.query(User).filter_by(email=email.strip().lower()).one_or_none()
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    return user


@click.group()
def members():
    """Organization roles (owner > admin > member)."""


@members.command("promote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@click.option("--role", type=click.Choice([ROLE_ADMIN, ROLE_OWNER]), required=True)
@with_appcontext
def members_promote(org_id, email, role):
    if db.session.get(Organization, org_id) is None:
        raise click.ClickException(f"Organization {org_id} does not exist")
    user = _user_by_email(email)
    membership = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if membership is None:
        db.session.add(OrgMembership(org_id=org_id, user_id=user.id, role=role))
    elif membership.role != role:
        membership.role = role
    db.session.commit()
    click.echo(f"{user.email} is now {role} of organization {org_id}")


@members.command("demote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@with_appcontext
def members_demote(org_id, email):
    user = _user_by_email(email)
    membership = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if membership is None:
        raise click.ClickException(f"{user.email} is not a member of organization {org_id}")
    if membership.role == ROLE_OWNER:
        other_owners = (
            db.session.query(OrgMembership)
            .filter(OrgMembership.org_id == org_id, OrgMembership.role == ROLE_OWNER,
                    OrgMembership.id != membership.id)
            .count()
        )
        if not other_owners:
            raise click.ClickException("Refused: organization would be left without an owner")
    membership.role = ROLE_MEMBER
    db.session.commit()
    click.echo(f"{user.email} is now member of organization {org_id}")


# ---- jobs -------------------------------------------------------------------
@click.group()
def jobs():
    """Recurring billing jobs."""


@jobs.command("list")
@with_appcontext
def jobs_list():
    for job in _registry():
        click.echo(f"{job.name:<18} {job.schedule:<12} {job.description}")


@jobs.command("run")
@click.argument("name")
@with_appcontext
def jobs_run(name):
    registry = _registry()
    if name not in registry:
        raise click.ClickException(f"Unknown job {name!r}")
    report = registry.run(name)
    if report is None:
        click.echo(f"{name}: already running, skipped")
        return
    click.echo(json.dumps(report.to_dict(), default=str))
    if not report.ok:
        raise SystemExit(1)


@jobs.command("crontab")
@click.option("--command", default="flask jobs run", show_default=True)
@with_appcontext
def jobs_crontab(command):
    """Print crontab lines for every registered job."""
    tz = current_app.config.get("BILLING_TIMEZONE")
    for line in _registry().crontab_lines(command=command, timezone=tz):
        click.echo(line)


# ---- billing ----------------------------------------------------------------
@click.group()
def billing():
    """Billing ops."""


@billing.command("summary")
@click.option("--org-id", type=int, required=True)
@with_appcontext
def billing_summary_cmd(org_id):
    from tenantbill.services.subscriptions import billing_summary

    try:
        summary = billing_summary(org_id)
    except BillingError as e:
        raise click.ClickException(e.message)
    click.echo(json.dumps(summary, indent=2, default=str))


@billing.command("payment-link")
@click.option("--invoice-id", type=int, required=True)
@with_appcontext
def billing_payment_link(invoice_id):
    from tenantbill.services.invoices import InvoiceEngine

    try:
        invoice = InvoiceEngine().create_payment_link(invoice_id)
    except BillingError as e:
        raise click.ClickException(e.message)
    click.echo(invoice.payment_url)


def register_cli(app):
    app.cli.add_command(plans)
    app.cli.add_command(bootstrap)
    app.cli.add_command(members)
    app.cli.add_command(jobs)
    app.cli.add_command(billing)
