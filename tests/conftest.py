import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta

import pytest
from tenantbill import create_app
from tenantbill.config import TestingConfig
from tenantbill.extensions import db
from tenantbill.models import Organization, OrgMembership, Plan, Subscription, User, ROLE_OWNER
from tenantbill.models.plan import PLAN_CATALOG
from tenantbill.models.subscription import STATUS_ACTIVE
from tenantbill.services.notifier import NOTIFIER_EXTENSION_KEY, Notifier
from tenantbill.services.payments import GATEWAY_EXTENSION_KEY, PaymentGateway, PaymentLink

WEBHOOK_SECRET = "whsec_testsecret"
STRIPE_WEBHOOK_SECRET = "whsec_stripe_testsecret"

# 2026-03-15 12:00 in America/Sao_Paulo (UTC-3)
NOW = datetime(2026, 3, 15, 15, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, event, organization_id, context):
        if self.fail:
            raise RuntimeError("provider down")
        self.sent.append((event.value, organization_id, context))

    def kinds(self):
        return [k for k, _, _ in self.sent]


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.calls = []
        self.error = None

    def create_payment(self, invoice, payer_email=None):
        self.calls.append(invoice.id)
        if self.error is not None:
            raise self.error
        return PaymentLink(payment_id=f"pay_{invoice.id}", url=f"https://pay.example.test/{invoice.id}")


class Clock:
    """Mutable clock handed to services in place of utcnow."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


@pytest.fixture(scope="session")
def app():
    app = create_app(TestingConfig)
    app.config.update(
        TESTING=True,
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        PAYMENT_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        PAYMENT_WEBHOOK_ALLOWED_IPS=[],
        BILLING_TIMEZONE="America/Sao_Paulo",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def notifier(app):
    rec = RecordingNotifier()
    app.extensions[NOTIFIER_EXTENSION_KEY] = rec
    yield rec
    app.extensions.pop(NOTIFIER_EXTENSION_KEY, None)


@pytest.fixture()
def gateway(app):
    fake = FakeGateway()
    app.extensions[GATEWAY_EXTENSION_KEY] = fake
    yield fake
    app.extensions.pop(GATEWAY_EXTENSION_KEY, None)


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def plans(app):
    """Seeded catalog; returns {tier: plan_id}."""
    with app.app_context():
        ids = {}
        for row in PLAN_CATALOG:
            plan = Plan(**row)
            db.session.add(plan)
            db.session.flush()
            ids[plan.tier] = plan.id
        db.session.commit()
        return ids


@pytest.fixture()
def make_org(app, plans):
    """
    make_org(tier="basic", status="active", period_end=..., **plan_overrides) -> org_id
    Creates owner, organization and subscription; plan overrides edit the shared catalog row.
    """
    counter = {"n": 0}

    def _make(tier="basic", status=STATUS_ACTIVE, period_end=None, timezone=None, **plan_overrides):
        counter["n"] += 1
        n = counter["n"]
        with app.app_context():
            owner = User(email=f"owner{n}@example.test", name=f"Owner {n}")
            db.session.add(owner)
            db.session.flush()
            org = Organization(name=f"Org {n}", slug=f"org-{n}", owner_id=owner.id, timezone=timezone)
            db.session.add(org)
            db.session.flush()
            db.session.add(OrgMembership(org_id=org.id, user_id=owner.id, role=ROLE_OWNER))
            plan = db.session.get(Plan, plans[tier])
            for field, value in plan_overrides.items():
                setattr(plan, field, value)
            db.session.add(Subscription(
                organization_id=org.id,
                plan_id=plan.id,
                status=status,
                started_at=NOW - timedelta(days=10),
                current_period_end=period_end or NOW + timedelta(days=20),
            ))
            db.session.commit()
            return org.id

    return _make
