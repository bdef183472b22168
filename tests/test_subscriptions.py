from datetime import timedelta

import pytest

from tenantbill.errors import ConflictError, ValidationError
from tenantbill.extensions import db
from tenantbill.models import Addon, Invoice, Organization, Subscription, User
from tenantbill.services.ledger import LedgerStore
from tenantbill.services.subscriptions import (
    billing_summary,
    cancel_addon,
    cancel_subscription,
    change_plan,
    purchase_addon,
    shutdown_organization,
    start_subscription,
)


def _bare_org(app, slug="fresh"):
    with app.app_context():
        owner = User(email=f"{slug}@example.test", name=slug)
        db.session.add(owner)
        db.session.flush()
        org = Organization(name=slug.title(), slug=slug, owner_id=owner.id)
        db.session.add(org)
        db.session.commit()
        return org.id


# ---- start ---------------------------------------------------------------------
def test_trial_plan_starts_trialing(app, plans, clock):
    org_id = _bare_org(app)
    with app.app_context():
        sub = start_subscription(org_id, plans["trial"], clock=clock)
        assert sub.status == "trialing"
        assert sub.trial_ends_at == clock.now + timedelta(days=7)
        assert sub.current_period_end == sub.trial_ends_at


def test_paid_plan_starts_active_and_second_start_conflicts(app, plans, clock):
    org_id = _bare_org(app)
    with app.app_context():
        sub = start_subscription(org_id, plans["basic"], clock=clock)
        assert sub.status == "active"
        assert sub.current_period_end == clock.now + timedelta(days=30)
        with pytest.raises(ConflictError):
            start_subscription(org_id, plans["professional"], clock=clock)
        assert Subscription.query.filter_by(organization_id=org_id).count() == 1


# ---- plan changes ----------------------------------------------------------------
def test_upgrade_switches_plan_and_raises_proration(app, make_org, plans, clock, notifier):
    org_id = make_org("basic")
    with app.app_context():
        result = change_plan(org_id, plans["professional"], clock=clock)
        assert result["proration_amount"] == 13333
        assert result["old_plan_id"] == plans["basic"]
        assert LedgerStore().require_subscription(org_id).plan_id == plans["professional"]
        assert db.session.get(Invoice, result["proration_invoice_id"]).kind == "proration"
    assert notifier.kinds() == ["plan.changed", "purchase.created"]


def test_downgrade_has_no_invoice(app, make_org, plans, clock, notifier):
    org_id = make_org("business")
    with app.app_context():
        result = change_plan(org_id, plans["basic"], clock=clock)
        assert result["proration_invoice_id"] is None
        assert Invoice.query.count() == 0
    assert notifier.kinds() == ["plan.changed"]


def test_plan_change_rules(app, make_org, plans, clock, notifier):
    trialing = make_org("trial", status="trialing")
    active = make_org("basic")
    with app.app_context():
        with pytest.raises(ConflictError):
            change_plan(trialing, plans["basic"], clock=clock)
        with pytest.raises(ValidationError):
            change_plan(active, plans["basic"], clock=clock)
        with pytest.raises(ValidationError):
            change_plan(active, plans["trial"], clock=clock)


def test_cancel_subscription(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        sub = cancel_subscription(org_id, clock=clock)
        assert sub.status == "canceled"
        assert sub.canceled_at == clock.now
        with pytest.raises(ConflictError):
            cancel_subscription(org_id, clock=clock)


# ---- add-ons -------------------------------------------------------------------
def test_repeat_purchases_accumulate_and_each_raise_an_invoice(app, make_org, clock, notifier):
    org_id = make_org()
    with app.app_context():
        first = purchase_addon(org_id, "extra_ip", 1, clock=clock)
        second = purchase_addon(org_id, "extra_ip", 1, clock=clock)
        assert first["created"] is True and second["created"] is True
        assert second["addon_amount"] == 2
        assert second["invoice_id"] != first["invoice_id"]
        assert Addon.query.one().amount == 2
        assert [i.amount for i in Invoice.query.order_by(Invoice.id)] == [1000, 1000]
    assert notifier.kinds() == ["purchase.created", "purchase.created"]


def test_purchases_of_different_types_with_equal_prices_stay_separate(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        ip = purchase_addon(org_id, "extra_ip", 1, clock=clock)
        change = purchase_addon(org_id, "early_ip_change", 2, clock=clock)
        assert ip["invoice_amount"] == change["invoice_amount"] == 1000
        assert change["created"] is True
        assert change["invoice_id"] != ip["invoice_id"]
        assert change["addon_amount"] == 2
        assert {a.type: a.amount for a in Addon.query.all()} == {"extra_ip": 1, "early_ip_change": 2}
        assert {i.description for i in Invoice.query.all()} == {"extra_ip x1", "early_ip_change x2"}


def test_request_key_makes_a_purchase_safe_to_retry(app, make_org, clock, notifier):
    org_id = make_org()
    with app.app_context():
        first = purchase_addon(org_id, "extra_ip", 2, request_key="checkout-81", clock=clock)
        retry = purchase_addon(org_id, "extra_ip", 2, request_key="checkout-81", clock=clock)
        assert retry["created"] is False
        assert retry["invoice_id"] == first["invoice_id"]
        assert retry["addon_amount"] == 2
        assert Invoice.query.count() == 1

        # Same key, different purchase
        with pytest.raises(ConflictError):
            purchase_addon(org_id, "early_ip_change", 4, request_key="checkout-81", clock=clock)
        assert Addon.query.one().amount == 2
    assert notifier.kinds() == ["purchase.created"]


def test_request_keys_are_scoped_per_organization(app, make_org, clock):
    one, two = make_org(), make_org()
    with app.app_context():
        a = purchase_addon(one, "extra_ip", 1, request_key="k-1", clock=clock)
        b = purchase_addon(two, "extra_ip", 1, request_key="k-1", clock=clock)
        assert a["created"] is True and b["created"] is True
        assert a["invoice_id"] != b["invoice_id"]


def test_purchase_addon_rejects_unknown_type_and_canceled_subscription(app, make_org, clock):
    live = make_org()
    dead = make_org(status="canceled")
    with app.app_context():
        with pytest.raises(ValidationError):
            purchase_addon(live, "gold_plating", 1, clock=clock)
        with pytest.raises(ValidationError):
            purchase_addon(live, "extra_ip", 0, clock=clock)
        with pytest.raises(ConflictError):
            purchase_addon(dead, "extra_ip", 1, clock=clock)


def test_cancel_addon_removes_balance(app, make_org, notifier):
    org_id = make_org()
    with app.app_context():
        addon = Addon(organization_id=org_id, type="extra_ip", amount=1, unit_price=1000)
        db.session.add(addon)
        db.session.commit()
        cancel_addon(org_id, addon.id)
        assert Addon.query.count() == 0
    assert notifier.kinds() == ["addon.canceled"]


# ---- shutdown ----------------------------------------------------------------------
def test_shutdown_refused_while_active(app, make_org):
    org_id = make_org()
    with app.app_context():
        with pytest.raises(ConflictError):
            shutdown_organization(org_id)
        assert db.session.get(Organization, org_id) is not None


def test_shutdown_deletes_everything_after_cancel(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        db.session.add(Addon(organization_id=org_id, type="extra_ip", amount=1, unit_price=1000))
        db.session.commit()
        cancel_subscription(org_id, clock=clock)
        shutdown_organization(org_id)
        db.session.expire_all()
        assert db.session.get(Organization, org_id) is None
        assert Subscription.query.count() == 0
        assert Addon.query.count() == 0


# ---- summary -----------------------------------------------------------------------
def test_billing_summary(app, make_org, clock):
    org_id = make_org("professional")
    with app.app_context():
        summary = billing_summary(org_id, clock=clock)
        assert summary["subscription"]["status"] == "active"
        assert summary["subscription"]["next_renewal_due"] == "2026-04-01"
        assert summary["plan"]["tier"] == "professional"
        assert summary["usage"] == {"used": 0, "limit": 2000000, "ips": 0, "ip_limit": 2}
        assert summary["invoices"] == []
