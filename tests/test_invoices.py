from datetime import date, timedelta
from types import SimpleNamespace

import pytest
import requests
import stripe

from tenantbill.errors import ConflictError, ExternalServiceError, NotFoundError
from tenantbill.extensions import db
from tenantbill.models import Addon, Invoice, Plan
from tenantbill.services.invoices import InvoiceEngine, prorate
from tenantbill.services import payments
from tenantbill.services.ledger import LedgerStore
from tenantbill.services.payments import HostedCheckoutGateway, StripeCheckoutGateway


def _sub(org_id):
    return LedgerStore().require_subscription(org_id)


def test_prorate_rounds_half_up():
    assert prorate(47000, 67000, 15) == 10000
    # 20000/30 * 1 = 666.67
    assert prorate(47000, 67000, 1) == 667
    # 3/30 * 5 = 0.5 -> 1
    assert prorate(0, 3, 5) == 1


# ---- renewal ------------------------------------------------------------------
def test_renewal_amount_includes_addons_and_due_next_month(app, make_org, clock):
    org_id = make_org("basic")
    with app.app_context():
        db.session.add(Addon(organization_id=org_id, type="extra_ip", amount=2, unit_price=1000))
        db.session.add(Addon(organization_id=org_id, type="extra_requests", amount=100, unit_price=2))
        db.session.commit()

        invoice = InvoiceEngine(clock=clock).generate_renewal_invoice(_sub(org_id))
        assert invoice.amount == 47000 + 2000 + 200
        assert invoice.due_date == date(2026, 4, 1)
        assert invoice.kind == "renewal"
        assert invoice.status == "pending"


def test_renewal_generation_is_idempotent(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        assert engine.generate_renewal_invoice(_sub(org_id)) is not None
        assert engine.generate_renewal_invoice(_sub(org_id)) is None
        assert Invoice.query.filter_by(organization_id=org_id).count() == 1


def test_renewal_due_date_in_december_rolls_year(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        clock.now = clock.now.replace(month=12)
        invoice = InvoiceEngine(clock=clock).generate_renewal_invoice(_sub(org_id))
        assert invoice.due_date == date(2027, 1, 1)


def test_renewal_due_date_follows_run_month_not_period_end(app, make_org, clock):
    org_id = make_org(period_end=clock.now + timedelta(days=40))
    with app.app_context():
        invoice = InvoiceEngine(clock=clock).generate_renewal_invoice(_sub(org_id))
        assert invoice.due_date == date(2026, 4, 1)


# ---- proration ----------------------------------------------------------------
def test_proration_invoice_on_upgrade(app, make_org, clock):
    org_id = make_org("basic", period_end=None)  # period ends in 20 days
    with app.app_context():
        new_plan = Plan.query.filter_by(tier="professional").one()
        invoice = InvoiceEngine(clock=clock).generate_proration_invoice(_sub(org_id), new_plan)
        # (67000 - 47000) / 30 * 20
        assert invoice.amount == 13333
        assert invoice.kind == "proration"
        assert invoice.due_date == date(2026, 3, 22)


def test_no_proration_on_downgrade_or_same_price(app, make_org, clock):
    org_id = make_org("professional")
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        assert engine.generate_proration_invoice(_sub(org_id), Plan.query.filter_by(tier="basic").one()) is None
        assert Invoice.query.count() == 0


def test_proration_charges_at_least_one_day(app, make_org, clock):
    org_id = make_org("basic", period_end=clock.now - timedelta(days=2))
    with app.app_context():
        new_plan = Plan.query.filter_by(tier="business").one()
        invoice = InvoiceEngine(clock=clock).generate_proration_invoice(_sub(org_id), new_plan)
        assert invoice.amount == prorate(47000, 120000, 1)


# ---- add-ons / pending policy -----------------------------------------------------
def test_addon_invoice_amount_and_due_date(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        invoice = InvoiceEngine(clock=clock).generate_addon_invoice(org_id, "early_ip_change", 3)
        assert invoice.amount == 1500
        assert invoice.kind == "addon"
        assert invoice.due_date == date(2026, 3, 22)


def test_identical_pending_proration_is_reused(app, make_org, clock):
    org_id = make_org("basic")
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        new_plan = Plan.query.filter_by(tier="professional").one()
        first = engine.generate_proration_invoice(_sub(org_id), new_plan)
        second = engine.generate_proration_invoice(_sub(org_id), new_plan)
        assert first.id == second.id
        assert first.description == "Upgrade from Pro to Scale"
        assert Invoice.query.count() == 1


def test_different_pending_proration_conflicts(app, make_org, clock):
    org_id = make_org("basic")
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        engine.generate_proration_invoice(_sub(org_id), Plan.query.filter_by(tier="professional").one())
        with pytest.raises(ConflictError):
            engine.generate_proration_invoice(_sub(org_id), Plan.query.filter_by(tier="business").one())
        assert Invoice.query.count() == 1


def test_pending_addon_invoices_do_not_block_new_purchases(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        first = engine.generate_addon_invoice(org_id, "extra_ip", 1)
        second = engine.generate_addon_invoice(org_id, "extra_ip", 2)
        assert first.id != second.id
        assert [i.status for i in Invoice.query.all()] == ["pending", "pending"]


def test_find_pending_invoice_returns_earliest_due(app, make_org, clock):
    org_id = make_org()
    with app.app_context():
        db.session.add(Invoice(organization_id=org_id, kind="manual", amount=10, due_date=date(2026, 5, 1)))
        db.session.add(Invoice(organization_id=org_id, kind="renewal", amount=20, due_date=date(2026, 4, 1)))
        db.session.add(Invoice(organization_id=org_id, kind="manual", amount=30, due_date=date(2026, 3, 1),
                               status="paid"))
        db.session.commit()
        engine = InvoiceEngine(clock=clock)
        assert engine.find_pending_invoice(org_id).amount == 20
        assert engine.find_pending_invoice(org_id, kind="manual").amount == 10


# ---- payment links ----------------------------------------------------------------
def test_payment_link_is_stored_and_reused(app, make_org, clock, gateway):
    org_id = make_org()
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        invoice = engine.generate_addon_invoice(org_id, "extra_ip", 1)
        linked = engine.create_payment_link(invoice.id)
        assert linked.payment_url == f"https://pay.example.test/{invoice.id}"
        assert linked.external_payment_id == f"pay_{invoice.id}"

        engine.create_payment_link(invoice.id)
        assert gateway.calls == [invoice.id]


def test_payment_link_timeout_leaves_invoice_pending(app, make_org, clock, gateway):
    org_id = make_org()
    with app.app_context():
        engine = InvoiceEngine(clock=clock)
        invoice = engine.generate_addon_invoice(org_id, "extra_ip", 1)
        gateway.error = ExternalServiceError("Payment gateway did not respond; try again.")
        with pytest.raises(ExternalServiceError) as exc:
            engine.create_payment_link(invoice.id)
        assert exc.value.retryable is True

        db.session.expire_all()
        row = db.session.get(Invoice, invoice.id)
        assert row.status == "pending"
        assert row.payment_url is None
        assert row.external_payment_id is None


def test_payment_link_for_paid_or_missing_invoice(app, make_org, clock, gateway):
    org_id = make_org()
    with app.app_context():
        paid = Invoice(organization_id=org_id, kind="manual", amount=10, due_date=date(2026, 3, 1), status="paid")
        db.session.add(paid)
        db.session.commit()
        engine = InvoiceEngine(clock=clock)
        with pytest.raises(ConflictError):
            engine.create_payment_link(paid.id)
        with pytest.raises(NotFoundError):
            engine.create_payment_link(424242)
        assert gateway.calls == []


# ---- Stripe adapter -----------------------------------------------------------------
class _FakeSessions:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create(self, params=None, options=None):
        self.calls.append((params, options))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")


def _fake_client(sessions):
    return lambda *args, **kwargs: SimpleNamespace(checkout=SimpleNamespace(sessions=sessions))


def test_stripe_gateway_builds_checkout_session(app, make_org, monkeypatch):
    org_id = make_org()
    sessions = _FakeSessions()
    monkeypatch.setattr(payments, "StripeClient", _fake_client(sessions))
    with app.app_context():
        invoice = Invoice(organization_id=org_id, kind="addon", amount=1500, due_date=date(2026, 3, 22))
        db.session.add(invoice)
        db.session.commit()
        link = StripeCheckoutGateway(secret_key="sk_test_x").create_payment(invoice, payer_email="a@b.test")

        assert link.payment_id == "cs_test_1"
        params, options = sessions.calls[0]
        assert params["mode"] == "payment"
        assert params["metadata"]["invoice_id"] == str(invoice.id)
        assert params["line_items"][0]["price_data"]["unit_amount"] == 1500
        assert params["customer_email"] == "a@b.test"
        assert options["idempotency_key"].startswith("invoice-payment:")


def test_stripe_gateway_maps_connection_errors(app, make_org, monkeypatch):
    org_id = make_org()
    monkeypatch.setattr(payments, "StripeClient",
                        _fake_client(_FakeSessions(stripe.APIConnectionError("timed out"))))
    with app.app_context():
        invoice = Invoice(organization_id=org_id, kind="addon", amount=1500, due_date=date(2026, 3, 22))
        db.session.add(invoice)
        db.session.commit()
        with pytest.raises(ExternalServiceError):
            StripeCheckoutGateway(secret_key="sk_test_x").create_payment(invoice)
        with pytest.raises(ExternalServiceError):
            StripeCheckoutGateway(secret_key=None).create_payment(invoice)


# ---- hosted checkout adapter --------------------------------------------------------
class _FakeHttp:
    def __init__(self, status=200, body=None, error=None):
        self.status = status
        self.body = {"code": "pay_hosted_1", "url": "https://pay.example.test/h/1"} if body is None else body
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return SimpleNamespace(status_code=self.status, json=lambda: self.body)


def _hosted(http):
    return HostedCheckoutGateway(url="https://gateway.example.test/payments", api_key="key_x",
                                 store_code="store_1", timeout=4, http=http)


def _stored_invoice(org_id, amount=1500):
    invoice = Invoice(organization_id=org_id, kind="addon", amount=amount, due_date=date(2026, 3, 22))
    db.session.add(invoice)
    db.session.commit()
    return invoice


def test_hosted_gateway_sends_postback_with_invoice_id(app, make_org):
    org_id = make_org()
    http = _FakeHttp()
    with app.app_context():
        invoice = _stored_invoice(org_id)
        link = _hosted(http).create_payment(invoice, payer_email="a@b.test")

        assert link.payment_id == "pay_hosted_1"
        assert link.url == "https://pay.example.test/h/1"
        call = http.calls[0]
        assert call["url"] == "https://gateway.example.test/payments"
        assert call["timeout"] == 4
        assert call["json"]["postback_url"] == f"http://example.test/webhooks/payments?invoice_id={invoice.id}"
        assert call["json"]["external_code"] == str(invoice.id)
        assert call["json"]["payment_amount"] == 1500
        assert call["json"]["store_code"] == "store_1"
        assert call["json"]["customer"] == {"email": "a@b.test"}
        assert call["headers"]["Authorization"] == "key_x"
        assert call["headers"]["Idempotency-Key"].startswith("invoice-payment:")


def test_hosted_gateway_retry_sends_same_idempotency_key(app, make_org):
    org_id = make_org()
    http = _FakeHttp()
    with app.app_context():
        invoice = _stored_invoice(org_id)
        _hosted(http).create_payment(invoice)
        _hosted(http).create_payment(invoice)
        first, second = http.calls
        assert first["headers"]["Idempotency-Key"] == second["headers"]["Idempotency-Key"]


def test_payment_link_through_hosted_gateway_is_stored(app, make_org, clock):
    org_id = make_org()
    http = _FakeHttp()
    with app.app_context():
        invoice_id = _stored_invoice(org_id).id
        invoice = InvoiceEngine(gateway=_hosted(http), clock=clock).create_payment_link(invoice_id)
        assert invoice.external_payment_id == "pay_hosted_1"
        assert invoice.payment_url == "https://pay.example.test/h/1"


@pytest.mark.parametrize("http", [
    _FakeHttp(error=requests.Timeout("read timed out")),
    _FakeHttp(error=requests.ConnectionError("refused")),
    _FakeHttp(status=503),
    _FakeHttp(status=422),
    _FakeHttp(body={"code": "pay_hosted_1"}),
])
def test_hosted_gateway_failures_raise_external_service_error(app, make_org, http):
    org_id = make_org()
    with app.app_context():
        invoice = _stored_invoice(org_id)
        with pytest.raises(ExternalServiceError):
            _hosted(http).create_payment(invoice)


def test_hosted_gateway_requires_configuration(app, make_org, monkeypatch):
    org_id = make_org()
    monkeypatch.setitem(app.config, "PAYMENT_GATEWAY_URL", None)
    monkeypatch.setitem(app.config, "PAYMENT_GATEWAY_API_KEY", None)
    with app.app_context():
        invoice = _stored_invoice(org_id)
        with pytest.raises(ExternalServiceError):
            HostedCheckoutGateway(http=_FakeHttp()).create_payment(invoice)


def test_get_gateway_follows_payment_gateway_setting(app, monkeypatch):
    with app.app_context():
        monkeypatch.setitem(app.config, "PAYMENT_GATEWAY", "hosted")
        assert isinstance(payments.get_gateway(), HostedCheckoutGateway)
        monkeypatch.setitem(app.config, "PAYMENT_GATEWAY", "stripe")
        assert isinstance(payments.get_gateway(), StripeCheckoutGateway)
