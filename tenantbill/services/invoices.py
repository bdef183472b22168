import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tenantbill.errors import ConflictError, NotFoundError, ValidationError
from tenantbill.models import Invoice, Plan, Subscription
from tenantbill.models.addon import ADDON_TYPES, ADDON_UNIT_PRICES
from tenantbill.models.invoice import (
    INVOICE_PENDING,
    KIND_ADDON,
    KIND_PRORATION,
    KIND_RENEWAL,
    OPEN_INVOICE_STATUSES,
    addon_description,
    renewal_key_for,
)
from tenantbill.observability import log_event
from tenantbill.utils.clock import first_day_of_next_month, local_today, to_local, utcnow
from .ledger import LedgerStore
from .payments import PaymentGateway, get_gateway

logger = logging.getLogger("tenantbill.invoices")


def prorate(old_price: int, new_price: int, days_remaining: int, days_per_month: int = 30) -> int:
    """(new/30 - old/30) x remaining days, rounded half-up to whole minor units."""
    amount = (Decimal(new_price) - Decimal(old_price)) * Decimal(days_remaining) / Decimal(days_per_month)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class InvoiceEngine:
    def __init__(self, ledger: Optional[LedgerStore] = None, gateway: Optional[PaymentGateway] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger or LedgerStore()
        self._gateway = gateway
        self.clock = clock

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    # ---- renewal ----------------------------------------------------------
    def renewal_amount(self, subscription: Subscription) -> int:
        plan = self.ledger.require_plan(subscription.plan_id)
        return plan.price + self.ledger.addon_charges(subscription.organization_id)

    def generate_renewal_invoice(self, subscription: Subscription) -> Optional[Invoice]:
        """
        Next month's invoice, due on the 1st of the following local month.
        At most one per (organization, due date): a second call finds the first
        invoice and returns None.
        """
        org_id = subscription.organization_id
        due = self.due_date_for_renewal(org_id)
        key = renewal_key_for(org_id, due)

        try:
            with self.ledger.transaction():
                if self.ledger.find_renewal_invoice(key) is not None:
                    log_event(logger, "renewal_invoice_skipped", organization_id=org_id,
                              due_date=due, reason="exists")
                    return None
                invoice = self.ledger.add_invoice(Invoice(
                    organization_id=org_id,
                    subscription_id=subscription.id,
                    kind=KIND_RENEWAL,
                    amount=self.renewal_amount(subscription),
                    status=INVOICE_PENDING,
                    due_date=due,
                    renewal_key=key,
                ))
        except IntegrityError:
            # A concurrent run inserted the same renewal first
            log_event(logger, "renewal_invoice_skipped", organization_id=org_id, due_date=due, reason="race")
            return None

        log_event(logger, "renewal_invoice_created", organization_id=org_id,
                  invoice_id=invoice.id, amount=invoice.amount, due_date=due)
        return invoice

    # ---- one-off charges --------------------------------------------------
    def find_pending_invoice(self, org_id: int, kind: Optional[str] = None) -> Optional[Invoice]:
        return self.ledger.find_pending_invoice(org_id, kind=kind)

    def _charge(self, org_id: int, subscription_id: Optional[int], kind: str, amount: int,
                due_in_days: int, zone, description: Optional[str] = None, single_pending: bool = True,
                request_key: Optional[str] = None) -> Invoice:
        """
        Stage a one-off invoice in the current transaction.
        With single_pending, an identical pending charge of the same kind is
        reused (a retry) and a different one blocks.
        """
        if single_pending:
            pending = self.ledger.find_pending_invoice(org_id, kind=kind)
            if pending is not None:
                if pending.amount != amount:
                    raise ConflictError(
                        f"Invoice #{pending.id} ({pending.amount}) is still pending; "
                        f"pay or cancel it before a new {kind} charge.",
                        invoice_id=pending.id,
                    )
                log_event(logger, "invoice_reused", organization_id=org_id, invoice_id=pending.id, kind=kind)
                return pending

        due = local_today(zone, self.clock()) + timedelta(days=due_in_days)
        invoice = self.ledger.add_invoice(Invoice(
            organization_id=org_id,
            subscription_id=subscription_id,
            kind=kind,
            amount=amount,
            status=INVOICE_PENDING,
            due_date=due,
            description=description,
            request_key=request_key,
        ))
        log_event(logger, "invoice_created", organization_id=org_id, invoice_id=invoice.id,
                  kind=kind, amount=amount, due_date=due)
        return invoice

    def generate_proration_invoice(self, subscription: Subscription, new_plan: Plan) -> Optional[Invoice]:
        """Charge the price difference for the rest of the period on an upgrade; None otherwise."""
        current = self.ledger.require_plan(subscription.plan_id)
        if new_plan.price <= current.price:
            return None

        org = self.ledger.require_organization(subscription.organization_id)
        zone = self.ledger.zone_for(org)
        today = local_today(zone, self.clock())
        period_end = to_local(subscription.current_period_end, zone).date()
        days_remaining = max((period_end - today).days, 1)
        amount = prorate(
            current.price, new_plan.price, days_remaining,
            current_app.config.get("PRORATION_DAYS_PER_MONTH", 30),
        )
        if amount <= 0:
            return None

        with self.ledger.transaction():
            return self._charge(
                org.id, subscription.id, KIND_PRORATION, amount,
                current_app.config.get("PRORATION_INVOICE_DUE_DAYS", 7), zone,
                description=f"Upgrade from {current.name} to {new_plan.name}",
            )

    def generate_addon_invoice(self, org_id: int, addon_type: str, quantity: int,
                               request_key: Optional[str] = None) -> Invoice:
        """
        Every purchase is its own invoice; pending add-on invoices do not block
        new ones. request_key (already scoped with request_key_for) is stored
        unique, so a replayed purchase cannot insert a second invoice.
        """
        if addon_type not in ADDON_TYPES:
            raise ValidationError(f"Unknown add-on type '{addon_type}'.", addon_type=addon_type)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.", quantity=quantity)

        org = self.ledger.require_organization(org_id)
        sub = self.ledger.get_subscription(org_id)
        amount = ADDON_UNIT_PRICES[addon_type] * quantity
        with self.ledger.transaction():
            return self._charge(
                org_id, sub.id if sub else None, KIND_ADDON, amount,
                current_app.config.get("ADDON_INVOICE_DUE_DAYS", 7), self.ledger.zone_for(org),
                description=addon_description(addon_type, quantity), single_pending=False,
                request_key=request_key,
            )

    # ---- payment links ----------------------------------------------------
    def create_payment_link(self, invoice_id: int, payer_email: Optional[str] = None) -> Invoice:
        """
        Ask the gateway for a payment URL. On gateway failure the invoice is left
        untouched (still pending, no URL) and ExternalServiceError propagates.
        """
        invoice = self.ledger.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found.", invoice_id=invoice_id)
        if invoice.status not in OPEN_INVOICE_STATUSES:
            raise ConflictError(f"Invoice #{invoice.id} is {invoice.status} and cannot be paid.",
                                invoice_id=invoice.id)
        if invoice.payment_url:
            return invoice

        # No transaction is open across the network call
        link = self.gateway.create_payment(invoice, payer_email=payer_email)
        with self.ledger.transaction():
            invoice = self.ledger.get_invoice(invoice_id, lock=True)
            if not invoice.payment_url:
                invoice.external_payment_id = link.payment_id
                invoice.payment_url = link.url
        return invoice

    def due_date_for_renewal(self, org_id: int) -> date:
        """
        First day of the month after today's local month. This deliberately
        follows the calendar month the monthly job runs in rather than the
        month the subscription's current period ends in; the two differ when
        a 30-day period ends in a later month. Renewals are therefore one per
        calendar month per organization, and renewal_key enforces that.
        """
        org = self.ledger.require_organization(org_id)
        return first_day_of_next_month(local_today(self.ledger.zone_for(org), self.clock()))
