"""
Daily subscription sweep.

Per organization, in its own transaction:
  1. past-due pending invoices become overdue; the subscription follows
     (overdue, then canceled once the oldest debt is past the grace window);
  2. an overdue subscription with nothing past due returns to active;
  3. the period countdown sends the expiring / final-warning notices and
     cancels subscriptions whose period has ended.
Notices go out after the organization's transaction commits.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from flask import current_app

from tenantbill.models.invoice import INVOICE_OVERDUE, INVOICE_PENDING
from tenantbill.models.subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_OVERDUE,
    STATUS_TRIALING,
)
from tenantbill.observability import log_event
from tenantbill.services.ledger import LedgerStore
from tenantbill.services.notifier import NotificationDispatcher, NotificationEvent
from tenantbill.utils.clock import days_until, local_today, utcnow
from . import JobReport

logger = logging.getLogger("tenantbill.jobs.expiry_sweep")

Notice = Tuple[NotificationEvent, dict]


def run_expiry_sweep(ledger: Optional[LedgerStore] = None, dispatcher: Optional[NotificationDispatcher] = None,
                     clock: Callable[[], datetime] = utcnow) -> JobReport:
    ledger = ledger or LedgerStore()
    dispatcher = dispatcher or NotificationDispatcher(ledger=ledger, clock=clock)
    report = JobReport(name="expiry-sweep")
    now = clock()

    for org_id in ledger.subscription_orgs_with_status((STATUS_ACTIVE, STATUS_TRIALING, STATUS_OVERDUE)):
        report.processed += 1
        try:
            changed, notices = _sweep_organization(ledger, org_id, now)
        except Exception as exc:
            logger.exception("expiry sweep failed for org %s", org_id)
            report.add_error(org_id, exc)
            continue
        if changed:
            report.changed += 1
        for kind, context in notices:
            dispatcher.dispatch(kind, org_id, context)

    return report.finish()


def _transition(sub, status: str, reason: str, now: datetime) -> None:
    log_event(logger, "subscription_transition", organization_id=sub.organization_id,
              from_status=sub.status, to_status=status, reason=reason)
    sub.status = status
    if status == STATUS_CANCELED:
        sub.canceled_at = now


def _sweep_organization(ledger: LedgerStore, org_id: int, now: datetime) -> Tuple[bool, List[Notice]]:
    cfg = current_app.config
    notices: List[Notice] = []
    with ledger.transaction():
        sub = ledger.get_subscription(org_id, lock=True)
        if sub is None or sub.status == STATUS_CANCELED:
            return False, notices
        before = sub.status
        zone = ledger.zone_for(ledger.require_organization(org_id))
        today = local_today(zone, now)

        past_due = ledger.open_invoices_due_before(org_id, today)
        for inv in past_due:
            if inv.status == INVOICE_PENDING:
                inv.status = INVOICE_OVERDUE
                log_event(logger, "invoice_overdue", organization_id=org_id, invoice_id=inv.id,
                          due_date=inv.due_date)

        if past_due:
            oldest = past_due[0]
            context = {"invoice_id": oldest.id, "due_date": oldest.due_date, "amount": oldest.amount}
            if (today - oldest.due_date).days > cfg.get("INVOICE_OVERDUE_GRACE_DAYS", 0):
                _transition(sub, STATUS_CANCELED, "nonpayment", now)
                notices.append((NotificationEvent.SUBSCRIPTION_CANCELED_NONPAYMENT, context))
                return True, notices
            if sub.status != STATUS_OVERDUE:
                _transition(sub, STATUS_OVERDUE, "invoice_past_due", now)
                notices.append((NotificationEvent.SUBSCRIPTION_OVERDUE, context))
        elif sub.status == STATUS_OVERDUE:
            _transition(sub, STATUS_ACTIVE, "debt_settled", now)

        days_left = days_until(sub.current_period_end, zone, now)
        period = {"days_left": days_left, "period_end": sub.current_period_end}
        if days_left <= 0:
            _transition(sub, STATUS_CANCELED, "period_ended", now)
            notices.append((NotificationEvent.SUBSCRIPTION_EXPIRED, period))
        elif days_left == cfg.get("EXPIRY_FINAL_WARNING_DAYS", 1):
            notices.append((NotificationEvent.SUBSCRIPTION_FINAL_WARNING, period))
        elif days_left == cfg.get("EXPIRY_WARNING_DAYS", 3):
            notices.append((NotificationEvent.SUBSCRIPTION_EXPIRING, period))

    return sub.status != before, notices
