"""
Billing notifications.

`Notifier` delivers one message; `NotificationDispatcher` is what services call.
It claims a (organization, local day, kind) row before delivering, so a job
re-run on the same day never notifies twice, and it never lets a delivery
failure escape into billing logic. It commits on its own, so inside an open
ledger transaction it defers delivery until that transaction commits.
"""
import enum
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tenantbill.models import NotificationLog
from tenantbill.observability import log_event
from tenantbill.utils.clock import local_today, utcnow
from .email import absolute_url, send_email
from .ledger import LedgerStore

logger = logging.getLogger("tenantbill.notifier")

NOTIFIER_EXTENSION_KEY = "tenantbill.notifier"


class NotificationEvent(str, enum.Enum):
    USAGE_LIMIT_REACHED = "usage.limit-reached"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PURCHASE_CREATED = "purchase.created"
    SUBSCRIPTION_EXPIRING = "subscription.expiring"
    SUBSCRIPTION_FINAL_WARNING = "subscription.final-warning"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_OVERDUE = "subscription.overdue"
    SUBSCRIPTION_CANCELED_NONPAYMENT = "subscription.canceled-nonpayment"
    PLAN_CHANGED = "plan.changed"
    ADDON_CANCELED = "addon.canceled"


# (subject, headline) per event; headline is formatted with the event context
MESSAGES = {
    NotificationEvent.USAGE_LIMIT_REACHED: (
        "Monthly request limit reached",
        "Your organization has used all {limit} requests included this month.",
    ),
    NotificationEvent.PAYMENT_CONFIRMED: (
        "Payment confirmed",
        "We received your payment for invoice #{invoice_id}.",
    ),
    NotificationEvent.PURCHASE_CREATED: (
        "New invoice available",
        "Invoice #{invoice_id} was issued and is due on {due_date}.",
    ),
    NotificationEvent.SUBSCRIPTION_EXPIRING: (
        "Your subscription expires soon",
        "Your subscription ends in {days_left} days.",
    ),
    NotificationEvent.SUBSCRIPTION_FINAL_WARNING: (
        "Your subscription expires tomorrow",
        "Your subscription ends tomorrow. Renew now to keep access.",
    ),
    NotificationEvent.SUBSCRIPTION_EXPIRED: (
        "Your subscription has expired",
        "Your subscription period ended and access has been suspended.",
    ),
    NotificationEvent.SUBSCRIPTION_OVERDUE: (
        "Payment overdue",
        "Invoice #{invoice_id} is past due. Pay it to avoid cancellation.",
    ),
    NotificationEvent.SUBSCRIPTION_CANCELED_NONPAYMENT: (
        "Subscription canceled for non-payment",
        "Your subscription was canceled because invoice #{invoice_id} was not paid.",
    ),
    NotificationEvent.PLAN_CHANGED: (
        "Plan changed",
        "Your organization is now on the {plan_name} plan.",
    ),
    NotificationEvent.ADDON_CANCELED: (
        "Add-on canceled",
        "The {addon_type} add-on was removed from your organization.",
    ),
}


class Notifier:
    def notify(self, event: NotificationEvent, organization_id: int, context: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Records the notification in the log only (development, tests)."""

    def notify(self, event, organization_id, context):
        log_event(logger, "notification", kind=event.value, organization_id=organization_id, **context)


class MailNotifier(Notifier):
    """Mails the organization owner through Flask-Mail."""

    template = "billing_notice"

    def __init__(self, ledger: Optional[LedgerStore] = None):
        self.ledger = ledger or LedgerStore()

    def notify(self, event, organization_id, context):
        to_email = self.ledger.owner_email(organization_id)
        if not to_email:
            log_event(logger, "notification_skipped", level=logging.WARNING,
                      kind=event.value, organization_id=organization_id, reason="no_owner_email")
            return
        subject, headline = MESSAGES[event]
        try:
            headline = headline.format(**context)
        except (KeyError, IndexError):
            pass
        org = self.ledger.get_organization(organization_id)
        ok = send_email(
            to_email=to_email,
            subject=f"{current_app.config.get('PRODUCT_NAME', 'TenantBill')}: {subject}",
            template=self.template,
            context={
                "product_name": current_app.config.get("PRODUCT_NAME", "TenantBill"),
                "organization_name": org.name if org else "",
                "headline": headline,
                "event": event.value,
                "details": context,
                "action_url": context.get("payment_url") or absolute_url("billing"),
            },
        )
        if not ok:
            raise RuntimeError(f"mail delivery failed for {event.value}")


def get_notifier() -> Notifier:
    """App-registered notifier first, then NOTIFIER_BACKEND ("mail" or "log")."""
    notifier = current_app.extensions.get(NOTIFIER_EXTENSION_KEY)
    if notifier is not None:
        return notifier
    if current_app.config.get("NOTIFIER_BACKEND", "mail") == "log":
        return LogNotifier()
    return MailNotifier()


class NotificationDispatcher:
    def __init__(self, notifier: Optional[Notifier] = None, ledger: Optional[LedgerStore] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._notifier = notifier
        self.ledger = ledger or LedgerStore()
        self.clock = clock

    @property
    def notifier(self) -> Notifier:
        return self._notifier or get_notifier()

    def dispatch(self, event: NotificationEvent, organization_id: int,
                 context: Optional[Dict[str, Any]] = None, dedupe: bool = True) -> bool:
        """
        Deliver once per (organization, local day, kind). Returns True when a message went out.
        Inside an open ledger transaction delivery waits for that transaction to
        commit (and is dropped if it rolls back); the call then returns False.
        """
        context = dict(context or {})
        if self.ledger.in_transaction():
            self.ledger.after_commit(lambda: self._deliver(event, organization_id, context, dedupe))
            return False
        return self._deliver(event, organization_id, context, dedupe)

    def _deliver(self, event: NotificationEvent, organization_id: int,
                 context: Dict[str, Any], dedupe: bool) -> bool:
        session = self.ledger.session
        entry = None
        entry_id = None
        try:
            if dedupe:
                org = self.ledger.require_organization(organization_id)
                day = local_today(self.ledger.zone_for(org), self.clock())
                entry = NotificationLog(
                    organization_id=organization_id, kind=event.value, day=day, status="queued",
                    meta={k: str(v) for k, v in context.items()},
                )
                session.add(entry)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    log_event(logger, "notification_deduped", level=logging.DEBUG,
                              kind=event.value, organization_id=organization_id, day=day)
                    return False
                entry_id = entry.id

            self.notifier.notify(event, organization_id, context)
            if entry is not None:
                entry.status = "sent"
                session.commit()
            return True
        except Exception:
            session.rollback()
            logger.exception("notification %s for org %s failed", event.value, organization_id)
            if entry_id is not None:
                self._mark_failed(entry_id)
            return False

    def _mark_failed(self, entry_id: int) -> None:
        session = self.ledger.session
        try:
            entry = session.get(NotificationLog, entry_id)
            if entry is not None:
                entry.status = "failed"
                session.commit()
        except Exception:
            session.rollback()
            logger.exception("could not mark notification %s as failed", entry_id)
