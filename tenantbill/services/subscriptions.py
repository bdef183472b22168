"""
Subscription lifecycle actions that sit on top of the invoice engine:
starting a subscription, plan changes, cancellation, add-on purchase and
cancellation, organization shutdown and the billing summary.

Every function takes an optional ``actor_id``; None means a system caller.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tenantbill.errors import ConflictError, NotFoundError, ValidationError
from tenantbill.models import Subscription
from tenantbill.models.addon import ADDON_TYPES, ADDON_UNIT_PRICES
from tenantbill.models.invoice import KIND_ADDON, addon_description, request_key_for
from tenantbill.models.subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_TRIALING,
)
from tenantbill.observability import log_event
from tenantbill.utils.clock import start_of_month, utcnow
from .authorization import CAP_BILLING_MANAGE, CAP_ORG_SHUTDOWN, require_capability
from .invoices import InvoiceEngine
from .ledger import LedgerStore
from .notifier import NotificationDispatcher, NotificationEvent

logger = logging.getLogger("tenantbill.subscriptions")


def _days(key: str, default: int) -> timedelta:
    return timedelta(days=current_app.config.get(key, default))


def start_subscription(org_id: int, plan_id: int, *, ledger: Optional[LedgerStore] = None,
                       clock: Callable[[], datetime] = utcnow) -> Subscription:
    ledger = ledger or LedgerStore()
    now = clock()
    try:
        with ledger.transaction():
            ledger.require_organization(org_id)
            plan = ledger.require_plan(plan_id)
            if ledger.get_subscription(org_id) is not None:
                raise ConflictError("Organization already has a subscription.", organization_id=org_id)
            if plan.trial_eligible:
                trial_end = now + _days("TRIAL_PERIOD_DAYS", 7)
                sub = Subscription(
                    organization_id=org_id, plan_id=plan.id, status=STATUS_TRIALING,
                    started_at=now, current_period_end=trial_end, trial_ends_at=trial_end,
                )
            else:
                sub = Subscription(
                    organization_id=org_id, plan_id=plan.id, status=STATUS_ACTIVE,
                    started_at=now, current_period_end=now + _days("BILLING_PERIOD_DAYS", 30),
                )
            ledger.add_subscription(sub)
    except IntegrityError:
        raise ConflictError("Organization already has a subscription.", organization_id=org_id)

    log_event(logger, "subscription_started", organization_id=org_id, plan_id=plan_id, status=sub.status)
    return sub


def change_plan(org_id: int, plan_id: int, actor_id: Optional[int] = None, *,
                ledger: Optional[LedgerStore] = None, engine: Optional[InvoiceEngine] = None,
                dispatcher: Optional[NotificationDispatcher] = None,
                clock: Callable[[], datetime] = utcnow) -> Dict[str, Any]:
    """Switch plans; an upgrade first raises a proration invoice in the same transaction."""
    ledger = ledger or LedgerStore()
    engine = engine or InvoiceEngine(ledger, clock=clock)
    dispatcher = dispatcher or NotificationDispatcher(ledger=ledger, clock=clock)

    with ledger.transaction():
        require_capability(org_id, actor_id, CAP_BILLING_MANAGE)
        sub = ledger.require_subscription(org_id, lock=True)
        if sub.status != STATUS_ACTIVE:
            raise ConflictError("Plan changes require an active subscription.", status=sub.status)
        new_plan = ledger.require_plan(plan_id)
        if new_plan.id == sub.plan_id:
            raise ValidationError("Organization is already on this plan.", plan_id=plan_id)
        if new_plan.trial_eligible:
            raise ValidationError("Cannot switch to a trial plan.", plan_id=plan_id)

        old_plan_id = sub.plan_id
        invoice = engine.generate_proration_invoice(sub, new_plan)
        sub.plan_id = new_plan.id
        result = {
            "organization_id": org_id,
            "old_plan_id": old_plan_id,
            "new_plan_id": new_plan.id,
            "proration_invoice_id": invoice.id if invoice else None,
            "proration_amount": invoice.amount if invoice else 0,
        }

    log_event(logger, "plan_changed", **result)
    dispatcher.dispatch(NotificationEvent.PLAN_CHANGED, org_id, {"plan_name": new_plan.name})
    if invoice is not None:
        dispatcher.dispatch(NotificationEvent.PURCHASE_CREATED, org_id,
                            {"invoice_id": invoice.id, "due_date": invoice.due_date, "amount": invoice.amount})
    return result


def cancel_subscription(org_id: int, actor_id: Optional[int] = None, *,
                        ledger: Optional[LedgerStore] = None,
                        clock: Callable[[], datetime] = utcnow) -> Subscription:
    ledger = ledger or LedgerStore()
    with ledger.transaction():
        require_capability(org_id, actor_id, CAP_BILLING_MANAGE)
        sub = ledger.require_subscription(org_id, lock=True)
        if sub.status == STATUS_CANCELED:
            raise ConflictError("Subscription is already canceled.")
        before = sub.status
        sub.status = STATUS_CANCELED
        sub.canceled_at = clock()
    log_event(logger, "subscription_transition", organization_id=org_id,
              from_status=before, to_status=STATUS_CANCELED, reason="canceled_by_user")
    return sub


def purchase_addon(org_id: int, addon_type: str, quantity: int = 1, actor_id: Optional[int] = None, *,
                   request_key: Optional[str] = None,
                   ledger: Optional[LedgerStore] = None, engine: Optional[InvoiceEngine] = None,
                   dispatcher: Optional[NotificationDispatcher] = None,
                   clock: Callable[[], datetime] = utcnow) -> Dict[str, Any]:
    """
    Add units to the organization's add-on of this type and raise an invoice for them.
    Every call is a new purchase. Callers that may retry pass request_key: a repeat
    with the same key returns the first purchase and adds nothing.
    """
    if addon_type not in ADDON_TYPES:
        raise ValidationError(f"Unknown add-on type '{addon_type}'.", addon_type=addon_type)
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1.", quantity=quantity)

    ledger = ledger or LedgerStore()
    engine = engine or InvoiceEngine(ledger, clock=clock)
    dispatcher = dispatcher or NotificationDispatcher(ledger=ledger, clock=clock)
    scoped_key = request_key_for(org_id, request_key) if request_key else None

    try:
        with ledger.transaction():
            require_capability(org_id, actor_id, CAP_BILLING_MANAGE)
            sub = ledger.require_subscription(org_id, lock=True)
            if sub.status == STATUS_CANCELED:
                raise ConflictError("Add-ons require a live subscription.", status=sub.status)

            if scoped_key:
                earlier = ledger.find_invoice_by_request_key(scoped_key)
                if earlier is not None:
                    return _replayed_purchase(ledger, earlier, org_id, addon_type, quantity)

            invoice = engine.generate_addon_invoice(org_id, addon_type, quantity, request_key=scoped_key)
            addon = ledger.upsert_addon(org_id, addon_type, quantity, ADDON_UNIT_PRICES[addon_type])
            result = {
                "organization_id": org_id,
                "addon_type": addon_type,
                "addon_amount": addon.amount,
                "invoice_id": invoice.id,
                "invoice_amount": invoice.amount,
                "created": True,
            }
    except IntegrityError:
        # A concurrent request with the same key committed first
        earlier = ledger.find_invoice_by_request_key(scoped_key) if scoped_key else None
        if earlier is None:
            raise
        return _replayed_purchase(ledger, earlier, org_id, addon_type, quantity)

    log_event(logger, "addon_purchased", **result)
    dispatcher.dispatch(NotificationEvent.PURCHASE_CREATED, org_id,
                        {"invoice_id": invoice.id, "due_date": invoice.due_date, "amount": invoice.amount},
                        dedupe=False)
    return result


def _replayed_purchase(ledger: LedgerStore, invoice, org_id: int, addon_type: str,
                       quantity: int) -> Dict[str, Any]:
    if invoice.kind != KIND_ADDON or invoice.description != addon_description(addon_type, quantity):
        raise ConflictError("This request key was already used for a different purchase.",
                            invoice_id=invoice.id)
    addon = ledger.get_addon(org_id, addon_type)
    result = {
        "organization_id": org_id,
        "addon_type": addon_type,
        "addon_amount": addon.amount if addon else 0,
        "invoice_id": invoice.id,
        "invoice_amount": invoice.amount,
        "created": False,
    }
    log_event(logger, "addon_purchase_replayed", **result)
    return result


def cancel_addon(org_id: int, addon_id: int, actor_id: Optional[int] = None, *,
                 ledger: Optional[LedgerStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None) -> None:
    ledger = ledger or LedgerStore()
    dispatcher = dispatcher or NotificationDispatcher(ledger=ledger)
    with ledger.transaction():
        require_capability(org_id, actor_id, CAP_BILLING_MANAGE)
        ledger.require_subscription(org_id, lock=True)
        addon = ledger.get_addon_by_id(org_id, addon_id)
        if addon is None:
            raise NotFoundError("Add-on not found.", addon_id=addon_id)
        addon_type = addon.type
        ledger.delete_addon(addon)

    log_event(logger, "addon_canceled", organization_id=org_id, addon_id=addon_id, addon_type=addon_type)
    dispatcher.dispatch(NotificationEvent.ADDON_CANCELED, org_id, {"addon_type": addon_type})


def shutdown_organization(org_id: int, actor_id: Optional[int] = None, *,
                          ledger: Optional[LedgerStore] = None) -> None:
    """Delete an organization and everything it owns. Refused while it is still paying."""
    ledger = ledger or LedgerStore()
    with ledger.transaction():
        require_capability(org_id, actor_id, CAP_ORG_SHUTDOWN)
        org = ledger.require_organization(org_id)
        sub = ledger.get_subscription(org_id, lock=True)
        if sub is not None and sub.status == STATUS_ACTIVE:
            raise ConflictError("Cancel the active subscription before shutting the organization down.",
                                organization_id=org_id)
        ledger.delete_organization(org)
    log_event(logger, "organization_shutdown", organization_id=org_id, actor_id=actor_id)


def billing_summary(org_id: int, *, ledger: Optional[LedgerStore] = None,
                    clock: Callable[[], datetime] = utcnow) -> Dict[str, Any]:
    ledger = ledger or LedgerStore()
    org = ledger.require_organization(org_id)
    now = clock()
    sub = ledger.get_subscription(org_id)
    plan = ledger.get_plan(sub.plan_id) if sub else None
    snap = ledger.snapshot(org_id)
    used = ledger.count_usage_since(org_id, start_of_month(ledger.zone_for(org), now))
    return {
        "organization": {"id": org.id, "name": org.name},
        "subscription": None if sub is None else {
            "id": sub.id,
            "status": sub.status,
            "started_at": sub.started_at.isoformat(),
            "current_period_end": sub.current_period_end.isoformat(),
            "trial_ends_at": sub.trial_ends_at.isoformat() if sub.trial_ends_at else None,
            "next_renewal_due": InvoiceEngine(ledger, clock=clock).due_date_for_renewal(org_id).isoformat(),
        },
        "plan": None if plan is None else {
            "id": plan.id, "tier": plan.tier, "name": plan.name, "price": plan.price,
            "max_ips": plan.max_ips, "max_requests": plan.max_requests,
        },
        "addons": [
            {"id": a.id, "type": a.type, "amount": a.amount, "unit_price": a.unit_price}
            for a in ledger.list_addons(org_id)
        ],
        "ips": [
            {"id": ip.id, "address": ip.address, "name": ip.name,
             "last_changed_at": ip.last_changed_at.isoformat()}
            for ip in ledger.list_ips(org_id)
        ],
        "invoices": [
            {
                "id": inv.id, "kind": inv.kind, "amount": inv.amount, "status": inv.status,
                "due_date": inv.due_date.isoformat(),
                "paid_at": inv.paid_at.isoformat() if inv.paid_at else None,
                "payment_url": inv.payment_url,
            }
            for inv in ledger.invoices_for(org_id)
        ],
        "usage": {
            "used": used,
            "limit": snap.request_allowance if snap else 0,
            "ips": ledger.count_ips(org_id),
            "ip_limit": snap.ip_allowance if snap else 0,
        },
    }
