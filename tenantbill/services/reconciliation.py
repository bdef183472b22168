"""
Payment reconciliation: webhook authenticity, invoice transitions and the
subscription cascade that follows a payment.

Invoice transitions accepted from the gateway:

    pending  -> paid       (approved)
    overdue  -> paid       (approved, late payment)
    pending  -> canceled   (canceled / refunded)

paid and canceled are terminal. Anything else is drift: logged and
acknowledged without a state change, so gateway retries stop.
"""
import hashlib
import hmac
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tenantbill.errors import ForbiddenError, NotFoundError, ValidationError
from tenantbill.models import BillingEventLog, Invoice
from tenantbill.models.invoice import (
    INVOICE_CANCELED,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PENDING,
    KIND_RENEWAL,
)
from tenantbill.models.plan import STANDARD_PAID_TIER, TIER_TRIAL
from tenantbill.models.subscription import STATUS_ACTIVE, STATUS_OVERDUE, STATUS_TRIALING
from tenantbill.observability import log_event
from tenantbill.utils.clock import local_today, to_utc_naive, utcnow
from .ledger import LedgerStore
from .notifier import NotificationDispatcher, NotificationEvent

logger = logging.getLogger("tenantbill.reconciliation")

GATEWAY_PENDING = "pending"
GATEWAY_APPROVED = "approved"
GATEWAY_CANCELED = "canceled"
GATEWAY_REFUNDED = "refunded"
GATEWAY_STATUSES = (GATEWAY_PENDING, GATEWAY_APPROVED, GATEWAY_CANCELED, GATEWAY_REFUNDED)

# None: decided by the session's own payment_status
STRIPE_SESSION_STATUSES = {
    "checkout.session.completed": None,
    "checkout.session.async_payment_succeeded": GATEWAY_APPROVED,
    "checkout.session.async_payment_failed": GATEWAY_CANCELED,
    "checkout.session.expired": GATEWAY_CANCELED,
}

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"


# ---- authenticity -----------------------------------------------------------
class WebhookVerifier:
    """
    Source check (allow-listed addresses) and/or HMAC-SHA256 signature over
    "<timestamp>.<raw body>". Every configured check must pass; with nothing
    configured every call is rejected.
    """

    def __init__(self, secret: Optional[str], allowed_sources: Iterable[str] = (),
                 tolerance_seconds: int = 300, now: Callable[[], float] = time.time):
        self.secret = secret or None
        self.networks = [ipaddress.ip_network(s.strip(), strict=False) for s in allowed_sources if s.strip()]
        self.tolerance = tolerance_seconds
        self.now = now

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "WebhookVerifier":
        return cls(
            secret=config.get("PAYMENT_WEBHOOK_SECRET"),
            allowed_sources=config.get("PAYMENT_WEBHOOK_ALLOWED_IPS") or (),
            tolerance_seconds=int(config.get("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", 300)),
        )

    def verify(self, raw_body: bytes, headers: Mapping[str, str], remote_addr: Optional[str]) -> None:
        if not self.secret and not self.networks:
            raise ForbiddenError("Webhook authentication is not configured.")
        if self.networks and not self._source_allowed(remote_addr):
            raise ForbiddenError("Webhook source is not allowed.", remote_addr=remote_addr)
        if self.secret:
            self._check_signature(raw_body, headers.get(TIMESTAMP_HEADER), headers.get(SIGNATURE_HEADER))

    def _source_allowed(self, remote_addr: Optional[str]) -> bool:
        try:
            addr = ipaddress.ip_address(remote_addr or "")
        except ValueError:
            return False
        return any(addr in net for net in self.networks)

    def sign(self, raw_body: bytes, timestamp: str) -> str:
        signed = timestamp.encode("utf-8") + b"." + raw_body
        return hmac.new(self.secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

    def _check_signature(self, raw_body: bytes, timestamp: Optional[str], signature: Optional[str]) -> None:
        if not timestamp or not signature:
            raise ForbiddenError("Missing webhook signature.")
        try:
            ts = int(timestamp)
        except ValueError:
            raise ForbiddenError("Malformed webhook timestamp.")
        if self.tolerance and abs(self.now() - ts) > self.tolerance:
            raise ForbiddenError("Webhook timestamp outside tolerance.")
        if not hmac.compare_digest(self.sign(raw_body, timestamp), signature.strip().lower()):
            raise ForbiddenError("Invalid webhook signature.")


# ---- payload / result -------------------------------------------------------
def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Unreadable timestamp {value!r}.")
    return to_utc_naive(parsed)


@dataclass(frozen=True)
class WebhookPayload:
    invoice_id: int
    external_id: str
    payment_status: str
    paid_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_key(self) -> str:
        return f"{self.external_id}:{self.payment_status}:{self.invoice_id}"

    @classmethod
    def parse(cls, body: Mapping[str, Any], query: Optional[Mapping[str, Any]] = None) -> "WebhookPayload":
        """The invoice id comes back on the postback URL; the body may repeat it."""
        if not isinstance(body, Mapping):
            raise ValidationError("Webhook body must be a JSON object.")
        query = query or {}
        raw_id = query.get("invoice_id") or body.get("invoice_id")
        try:
            invoice_id = int(raw_id)
        except (TypeError, ValueError):
            raise ValidationError("Missing or invalid invoice_id.")

        external_id = str(body.get("external_invoice_code") or "").strip()
        if not external_id:
            raise ValidationError("Missing external_invoice_code.")

        status = str(body.get("payment_status") or "").strip().lower()
        if status not in GATEWAY_STATUSES:
            raise ValidationError(f"Unknown payment_status '{status}'.")

        return cls(
            invoice_id=invoice_id,
            external_id=external_id,
            payment_status=status,
            paid_at=_parse_timestamp(body.get("paid_at") or body.get("updated_at")),
            raw=dict(body),
        )

    @classmethod
    def from_stripe_event(cls, event: Mapping[str, Any]) -> Optional["WebhookPayload"]:
        """Checkout session events as gateway statuses; None for event types that carry no invoice state."""
        event_type = event.get("type")
        if event_type not in STRIPE_SESSION_STATUSES:
            return None
        session = (event.get("data") or {}).get("object") or {}
        status = STRIPE_SESSION_STATUSES[event_type]
        if status is None:
            # completed: card payments are paid already, async methods settle later
            paid = session.get("payment_status") in ("paid", "no_payment_required")
            status = GATEWAY_APPROVED if paid else GATEWAY_PENDING
        metadata = session.get("metadata") or {}
        return cls.parse({
            "invoice_id": metadata.get("invoice_id") or session.get("client_reference_id"),
            "external_invoice_code": session.get("id"),
            "payment_status": status,
            "paid_at": event.get("created") if status == GATEWAY_APPROVED else None,
            "stripe_event_id": event.get("id"),
            "stripe_event_type": event_type,
        })


@dataclass(frozen=True)
class ReconcileResult:
    invoice_id: int
    invoice_status: str
    changed: bool
    duplicate: bool = False
    note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_status": self.invoice_status,
            "changed": self.changed,
            "duplicate": self.duplicate,
            "note": self.note,
        }


# ---- reconciler -------------------------------------------------------------
class PaymentReconciler:
    def __init__(self, ledger: Optional[LedgerStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger or LedgerStore()
        self.clock = clock
        self.dispatcher = dispatcher or NotificationDispatcher(ledger=self.ledger, clock=clock)

    def reconcile_payment(self, payload: WebhookPayload) -> ReconcileResult:
        seen = self.ledger.find_billing_event(payload.event_key)
        if seen is not None and seen.processed_at is not None:
            invoice = self.ledger.get_invoice(payload.invoice_id)
            log_event(logger, "webhook_duplicate", invoice_id=payload.invoice_id, event_key=payload.event_key)
            return ReconcileResult(
                payload.invoice_id, invoice.status if invoice else "unknown", changed=False, duplicate=True,
            )

        if self.ledger.get_invoice(payload.invoice_id) is None:
            raise NotFoundError("Invoice not found.", invoice_id=payload.invoice_id)

        notices = []
        try:
            with self.ledger.transaction():
                invoice = self.ledger.get_invoice(payload.invoice_id, lock=True)
                event = self.ledger.find_billing_event(payload.event_key) or self.ledger.add_billing_event(
                    BillingEventLog(
                        event_key=payload.event_key,
                        invoice_id=invoice.id,
                        payment_status=payload.payment_status,
                        signature_valid=True,
                        payload=payload.raw,
                    )
                )
                result = self._apply(invoice, payload, notices)
                event.processed_at = self.clock()
                event.notes = result.note
        except IntegrityError:
            # Same event processed concurrently; the other delivery won
            invoice = self.ledger.get_invoice(payload.invoice_id)
            return ReconcileResult(payload.invoice_id, invoice.status, changed=False, duplicate=True)
        except Exception as exc:
            self._note_failure(payload, exc)
            raise

        log_event(logger, "webhook_reconciled", **result.to_dict(), payment_status=payload.payment_status)
        for kind, org_id, context in notices:
            self.dispatcher.dispatch(kind, org_id, context, dedupe=False)
        return result

    def _apply(self, invoice: Invoice, payload: WebhookPayload, notices: list) -> ReconcileResult:
        status = payload.payment_status

        if status == GATEWAY_PENDING:
            if not invoice.external_payment_id:
                invoice.external_payment_id = payload.external_id
            return ReconcileResult(invoice.id, invoice.status, changed=False, note="pending")

        if status == GATEWAY_APPROVED:
            if invoice.status == INVOICE_PAID:
                return ReconcileResult(invoice.id, invoice.status, changed=False, note="already_paid")
            if invoice.status == INVOICE_CANCELED:
                return self._drift(invoice, payload, "approved_after_cancel")
            # pending or overdue
            now = self.clock()
            invoice.status = INVOICE_PAID
            invoice.paid_at = payload.paid_at or now
            if not invoice.external_payment_id:
                invoice.external_payment_id = payload.external_id
            self.ledger.flush()
            self._cascade_paid(invoice, now)
            notices.append((
                NotificationEvent.PAYMENT_CONFIRMED,
                invoice.organization_id,
                {"invoice_id": invoice.id, "amount": invoice.amount},
            ))
            return ReconcileResult(invoice.id, invoice.status, changed=True)

        # canceled / refunded
        if invoice.status == INVOICE_PENDING:
            invoice.status = INVOICE_CANCELED
            invoice.canceled_at = self.clock()
            return ReconcileResult(invoice.id, invoice.status, changed=True, note=status)
        if invoice.status == INVOICE_CANCELED:
            return ReconcileResult(invoice.id, invoice.status, changed=False, note="already_canceled")
        return self._drift(invoice, payload, f"{status}_while_{invoice.status}")

    def _drift(self, invoice: Invoice, payload: WebhookPayload, note: str) -> ReconcileResult:
        log_event(
            logger, "webhook_drift", level=logging.WARNING,
            invoice_id=invoice.id, invoice_status=invoice.status,
            payment_status=payload.payment_status, external_id=payload.external_id, note=note,
        )
        return ReconcileResult(invoice.id, invoice.status, changed=False, note=note)

    def _cascade_paid(self, invoice: Invoice, now: datetime) -> None:
        sub = self.ledger.get_subscription(invoice.organization_id, lock=True)
        if sub is None:
            return
        period = timedelta(days=current_app.config.get("BILLING_PERIOD_DAYS", 30))
        before = sub.status

        if sub.status == STATUS_TRIALING:
            plan = self.ledger.require_plan(sub.plan_id)
            if plan.tier == TIER_TRIAL:
                paid_plan = self.ledger.get_plan_by_tier(STANDARD_PAID_TIER)
                if paid_plan is None:
                    logger.error("standard paid plan %r missing; trial org %s keeps its plan",
                                 STANDARD_PAID_TIER, sub.organization_id)
                else:
                    sub.plan_id = paid_plan.id
            sub.status = STATUS_ACTIVE
            sub.current_period_end = now + period
        elif sub.status in (STATUS_ACTIVE, STATUS_OVERDUE):
            if invoice.kind == KIND_RENEWAL:
                sub.current_period_end = max(now, sub.current_period_end) + period
            if sub.status == STATUS_OVERDUE:
                org = self.ledger.require_organization(sub.organization_id)
                today = local_today(self.ledger.zone_for(org), now)
                if not self.ledger.open_invoices_due_before(sub.organization_id, today, exclude_id=invoice.id):
                    sub.status = STATUS_ACTIVE

        if sub.status != before:
            log_event(logger, "subscription_transition", organization_id=sub.organization_id,
                      from_status=before, to_status=sub.status, invoice_id=invoice.id)

    def _note_failure(self, payload: WebhookPayload, exc: Exception) -> None:
        """Keep a trace of the failed delivery; processed_at stays NULL so the retry is processed."""
        session = self.ledger.session
        try:
            event = self.ledger.find_billing_event(payload.event_key)
            if event is None:
                event = self.ledger.add_billing_event(BillingEventLog(
                    event_key=payload.event_key,
                    invoice_id=payload.invoice_id,
                    payment_status=payload.payment_status,
                    signature_valid=True,
                    payload=payload.raw,
                ))
            event.notes = f"error: {type(exc).__name__}: {exc}"[:255]
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("could not record failed webhook %s", payload.event_key)
