import hashlib
import json
import logging

import stripe
from flask import current_app, jsonify, request

from tenantbill.errors import ForbiddenError
from tenantbill.extensions import db, limiter
from tenantbill.models import BillingEventLog
from tenantbill.observability import log_event
from tenantbill.services.reconciliation import PaymentReconciler, WebhookPayload, WebhookVerifier
from . import bp

logger = logging.getLogger("tenantbill.webhooks")


def _webhook_limit() -> str:
    return current_app.config.get("WEBHOOK_RATE_LIMIT", "120 per minute")


def _log_rejected(raw_body: bytes, reason: str) -> None:
    """Rejected calls are kept with a synthetic key derived from the body; nothing in it is trusted."""
    key = "rejected:" + hashlib.sha256(raw_body).hexdigest()[:32]
    try:
        if BillingEventLog.query.filter_by(event_key=key).first() is None:
            db.session.add(BillingEventLog(
                event_key=key,
                payment_status="rejected",
                signature_valid=False,
                payload={},
                notes=reason[:255],
            ))
            db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("could not record rejected webhook")


def _reject(raw_body: bytes, reason: str):
    log_event(logger, "webhook_rejected", level=logging.WARNING,
              path=request.path, remote_addr=request.remote_addr, reason=reason)
    _log_rejected(raw_body, reason)
    return jsonify(ForbiddenError(reason).to_dict()), 403


def _reconcile(payload: WebhookPayload):
    # Billing errors (404 unknown invoice) go through the error handler
    try:
        result = PaymentReconciler().reconcile_payment(payload)
    except Exception as e:
        if getattr(e, "status_code", 500) < 500:
            raise
        logger.exception("payment_webhook_handler_error")
        # Error status so the gateway retries; processing is idempotent
        return jsonify({"error": "processing_failed", "retryable": True}), 500

    return jsonify({"ok": True, **result.to_dict()}), 200


# ----- Payment gateway postback (invoice status) -----
@bp.post("/payments")
@limiter.limit(_webhook_limit)
def payment_webhook():
    """
    Gateway -> /webhooks/payments?invoice_id=<id>
    The postback URL is set when the payment link is created.
    200 ack, 400 malformed, 403 unauthenticated, 404 unknown invoice, 500 retry later.
    """
    raw = request.get_data(cache=True) or b""

    # 1) Authenticity before anything in the body is looked at
    try:
        WebhookVerifier.from_config(current_app.config).verify(raw, request.headers, request.remote_addr)
    except ForbiddenError as e:
        return _reject(raw, e.message)

    # 2) Parse; ValidationError -> 400 through the error handler
    body = request.get_json(silent=True)
    if body is None:
        return jsonify({"error": "validation_error", "message": "Body must be JSON."}), 400

    return _reconcile(WebhookPayload.parse(body, request.args))


# ----- Stripe Checkout events -----
@bp.post("/stripe")
@limiter.limit(_webhook_limit)
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Verifies the Stripe-Signature header, then reconciles checkout.session.* events.
    Other event types are acknowledged and ignored.
    """
    raw = request.get_data(cache=True) or b""
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        return _reject(raw, "Stripe webhook secret is not configured.")

    try:
        stripe.Webhook.construct_event(
            payload=raw.decode("utf-8"),
            sig_header=request.headers.get("Stripe-Signature", ""),
            secret=secret,
        )
    except stripe.SignatureVerificationError:
        return _reject(raw, "Invalid Stripe signature.")
    except ValueError:
        return jsonify({"error": "validation_error", "message": "Body must be JSON."}), 400

    event = json.loads(raw.decode("utf-8"))
    payload = WebhookPayload.from_stripe_event(event)
    if payload is None:
        return jsonify({"ok": True, "ignored": event.get("type")}), 200
    return _reconcile(payload)
