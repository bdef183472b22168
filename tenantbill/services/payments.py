"""
Payment gateway adapters.

Two gateways create one-off payment links per invoice:

- ``HostedCheckoutGateway`` posts the charge to a hosted checkout API. The
  request carries the invoice id as ``external_code`` and a postback URL
  (``/webhooks/payments?invoice_id=<id>``), which the gateway calls with the
  payment status.
- ``StripeCheckoutGateway`` opens a Stripe Checkout session in ``payment``
  mode with the invoice id in its metadata; Stripe reports back through
  ``/webhooks/stripe``.

Both send an idempotency key derived from the invoice so a retried request
returns the same payment, and run with a bounded timeout and no automatic
retries: a slow gateway surfaces as ExternalServiceError instead of blocking
the caller.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
import stripe
from flask import current_app
from stripe import StripeClient

from tenantbill.errors import ExternalServiceError
from tenantbill.models import Invoice
from tenantbill.observability import log_event
from .email import absolute_url

logger = logging.getLogger("tenantbill.payments")

GATEWAY_EXTENSION_KEY = "tenantbill.payment_gateway"


@dataclass(frozen=True)
class PaymentLink:
    payment_id: str
    url: str


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "invoice-payment:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def postback_url_for(invoice_id: int) -> str:
    return absolute_url(f"webhooks/payments?invoice_id={invoice_id}")


class PaymentGateway:
    def create_payment(self, invoice: Invoice, payer_email: Optional[str] = None) -> PaymentLink:
        raise NotImplementedError


class HostedCheckoutGateway(PaymentGateway):
    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None,
                 store_code: Optional[str] = None, timeout: Optional[float] = None,
                 http: Optional[requests.Session] = None):
        cfg = current_app.config
        self.url = url or cfg.get("PAYMENT_GATEWAY_URL")
        self.api_key = api_key or cfg.get("PAYMENT_GATEWAY_API_KEY")
        self.store_code = store_code or cfg.get("PAYMENT_GATEWAY_STORE_CODE")
        self.timeout = timeout or cfg.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10)
        self.payment_method = cfg.get("PAYMENT_METHOD", "pix")
        self.http = http or requests.Session()

    def _failed(self, invoice: Invoice, outcome: str, message: str, **fields) -> ExternalServiceError:
        log_event(logger, "payment_link_failed", level=logging.WARNING,
                  invoice_id=invoice.id, outcome=outcome, **fields)
        return ExternalServiceError(message, invoice_id=invoice.id)

    def create_payment(self, invoice: Invoice, payer_email: Optional[str] = None) -> PaymentLink:
        if not self.url or not self.api_key:
            raise ExternalServiceError("Payment gateway is not configured.")

        body: Dict[str, Any] = {
            "store_code": self.store_code,
            "payment_method": self.payment_method,
            "payment_format": "regular",
            "payment_amount": invoice.amount,
            "external_code": str(invoice.id),
            "postback_url": postback_url_for(invoice.id),
        }
        if payer_email:
            body["customer"] = {"email": payer_email}
        headers = {
            "Authorization": self.api_key,
            "Accept": "application/json",
            "Idempotency-Key": make_idempotency_key("invoice", invoice.id, invoice.amount),
        }

        try:
            resp = self.http.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as ex:
            raise self._failed(invoice, "timeout_or_connection",
                               "Payment gateway did not respond; try again.", error=str(ex))
        except requests.RequestException as ex:
            raise self._failed(invoice, "request_error", "Payment gateway request failed.", error=str(ex))

        if resp.status_code >= 500:
            raise self._failed(invoice, "gateway_5xx", "Payment gateway is unavailable; try again.",
                               status=resp.status_code)
        if resp.status_code >= 400:
            raise self._failed(invoice, "gateway_rejected", "Payment gateway rejected the request.",
                               status=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        payment_id, url = data.get("code"), data.get("url")
        if not payment_id or not url:
            raise self._failed(invoice, "bad_response", "Payment gateway returned no payment URL.")

        log_event(logger, "payment_link_created", invoice_id=invoice.id, payment_id=payment_id, gateway="hosted")
        return PaymentLink(payment_id=str(payment_id), url=url)


class StripeCheckoutGateway(PaymentGateway):
    def __init__(self, secret_key: Optional[str] = None, timeout: Optional[float] = None,
                 currency: Optional[str] = None):
        self.secret_key = secret_key or current_app.config.get("STRIPE_SECRET_KEY")
        self.timeout = timeout or current_app.config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10)
        self.currency = currency or current_app.config.get("PAYMENT_CURRENCY", "brl")

    def _client(self) -> StripeClient:
        if not self.secret_key:
            raise ExternalServiceError("Payment gateway is not configured.")
        return StripeClient(
            self.secret_key,
            http_client=stripe.RequestsClient(timeout=self.timeout),
            max_network_retries=0,
        )

    def create_payment(self, invoice: Invoice, payer_email: Optional[str] = None) -> PaymentLink:
        client = self._client()
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": self.currency,
                    "unit_amount": invoice.amount,
                    "product_data": {"name": f"Invoice #{invoice.id} ({invoice.kind})"},
                },
            }],
            "success_url": absolute_url(f"billing/invoices/{invoice.id}?paid=1"),
            "cancel_url": absolute_url(f"billing/invoices/{invoice.id}"),
            "client_reference_id": str(invoice.id),
            # Echoed back in the checkout.session.* events; /webhooks/stripe keys on it
            "metadata": {"invoice_id": str(invoice.id), "org_id": str(invoice.organization_id)},
            "payment_intent_data": {"metadata": {"invoice_id": str(invoice.id)}},
        }
        if payer_email:
            params["customer_email"] = payer_email

        idem = make_idempotency_key("invoice", invoice.id, invoice.amount, self.currency)
        try:
            session = client.checkout.sessions.create(params=params, options={"idempotency_key": idem})
        except stripe.APIConnectionError as ex:
            log_event(logger, "payment_link_failed", level=logging.WARNING,
                      invoice_id=invoice.id, outcome="timeout_or_connection", error=str(ex))
            raise ExternalServiceError("Payment gateway did not respond; try again.", invoice_id=invoice.id)
        except stripe.StripeError as ex:
            log_event(logger, "payment_link_failed", level=logging.WARNING,
                      invoice_id=invoice.id, outcome="gateway_error", error=str(ex))
            raise ExternalServiceError("Payment gateway rejected the request.", invoice_id=invoice.id)

        url = getattr(session, "url", None)
        if not url:
            raise ExternalServiceError("Payment gateway returned no payment URL.", invoice_id=invoice.id)
        log_event(logger, "payment_link_created", invoice_id=invoice.id, payment_id=session.id, gateway="stripe")
        return PaymentLink(payment_id=session.id, url=url)


def get_gateway() -> PaymentGateway:
    """App-registered gateway first, then PAYMENT_GATEWAY ("hosted" or "stripe")."""
    gateway = current_app.extensions.get(GATEWAY_EXTENSION_KEY)
    if gateway is not None:
        return gateway
    if current_app.config.get("PAYMENT_GATEWAY", "hosted") == "stripe":
        return StripeCheckoutGateway()
    return HostedCheckoutGateway()
