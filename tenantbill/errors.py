"""
Billing error taxonomy.

Entitlement denials are *not* errors (see services.entitlements.Deny); these
exceptions cover malformed input, missing records, permission/billing holds,
lost races and gateway failures.
"""
import logging

from flask import jsonify

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = 400
    code = "billing_error"
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ForbiddenError(BillingError):
    status_code = 403
    code = "forbidden"


class ConflictError(BillingError):
    status_code = 409
    code = "conflict"


class ExternalServiceError(BillingError):
    status_code = 502
    code = "external_service_error"
    retryable = True


class InvariantViolation(BillingError):
    """A state that must never exist (e.g. two subscriptions for one org)."""

    status_code = 500
    code = "invariant_violation"

    def __init__(self, message: str = "", **context):
        super().__init__(message, **context)
        logger.critical("invariant_violation: %s %s", message, context)

    def to_dict(self) -> dict:
        # Never leak internals to callers
        return {"error": "internal_error", "message": "Internal Server Error"}


def register_error_handlers(app):
    @app.errorhandler(BillingError)
    def handle_billing_error(e: BillingError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "code": 404}), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "code": 500}), 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)
