from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow


class BillingEventLog(db.Model):
    """Inbound payment-gateway webhook, kept for idempotency and forensics."""

    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    event_key = db.Column(db.String(255), nullable=False, unique=True, index=True)
    invoice_id = db.Column(db.Integer, nullable=True, index=True)
    payment_status = db.Column(db.String(32), nullable=False)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BillingEventLog id={self.id} key={self.event_key!r} status={self.payment_status!r}>"
