from sqlalchemy import CheckConstraint, Index
from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow

INVOICE_PENDING = "pending"
INVOICE_PAID = "paid"
INVOICE_OVERDUE = "overdue"
INVOICE_CANCELED = "canceled"

# Unpaid and still collectable
OPEN_INVOICE_STATUSES = (INVOICE_PENDING, INVOICE_OVERDUE)

KIND_RENEWAL = "renewal"
KIND_PRORATION = "proration"
KIND_ADDON = "addon"
KIND_MANUAL = "manual"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    kind = db.Column(db.String(20), nullable=False, default=KIND_MANUAL)
    amount = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, index=True, default=INVOICE_PENDING)

    # Local calendar date in the organization's zone
    due_date = db.Column(db.Date, nullable=False, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)

    external_payment_id = db.Column(db.String(128), nullable=True, unique=True)
    payment_url = db.Column(db.String(1024), nullable=True)

    # "<org_id>:<due_date>" for automated renewals only; NULL elsewhere
    renewal_key = db.Column(db.String(64), nullable=True, unique=True)

    # "<org_id>:<caller key>" when a purchase was made with an idempotency key
    request_key = db.Column(db.String(160), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','paid','overdue','canceled')",
            name="ck_invoices_status_valid",
        ),
        CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),
        Index("ix_invoices_org_status_due", "organization_id", "status", "due_date"),
    )

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} org={self.organization_id} kind={self.kind!r} amount={self.amount} status={self.status!r}>"


def renewal_key_for(organization_id: int, due_date) -> str:
    return f"{organization_id}:{due_date.isoformat()}"


def request_key_for(organization_id: int, key: str) -> str:
    return f"{organization_id}:{key.strip()[:128]}"


def addon_description(addon_type: str, quantity: int) -> str:
    return f"{addon_type} x{quantity}"
