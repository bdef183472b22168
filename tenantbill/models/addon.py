from sqlalchemy import CheckConstraint, UniqueConstraint
from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow

ADDON_EXTRA_IP = "extra_ip"
ADDON_EXTRA_REQUESTS = "extra_requests"
ADDON_EARLY_IP_CHANGE = "early_ip_change"
ADDON_TYPES = (ADDON_EXTRA_IP, ADDON_EXTRA_REQUESTS, ADDON_EARLY_IP_CHANGE)

# Minor currency units per unit purchased
ADDON_UNIT_PRICES = {
    ADDON_EXTRA_IP: 1000,
    ADDON_EXTRA_REQUESTS: 2,
    ADDON_EARLY_IP_CHANGE: 500,
}


class Addon(db.Model):
    """Cumulative add-on balance; one row per (organization, type)."""

    __tablename__ = "addons"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Integer, nullable=False, default=0)
    unit_price = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "type", name="uq_addons_org_type"),
        CheckConstraint("amount >= 0", name="ck_addons_amount_non_negative"),
        CheckConstraint(
            "type IN ('extra_ip','extra_requests','early_ip_change')",
            name="ck_addons_type_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<Addon id={self.id} org={self.organization_id} type={self.type!r} amount={self.amount}>"
