from sqlalchemy import CheckConstraint, UniqueConstraint
from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow

STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_OVERDUE = "overdue"
STATUS_CANCELED = "canceled"

# Statuses that may consume resources
ENTITLED_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, index=True, default=STATUS_TRIALING)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    current_period_end = db.Column(db.DateTime, nullable=False, index=True)
    trial_ends_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_subscriptions_organization_id"),
        CheckConstraint(
            "status IN ('trialing','active','overdue','canceled')",
            name="ck_subscriptions_status_valid",
        ),
    )

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} org={self.organization_id} status={self.status!r} plan={self.plan_id}>"
