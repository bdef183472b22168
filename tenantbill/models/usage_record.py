from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"

CATEGORY_REQUEST = "request"


class UsageRecord(db.Model):
    """Append-only metering event. Never updated; purged by retention cleanup."""

    __tablename__ = "usage_records"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    category = db.Column(db.String(40), nullable=False, default=CATEGORY_REQUEST)
    outcome = db.Column(db.String(20), nullable=False, default=OUTCOME_SUCCESS)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        db.Index("ix_usage_records_org_created_at", "organization_id", "created_at"),
    )
