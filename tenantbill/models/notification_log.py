from sqlalchemy import UniqueConstraint
from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow


class NotificationLog(db.Model):
    """One row per (organization, local day, kind); the unique key is the dedupe guard."""

    __tablename__ = "notification_logs"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind = db.Column(db.String(64), nullable=False)
    day = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="queued")  # queued|sent|failed
    meta = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "day", "kind", name="uq_notification_logs_org_day_kind"),
    )

    def __repr__(self) -> str:
        return f"<NotificationLog org={self.organization_id} kind={self.kind!r} day={self.day} status={self.status}>"
