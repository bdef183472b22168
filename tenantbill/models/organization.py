from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(120), nullable=False, unique=True, index=True)
    domain = db.Column(db.String(255), nullable=True, unique=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True)
    auto_join_by_domain = db.Column(db.Boolean, nullable=False, default=False)

    # IANA zone; NULL means BILLING_TIMEZONE
    timezone = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Organization id={self.id} slug={self.slug!r}>"
