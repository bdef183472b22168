from sqlalchemy import UniqueConstraint
from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow


class IpAddress(db.Model):
    __tablename__ = "ip_addresses"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    address = db.Column(db.String(45), nullable=False)
    name = db.Column(db.String(120), nullable=True)

    # Drives the change cooldown
    last_changed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "address", name="uq_ip_addresses_org_address"),
    )

    def __repr__(self) -> str:
        return f"<IpAddress id={self.id} org={self.organization_id} address={self.address!r}>"
