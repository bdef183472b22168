from sqlalchemy import CheckConstraint, UniqueConstraint

from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLE_CHOICES = (ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER)

# Higher rank includes every capability of the lower ones
ROLE_RANK = {ROLE_MEMBER: 0, ROLE_ADMIN: 1, ROLE_OWNER: 2}


class OrgMembership(db.Model):
    """User's role inside one organization. Roles are plain text guarded by a CHECK."""

    __tablename__ = "org_memberships"
    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
        CheckConstraint("role IN ('owner','admin','member')", name="ck_org_memberships_role_valid"),
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_MEMBER, server_default=ROLE_MEMBER)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<OrgMembership org={self.org_id} user={self.user_id} role={self.role!r}>"
