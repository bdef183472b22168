"""
Capability checks for mutating billing actions.

Roles are ranked member < admin < owner; the organization's owner_id always
counts as owner even without a membership row. A None actor is a system
caller (jobs, webhooks, CLI) and skips the check.
"""
from typing import Optional

from tenantbill.errors import ForbiddenError, NotFoundError
from tenantbill.extensions import db
from tenantbill.models import Organization, OrgMembership, ROLE_ADMIN, ROLE_OWNER, ROLE_RANK

CAP_IPS_MANAGE = "ips.manage"
CAP_BILLING_MANAGE = "billing.manage"
CAP_ORG_SHUTDOWN = "organization.shutdown"

CAPABILITY_MIN_ROLE = {
    CAP_IPS_MANAGE: ROLE_OWNER,
    CAP_BILLING_MANAGE: ROLE_ADMIN,
    CAP_ORG_SHUTDOWN: ROLE_OWNER,
}


def role_of(org_id: int, user_id: int) -> Optional[str]:
    org = db.session.get(Organization, org_id)
    if org is None:
        return None
    if org.owner_id == user_id:
        return ROLE_OWNER
    m = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user_id).one_or_none()
    return m.role if m else None


def can(org_id: int, user_id: Optional[int], capability: str) -> bool:
    if user_id is None:
        return True
    role = role_of(org_id, user_id)
    if role is None:
        return False
    return ROLE_RANK.get(role, -1) >= ROLE_RANK[CAPABILITY_MIN_ROLE[capability]]


def require_capability(org_id: int, user_id: Optional[int], capability: str) -> None:
    if capability not in CAPABILITY_MIN_ROLE:
        raise ValueError(f"unknown capability {capability!r}")
    if user_id is None:
        return
    role = role_of(org_id, user_id)
    if role is None:
        # Non-members get the same answer as a missing organization
        raise NotFoundError("Organization not found.", organization_id=org_id)
    required = CAPABILITY_MIN_ROLE[capability]
    if ROLE_RANK.get(role, -1) < ROLE_RANK[required]:
        raise ForbiddenError(
            f"The '{capability}' action requires the {required} role.",
            organization_id=org_id,
            user_id=user_id,
            role=role,
        )
