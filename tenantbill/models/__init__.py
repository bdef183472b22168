from .user import User
from .organization import Organization
from .org_membership import OrgMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER, ROLE_RANK
from .plan import Plan
from .subscription import Subscription
from .addon import Addon
from .invoice import Invoice
from .ip_address import IpAddress
from .usage_record import UsageRecord
from .notification_log import NotificationLog
from .billing_event import BillingEventLog
from .job_run import JobRun

__all__ = [
    "User",
    "Organization",
    "OrgMembership",
    "Plan",
    "Subscription",
    "Addon",
    "Invoice",
    "IpAddress",
    "UsageRecord",
    "NotificationLog",
    "BillingEventLog",
    "JobRun",
    "ROLE_OWNER",
    "ROLE_ADMIN",
    "ROLE_MEMBER",
    "ROLE_RANK",
]
