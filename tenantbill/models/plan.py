from sqlalchemy import CheckConstraint
from tenantbill.extensions import db

TIER_TRIAL = "trial"
TIER_BASIC = "basic"
TIER_PROFESSIONAL = "professional"
TIER_BUSINESS = "business"
TIER_CHOICES = (TIER_TRIAL, TIER_BASIC, TIER_PROFESSIONAL, TIER_BUSINESS)

# Trial conversions land on the cheapest standard paid plan
STANDARD_PAID_TIER = TIER_BASIC


class Plan(db.Model):
    """Catalog entry; exactly one row per tier. Prices are minor currency units."""

    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True)
    tier = db.Column(db.String(20), nullable=False, unique=True)
    name = db.Column(db.String(80), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    price = db.Column(db.Integer, nullable=False, default=0)
    max_organizations = db.Column(db.Integer, nullable=False, default=1)
    max_ips = db.Column(db.Integer, nullable=False, default=1)
    max_requests = db.Column(db.Integer, nullable=False, default=0)
    ip_change_cooldown_hours = db.Column(db.Integer, nullable=False, default=24)
    trial_eligible = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(
            "tier IN ('trial','basic','professional','business')",
            name="ck_plans_tier_valid",
        ),
        CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Plan id={self.id} tier={self.tier!r} price={self.price}>"


# Seed catalog (`flask plans seed`)
PLAN_CATALOG = [
    {
        "tier": TIER_TRIAL, "name": "Trial", "price": 0, "trial_eligible": True,
        "max_organizations": 1, "max_ips": 1, "max_requests": 100, "ip_change_cooldown_hours": 24,
        "description": "7-day trial",
    },
    {
        "tier": TIER_BASIC, "name": "Pro", "price": 47000, "trial_eligible": False,
        "max_organizations": 1, "max_ips": 1, "max_requests": 500000, "ip_change_cooldown_hours": 24,
        "description": "Dashboard, multiple APIs, IP control, 24h monitoring",
    },
    {
        "tier": TIER_PROFESSIONAL, "name": "Scale", "price": 67000, "trial_eligible": False,
        "max_organizations": 1, "max_ips": 2, "max_requests": 2000000, "ip_change_cooldown_hours": 24,
        "description": "Pro plus real-time notifications and priority support",
    },
    {
        "tier": TIER_BUSINESS, "name": "Enterprise", "price": 120000, "trial_eligible": False,
        "max_organizations": 1, "max_ips": 4, "max_requests": 5000000, "ip_change_cooldown_hours": 24,
        "description": "Scale plus custom reports, dedicated SLA, on-demand IPs",
    },
]
