"""
Ledger Store: the repository every billing component reads and writes through.

Each method is an explicit query; nothing relies on lazy relationship loading,
so the rows a decision was based on are exactly the rows fetched (and, with
``lock=True``, row-locked) inside the caller's transaction.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from tenantbill.errors import InvariantViolation, NotFoundError
from tenantbill.extensions import db
from tenantbill.models import (
    Addon,
    BillingEventLog,
    Invoice,
    IpAddress,
    JobRun,
    NotificationLog,
    OrgMembership,
    Organization,
    Plan,
    Subscription,
    UsageRecord,
    User,
)
from tenantbill.models.addon import ADDON_EARLY_IP_CHANGE, ADDON_EXTRA_IP, ADDON_EXTRA_REQUESTS
from tenantbill.models.invoice import INVOICE_PENDING, OPEN_INVOICE_STATUSES
from tenantbill.utils.clock import resolve_zone, utcnow

_TX_DEPTH = "tenantbill.tx_depth"
_AFTER_COMMIT = "tenantbill.after_commit"


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Plain copy of everything an entitlement decision needs for one organization."""

    organization_id: int
    subscription_id: int
    status: str
    plan_id: int
    tier: str
    max_ips: int
    max_requests: int
    ip_change_cooldown_hours: int
    extra_ips: int = 0
    extra_requests: int = 0
    early_ip_changes: int = 0

    @property
    def ip_allowance(self) -> int:
        return self.max_ips + self.extra_ips

    @property
    def request_allowance(self) -> int:
        return self.max_requests + self.extra_requests


class LedgerStore:
    def __init__(self, session=None):
        self.session = session or db.session

    # ------------------------------------------------------------------ tx
    @contextmanager
    def transaction(self) -> Iterator["LedgerStore"]:
        """
        Commit on success, roll back on error.
        Nested use joins the outermost transaction; only the outermost commits.
        """
        info = self.session.info
        depth = info.get(_TX_DEPTH, 0)
        info[_TX_DEPTH] = depth + 1
        try:
            yield self
            if depth == 0:
                self.session.commit()
        except Exception:
            if depth == 0:
                self.session.rollback()
                info.pop(_AFTER_COMMIT, None)
            raise
        finally:
            info[_TX_DEPTH] = depth
        if depth == 0:
            for callback in info.pop(_AFTER_COMMIT, []):
                callback()

    def in_transaction(self) -> bool:
        return self.session.info.get(_TX_DEPTH, 0) > 0

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run callback once the outermost transaction commits; dropped on rollback."""
        if not self.in_transaction():
            callback()
            return
        self.session.info.setdefault(_AFTER_COMMIT, []).append(callback)

    def flush(self) -> None:
        self.session.flush()

    # ------------------------------------------------------------ orgs
    def get_organization(self, org_id: int) -> Optional[Organization]:
        return self.session.get(Organization, org_id)

    def require_organization(self, org_id: int) -> Organization:
        org = self.get_organization(org_id)
        if org is None:
            raise NotFoundError("Organization not found.", organization_id=org_id)
        return org

    def zone_for(self, org: Organization) -> ZoneInfo:
        return resolve_zone(org.timezone)

    def owner_email(self, org_id: int) -> Optional[str]:
        row = (
            self.session.query(User.email)
            .join(Organization, Organization.owner_id == User.id)
            .filter(Organization.id == org_id)
            .one_or_none()
        )
        return row[0] if row else None

    def delete_organization(self, org: Organization) -> None:
        # Children first; the FK cascades are not relied upon (SQLite ignores them by default)
        for model in (UsageRecord, IpAddress, Addon, Invoice, Subscription, NotificationLog):
            self.session.execute(delete(model).where(model.organization_id == org.id))
        self.session.execute(delete(OrgMembership).where(OrgMembership.org_id == org.id))
        self.session.delete(org)

    # ----------------------------------------------------------- plans
    def get_plan(self, plan_id: int) -> Optional[Plan]:
        return self.session.get(Plan, plan_id)

    def require_plan(self, plan_id: int) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found.", plan_id=plan_id)
        return plan

    def get_plan_by_tier(self, tier: str) -> Optional[Plan]:
        return self.session.query(Plan).filter_by(tier=tier).one_or_none()

    # --------------------------------------------------- subscriptions
    def get_subscription(self, org_id: int, lock: bool = False) -> Optional[Subscription]:
        q = self.session.query(Subscription).filter_by(organization_id=org_id)
        if lock:
            q = q.with_for_update()
        rows = q.populate_existing().all()
        if len(rows) > 1:
            raise InvariantViolation(
                "more than one subscription for organization",
                organization_id=org_id,
                subscription_ids=[r.id for r in rows],
            )
        return rows[0] if rows else None

    def require_subscription(self, org_id: int, lock: bool = False) -> Subscription:
        sub = self.get_subscription(org_id, lock=lock)
        if sub is None:
            raise NotFoundError("Organization has no subscription.", organization_id=org_id)
        return sub

    def add_subscription(self, sub: Subscription) -> Subscription:
        self.session.add(sub)
        self.session.flush()
        return sub

    def subscription_orgs_with_status(self, statuses: Sequence[str]) -> List[int]:
        rows = (
            self.session.query(Subscription.organization_id)
            .filter(Subscription.status.in_(tuple(statuses)))
            .order_by(Subscription.organization_id)
            .all()
        )
        return [r[0] for r in rows]

    def snapshot(self, org_id: int, lock: bool = False) -> Optional[EntitlementSnapshot]:
        """Subscription + plan limits + add-on balances, fetched explicitly in the current transaction."""
        sub = self.get_subscription(org_id, lock=lock)
        if sub is None:
            return None
        plan = self.require_plan(sub.plan_id)
        balances = self.addon_balances(org_id)
        return EntitlementSnapshot(
            organization_id=org_id,
            subscription_id=sub.id,
            status=sub.status,
            plan_id=plan.id,
            tier=plan.tier,
            max_ips=plan.max_ips,
            max_requests=plan.max_requests,
            ip_change_cooldown_hours=plan.ip_change_cooldown_hours,
            extra_ips=balances.get(ADDON_EXTRA_IP, 0),
            extra_requests=balances.get(ADDON_EXTRA_REQUESTS, 0),
            early_ip_changes=balances.get(ADDON_EARLY_IP_CHANGE, 0),
        )

    # ---------------------------------------------------------- addons
    def get_addon(self, org_id: int, addon_type: str, lock: bool = False) -> Optional[Addon]:
        q = self.session.query(Addon).filter_by(organization_id=org_id, type=addon_type)
        if lock:
            q = q.with_for_update()
        return q.populate_existing().one_or_none()

    def get_addon_by_id(self, org_id: int, addon_id: int) -> Optional[Addon]:
        return self.session.query(Addon).filter_by(id=addon_id, organization_id=org_id).one_or_none()

    def list_addons(self, org_id: int) -> List[Addon]:
        return (
            self.session.query(Addon)
            .filter_by(organization_id=org_id)
            .order_by(Addon.type)
            .populate_existing()
            .all()
        )

    def addon_balances(self, org_id: int) -> dict:
        rows = (
            self.session.query(Addon.type, func.coalesce(func.sum(Addon.amount), 0))
            .filter(Addon.organization_id == org_id)
            .group_by(Addon.type)
            .all()
        )
        return {t: int(total) for t, total in rows}

    def addon_charges(self, org_id: int) -> int:
        """Recurring add-on cost: sum(amount x unit_price) across all types."""
        total = (
            self.session.query(func.coalesce(func.sum(Addon.amount * Addon.unit_price), 0))
            .filter(Addon.organization_id == org_id)
            .scalar()
        )
        return int(total or 0)

    def upsert_addon(self, org_id: int, addon_type: str, quantity: int, unit_price: int) -> Addon:
        """
        Increment the (organization, type) row, creating it on first purchase.
        Backed by the unique constraint so concurrent purchases never produce two rows.
        """
        now = utcnow()
        dialect = self.session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            table = Addon.__table__
            stmt = insert(table).values(
                organization_id=org_id,
                type=addon_type,
                amount=quantity,
                unit_price=unit_price,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.organization_id, table.c.type],
                set_={
                    "amount": table.c.amount + stmt.excluded.amount,
                    "unit_price": stmt.excluded.unit_price,
                    "updated_at": now,
                },
            )
            self.session.execute(stmt)
        else:
            addon = self.get_addon(org_id, addon_type, lock=True)
            if addon is None:
                self.session.add(Addon(
                    organization_id=org_id, type=addon_type, amount=quantity, unit_price=unit_price,
                ))
            else:
                addon.amount += quantity
                addon.unit_price = unit_price
            self.session.flush()
        return self.get_addon(org_id, addon_type)

    def consume_addon_unit(self, org_id: int, addon_type: str) -> bool:
        """Atomically take one unit; False when none are left."""
        result = self.session.execute(
            update(Addon)
            .where(
                Addon.organization_id == org_id,
                Addon.type == addon_type,
                Addon.amount > 0,
            )
            .values(amount=Addon.amount - 1, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def delete_addon(self, addon: Addon) -> None:
        self.session.delete(addon)

    # ------------------------------------------------------------- ips
    def count_ips(self, org_id: int) -> int:
        return self.session.query(func.count(IpAddress.id)).filter(IpAddress.organization_id == org_id).scalar() or 0

    def get_ip(self, org_id: int, ip_id: int, lock: bool = False) -> Optional[IpAddress]:
        q = self.session.query(IpAddress).filter_by(id=ip_id, organization_id=org_id)
        if lock:
            q = q.with_for_update()
        return q.one_or_none()

    def find_ip_by_address(self, org_id: int, address: str) -> Optional[IpAddress]:
        return self.session.query(IpAddress).filter_by(organization_id=org_id, address=address).one_or_none()

    def list_ips(self, org_id: int) -> List[IpAddress]:
        return self.session.query(IpAddress).filter_by(organization_id=org_id).order_by(IpAddress.id).all()

    def add_ip(self, org_id: int, address: str, name: Optional[str] = None, at: Optional[datetime] = None) -> IpAddress:
        at = at or utcnow()
        ip = IpAddress(organization_id=org_id, address=address, name=name, last_changed_at=at, created_at=at)
        self.session.add(ip)
        self.session.flush()
        return ip

    def delete_ip(self, ip: IpAddress) -> None:
        self.session.delete(ip)
        self.session.flush()

    # ----------------------------------------------------------- usage
    def add_usage_record(self, org_id: int, category: str, outcome: str, at: Optional[datetime] = None) -> UsageRecord:
        record = UsageRecord(organization_id=org_id, category=category, outcome=outcome, created_at=at or utcnow())
        self.session.add(record)
        return record

    def count_usage_since(self, org_id: int, since: datetime, category: Optional[str] = None) -> int:
        q = self.session.query(func.count(UsageRecord.id)).filter(
            UsageRecord.organization_id == org_id,
            UsageRecord.created_at >= since,
        )
        if category:
            q = q.filter(UsageRecord.category == category)
        return q.scalar() or 0

    def purge_usage_before(self, cutoff: datetime) -> int:
        result = self.session.execute(
            delete(UsageRecord)
            .where(UsageRecord.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # -------------------------------------------------------- invoices
    def get_invoice(self, invoice_id: int, lock: bool = False) -> Optional[Invoice]:
        q = self.session.query(Invoice).filter_by(id=invoice_id)
        if lock:
            q = q.with_for_update()
        return q.populate_existing().one_or_none()

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def find_pending_invoice(self, org_id: int, kind: Optional[str] = None) -> Optional[Invoice]:
        q = self.session.query(Invoice).filter(
            Invoice.organization_id == org_id,
            Invoice.status == INVOICE_PENDING,
        )
        if kind:
            q = q.filter(Invoice.kind == kind)
        return q.order_by(Invoice.due_date.asc(), Invoice.id.asc()).first()

    def find_renewal_invoice(self, renewal_key: str) -> Optional[Invoice]:
        return self.session.query(Invoice).filter_by(renewal_key=renewal_key).one_or_none()

    def find_invoice_by_request_key(self, request_key: str) -> Optional[Invoice]:
        return self.session.query(Invoice).filter_by(request_key=request_key).one_or_none()

    def open_invoices_due_before(self, org_id: int, day: date, exclude_id: Optional[int] = None) -> List[Invoice]:
        q = self.session.query(Invoice).filter(
            Invoice.organization_id == org_id,
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
            Invoice.due_date < day,
        )
        if exclude_id is not None:
            q = q.filter(Invoice.id != exclude_id)
        return q.order_by(Invoice.due_date.asc()).all()

    def invoices_for(self, org_id: int) -> List[Invoice]:
        return (
            self.session.query(Invoice)
            .filter_by(organization_id=org_id)
            .order_by(Invoice.due_date.desc(), Invoice.id.desc())
            .all()
        )

    # ------------------------------------------------- webhook events
    def find_billing_event(self, event_key: str) -> Optional[BillingEventLog]:
        return self.session.query(BillingEventLog).filter_by(event_key=event_key).one_or_none()

    def add_billing_event(self, event: BillingEventLog) -> BillingEventLog:
        self.session.add(event)
        return event

    # ------------------------------------------------------ job leases
    def claim_job_lease(self, name: str, holder: str, now: datetime, stale_before: datetime) -> bool:
        """
        Take the job's lease when it is free or abandoned (locked before stale_before).
        The conditional UPDATE is the arbiter: of two concurrent claims only one matches a row.
        """
        dialect = self.session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            self.session.execute(
                insert(JobRun.__table__).values(name=name).on_conflict_do_nothing(index_elements=["name"])
            )
        elif self.session.get(JobRun, name) is None:
            self.session.add(JobRun(name=name))
            self.session.flush()

        result = self.session.execute(
            update(JobRun)
            .where(
                JobRun.name == name,
                or_(JobRun.holder.is_(None), JobRun.locked_at < stale_before),
            )
            .values(holder=holder, locked_at=now, last_started_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_job_lease(self, name: str, holder: str, now: datetime, status: str) -> bool:
        result = self.session.execute(
            update(JobRun)
            .where(JobRun.name == name, JobRun.holder == holder)
            .values(holder=None, locked_at=None, last_finished_at=now, last_status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
