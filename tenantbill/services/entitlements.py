"""
Entitlement evaluation: may this organization do this action right now?

Each evaluation locks the organization's subscription row for the duration of
its transaction, so two concurrent requests for the same organization cannot
both pass a count check that only one of them fits under. An Allow for a
mutating action has already applied the mutation when it is returned.
"""
import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError

from tenantbill.errors import ConflictError, NotFoundError, ValidationError
from tenantbill.models.addon import ADDON_EARLY_IP_CHANGE
from tenantbill.models.subscription import ENTITLED_STATUSES
from tenantbill.models.usage_record import CATEGORY_REQUEST
from tenantbill.observability import log_event
from tenantbill.utils.clock import start_of_month, start_of_next_month, utcnow
from .authorization import CAP_IPS_MANAGE, require_capability
from .ledger import EntitlementSnapshot, LedgerStore
from .notifier import NotificationDispatcher, NotificationEvent
from .usage import UsageMeter

logger = logging.getLogger("tenantbill.entitlements")


class DenyReason(str, enum.Enum):
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    QUOTA_EXCEEDED = "quota_exceeded"
    IP_LIMIT_EXCEEDED = "ip_limit_exceeded"
    COOLDOWN_ACTIVE = "cooldown_active"
    FLOOR_VIOLATION = "floor_violation"


@dataclass(frozen=True)
class Allow:
    allowed: ClassVar[bool] = True
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"allowed": True, **self.context}


@dataclass(frozen=True)
class Deny:
    allowed: ClassVar[bool] = False
    reason: DenyReason
    message: str
    retry_at: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload = {"allowed": False, "reason": self.reason.value, "message": self.message, **self.context}
        if self.retry_at is not None:
            payload["retry_at"] = self.retry_at.isoformat()
        return payload


Decision = Union[Allow, Deny]


# ---- actions ---------------------------------------------------------------
@dataclass(frozen=True)
class ConsumeRequest:
    category: str = CATEGORY_REQUEST


@dataclass(frozen=True)
class AddIp:
    address: str
    name: Optional[str] = None
    actor_id: Optional[int] = None


@dataclass(frozen=True)
class ChangeIp:
    ip_id: int
    new_address: str
    name: Optional[str] = None
    actor_id: Optional[int] = None


@dataclass(frozen=True)
class RemoveIp:
    ip_id: int
    actor_id: Optional[int] = None


def _normalize_address(raw: str) -> str:
    try:
        return str(ipaddress.ip_address((raw or "").strip()))
    except ValueError:
        raise ValidationError(f"'{raw}' is not a valid IP address.", address=raw)


def _no_subscription(org_id: int, snap: Optional[EntitlementSnapshot]) -> Deny:
    status = snap.status if snap else None
    return Deny(
        DenyReason.NO_ACTIVE_SUBSCRIPTION,
        "The organization has no active subscription.",
        context={"organization_id": org_id, "subscription_status": status},
    )


class EntitlementEvaluator:
    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        meter: Optional[UsageMeter] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger or LedgerStore()
        self.clock = clock
        self.meter = meter or UsageMeter(self.ledger, clock=clock)
        self.dispatcher = dispatcher or NotificationDispatcher(ledger=self.ledger, clock=clock)

    def evaluate(self, org_id: int, action) -> Decision:
        handlers = {
            ConsumeRequest: self._consume_request,
            AddIp: self._add_ip,
            ChangeIp: self._change_ip,
            RemoveIp: self._remove_ip,
        }
        handler = handlers.get(type(action))
        if handler is None:
            raise ValidationError(f"Unsupported action {type(action).__name__}.")
        decision = handler(org_id, action)
        log_event(
            logger, "entitlement_decision",
            level=logging.INFO if decision.allowed else logging.WARNING,
            organization_id=org_id,
            action=type(action).__name__,
            allowed=decision.allowed,
            reason=None if decision.allowed else decision.reason.value,
        )
        return decision

    # ---- ConsumeRequest ---------------------------------------------------
    def _consume_request(self, org_id: int, action: ConsumeRequest) -> Decision:
        org = self.ledger.require_organization(org_id)
        zone = self.ledger.zone_for(org)
        now = self.clock()

        with self.ledger.transaction():
            snap = self.ledger.snapshot(org_id, lock=True)
            if snap is None or snap.status not in ENTITLED_STATUSES:
                return _no_subscription(org_id, snap)

            used = self.meter.count_since(org_id, start_of_month(zone, now))
            limit = snap.request_allowance
            if used >= limit:
                decision = Deny(
                    DenyReason.QUOTA_EXCEEDED,
                    f"Monthly request limit reached ({used} of {limit}).",
                    retry_at=start_of_next_month(zone, now),
                    context={"used": used, "limit": limit},
                )
            else:
                self.meter.record_event(org_id, action.category, at=now)
                return Allow({"used": used + 1, "limit": limit, "remaining": limit - used - 1})

        self.dispatcher.dispatch(
            NotificationEvent.USAGE_LIMIT_REACHED, org_id, {"used": used, "limit": limit},
        )
        return decision

    # ---- AddIp ------------------------------------------------------------
    def _add_ip(self, org_id: int, action: AddIp) -> Decision:
        address = _normalize_address(action.address)
        now = self.clock()
        try:
            with self.ledger.transaction():
                require_capability(org_id, action.actor_id, CAP_IPS_MANAGE)
                snap = self.ledger.snapshot(org_id, lock=True)
                if snap is None or snap.status not in ENTITLED_STATUSES:
                    return _no_subscription(org_id, snap)

                current = self.ledger.count_ips(org_id)
                allowance = snap.ip_allowance
                if current >= allowance:
                    return Deny(
                        DenyReason.IP_LIMIT_EXCEEDED,
                        f"IP limit reached: {current} of {allowance} allowed addresses registered.",
                        context={"current": current, "max": allowance},
                    )
                if self.ledger.find_ip_by_address(org_id, address) is not None:
                    raise ConflictError(f"{address} is already registered.", address=address)

                ip = self.ledger.add_ip(org_id, address, action.name, at=now)
                return Allow({"ip_id": ip.id, "address": address, "current": current + 1, "max": allowance})
        except IntegrityError:
            raise ConflictError(f"{address} is already registered.", address=address)

    # ---- ChangeIp ---------------------------------------------------------
    def _change_ip(self, org_id: int, action: ChangeIp) -> Decision:
        new_address = _normalize_address(action.new_address)
        now = self.clock()
        try:
            with self.ledger.transaction():
                require_capability(org_id, action.actor_id, CAP_IPS_MANAGE)
                snap = self.ledger.snapshot(org_id, lock=True)
                if snap is None or snap.status not in ENTITLED_STATUSES:
                    return _no_subscription(org_id, snap)

                ip = self.ledger.get_ip(org_id, action.ip_id, lock=True)
                if ip is None:
                    raise NotFoundError("IP address not found.", ip_id=action.ip_id)
                clash = self.ledger.find_ip_by_address(org_id, new_address)
                if clash is not None and clash.id != ip.id:
                    raise ConflictError(f"{new_address} is already registered.", address=new_address)

                available_at = ip.last_changed_at + timedelta(hours=snap.ip_change_cooldown_hours)
                credit_used = False
                if now < available_at:
                    if not self.ledger.consume_addon_unit(org_id, ADDON_EARLY_IP_CHANGE):
                        return Deny(
                            DenyReason.COOLDOWN_ACTIVE,
                            f"This IP was changed recently; it can change again at {available_at.isoformat()} UTC.",
                            retry_at=available_at,
                            context={"ip_id": ip.id, "available_at": available_at.isoformat()},
                        )
                    credit_used = True

                old_address = ip.address
                ip.address = new_address
                if action.name is not None:
                    ip.name = action.name
                ip.last_changed_at = now
                self.ledger.flush()
                return Allow({
                    "ip_id": ip.id,
                    "old_address": old_address,
                    "new_address": new_address,
                    "early_change_credit_used": credit_used,
                })
        except IntegrityError:
            raise ConflictError(f"{new_address} is already registered.", address=new_address)

    # ---- RemoveIp ---------------------------------------------------------
    def _remove_ip(self, org_id: int, action: RemoveIp) -> Decision:
        with self.ledger.transaction():
            require_capability(org_id, action.actor_id, CAP_IPS_MANAGE)
            # Floor applies whatever the subscription status; removal is not a consumption
            snap = self.ledger.snapshot(org_id, lock=True)
            ip = self.ledger.get_ip(org_id, action.ip_id, lock=True)
            if ip is None:
                raise NotFoundError("IP address not found.", ip_id=action.ip_id)

            current = self.ledger.count_ips(org_id)
            allowance = snap.ip_allowance if snap else 0
            if allowance == 1 and current <= 1:
                return Deny(
                    DenyReason.FLOOR_VIOLATION,
                    "At least one IP address must stay registered on this plan.",
                    context={"current": current, "max": allowance},
                )
            address = ip.address
            self.ledger.delete_ip(ip)
            return Allow({"ip_id": action.ip_id, "address": address, "current": current - 1, "max": allowance})
