import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from tenantbill.models.usage_record import CATEGORY_REQUEST, OUTCOME_SUCCESS
from tenantbill.observability import log_event
from tenantbill.utils.clock import start_of_month, start_of_next_month, utcnow
from .ledger import LedgerStore

logger = logging.getLogger("tenantbill.usage")


class UsageMeter:
    """Append-only metering log plus windowed counts over it."""

    def __init__(self, ledger: Optional[LedgerStore] = None, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger or LedgerStore()
        self.clock = clock

    def record_event(self, org_id: int, category: str = CATEGORY_REQUEST, outcome: str = OUTCOME_SUCCESS,
                     at: Optional[datetime] = None) -> None:
        """
        Stage one usage record in the caller's transaction (the caller commits).
        Metering must not break the request it meters, so staging errors are logged, not raised.
        """
        try:
            self.ledger.add_usage_record(org_id, category, outcome, at or self.clock())
        except SQLAlchemyError:
            logger.exception("usage record could not be staged for org %s", org_id)

    def count_since(self, org_id: int, window_start: datetime, category: Optional[str] = None) -> int:
        return self.ledger.count_usage_since(org_id, window_start, category=category)

    def month_window(self, org_id: int) -> datetime:
        """Start of the organization's current local calendar month (naive UTC)."""
        org = self.ledger.require_organization(org_id)
        return start_of_month(self.ledger.zone_for(org), self.clock())

    def quota_status(self, org_id: int) -> Dict[str, Any]:
        """Read-only view of this month's consumption against the current allowance."""
        org = self.ledger.require_organization(org_id)
        zone = self.ledger.zone_for(org)
        now = self.clock()
        window = start_of_month(zone, now)
        used = self.count_since(org_id, window)
        snap = self.ledger.snapshot(org_id)
        limit = snap.request_allowance if snap else 0
        status = {
            "organization_id": org_id,
            "used": used,
            "limit": limit,
            "remaining": max(limit - used, 0),
            "reached": used >= limit,
            "window_start": window.isoformat(),
            "resets_at": start_of_next_month(zone, now).isoformat(),
            "subscription_status": snap.status if snap else None,
        }
        log_event(logger, "quota_status", level=logging.DEBUG, **status)
        return status
