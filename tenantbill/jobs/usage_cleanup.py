from datetime import datetime, timedelta
from typing import Callable, Optional

from flask import current_app

from tenantbill.services.ledger import LedgerStore
from tenantbill.utils.clock import utcnow
from . import JobReport


def run_usage_cleanup(ledger: Optional[LedgerStore] = None, clock: Callable[[], datetime] = utcnow) -> JobReport:
    """Delete usage records older than USAGE_RETENTION_DAYS."""
    ledger = ledger or LedgerStore()
    report = JobReport(name="usage-cleanup")
    cutoff = clock() - timedelta(days=current_app.config.get("USAGE_RETENTION_DAYS", 90))
    try:
        with ledger.transaction():
            report.changed = ledger.purge_usage_before(cutoff)
        report.processed = 1
    except Exception as exc:
        current_app.logger.exception("usage cleanup failed (cutoff %s)", cutoff)
        report.add_error(None, exc)
    return report.finish()
