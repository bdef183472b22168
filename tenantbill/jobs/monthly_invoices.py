import logging
from datetime import datetime
from typing import Callable, Optional

from tenantbill.models.subscription import STATUS_ACTIVE
from tenantbill.services.invoices import InvoiceEngine
from tenantbill.services.ledger import LedgerStore
from tenantbill.utils.clock import utcnow
from . import JobReport

logger = logging.getLogger("tenantbill.jobs.monthly_invoices")


def run_monthly_invoice_generation(ledger: Optional[LedgerStore] = None, engine: Optional[InvoiceEngine] = None,
                                   clock: Callable[[], datetime] = utcnow) -> JobReport:
    """One renewal invoice per active subscription; existing ones are skipped."""
    ledger = ledger or LedgerStore()
    engine = engine or InvoiceEngine(ledger, clock=clock)
    report = JobReport(name="monthly-invoices")

    for org_id in ledger.subscription_orgs_with_status((STATUS_ACTIVE,)):
        report.processed += 1
        try:
            sub = ledger.get_subscription(org_id)
            if sub is None or sub.status != STATUS_ACTIVE:
                report.skipped += 1
                continue
            if engine.generate_renewal_invoice(sub) is None:
                report.skipped += 1
            else:
                report.changed += 1
        except Exception as exc:
            ledger.session.rollback()
            logger.exception("renewal invoice failed for org %s", org_id)
            report.add_error(org_id, exc)

    return report.finish()
