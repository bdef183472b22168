"""
Recurring billing jobs.

Jobs are registered with a cron schedule and run through `flask jobs run
<name>` from the OS scheduler, one process per run. Overlap is prevented by a
lease row in `job_runs`: a run that cannot take the lease is skipped. Each job
is idempotent, so a re-run after a crash or a manual run is safe.
"""
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from tenantbill.extensions import db
from tenantbill.observability import log_event
from tenantbill.services.ledger import LedgerStore
from tenantbill.utils.clock import utcnow

logger = logging.getLogger("tenantbill.jobs")


@dataclass
class JobReport:
    name: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    processed: int = 0
    changed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, organization_id: Optional[int], exc: BaseException) -> None:
        self.errors.append({
            "organization_id": organization_id,
            "error": type(exc).__name__,
            "message": str(exc),
        })

    @property
    def ok(self) -> bool:
        return not self.errors

    def finish(self) -> "JobReport":
        self.finished_at = utcnow()
        log_event(
            logger, "job_finished",
            level=logging.INFO if self.ok else logging.WARNING,
            **self.to_dict(),
        )
        return self

    def to_dict(self) -> dict:
        return {
            "job": self.name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "changed": self.changed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class RegisteredJob:
    name: str
    schedule: str
    handler: Callable[..., JobReport]
    description: str = ""


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[str, RegisteredJob] = {}

    def register(self, name: str, schedule: str, handler: Callable[..., JobReport], description: str = "") -> None:
        if name in self._jobs:
            raise ValueError(f"job {name!r} is already registered")
        if len(schedule.split()) != 5:
            raise ValueError(f"schedule for {name!r} must be a 5-field cron expression")
        self._jobs[name] = RegisteredJob(name, schedule, handler, description)

    def __iter__(self):
        return iter(sorted(self._jobs.values(), key=lambda j: j.name))

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def get(self, name: str) -> RegisteredJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"unknown job {name!r}") from None

    def run(self, name: str, **kwargs) -> Optional[JobReport]:
        """Run one job. Returns None when another run (in any process) still holds its lease."""
        job = self.get(name)
        ledger = LedgerStore()
        holder = _holder_id()
        now = utcnow()
        stale_before = now - timedelta(seconds=current_app.config.get("JOB_LEASE_SECONDS", 6 * 3600))
        with ledger.transaction():
            claimed = ledger.claim_job_lease(name, holder, now, stale_before)
        if not claimed:
            log_event(logger, "job_skipped", level=logging.WARNING, job=name, reason="already_running")
            return None

        status = "failed"
        try:
            log_event(logger, "job_started", job=name, holder=holder)
            report = job.handler(**kwargs)
            status = "ok" if report.ok else "errors"
            return report
        except Exception as exc:
            db.session.rollback()
            logger.exception("job %s aborted", name)
            report = JobReport(name=name)
            report.add_error(None, exc)
            return report.finish()
        finally:
            with ledger.transaction():
                ledger.release_job_lease(name, holder, utcnow(), status)

    def crontab_lines(self, command: str = "flask jobs run", timezone: Optional[str] = None) -> List[str]:
        lines = []
        if timezone:
            lines.append(f"CRON_TZ={timezone}")
        for job in self:
            lines.append(f"{job.schedule} {command} {job.name}")
        return lines


def build_registry() -> JobRegistry:
    from .expiry_sweep import run_expiry_sweep
    from .monthly_invoices import run_monthly_invoice_generation
    from .usage_cleanup import run_usage_cleanup

    registry = JobRegistry()
    registry.register("expiry-sweep", "5 0 * * *", run_expiry_sweep,
                      "Expiry warnings, overdue detection and cancellations")
    registry.register("monthly-invoices", "0 6 1 * *", run_monthly_invoice_generation,
                      "Renewal invoices for active subscriptions")
    registry.register("usage-cleanup", "0 4 * * *", run_usage_cleanup,
                      "Delete usage records past retention")
    return registry
