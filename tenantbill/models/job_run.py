from tenantbill.extensions import db


class JobRun(db.Model):
    """
    Lease row per recurring job. A run holds it (holder + locked_at) from start
    to finish, so a second process started by the scheduler skips instead of
    overlapping. A lease older than JOB_LEASE_SECONDS is treated as abandoned.
    """

    __tablename__ = "job_runs"

    name = db.Column(db.String(64), primary_key=True)
    holder = db.Column(db.String(128), nullable=True)
    locked_at = db.Column(db.DateTime, nullable=True)

    last_started_at = db.Column(db.DateTime, nullable=True)
    last_finished_at = db.Column(db.DateTime, nullable=True)
    last_status = db.Column(db.String(20), nullable=True)  # ok|errors|failed

    def __repr__(self) -> str:
        return f"<JobRun {self.name!r} holder={self.holder!r} last_status={self.last_status!r}>"
