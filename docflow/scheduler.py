"""SLA Scheduler - periodic SLA check guarded by a database lease

Every process may run its own scheduler. Before a run, the process takes the
`sla-check` lease row with a conditional UPDATE; a process that cannot take
it skips the tick. Leases expire on their own, so a crashed holder only
delays the next run.
"""
import os
import socket
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import Engine, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .config import settings
from .logging_config import get_logger
from .models import SchedulerLeaseTable, SLACheckSummary
from .util import new_id, resolve_now

logger = get_logger(__name__)

SLA_LEASE = "sla-check"


def generate_holder_id() -> str:
    """Unique id of this process for lease ownership"""
    return f"{socket.gethostname()}-{os.getpid()}-{new_id()[-8:]}"


PROCESS_HOLDER = generate_holder_id()


def acquire_lease(
    engine: Engine,
    name: str,
    holder: str,
    seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """Take the lease if it is free, expired, or already ours."""
    now = resolve_now(now)
    expires_at = now + timedelta(seconds=seconds)
    with Session(engine) as session:
        result = session.execute(
            update(SchedulerLeaseTable)
            .where(
                SchedulerLeaseTable.name == name,
                or_(SchedulerLeaseTable.expires_at < now, SchedulerLeaseTable.holder == holder),
            )
            .values(holder=holder, expires_at=expires_at)
        )
        if result.rowcount == 1:
            session.commit()
            return True

        if session.get(SchedulerLeaseTable, name) is not None:
            return False

        session.add(SchedulerLeaseTable(name=name, holder=holder, expires_at=expires_at))
        try:
            session.commit()
        except IntegrityError:
            # Another process inserted the row first
            session.rollback()
            return False
        return True


def release_lease(engine: Engine, name: str, holder: str) -> None:
    with Session(engine) as session:
        session.execute(
            delete(SchedulerLeaseTable)
            .where(SchedulerLeaseTable.name == name, SchedulerLeaseTable.holder == holder)
        )
        session.commit()


def run_sla_check(services, now: Optional[datetime] = None, holder: str = PROCESS_HOLDER) -> SLACheckSummary:
    """One SLA pass under the lease; returns ran=False when another process holds it."""
    if not acquire_lease(services.engine, SLA_LEASE, holder, settings.sla_lease_seconds, now):
        logger.info("SLA check skipped, lease held elsewhere", extra={"holder": holder})
        return SLACheckSummary(ran=False)
    try:
        return services.sla.run_check(now)
    finally:
        release_lease(services.engine, SLA_LEASE, holder)


class SLAScheduler:
    """Runs the SLA check on a fixed interval in a background thread"""

    def __init__(self, services, interval_seconds: Optional[int] = None):
        self.services = services
        self.interval_seconds = interval_seconds or settings.sla_check_interval_seconds
        self.scheduler: Optional[BackgroundScheduler] = None
        self.holder = PROCESS_HOLDER

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        if self.is_running:
            logger.warning("SLA scheduler already running")
            return

        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="sla_check",
            name="Check step deadlines",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"SLA scheduler started, every {self.interval_seconds}s",
            extra={"holder": self.holder},
        )

    def stop(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("SLA scheduler stopped")

    def _tick(self) -> None:
        # Errors are logged and the next tick retries
        try:
            run_sla_check(self.services, holder=self.holder)
        except Exception:
            logger.exception("SLA check run failed", extra={"holder": self.holder})
