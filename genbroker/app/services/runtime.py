"""Service graph construction shared by the API process, the worker and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.config import settings
from ..core.database import Database
from ..core.scheduler import SchedulerService
from .credits import CreditLedger
from .jobs import JobStore
from .notifications import DiscordDmNotifier, LogNotifier, NotificationDispatcher, Notifier
from .orchestrator import JobOrchestrator
from .providers.base import GenerationProvider
from .providers.edenai import EdenAIProvider
from .validation import RequestValidator, UsageLimiter

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reservation_sweep"
STALE_JOB_ID = "stale_job_check"
RETENTION_JOB_ID = "job_retention"


@dataclass
class Runtime:
    db: Database
    ledger: CreditLedger
    jobs: JobStore
    dispatcher: NotificationDispatcher
    orchestrator: JobOrchestrator
    scheduler: Optional[SchedulerService] = None

    def start(self, *, with_scheduler: bool = True, recover: bool = True) -> None:
        """Start worker pools, re-enqueue unfinished jobs and schedule maintenance."""
        self.orchestrator.start()
        if recover:
            self.orchestrator.recover()
        if with_scheduler:
            self.scheduler = self.scheduler or build_scheduler(self.orchestrator)
            self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        self.orchestrator.stop()


def default_notifier() -> Notifier:
    if settings.discord_bot_token:
        return DiscordDmNotifier()
    logger.info("No Discord token configured; notifications go to the log")
    return LogNotifier()


def build_runtime(
    db: Database | None = None,
    *,
    provider: GenerationProvider | None = None,
    notifier: Notifier | None = None,
) -> Runtime:
    db = db or Database()
    ledger = CreditLedger(db)
    jobs = JobStore(db)
    dispatcher = NotificationDispatcher(notifier or default_notifier())
    orchestrator = JobOrchestrator(
        ledger,
        jobs,
        provider or EdenAIProvider(),
        RequestValidator(),
        dispatcher,
        usage_limiter=UsageLimiter(jobs),
    )
    return Runtime(db=db, ledger=ledger, jobs=jobs, dispatcher=dispatcher, orchestrator=orchestrator)


def build_scheduler(orchestrator: JobOrchestrator) -> SchedulerService:
    scheduler = SchedulerService()
    scheduler.add_interval_job(
        orchestrator.sweep_expired_reservations,
        SWEEP_JOB_ID,
        minutes=settings.reservation_sweep_interval_minutes,
    )
    scheduler.add_interval_job(
        orchestrator.find_stale_jobs,
        STALE_JOB_ID,
        minutes=settings.stale_job_check_interval_minutes,
    )
    scheduler.add_cron_job(orchestrator.purge_old_jobs, RETENTION_JOB_ID, settings.job_retention_cron)
    return scheduler
