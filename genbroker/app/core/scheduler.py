"""Periodic maintenance scheduling on APScheduler."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Thin wrapper over a BackgroundScheduler.

    Jobs never overlap themselves and missed runs are coalesced into one.
    """

    def __init__(self, *, timezone: str = "UTC"):
        self._scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers=4)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            },
            timezone=timezone,
        )
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started", extra={"data": {"jobs": [j.id for j in self._scheduler.get_jobs()]}})

    def shutdown(self, wait: bool = True) -> None:
        if self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable[..., Any],
        job_id: str,
        *,
        hours: int = 0,
        minutes: int = 0,
        seconds: int = 0,
        **kwargs: Any,
    ) -> str:
        self._scheduler.add_job(
            func=self._guarded(func, job_id),
            trigger=IntervalTrigger(hours=hours, minutes=minutes, seconds=seconds),
            id=job_id,
            name=job_id,
            replace_existing=True,
            kwargs=kwargs,
        )
        logger.info(
            "Scheduled interval job",
            extra={"data": {"job": job_id, "hours": hours, "minutes": minutes, "seconds": seconds}},
        )
        return job_id

    def add_cron_job(self, func: Callable[..., Any], job_id: str, cron_expression: str, **kwargs: Any) -> str:
        """Schedule ``func`` from a 5-field crontab expression."""
        if len(cron_expression.split()) != 5:
            raise ValueError(f"Invalid cron expression (expected 5 fields): {cron_expression!r}")
        self._scheduler.add_job(
            func=self._guarded(func, job_id),
            trigger=CronTrigger.from_crontab(cron_expression, timezone=self._scheduler.timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
            kwargs=kwargs,
        )
        logger.info("Scheduled cron job", extra={"data": {"job": job_id, "cron": cron_expression}})
        return job_id

    def remove_job(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    def get_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler.running

    @staticmethod
    def _guarded(func: Callable[..., Any], job_id: str) -> Callable[..., Any]:
        def run(**kwargs: Any) -> Optional[Any]:
            try:
                return func(**kwargs)
            except Exception:
                logger.exception("Scheduled job failed", extra={"data": {"job": job_id}})
                return None

        run.__name__ = getattr(func, "__name__", job_id)
        return run
