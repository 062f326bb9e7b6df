import threading

import pytest

from genbroker.app.core.scheduler import SchedulerService


def test_jobs_are_registered_and_removable() -> None:
    scheduler = SchedulerService()
    scheduler.add_interval_job(lambda: None, "sweep", minutes=10)
    scheduler.add_cron_job(lambda: None, "purge", "0 2 * * *")

    assert {job["id"] for job in scheduler.get_jobs()} == {"sweep", "purge"}
    assert scheduler.remove_job("sweep") is True
    assert scheduler.remove_job("sweep") is False
    assert [job["id"] for job in scheduler.get_jobs()] == ["purge"]


def test_re_adding_a_job_replaces_it() -> None:
    scheduler = SchedulerService()
    scheduler.start()
    try:
        scheduler.add_interval_job(lambda: None, "sweep", minutes=10)
        scheduler.add_interval_job(lambda: None, "sweep", minutes=5)

        jobs = scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0]["next_run"] is not None
    finally:
        scheduler.shutdown(wait=False)


def test_invalid_cron_expression() -> None:
    with pytest.raises(ValueError):
        SchedulerService().add_cron_job(lambda: None, "purge", "0 2 * *")


def test_guarded_job_logs_and_swallows_errors() -> None:
    def boom() -> None:
        raise RuntimeError("sweep failed")

    guarded = SchedulerService._guarded(boom, "sweep")

    assert guarded() is None
    assert guarded.__name__ == "boom"


def test_started_scheduler_runs_interval_jobs() -> None:
    ran = threading.Event()
    scheduler = SchedulerService()
    scheduler.add_interval_job(ran.set, "tick", seconds=1)

    scheduler.start()
    try:
        assert scheduler.is_running
        assert ran.wait(5)
    finally:
        scheduler.shutdown(wait=False)

    assert not scheduler.is_running
