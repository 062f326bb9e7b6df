from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from genbroker.app.core.errors import (
    InsufficientCreditsError,
    InvalidRequestError,
    JobAccessDeniedError,
    JobNotCancellableError,
    JobNotFoundError,
    SubmissionError,
    UsageLimitExceededError,
)
from genbroker.app.db.models import DbCreditTransaction, DbGenerationJob
from genbroker.app.services.credits import (
    RESERVATION_ACTIVE,
    RESERVATION_CONSUMED,
    RESERVATION_RELEASED,
    TX_CONSUME,
)
from genbroker.app.services.jobs import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING
from genbroker.app.services.providers.base import GenerationResult
from genbroker.app.services.providers.edenai import ProviderHTTPError
from genbroker.app.services.queue import COMPLETED as TASK_COMPLETED
from genbroker.app.services.queue import FAILED as TASK_FAILED
from genbroker.app.services.queue import REMOVED as TASK_REMOVED
from genbroker.app.services.queue import RetryPolicy
from genbroker.app.services.validation import UsageLimiter
from genbroker.app.services.orchestrator import SWEEP_FAILURE_MESSAGE

MODEL = "openai/dall-e-3"
PROMPT = "a watercolor fox in the snow"


def _submit(orchestrator, user_id: str = "user-1", cost: int = 40, **kwargs):
    return orchestrator.submit(user_id, "image", MODEL, PROMPT, kwargs.pop("params", {}), estimated_cost=cost, **kwargs)


def _balance(ledger, user_id: str = "user-1"):
    balance = ledger.get_balance(user_id)
    return balance.available, balance.reserved


def _job_transactions(ledger, job_id: str) -> list[str]:
    with ledger.db.session() as session:
        return list(
            session.scalars(select(DbCreditTransaction.type).where(DbCreditTransaction.job_id == job_id)).all()
        )


def _success(credits: int) -> GenerationResult:
    return GenerationResult(
        success=True,
        result_url="https://cdn.example.com/fox.png",
        credits_used=credits,
        metadata={"provider": "fake"},
    )


def test_submit_reserves_and_queues_without_running_provider(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)

    submission = _submit(orchestrator, user_id, cost=40)

    assert _balance(ledger, user_id) == (60, 40)
    job = job_store.find_by_id(submission.job_id)
    assert job.status == PENDING
    assert job.reservation_id == submission.reservation_id
    assert job.credits_reserved == 40
    assert ledger.get_reservation(submission.reservation_id).job_id == submission.job_id
    assert provider.calls == []
    assert orchestrator.queue.get(submission.job_id) is not None
    assert submission.estimated_seconds == 60


def test_successful_job_settles_actual_cost(orchestrator, ledger, job_store, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(_success(25))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == COMPLETED
    assert job.credits_used == 25
    assert job.result_url == "https://cdn.example.com/fox.png"
    assert job.attempts == 1
    assert job.progress == 100
    assert _balance(ledger, user_id) == (75, 0)
    balance = ledger.get_balance(user_id)
    assert balance.consumed == 25
    assert balance.total == 75
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_CONSUMED
    assert sorted(_job_transactions(ledger, submission.job_id)) == ["consume", "refund", "reserve"]

    messages = notifier.messages_for(user_id)
    assert any(submission.job_id in m and "ready" in m for m in messages)
    # 100 -> 75 crosses the low-balance threshold of 100.
    assert any("balance is low" in m for m in messages)


def test_low_balance_alert_only_when_crossing(orchestrator, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=500)
    provider.queue(_success(10))
    _submit(orchestrator, user_id, cost=10)

    orchestrator.drain()

    assert not any("balance is low" in m for m in notifier.messages_for(user_id))


def test_concurrent_submissions_only_one_reserved(orchestrator, ledger, job_store, funded_user) -> None:
    user_id = funded_user(credits=100)
    barrier = threading.Barrier(2)
    results: list = []
    lock = threading.Lock()

    def submit() -> None:
        barrier.wait()
        try:
            outcome = _submit(orchestrator, user_id, cost=60)
        except InsufficientCreditsError as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert len(results) == 2
    assert sum(isinstance(r, InsufficientCreditsError) for r in results) == 1
    assert _balance(ledger, user_id) == (40, 60)
    assert len(job_store.list_for_user(user_id)) == 1


def test_provider_failure_releases_reservation(orchestrator, ledger, job_store, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(GenerationResult.failure("content policy violation", retryable=False))
    submission = _submit(orchestrator, user_id, cost=50)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert job.error_message == "content policy violation"
    assert job.credits_used is None
    assert _balance(ledger, user_id) == (100, 0)
    assert TX_CONSUME not in _job_transactions(ledger, submission.job_id)
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_RELEASED
    assert len(provider.calls) == 1
    assert orchestrator.queue.get(submission.job_id).status == TASK_FAILED
    assert any("failed" in m and "content policy violation" in m for m in notifier.messages_for(user_id))


def test_transient_failure_retries_and_keeps_reservation(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    held: list = []

    def timeout(call):
        held.append(_balance(ledger, user_id))
        return RuntimeError("provider timeout")

    provider.queue(timeout, _success(30))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    assert held == [(60, 40)]
    job = job_store.find_by_id(submission.job_id)
    assert job.status == COMPLETED
    assert job.attempts == 2
    assert job.credits_used == 30
    assert _balance(ledger, user_id) == (70, 0)
    assert orchestrator.queue.stats().retried == 1


def test_retries_exhausted_fail_job(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(ProviderHTTPError(503, "busy"), ProviderHTTPError(503, "busy"), ProviderHTTPError(503, "busy"))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert job.attempts == 3
    assert "busy" in job.error_message
    assert _balance(ledger, user_id) == (100, 0)
    assert len(provider.calls) == 3


def test_non_retryable_http_error_fails_immediately(orchestrator, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(ProviderHTTPError(400, "bad request"))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    assert job_store.find_by_id(submission.job_id).status == FAILED
    assert len(provider.calls) == 1


def _locked() -> OperationalError:
    return OperationalError("UPDATE generation_jobs", {}, Exception("database is locked"))


def test_store_error_before_provider_fails_job_and_releases(
    orchestrator, ledger, job_store, provider, notifier, monkeypatch, funded_user
) -> None:
    user_id = funded_user(credits=100)

    def record_attempt(job_id):
        raise _locked()

    monkeypatch.setattr(job_store, "record_attempt", record_attempt)
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert "database is locked" in job.error_message
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_RELEASED
    assert _balance(ledger, user_id) == (100, 0)
    assert provider.calls == []
    task = orchestrator.queue.get(submission.job_id)
    assert task.status == TASK_FAILED
    assert task.attempts == 3
    assert any("failed" in m for m in notifier.messages_for(user_id))


def test_crash_before_guarded_region_on_final_attempt_releases(
    orchestrator, ledger, job_store, provider, notifier, monkeypatch, funded_user
) -> None:
    user_id = funded_user(credits=100)
    submission = _submit(orchestrator, user_id, cost=40)

    def find_by_id(job_id):
        raise _locked()

    monkeypatch.setattr(job_store, "find_by_id", find_by_id)
    orchestrator.drain()
    monkeypatch.undo()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_RELEASED
    assert _balance(ledger, user_id) == (100, 0)
    assert provider.calls == []
    assert orchestrator.queue.get(submission.job_id).status == TASK_FAILED
    assert any("failed" in m for m in notifier.messages_for(user_id))


def test_transient_settle_error_retries_settlement_only(
    orchestrator, ledger, job_store, provider, notifier, monkeypatch, funded_user
) -> None:
    user_id = funded_user(credits=100)
    real_settle = ledger.settle
    settle_calls: list[int] = []

    def flaky_settle(reservation_id, actual_cost, **kwargs):
        settle_calls.append(actual_cost)
        if len(settle_calls) == 1:
            raise _locked()
        return real_settle(reservation_id, actual_cost, **kwargs)

    monkeypatch.setattr(ledger, "settle", flaky_settle)
    provider.queue(_success(25))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == COMPLETED
    assert job.credits_used == 25
    assert settle_calls == [25, 25]
    assert len(provider.calls) == 1
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_CONSUMED
    assert _balance(ledger, user_id) == (75, 0)
    assert ledger.get_balance(user_id).consumed == 25
    assert orchestrator.queue.get(submission.job_id).status == TASK_COMPLETED

    messages = notifier.messages_for(user_id)
    assert sum(1 for m in messages if submission.job_id in m and "ready" in m) == 1
    assert not any("failed" in m for m in messages)


def test_settle_failing_every_attempt_never_releases_completed_job(
    orchestrator_factory, ledger, job_store, provider, notifier, monkeypatch, funded_user
) -> None:
    orchestrator = orchestrator_factory(retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0))
    user_id = funded_user(credits=100)

    def broken_settle(reservation_id, actual_cost, **kwargs):
        raise _locked()

    monkeypatch.setattr(ledger, "settle", broken_settle)
    provider.queue(_success(25))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == COMPLETED
    assert job.credits_used == 25
    assert len(provider.calls) == 1
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_ACTIVE
    assert _balance(ledger, user_id) == (60, 40)
    assert any(submission.job_id in m and "ready" in m for m in notifier.messages_for(user_id))


def test_actual_cost_above_reservation_is_capped(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(_success(70))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    assert job_store.find_by_id(submission.job_id).credits_used == 40
    assert _balance(ledger, user_id) == (60, 0)
    assert ledger.get_balance(user_id).consumed == 40


def test_submit_rejects_invalid_request_without_reserving(orchestrator, ledger, job_store, funded_user) -> None:
    user_id = funded_user(credits=100)

    with pytest.raises(InvalidRequestError) as exc_info:
        orchestrator.submit(user_id, "image", "unknown/model", PROMPT)

    assert any("Unsupported model" in e for e in exc_info.value.errors)
    assert _balance(ledger, user_id) == (100, 0)
    assert job_store.list_for_user(user_id) == []


def test_submit_insufficient_credits_creates_no_job(orchestrator, ledger, job_store, funded_user) -> None:
    user_id = funded_user(credits=100)

    with pytest.raises(InsufficientCreditsError):
        _submit(orchestrator, user_id, cost=500)

    assert job_store.list_for_user(user_id) == []
    assert _balance(ledger, user_id) == (100, 0)


def test_submit_uses_estimated_price_by_default(orchestrator, ledger, funded_user) -> None:
    user_id = funded_user(credits=100)

    submission = orchestrator.submit(
        user_id, "image", "replicate/classic", PROMPT, {"quantity": 4, "size": "1024x1024"}
    )

    # 1.15 credits x 4 images at 1024x1024, rounded up.
    assert submission.credits_reserved == 5
    assert _balance(ledger, user_id) == (95, 5)


def test_usage_limits_block_before_reserving(orchestrator_factory, job_store, ledger, funded_user) -> None:
    orchestrator = orchestrator_factory(
        usage_limiter=UsageLimiter(job_store, max_concurrent=1, max_per_hour=10, max_per_day=10)
    )
    user_id = funded_user(credits=100)
    _submit(orchestrator, user_id, cost=10)

    with pytest.raises(UsageLimitExceededError) as exc_info:
        _submit(orchestrator, user_id, cost=10)

    assert exc_info.value.limit == "concurrent"
    assert _balance(ledger, user_id) == (90, 10)


def test_job_creation_failure_releases_reservation(orchestrator, ledger, job_store, monkeypatch, funded_user) -> None:
    user_id = funded_user(credits=100)

    def broken_create(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(job_store, "create", broken_create)

    with pytest.raises(SubmissionError):
        _submit(orchestrator, user_id, cost=40)

    assert _balance(ledger, user_id) == (100, 0)


def test_enqueue_failure_fails_job_and_releases(orchestrator, ledger, job_store, monkeypatch, funded_user) -> None:
    user_id = funded_user(credits=100)

    def broken_add(*args, **kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(orchestrator.queue, "add", broken_add)

    with pytest.raises(SubmissionError):
        _submit(orchestrator, user_id, cost=40)

    jobs = job_store.list_for_user(user_id)
    assert [j.status for j in jobs] == [FAILED]
    assert _balance(ledger, user_id) == (100, 0)


def test_cancel_pending_job(orchestrator, ledger, job_store, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=100)
    submission = _submit(orchestrator, user_id, cost=40)

    result = orchestrator.cancel(submission.job_id, user_id)

    assert result.job.status == CANCELLED
    assert result.released == 40
    assert result.removed_from_queue is True
    assert _balance(ledger, user_id) == (100, 0)
    assert orchestrator.queue.get(submission.job_id).status == TASK_REMOVED

    orchestrator.drain()
    assert provider.calls == []
    assert any("cancelled" in m for m in notifier.messages_for(user_id))


def test_cancel_completed_job_is_rejected(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(_success(25))
    submission = _submit(orchestrator, user_id, cost=40)
    orchestrator.drain()
    before = ledger.get_balance(user_id)

    with pytest.raises(JobNotCancellableError):
        orchestrator.cancel(submission.job_id, user_id)

    after = ledger.get_balance(user_id)
    assert (after.available, after.reserved, after.consumed) == (before.available, before.reserved, before.consumed)
    assert job_store.find_by_id(submission.job_id).status == COMPLETED


def test_cancel_checks_ownership_and_existence(orchestrator, funded_user) -> None:
    user_id = funded_user(credits=100)
    submission = _submit(orchestrator, user_id, cost=10)

    with pytest.raises(JobAccessDeniedError):
        orchestrator.cancel(submission.job_id, "someone-else")
    with pytest.raises(JobNotFoundError):
        orchestrator.cancel("job_missing", user_id)


def test_cancel_while_processing_discards_result(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    submitted: dict = {}

    def cancel_mid_flight(call):
        result = orchestrator.cancel(submitted["job_id"], user_id)
        submitted["cancel"] = result
        return _success(25)

    provider.queue(cancel_mid_flight)
    submission = _submit(orchestrator, user_id, cost=40)
    submitted["job_id"] = submission.job_id

    orchestrator.drain()

    assert submitted["cancel"].removed_from_queue is False
    assert submitted["cancel"].released == 40
    job = job_store.find_by_id(submission.job_id)
    assert job.status == CANCELLED
    assert job.credits_used is None
    assert _balance(ledger, user_id) == (100, 0)
    assert TX_CONSUME not in _job_transactions(ledger, submission.job_id)


def test_sweep_fails_job_and_late_settle_is_noop(orchestrator, ledger, job_store, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=100)
    ledger.reservation_ttl_seconds = 0
    submission = _submit(orchestrator, user_id, cost=40)

    result = orchestrator.sweep_expired_reservations(int(time.time()) + 1)

    assert result.released == 1
    assert result.credits_released == 40
    assert result.failed_jobs == [submission.job_id]
    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert job.error_message == SWEEP_FAILURE_MESSAGE
    assert _balance(ledger, user_id) == (100, 0)

    late = ledger.settle(submission.reservation_id, 25)
    assert late.already_handled is True
    assert late.consumed == 0
    assert _balance(ledger, user_id) == (100, 0)

    orchestrator.drain()
    assert provider.calls == []
    assert any(SWEEP_FAILURE_MESSAGE in m for m in notifier.messages_for(user_id))


def test_worker_finishing_after_sweep_is_discarded(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    ledger.reservation_ttl_seconds = 0

    def sweep_mid_flight(call):
        orchestrator.sweep_expired_reservations(int(time.time()) + 1)
        return _success(25)

    provider.queue(sweep_mid_flight)
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == FAILED
    assert _balance(ledger, user_id) == (100, 0)
    assert TX_CONSUME not in _job_transactions(ledger, submission.job_id)


def test_expired_reservation_at_settlement_is_released(orchestrator, ledger, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    ledger.reservation_ttl_seconds = 0
    provider.queue(_success(25))
    submission = _submit(orchestrator, user_id, cost=40)

    orchestrator.drain()

    job = job_store.find_by_id(submission.job_id)
    assert job.status == COMPLETED
    assert job.credits_used == 0
    assert _balance(ledger, user_id) == (100, 0)
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_RELEASED


def test_ledger_sweep_leaves_processing_job_for_stale_finder(orchestrator, ledger, job_store, funded_user) -> None:
    user_id = funded_user(credits=100)
    ledger.reservation_ttl_seconds = 0
    submission = _submit(orchestrator, user_id, cost=40)
    job_store.transition(submission.job_id, PROCESSING)
    with job_store.db.session() as session:
        session.execute(
            update(DbGenerationJob)
            .where(DbGenerationJob.id == submission.job_id)
            .values(started_at=DbGenerationJob.started_at - 3600, created_at=DbGenerationJob.created_at - 3600)
        )

    assert ledger.sweep_expired(int(time.time()) + 1) == 1

    stale = orchestrator.find_stale_jobs(10)
    assert [j.id for j in stale] == [submission.job_id]
    assert stale[0].status == PROCESSING
    assert ledger.get_reservation(submission.reservation_id).status == RESERVATION_RELEASED
    assert ledger.settle(submission.reservation_id, 25).already_handled is True


def test_execute_with_missing_job_releases(orchestrator, ledger, funded_user) -> None:
    user_id = funded_user(credits=100)
    reservation = ledger.reserve(user_id, 30)

    status = orchestrator.execute({"job_id": "job_gone", "reservation_id": reservation.id})

    assert status == FAILED
    assert _balance(ledger, user_id) == (100, 0)


def test_execute_skips_terminal_job(orchestrator, job_store, provider, funded_user) -> None:
    user_id = funded_user(credits=100)
    submission = _submit(orchestrator, user_id, cost=10)
    orchestrator.cancel(submission.job_id, user_id)

    status = orchestrator.execute({"job_id": submission.job_id, "reservation_id": submission.reservation_id})

    assert status == CANCELLED
    assert provider.calls == []


def test_recover_requeues_active_jobs(orchestrator_factory, orchestrator, job_store, ledger, funded_user) -> None:
    user_id = funded_user(credits=100)
    first = _submit(orchestrator, user_id, cost=10)
    second = _submit(orchestrator, user_id, cost=10)
    orchestrator.cancel(second.job_id, user_id)

    restarted = orchestrator_factory()
    assert restarted.recover() == 1
    assert restarted.recover() == 0
    restarted.drain()

    assert job_store.find_by_id(first.job_id).status == COMPLETED
    assert ledger.get_reservation(first.reservation_id).status == RESERVATION_CONSUMED


def test_status_stats_and_purge(orchestrator, job_store, funded_user) -> None:
    user_id = funded_user(credits=100)
    submission = _submit(orchestrator, user_id, cost=10)

    status = orchestrator.get_job_status(submission.job_id)
    assert status.job.id == submission.job_id
    assert status.queue_task is not None
    assert orchestrator.get_job_status("job_missing") is None

    stats = orchestrator.queue_stats()
    assert set(stats) == {"generation", "notifications"}
    assert stats["generation"].waiting == 1

    assert orchestrator.purge_old_jobs(1) == 0


def test_background_workers_process_jobs(orchestrator, ledger, job_store, provider, notifier, funded_user) -> None:
    user_id = funded_user(credits=100)
    provider.queue(_success(5), _success(5), _success(5))
    orchestrator.start()
    submissions = [_submit(orchestrator, user_id, cost=10) for _ in range(3)]

    assert orchestrator.queue.join(timeout=10)
    assert orchestrator.dispatcher.queue.join(timeout=10)

    assert {job_store.find_by_id(s.job_id).status for s in submissions} == {COMPLETED}
    assert _balance(ledger, user_id) == (85, 0)
    assert len(notifier.messages_for(user_id)) >= 3
    assert ledger.validate_balance(user_id).is_valid
    assert ledger.get_reservation(submissions[0].reservation_id).status != RESERVATION_ACTIVE
