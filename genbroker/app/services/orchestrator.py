"""Job lifecycle: admission, execution, settlement and compensation.

Every generation request follows reserve-before-work and
settle-or-release-after-work:

    submit   validate -> usage limits -> reserve -> job(pending) -> enqueue
    execute  pending -> processing -> provider
             success: job completed -> settle reservation -> notify
             failure: job failed    -> release reservation -> notify
    cancel   pending|processing -> cancelled -> release -> notify

The job status update is the arbiter between a worker finishing and a
concurrent cancel or sweep: whichever conditional update lands first wins,
and the loser only runs the idempotent release.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.config import settings
from ..core.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    JobAccessDeniedError,
    JobNotCancellableError,
    JobNotFoundError,
    ReservationExpiredError,
    SubmissionError,
)
from . import pricing
from .credits import CreditLedger, Reservation
from .jobs import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, Job, JobStore
from .notifications import CREDIT_ALERT, NotificationDispatcher
from .providers.base import GenerationProvider, GenerationResult
from .queue import PermanentTaskError, QueueStats, QueueTask, RetryPolicy, WorkQueue
from .validation import GenerationRequest, RequestValidator, UsageLimiter

logger = logging.getLogger(__name__)

SWEEP_FAILURE_MESSAGE = "Credit reservation expired before the job finished"


class RetryableJobError(Exception):
    """Raised from execute to ask the queue for another attempt; the reservation stays held."""


@dataclass
class Submission:
    job_id: str
    reservation_id: str
    credits_reserved: int
    estimated_seconds: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class CancelResult:
    job: Job
    released: int
    removed_from_queue: bool


@dataclass
class SweepResult:
    released: int
    credits_released: int
    failed_jobs: List[str]


@dataclass
class JobStatus:
    job: Job
    queue_task: Optional[QueueTask]


class JobOrchestrator:
    def __init__(
        self,
        ledger: CreditLedger,
        jobs: JobStore,
        provider: GenerationProvider,
        validator: RequestValidator,
        dispatcher: NotificationDispatcher,
        *,
        usage_limiter: UsageLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        concurrency: int | None = None,
        start_delay_seconds: float | None = None,
        low_balance_threshold: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.jobs = jobs
        self.provider = provider
        self.validator = validator
        self.dispatcher = dispatcher
        self.usage_limiter = usage_limiter
        self.start_delay_seconds = (
            start_delay_seconds if start_delay_seconds is not None else settings.generation_start_delay_seconds
        )
        self.low_balance_threshold = (
            low_balance_threshold if low_balance_threshold is not None else settings.low_balance_threshold
        )
        self.queue = WorkQueue(
            "generation",
            self._run_generation,
            concurrency=concurrency or settings.generation_concurrency,
            retry_policy=retry_policy
            or RetryPolicy(
                max_attempts=settings.generation_max_attempts,
                backoff_seconds=settings.generation_backoff_seconds,
                max_backoff_seconds=settings.generation_max_backoff_seconds,
            ),
            history_ttl_seconds=settings.queue_history_ttl_seconds,
            history_size=settings.queue_history_max_entries,
        )

    # --- Admission ---

    def submit(
        self,
        user_id: str,
        type: str,
        model: str,
        prompt: str,
        params: Dict[str, Any] | None = None,
        estimated_cost: int | None = None,
    ) -> Submission:
        """Admit a request and return immediately; generation happens on the queue."""
        validation = self.validator.validate(
            GenerationRequest(user_id=user_id, type=type, model=model, prompt=prompt, params=dict(params or {}))
        )
        if not validation.is_valid or validation.cleaned is None:
            raise InvalidRequestError(validation.errors)
        request = validation.cleaned

        if self.usage_limiter is not None:
            self.usage_limiter.check(user_id)

        cost = estimated_cost if estimated_cost is not None else pricing.estimate_cost(type, model, request.params)
        if cost <= 0:
            raise InvalidRequestError(["Estimated cost must be positive"])

        job_id = self.jobs.new_job_id()
        reservation = self.ledger.reserve(
            user_id,
            cost,
            job_id=job_id,
            model=model,
            description=f"{type} generation ({model})",
        )

        try:
            job = self.jobs.create(
                user_id,
                type,
                model,
                request.prompt,
                request.params,
                reservation.id,
                credits_reserved=cost,
                job_id=job_id,
            )
        except Exception as exc:
            logger.exception("Job creation failed; releasing reservation", extra={"job_id": job_id})
            self._release_quietly(reservation.id, "job creation failed")
            raise SubmissionError() from exc

        try:
            self.queue.add(job.id, _payload(job, cost), delay=self.start_delay_seconds)
        except Exception as exc:
            logger.exception("Enqueue failed; failing job and releasing reservation", extra={"job_id": job.id})
            self._mark_failed_quietly(job.id, "Could not schedule the job")
            self._release_quietly(reservation.id, "enqueue failed")
            raise SubmissionError() from exc

        logger.info(
            "Job submitted",
            extra={"job_id": job.id, "data": {"user_id": user_id, "type": type, "model": model, "cost": cost}},
        )
        return Submission(
            job_id=job.id,
            reservation_id=reservation.id,
            credits_reserved=cost,
            estimated_seconds=pricing.estimated_seconds(type, model),
            warnings=list(validation.warnings),
        )

    # --- Execution ---

    def execute(self, payload: Dict[str, Any], *, attempt: int = 1, final_attempt: bool = True) -> str:
        """Run one attempt for a queued job. Returns the job's resulting status.

        Raises RetryableJobError when the attempt failed transiently and more
        attempts remain. Every other path ends with the reservation settled or
        released. A completed job whose reservation is still active resumes at
        settlement without calling the provider again.
        """
        job_id = payload["job_id"]
        job = self.jobs.find_by_id(job_id)
        if job is None:
            logger.error("Queued job has no record; releasing its reservation", extra={"job_id": job_id})
            self._release_quietly(payload["reservation_id"], "job record missing")
            return FAILED
        if job.is_terminal:
            if job.status == COMPLETED and self._settlement_pending(job):
                logger.info("Resuming settlement of completed job", extra={"job_id": job_id})
                charged = job.credits_used or 0
                return self._settle(job, charged, charged, attempt=attempt, final_attempt=final_attempt)
            logger.info("Skipping job already %s", job.status, extra={"job_id": job_id})
            return job.status

        try:
            if job.status == PENDING:
                try:
                    job = self.jobs.transition(job_id, PROCESSING)
                except InvalidTransitionError as exc:
                    logger.info(
                        "Job left pending before start", extra={"job_id": job_id, "data": {"status": exc.current}}
                    )
                    return exc.current
            self.jobs.record_attempt(job_id)
            self.jobs.update_progress(job_id, 20)
            result = self.provider.generate(job.type, job.prompt, job.model, job.params)
            if not result.success:
                raise ProviderFailure(result)
            self.jobs.update_progress(job_id, 80)
        except Exception as exc:
            return self._fail(job, exc, attempt=attempt, final_attempt=final_attempt)

        return self._complete(job, result, attempt=attempt, final_attempt=final_attempt)

    def _complete(self, job: Job, result: GenerationResult, *, attempt: int, final_attempt: bool) -> str:
        actual_cost = max(0, int(result.credits_used or 0))
        credits_used = min(actual_cost, job.credits_reserved)
        try:
            job = self.jobs.transition(
                job.id,
                COMPLETED,
                result_url=result.result_url,
                result_meta=result.metadata or None,
                credits_used=credits_used,
            )
        except InvalidTransitionError as exc:
            # Cancelled or swept while the provider was running; the result is discarded.
            logger.warning(
                "Job finished after leaving processing; discarding result",
                extra={"job_id": job.id, "data": {"status": exc.current}},
            )
            self.ledger.release(job.reservation_id, f"job {exc.current} before completion")
            return exc.current
        except Exception as exc:
            return self._fail(job, exc, attempt=attempt, final_attempt=final_attempt)

        return self._settle(job, actual_cost, credits_used, attempt=attempt, final_attempt=final_attempt)

    def _settle(self, job: Job, actual_cost: int, charged: int, *, attempt: int, final_attempt: bool) -> str:
        """Settle a completed job's reservation, then notify. Never releases on a store error."""
        refunded = 0
        try:
            settlement = self.ledger.settle(job.reservation_id, actual_cost, model=job.model)
            consumed, refunded = settlement.consumed, settlement.refunded
        except ReservationExpiredError:
            self.ledger.release(job.reservation_id, "expired before settlement")
            consumed = 0
        except Exception as exc:
            if not final_attempt:
                logger.warning(
                    "Settlement failed; will retry",
                    extra={"job_id": job.id, "data": {"attempt": attempt, "error": str(exc)}},
                )
                raise RetryableJobError(str(exc) or exc.__class__.__name__) from exc
            logger.exception(
                "Settlement failed on final attempt; reservation left active",
                extra={"job_id": job.id, "data": {"reservation_id": job.reservation_id, "charged": charged}},
            )
            self._notify_completed(job, charged, 0)
            return COMPLETED

        if consumed != charged:
            logger.warning(
                "Settled amount differs from job charge",
                extra={"job_id": job.id, "data": {"charged": charged, "consumed": consumed}},
            )
            self.jobs.record_settlement(job.id, consumed)

        logger.info(
            "Job completed",
            extra={"job_id": job.id, "data": {"credits_used": consumed, "refunded": refunded}},
        )
        self._notify_completed(job, consumed, refunded)
        if consumed:
            self._check_low_balance(job.user_id, consumed)
        return COMPLETED

    def _fail(self, job: Job, exc: Exception, *, attempt: int, final_attempt: bool) -> str:
        message = (str(exc) or exc.__class__.__name__)[:1000]
        retryable = getattr(exc, "retryable", True)

        if retryable and not final_attempt:
            logger.warning(
                "Generation attempt failed; will retry",
                extra={"job_id": job.id, "data": {"attempt": attempt, "error": message}},
            )
            raise RetryableJobError(message) from exc

        status = FAILED
        try:
            self.jobs.transition(job.id, FAILED, error_message=message)
        except InvalidTransitionError as transition_error:
            status = transition_error.current
        except Exception:
            logger.exception("Could not mark job failed", extra={"job_id": job.id})

        if status == COMPLETED:
            # A finished generation is never released; a redelivery resumes its settlement.
            logger.warning("Failure after completion ignored", extra={"job_id": job.id, "data": {"error": message}})
            return status

        released = self._release_quietly(job.reservation_id, f"generation failed: {message}"[:255])
        logger.warning(
            "Job failed",
            extra={"job_id": job.id, "data": {"attempt": attempt, "error": message, "released": released, "status": status}},
        )
        if status == FAILED:
            self.dispatcher.notify(job.user_id, job.id, FAILED, {"error": message, "credits_released": released})
        return status

    def _run_generation(self, payload: Dict[str, Any], *, attempt: int, final_attempt: bool) -> str:
        try:
            status = self.execute(payload, attempt=attempt, final_attempt=final_attempt)
        except RetryableJobError:
            raise
        except Exception as exc:
            if final_attempt:
                self._abandon(payload, exc)
            raise
        if status == FAILED:
            raise PermanentTaskError(f"Job {payload['job_id']} failed")
        return status

    # --- Cancellation ---

    def cancel(self, job_id: str, requesting_user_id: str) -> CancelResult:
        job = self.jobs.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.user_id != requesting_user_id:
            raise JobAccessDeniedError(job_id)
        if job.is_terminal:
            raise JobNotCancellableError(job_id, job.status)

        removed = self.queue.remove(job_id)
        try:
            cancelled = self.jobs.transition(job_id, CANCELLED, error_message="Cancelled by user")
        except InvalidTransitionError as exc:
            raise JobNotCancellableError(job_id, exc.current) from exc

        released = self.ledger.release(job.reservation_id, "cancelled by user")
        logger.info(
            "Job cancelled",
            extra={"job_id": job_id, "data": {"released": released, "removed_from_queue": removed}},
        )
        self.dispatcher.notify(job.user_id, job_id, CANCELLED, {"credits_released": released})
        return CancelResult(job=cancelled, released=released, removed_from_queue=removed)

    # --- Maintenance ---

    def sweep_expired_reservations(self, now: int | None = None) -> SweepResult:
        """Release expired reservations and fail the jobs still waiting on them."""
        reservations: List[Reservation] = self.ledger.release_expired(now)
        failed_jobs: List[str] = []
        for reservation in reservations:
            if not reservation.job_id:
                continue
            job = self.jobs.find_by_id(reservation.job_id)
            if job is None or job.is_terminal:
                continue
            self.queue.remove(job.id)
            try:
                self.jobs.transition(job.id, FAILED, error_message=SWEEP_FAILURE_MESSAGE)
            except InvalidTransitionError:
                continue
            failed_jobs.append(job.id)
            logger.warning("Job failed by reservation sweep", extra={"job_id": job.id})
            self.dispatcher.notify(
                job.user_id,
                job.id,
                FAILED,
                {"error": SWEEP_FAILURE_MESSAGE, "credits_released": reservation.reserved_amount},
            )

        return SweepResult(
            released=len(reservations),
            credits_released=sum(r.reserved_amount for r in reservations),
            failed_jobs=failed_jobs,
        )

    def find_stale_jobs(self, minutes: int | None = None) -> List[Job]:
        stale = self.jobs.find_stale(minutes if minutes is not None else settings.stale_job_minutes)
        for job in stale:
            reservation = self.ledger.get_reservation(job.reservation_id)
            logger.warning(
                "Stale job detected",
                extra={
                    "job_id": job.id,
                    "data": {
                        "status": job.status,
                        "user_id": job.user_id,
                        "created_at": job.created_at,
                        "reservation_status": reservation.status if reservation else None,
                    },
                },
            )
        return stale

    def purge_old_jobs(self, days: int | None = None) -> int:
        return self.jobs.purge_older_than(days if days is not None else settings.job_retention_days)

    def recover(self) -> int:
        """Re-enqueue every pending/processing job (at-least-once after a restart)."""
        added = 0
        for job in self.jobs.find_active():
            if self.queue.add(job.id, _payload(job, job.credits_reserved)):
                added += 1
        if added:
            logger.info("Recovered active jobs", extra={"data": {"count": added}})
        return added

    # --- Queries ---

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        job = self.jobs.find_by_id(job_id)
        if job is None:
            return None
        return JobStatus(job=job, queue_task=self.queue.get(job_id))

    def queue_stats(self) -> Dict[str, QueueStats]:
        return {
            self.queue.name: self.queue.stats(),
            self.dispatcher.queue.name: self.dispatcher.queue.stats(),
        }

    # --- Lifecycle ---

    def start(self) -> None:
        self.dispatcher.start()
        self.queue.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.queue.stop(timeout)
        self.dispatcher.stop(timeout)

    def drain(self) -> int:
        """Run all queued generation and notification work inline."""
        processed = self.queue.drain()
        self.dispatcher.drain()
        return processed

    # --- Internals ---

    def _check_low_balance(self, user_id: str, consumed: int) -> None:
        balance = self.ledger.get_balance(user_id)
        if balance is None:
            return
        # Alert only on the settlement that crossed the threshold.
        if balance.available < self.low_balance_threshold <= balance.available + consumed:
            self.dispatcher.notify(
                user_id,
                None,
                CREDIT_ALERT,
                {"available": balance.available, "threshold": self.low_balance_threshold},
            )

    def _settlement_pending(self, job: Job) -> bool:
        reservation = self.ledger.get_reservation(job.reservation_id)
        return reservation is not None and reservation.is_active

    def _notify_completed(self, job: Job, credits_used: int, refunded: int) -> None:
        self.dispatcher.notify(
            job.user_id,
            job.id,
            COMPLETED,
            {"result_url": job.result_url, "credits_used": credits_used, "credits_refunded": refunded},
        )

    def _abandon(self, payload: Dict[str, Any], exc: Exception) -> None:
        """Fail the job and release its credits after a final attempt crashed outside execute's guard."""
        job_id = payload["job_id"]
        message = (str(exc) or exc.__class__.__name__)[:1000]
        failed = False
        try:
            self.jobs.transition(job_id, FAILED, error_message=message)
            failed = True
        except InvalidTransitionError as transition_error:
            if transition_error.current == COMPLETED:
                logger.error(
                    "Completed job crashed before settlement; reservation left active",
                    extra={"job_id": job_id, "data": {"error": message}},
                )
                return
        except Exception:
            logger.exception("Could not mark job failed", extra={"job_id": job_id})

        released = self._release_quietly(payload["reservation_id"], f"generation aborted: {message}"[:255])
        logger.warning("Job abandoned", extra={"job_id": job_id, "data": {"error": message, "released": released}})
        if failed:
            self.dispatcher.notify(payload["user_id"], job_id, FAILED, {"error": message, "credits_released": released})

    def _release_quietly(self, reservation_id: str, reason: str) -> int:
        try:
            return self.ledger.release(reservation_id, reason)
        except Exception:
            # The expiry sweep reclaims anything left active here.
            logger.exception("Release failed", extra={"data": {"reservation_id": reservation_id, "reason": reason}})
            return 0

    def _mark_failed_quietly(self, job_id: str, message: str) -> None:
        try:
            self.jobs.transition(job_id, FAILED, error_message=message)
        except Exception:
            logger.exception("Could not mark job failed", extra={"job_id": job_id})


class ProviderFailure(Exception):
    """A provider returned ``success=False``."""

    def __init__(self, result: GenerationResult):
        super().__init__(result.error or "Generation failed")
        self.result = result
        self.retryable = result.retryable


def _payload(job: Job, estimated_cost: int) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "user_id": job.user_id,
        "type": job.type,
        "model": job.model,
        "prompt": job.prompt,
        "params": job.params,
        "reservation_id": job.reservation_id,
        "estimated_cost": estimated_cost,
    }
