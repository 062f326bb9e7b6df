"""Job submission, status, cancellation and listing for the bot process."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...core.errors import JobAccessDeniedError, JobNotFoundError
from ...schemas.base import (
    CancelJobRequest,
    CancelJobResponse,
    JobResponse,
    JobStatusResponse,
    QueueTaskResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)
from ...services.jobs import JobStore
from ...services.orchestrator import JobOrchestrator
from ..deps import get_job_store, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SubmitJobResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_job(
    request: SubmitJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Reserve credits and queue a generation. Returns before the provider runs."""
    submission = orchestrator.submit(
        request.user_id,
        request.type,
        request.model,
        request.prompt,
        request.params,
    )
    return SubmitJobResponse(
        job_id=submission.job_id,
        reservation_id=submission.reservation_id,
        credits_reserved=submission.credits_reserved,
        estimated_seconds=submission.estimated_seconds,
        warnings=submission.warnings,
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job(
    job_id: str,
    user_id: Optional[str] = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    job_status = orchestrator.get_job_status(job_id)
    if job_status is None:
        raise JobNotFoundError(job_id)
    if user_id is not None and job_status.job.user_id != user_id:
        raise JobAccessDeniedError(job_id)

    queue_task = job_status.queue_task
    return JobStatusResponse(
        job=JobResponse.model_validate(job_status.job),
        queue=QueueTaskResponse.model_validate(queue_task) if queue_task else None,
    )


@router.post("/{job_id}/cancel", response_model=CancelJobResponse)
def cancel_job(
    job_id: str,
    request: CancelJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.cancel(job_id, request.user_id)
    return CancelJobResponse(
        job=JobResponse.model_validate(result.job),
        credits_released=result.released,
        removed_from_queue=result.removed_from_queue,
    )


@router.get("/users/{user_id}", response_model=List[JobResponse])
def list_user_jobs(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    active: bool = False,
    job_store: JobStore = Depends(get_job_store),
):
    """Recent jobs for a user, newest first. ``active=true`` lists only pending/processing."""
    if active:
        jobs = job_store.find_active_by_user(user_id)
    else:
        jobs = job_store.list_for_user(user_id, limit=limit, status=status_filter)
    return [JobResponse.model_validate(job) for job in jobs]
