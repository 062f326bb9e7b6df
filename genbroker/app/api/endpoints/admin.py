"""Admin operations: grants, queue health, stale jobs and maintenance runs."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from ...core.config import settings
from ...schemas.base import (
    BalanceCheckResponse,
    BalanceResponse,
    CreditStatsResponse,
    GrantRequest,
    GrantResponse,
    JobResponse,
    JobStatsResponse,
    PurgeResponse,
    QueueStatsResponse,
    SweepResponse,
)
from ...services.credits import CreditLedger
from ...services.jobs import JobStore
from ...services.orchestrator import JobOrchestrator
from ..deps import get_job_store, get_ledger, get_orchestrator, require_admin

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/credits/{user_id}/grant", response_model=GrantResponse)
def grant_credits(
    user_id: str,
    request: GrantRequest,
    admin_id: str = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    available = ledger.grant(user_id, request.amount, request.description, meta={"granted_by": admin_id})
    logger.info("Admin grant", extra={"data": {"admin": admin_id, "user_id": user_id, "amount": request.amount}})
    return GrantResponse(user_id=user_id, granted=request.amount, available=available)


@router.get("/credits/{user_id}/validate", response_model=BalanceCheckResponse)
def validate_balance(
    user_id: str,
    _: str = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    return BalanceCheckResponse.model_validate(ledger.validate_balance(user_id))


@router.get("/credits/low-balance", response_model=List[BalanceResponse])
def low_balance(
    threshold: Optional[int] = Query(None, ge=0),
    _: str = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    return [BalanceResponse.model_validate(b) for b in ledger.low_balance_users(threshold)]


@router.get("/queues", response_model=Dict[str, QueueStatsResponse])
def queue_stats(
    _: str = Depends(require_admin),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return {name: QueueStatsResponse.model_validate(stats) for name, stats in orchestrator.queue_stats().items()}


@router.get("/jobs/stale", response_model=List[JobResponse])
def stale_jobs(
    minutes: Optional[int] = Query(None, ge=1),
    _: str = Depends(require_admin),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return [JobResponse.model_validate(job) for job in orchestrator.find_stale_jobs(minutes)]


@router.get("/jobs/stats", response_model=JobStatsResponse)
def job_stats(
    days: int = Query(30, ge=1, le=365),
    _: str = Depends(require_admin),
    job_store: JobStore = Depends(get_job_store),
):
    return JobStatsResponse.model_validate(job_store.get_stats(days))


@router.get("/credits/stats", response_model=CreditStatsResponse)
def credit_stats(
    days: int = Query(30, ge=1, le=365),
    _: str = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    return CreditStatsResponse.model_validate(ledger.get_global_stats(days))


@router.post("/reservations/sweep", response_model=SweepResponse)
def sweep_reservations(
    _: str = Depends(require_admin),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.sweep_expired_reservations()
    return SweepResponse(
        released=result.released,
        credits_released=result.credits_released,
        failed_jobs=result.failed_jobs,
    )


@router.post("/jobs/purge", response_model=PurgeResponse)
def purge_jobs(
    days: Optional[int] = Query(None, ge=1),
    _: str = Depends(require_admin),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    days = days or settings.job_retention_days
    return PurgeResponse(deleted=orchestrator.purge_old_jobs(days), days=days)
