import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, select, update

from ..core.database import Database
from ..core.errors import InvalidTransitionError, JobNotFoundError
from ..db.models import DbGenerationJob

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)
JOB_TYPES = ("image", "video")

# Allowed predecessors for each target status.
_PREDECESSORS: Dict[str, tuple[str, ...]] = {
    PROCESSING: (PENDING,),
    COMPLETED: (PROCESSING,),
    FAILED: (PENDING, PROCESSING),
    CANCELLED: (PENDING, PROCESSING),
}

_TRANSITION_FIELDS = {"result_url", "result_meta", "error_message", "credits_used", "progress"}


def new_job_id(now_ms: int | None = None) -> str:
    """``job_<epoch-ms>_<8 hex>``: unique and sortable by creation time."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"job_{ms:013d}_{uuid.uuid4().hex[:8]}"


@dataclass
class Job:
    id: str
    user_id: str
    type: str
    model: str
    prompt: str
    params: Dict[str, Any]
    status: str
    reservation_id: str
    credits_reserved: int
    created_at: int
    updated_at: int
    credits_used: int | None = None
    result_url: str | None = None
    result_meta: Dict[str, Any] | None = None
    error_message: str | None = None
    progress: int = 0
    attempts: int = 0
    started_at: int | None = None
    completed_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def execution_seconds(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


@dataclass
class JobStats:
    days: int
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_model: Dict[str, int]
    success_rate: float
    average_execution_seconds: float | None
    credits_used: int = 0


def _to_job(row: DbGenerationJob) -> Job:
    return Job(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        model=row.model,
        prompt=row.prompt,
        params=dict(row.params or {}),
        status=row.status,
        reservation_id=row.reservation_id,
        credits_reserved=row.credits_reserved,
        created_at=row.created_at,
        updated_at=row.updated_at,
        credits_used=row.credits_used,
        result_url=row.result_url,
        result_meta=row.result_meta,
        error_message=row.error_message,
        progress=row.progress,
        attempts=row.attempts,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class JobStore:
    def __init__(self, db: Database):
        self.db = db

    new_job_id = staticmethod(new_job_id)

    def create(
        self,
        user_id: str,
        type: str,
        model: str,
        prompt: str,
        params: Dict[str, Any] | None,
        reservation_id: str,
        *,
        credits_reserved: int,
        job_id: str | None = None,
    ) -> Job:
        if type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {type}")
        now = int(time.time())
        job = Job(
            id=job_id or new_job_id(),
            user_id=user_id,
            type=type,
            model=model,
            prompt=prompt,
            params=dict(params or {}),
            status=PENDING,
            reservation_id=reservation_id,
            credits_reserved=credits_reserved,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as session:
            session.add(
                DbGenerationJob(
                    id=job.id,
                    user_id=job.user_id,
                    type=job.type,
                    model=job.model,
                    prompt=job.prompt,
                    params=job.params,
                    status=job.status,
                    reservation_id=job.reservation_id,
                    credits_reserved=job.credits_reserved,
                    progress=0,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return job

    def transition(self, job_id: str, new_status: str, **fields: Any) -> Job:
        """Move a job along the state machine with a conditional update.

        Raises JobNotFoundError, or InvalidTransitionError when the current
        status is not an allowed predecessor (including any terminal status).
        """
        predecessors = _PREDECESSORS.get(new_status)
        if predecessors is None:
            raise ValueError(f"Unknown target status: {new_status}")
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported job fields: {sorted(unknown)}")
        if new_status == COMPLETED and fields.get("credits_used") is None:
            raise ValueError("credits_used is required to complete a job")
        if new_status != COMPLETED and "credits_used" in fields:
            raise ValueError("credits_used is only set on completion")

        now = int(time.time())
        values: Dict[str, Any] = {"status": new_status, "updated_at": now, **fields}
        if new_status == PROCESSING:
            values["started_at"] = func.coalesce(DbGenerationJob.started_at, now)
        else:
            values["completed_at"] = func.coalesce(DbGenerationJob.completed_at, now)
        if new_status == COMPLETED:
            values.setdefault("progress", 100)

        with self.db.session() as session:
            result = session.execute(
                update(DbGenerationJob)
                .where(DbGenerationJob.id == job_id, DbGenerationJob.status.in_(predecessors))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            row = session.get(DbGenerationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if int(result.rowcount or 0) != 1:
                raise InvalidTransitionError(job_id, row.status, new_status)
            job = _to_job(row)

        logger.info(
            "Job transitioned",
            extra={"data": {"job_id": job_id, "status": new_status}},
        )
        return job

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        with self.db.session() as session:
            session.execute(
                update(DbGenerationJob)
                .where(DbGenerationJob.id == job_id, DbGenerationJob.status.in_(ACTIVE_STATUSES))
                .values(progress=progress, updated_at=int(time.time()))
                .execution_options(synchronize_session=False)
            )

    def record_attempt(self, job_id: str) -> None:
        with self.db.session() as session:
            session.execute(
                update(DbGenerationJob)
                .where(DbGenerationJob.id == job_id, DbGenerationJob.status.in_(ACTIVE_STATUSES))
                .values(attempts=DbGenerationJob.attempts + 1, updated_at=int(time.time()))
                .execution_options(synchronize_session=False)
            )

    def record_settlement(self, job_id: str, credits_used: int) -> None:
        """Correct credits_used of a completed job to what the ledger actually consumed."""
        with self.db.session() as session:
            session.execute(
                update(DbGenerationJob)
                .where(DbGenerationJob.id == job_id, DbGenerationJob.status == COMPLETED)
                .values(credits_used=credits_used, updated_at=int(time.time()))
                .execution_options(synchronize_session=False)
            )

    def find_by_id(self, job_id: str) -> Optional[Job]:
        with self.db.session() as session:
            row = session.get(DbGenerationJob, job_id)
            return _to_job(row) if row else None

    def find_active_by_user(self, user_id: str) -> List[Job]:
        with self.db.session() as session:
            stmt = (
                select(DbGenerationJob)
                .where(DbGenerationJob.user_id == user_id, DbGenerationJob.status.in_(ACTIVE_STATUSES))
                .order_by(DbGenerationJob.created_at.desc(), DbGenerationJob.id.desc())
            )
            rows = list(session.scalars(stmt).all())
        return [_to_job(row) for row in rows]

    def list_for_user(self, user_id: str, limit: int = 20, status: str | None = None) -> List[Job]:
        with self.db.session() as session:
            stmt = select(DbGenerationJob).where(DbGenerationJob.user_id == user_id)
            if status:
                stmt = stmt.where(DbGenerationJob.status == status)
            stmt = stmt.order_by(DbGenerationJob.created_at.desc(), DbGenerationJob.id.desc()).limit(limit)
            rows = list(session.scalars(stmt).all())
        return [_to_job(row) for row in rows]

    def find_active(self) -> List[Job]:
        """All pending/processing jobs, oldest first."""
        with self.db.session() as session:
            stmt = (
                select(DbGenerationJob)
                .where(DbGenerationJob.status.in_(ACTIVE_STATUSES))
                .order_by(DbGenerationJob.created_at, DbGenerationJob.id)
            )
            rows = list(session.scalars(stmt).all())
        return [_to_job(row) for row in rows]

    def find_stale(self, older_than_minutes: int, now: int | None = None) -> List[Job]:
        """Jobs stuck in pending/processing since before the cutoff."""
        cutoff = (now if now is not None else int(time.time())) - older_than_minutes * 60
        with self.db.session() as session:
            stmt = (
                select(DbGenerationJob)
                .where(
                    DbGenerationJob.status.in_(ACTIVE_STATUSES),
                    func.coalesce(DbGenerationJob.started_at, DbGenerationJob.created_at) < cutoff,
                )
                .order_by(DbGenerationJob.created_at)
            )
            rows = list(session.scalars(stmt).all())
        return [_to_job(row) for row in rows]

    def count_active_for_user(self, user_id: str) -> int:
        """Count active (pending or processing) jobs for a user."""
        with self.db.session() as session:
            count = session.scalar(
                select(func.count())
                .select_from(DbGenerationJob)
                .where(DbGenerationJob.user_id == user_id, DbGenerationJob.status.in_(ACTIVE_STATUSES))
            )
            return int(count or 0)

    def count_created_since(self, user_id: str, since: int) -> int:
        with self.db.session() as session:
            count = session.scalar(
                select(func.count())
                .select_from(DbGenerationJob)
                .where(DbGenerationJob.user_id == user_id, DbGenerationJob.created_at >= since)
            )
            return int(count or 0)

    def get_stats(self, days: int = 30) -> JobStats:
        since = int(time.time()) - days * 86400
        with self.db.session() as session:
            rows = session.execute(
                select(
                    DbGenerationJob.status,
                    DbGenerationJob.type,
                    DbGenerationJob.model,
                    DbGenerationJob.credits_used,
                    case(
                        (
                            DbGenerationJob.started_at.is_not(None) & DbGenerationJob.completed_at.is_not(None),
                            DbGenerationJob.completed_at - DbGenerationJob.started_at,
                        ),
                        else_=None,
                    ),
                ).where(DbGenerationJob.created_at >= since)
            ).all()

        by_status: Dict[str, int] = defaultdict(int)
        by_type: Dict[str, int] = defaultdict(int)
        by_model: Dict[str, int] = defaultdict(int)
        durations: List[int] = []
        credits_used = 0
        for status, job_type, model, used, duration in rows:
            by_status[status] += 1
            by_type[job_type] += 1
            by_model[model] += 1
            credits_used += int(used or 0)
            if status == COMPLETED and duration is not None:
                durations.append(int(duration))

        completed = by_status.get(COMPLETED, 0)
        finished = completed + by_status.get(FAILED, 0)
        return JobStats(
            days=days,
            total=len(rows),
            by_status=dict(by_status),
            by_type=dict(by_type),
            by_model=dict(by_model),
            success_rate=(completed / finished) if finished else 0.0,
            average_execution_seconds=(sum(durations) / len(durations)) if durations else None,
            credits_used=credits_used,
        )

    def purge_terminal_before(self, cutoff: int) -> int:
        """Delete terminal jobs created before ``cutoff``. Active jobs are never purged."""
        with self.db.session() as session:
            result = session.execute(
                delete(DbGenerationJob)
                .where(DbGenerationJob.created_at < cutoff, DbGenerationJob.status.in_(TERMINAL_STATUSES))
                .execution_options(synchronize_session=False)
            )
            count = int(result.rowcount or 0)
        if count:
            logger.info("Purged old jobs", extra={"data": {"count": count, "cutoff": cutoff}})
        return count

    def purge_older_than(self, days: int) -> int:
        return self.purge_terminal_before(int(time.time()) - days * 86400)
