"""In-process work queue with bounded concurrency and declared retry policy.

Each queue owns a fixed pool of worker threads that drain a heap of tasks
ordered by ready time. Delayed and retried tasks sit in the same heap, so a
retry is just a task whose ready time lies in the future. Task ids are
unique among live tasks, which keeps at most one entry per job in flight.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..core.cache import TTLCache

logger = logging.getLogger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
REMOVED = "removed"


class PermanentTaskError(Exception):
    """Raised by a handler when the task must not be retried."""


class QueueClosedError(RuntimeError):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    max_backoff_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Exponential delay before the retry that follows ``attempt`` (1-based)."""
        return min(self.backoff_seconds * (2 ** max(attempt - 1, 0)), self.max_backoff_seconds)


@dataclass
class QueueTask:
    id: str
    payload: dict[str, Any]
    status: str
    enqueued_at: float
    ready_at: float
    attempts: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    last_error: str | None = None
    result: Any = None
    seq: int = field(default=0, repr=False)


@dataclass
class QueueStats:
    name: str
    concurrency: int
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    retried: int
    removed: int
    running: bool


Handler = Callable[..., Any]


class WorkQueue:
    """
    Named queue drained by ``concurrency`` worker threads.

    ``handler(payload, attempt=n, final_attempt=bool)`` runs once per attempt.
    Any exception schedules a retry with exponential backoff until the
    policy's attempts are spent; ``PermanentTaskError`` fails immediately.
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        *,
        concurrency: int = 1,
        retry_policy: RetryPolicy | None = None,
        history_ttl_seconds: float = 3600,
        history_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.name = name
        self.handler = handler
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._tasks: dict[str, QueueTask] = {}
        self._history: TTLCache[str, QueueTask] = TTLCache(
            ttl_seconds=history_ttl_seconds, max_entries=history_size, clock=clock
        )
        self._workers: list[threading.Thread] = []
        self._running = False
        self._closed = False
        self._active = 0
        self._counters = {COMPLETED: 0, FAILED: 0, REMOVED: 0, "retried": 0}

    # --- Producer side ---

    def add(self, task_id: str, payload: dict[str, Any], *, delay: float = 0.0) -> bool:
        """Enqueue a task. Returns False when a live task with this id already exists."""
        with self._cond:
            if self._closed:
                raise QueueClosedError(f"Queue {self.name} is stopped")
            if task_id in self._tasks:
                logger.debug("Duplicate task ignored", extra={"queue": self.name, "job_id": task_id})
                return False
            now = self._clock()
            task = QueueTask(
                id=task_id,
                payload=payload,
                status=DELAYED if delay > 0 else WAITING,
                enqueued_at=time.time(),
                ready_at=now + max(delay, 0.0),
            )
            self._push_locked(task)
            self._tasks[task_id] = task
            self._history.pop(task_id)
            self._cond.notify()
        return True

    def remove(self, task_id: str) -> bool:
        """Drop a task that has not started its current attempt."""
        with self._cond:
            task = self._tasks.get(task_id)
            if task is None or task.status == ACTIVE:
                return False
            del self._tasks[task_id]
            task.status = REMOVED
            task.finished_at = time.time()
            self._history.set(task_id, task)
            self._counters[REMOVED] += 1
            self._cond.notify_all()
        logger.info("Task removed from queue", extra={"queue": self.name, "job_id": task_id})
        return True

    def get(self, task_id: str) -> Optional[QueueTask]:
        with self._cond:
            task = self._tasks.get(task_id)
        return task if task is not None else self._history.get(task_id)

    def stats(self) -> QueueStats:
        with self._cond:
            now = self._clock()
            waiting = sum(1 for t in self._tasks.values() if t.status != ACTIVE and t.ready_at <= now)
            delayed = sum(1 for t in self._tasks.values() if t.status != ACTIVE and t.ready_at > now)
            return QueueStats(
                name=self.name,
                concurrency=self.concurrency,
                waiting=waiting,
                delayed=delayed,
                active=self._active,
                completed=self._counters[COMPLETED],
                failed=self._counters[FAILED],
                retried=self._counters["retried"],
                removed=self._counters[REMOVED],
                running=self._running,
            )

    def __len__(self) -> int:
        with self._cond:
            return len(self._tasks)

    # --- Lifecycle ---

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._closed = False
            self._workers = [
                threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{i}", daemon=True)
                for i in range(self.concurrency)
            ]
        for worker in self._workers:
            worker.start()
        logger.info("Queue started", extra={"queue": self.name, "data": {"concurrency": self.concurrency}})

    def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work and wait for in-flight attempts to finish."""
        with self._cond:
            self._closed = True
            self._running = False
            self._cond.notify_all()
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join(timeout)
        logger.info("Queue stopped", extra={"queue": self.name, "data": {"pending": len(self)}})

    def join(self, timeout: float | None = None) -> bool:
        """Block until no live tasks remain. Returns False on timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._tasks:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining if remaining is not None else 0.5)
        return True

    def drain(self, *, ignore_delay: bool = True, max_tasks: int | None = None) -> int:
        """Process queued work inline on the calling thread. Returns attempts run."""
        processed = 0
        while max_tasks is None or processed < max_tasks:
            with self._cond:
                task, _ = self._pop_ready_locked(ignore_delay=ignore_delay)
            if task is None:
                break
            self._run(task)
            processed += 1
        return processed

    # --- Worker side ---

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                task = None
                while self._running:
                    task, next_ready = self._pop_ready_locked(ignore_delay=False)
                    if task is not None:
                        break
                    wait = None if next_ready is None else max(next_ready - self._clock(), 0.0)
                    self._cond.wait(wait)
                if task is None:
                    return
            self._run(task)

    def _pop_ready_locked(self, *, ignore_delay: bool) -> tuple[Optional[QueueTask], Optional[float]]:
        now = self._clock()
        while self._heap:
            ready_at, seq, task_id = self._heap[0]
            task = self._tasks.get(task_id)
            if task is None or task.seq != seq or task.status == ACTIVE:
                heapq.heappop(self._heap)
                continue
            if ready_at > now and not ignore_delay:
                return None, ready_at
            heapq.heappop(self._heap)
            task.status = ACTIVE
            self._active += 1
            return task, None
        return None, None

    def _push_locked(self, task: QueueTask) -> None:
        task.seq = next(self._seq)
        heapq.heappush(self._heap, (task.ready_at, task.seq, task.id))

    def _run(self, task: QueueTask) -> None:
        task.attempts += 1
        task.started_at = time.time()
        final_attempt = task.attempts >= self.retry_policy.max_attempts
        log_extra = {"queue": self.name, "job_id": task.id}
        try:
            result = self.handler(task.payload, attempt=task.attempts, final_attempt=final_attempt)
        except PermanentTaskError as exc:
            self._finish(task, FAILED, error=str(exc))
            logger.warning(
                "Task failed permanently",
                extra={**log_extra, "data": {"attempt": task.attempts, "error": str(exc)}},
            )
        except Exception as exc:
            if final_attempt:
                self._finish(task, FAILED, error=str(exc))
                logger.exception(
                    "Task failed after final attempt",
                    extra={**log_extra, "data": {"attempts": task.attempts}},
                )
            else:
                delay = self.retry_policy.delay_for(task.attempts)
                self._retry(task, delay, error=str(exc))
                logger.warning(
                    "Task attempt failed; retrying",
                    extra={**log_extra, "data": {"attempt": task.attempts, "delay": delay, "error": str(exc)}},
                )
        else:
            self._finish(task, COMPLETED, result=result)

    def _retry(self, task: QueueTask, delay: float, *, error: str) -> None:
        with self._cond:
            self._active -= 1
            task.last_error = error
            if task.id not in self._tasks:
                return
            task.status = DELAYED
            task.ready_at = self._clock() + delay
            self._counters["retried"] += 1
            self._push_locked(task)
            self._cond.notify_all()

    def _finish(self, task: QueueTask, status: str, *, error: str | None = None, result: Any = None) -> None:
        with self._cond:
            self._active -= 1
            task.status = status
            task.finished_at = time.time()
            task.last_error = error if error is not None else task.last_error
            task.result = result
            self._tasks.pop(task.id, None)
            self._history.set(task.id, task)
            self._counters[status] += 1
            self._cond.notify_all()
