"""Bounded fire-and-forget job queue.

Request handlers use this to push side effects (audit inserts) off the
response path. A handful of worker coroutines drain an asyncio.Queue:

    submit() -> queue (bounded) -> worker -> job() [timeout, retries]
                                      \\-> dead letter list + on_failure hook

submit() never awaits: when the pool is stopped or the queue is full the job
is rejected and counted. A job that raises or overruns ``job_timeout`` is
retried up to ``max_retries`` more times, then parked in the dead letter
list. Nothing a job does is ever raised back to the submitter.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[None]]
FailureHook = Callable[["Task"], None]


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Task:
    job: Job
    kind: str = "job"
    max_retries: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: TaskStatus = TaskStatus.PENDING
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = 0
    error: str | None = None

    @property
    def attempts_allowed(self) -> int:
        return self.max_retries + 1


class BackgroundWorkerPool:
    """Fixed number of workers draining a bounded queue.

    Usage:
        pool = BackgroundWorkerPool(max_workers=2, queue_size=1000, max_retries=1)
        await pool.start()
        pool.submit(lambda: store.record_usage(event), kind="usage")
        await pool.shutdown()

    Args:
        max_workers: Concurrent worker coroutines
        queue_size: Jobs waiting beyond this are rejected by submit()
        max_retries: Extra attempts after the first failure
        job_timeout: Per-attempt limit in seconds, None for no limit
        dead_letter_size: Exhausted tasks retained for inspection
        on_failure: Called once per task that ends up in the dead letter list
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        queue_size: int = 1000,
        max_retries: int = 0,
        job_timeout: float | None = None,
        dead_letter_size: int = 1000,
        on_failure: FailureHook | None = None,
    ) -> None:
        self._worker_count = max_workers
        self._max_retries = max_retries
        self._job_timeout = job_timeout
        self._on_failure = on_failure
        self._queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=queue_size)
        self._dead_letter: deque[Task] = deque(maxlen=dead_letter_size)
        self._workers: list[asyncio.Task[None]] = []

        self.completed_count = 0
        self.failed_count = 0
        self.rejected_count = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._drain(n), name=f"bg-worker-{n}")
            for n in range(self._worker_count)
        ]
        log.info("worker_pool.started", workers=self._worker_count, queue_capacity=self._queue.maxsize)

    async def shutdown(self, *, drain: bool = True, drain_timeout: float = 10.0) -> None:
        """Stop the workers, optionally letting queued jobs finish first.

        Jobs still queued after ``drain_timeout`` are abandoned and logged.
        """
        if not self.running:
            return

        if drain:
            try:
                async with asyncio.timeout(drain_timeout):
                    await self._queue.join()
            except TimeoutError:
                log.error("worker_pool.drain_timeout", abandoned=self._queue.qsize())

        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        log.info(
            "worker_pool.stopped",
            completed=self.completed_count,
            failed=self.failed_count,
            rejected=self.rejected_count,
        )

    def submit(self, job: Job, *, kind: str = "job") -> bool:
        """Enqueue ``job`` without waiting. Returns False if it was rejected."""
        if not self.running:
            reason = "not_running"
        else:
            try:
                self._queue.put_nowait(Task(job=job, kind=kind, max_retries=self._max_retries))
                return True
            except asyncio.QueueFull:
                reason = "queue_full"

        self.rejected_count += 1
        log.warning("worker_pool.task_rejected", reason=reason, kind=kind)
        return False

    async def join(self) -> None:
        """Block until the queue is empty and every picked-up job has finished."""
        await self._queue.join()

    def get_dead_letter_queue(self) -> list[Task]:
        return list(self._dead_letter)

    async def _drain(self, worker_id: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._run(task, worker_id)
            finally:
                self._queue.task_done()

    async def _attempt(self, task: Task) -> None:
        if self._job_timeout is None:
            await task.job()
            return
        async with asyncio.timeout(self._job_timeout):
            await task.job()

    async def _run(self, task: Task, worker_id: int) -> None:
        task.status = TaskStatus.RUNNING
        for attempt in range(1, task.attempts_allowed + 1):
            try:
                await self._attempt(task)
            except Exception as exc:
                task.retry_count = attempt
                task.error = str(exc) or type(exc).__name__
                log.warning(
                    "worker.attempt_failed",
                    worker_id=worker_id,
                    task_id=task.id,
                    kind=task.kind,
                    attempt=attempt,
                    of=task.attempts_allowed,
                    error=task.error,
                )
            else:
                task.status = TaskStatus.COMPLETED
                self.completed_count += 1
                return

        task.status = TaskStatus.FAILED
        self.failed_count += 1
        self._dead_letter.append(task)
        log.error("worker.task_dead_lettered", task_id=task.id, kind=task.kind, error=task.error)
        if self._on_failure is not None:
            self._on_failure(task)
