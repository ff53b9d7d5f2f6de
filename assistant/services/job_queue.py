"""In-process priority job queues with retries, backoff and bounded history.

Each queue keeps one heap of waiting jobs per job type, ordered by
(priority, arrival). Workers registered with `process()` pull from the heap
for their type, so concurrency is bounded per (queue, job type). Outcomes
(Completed / Failed / Retrying) are pushed onto an asyncio.Queue consumed by
a single observer task.
"""

import asyncio
import heapq
import itertools
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from assistant.logging_config import LoggerAdapter, get_logger

logger = get_logger("job_queue")


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    delay_ms: int = 1000

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after failed attempt number `attempt` (1-based)."""
        if self.kind == BackoffKind.FIXED:
            return self.delay_ms / 1000
        return self.delay_ms * (2 ** (max(attempt, 1) - 1)) / 1000


@dataclass(frozen=True)
class QueueOptions:
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    timeout_seconds: float = 120.0


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    queue: str
    job_type: str
    payload: dict
    priority: int
    max_attempts: int
    backoff: BackoffPolicy
    attempts_made: int = 0
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    result: Any = None
    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def update_progress(self, value: int) -> None:
        self.progress = max(0, min(100, int(value)))

    @property
    def is_last_attempt(self) -> bool:
        """True while running the attempt after which a failure is final."""
        return self.attempts_made + 1 >= self.max_attempts


@dataclass(frozen=True)
class Completed:
    job: Job
    value: Any


@dataclass(frozen=True)
class Failed:
    job: Job
    error: str


@dataclass(frozen=True)
class Retrying:
    job: Job
    attempt: int
    delay: float


JobOutcome = Union[Completed, Failed, Retrying]
JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    def __init__(
        self,
        name: str,
        options: Optional[QueueOptions] = None,
        events: Optional[asyncio.Queue] = None,
    ):
        self.name = name
        self.options = options or QueueOptions()
        self.events = events
        self._sequence = itertools.count()
        self._jobs: dict[str, Job] = {}
        self._waiting: dict[str, list] = {}
        self._conditions: dict[str, asyncio.Condition] = {}
        self._handlers: dict[str, tuple[JobHandler, int]] = {}
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._active = 0
        self._running = False
        self._closing = False
        self._idle = asyncio.Event()
        self._idle.set()

    def _condition(self, job_type: str) -> asyncio.Condition:
        condition = self._conditions.get(job_type)
        if condition is None:
            condition = asyncio.Condition()
            self._conditions[job_type] = condition
        return condition

    async def add(self, job_type: str, payload: dict, priority: int = 5, attempts: Optional[int] = None) -> Job:
        """Enqueue a job. Lower priority values run first; equal priorities run FIFO."""
        if self._closing:
            raise RuntimeError(f"Queue {self.name} is closed")
        job = Job(
            id=uuid.uuid4().hex,
            queue=self.name,
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=attempts or self.options.attempts,
            backoff=self.options.backoff,
        )
        self._jobs[job.id] = job
        await self._push(job)
        logger.debug(
            "Job added",
            extra={"context": {"queue": self.name, "job_id": job.id, "job_type": job_type, "priority": priority}},
        )
        return job

    async def _push(self, job: Job) -> None:
        job.status = JobStatus.WAITING
        heapq.heappush(self._waiting.setdefault(job.job_type, []), (job.priority, next(self._sequence), job))
        self._idle.clear()
        condition = self._condition(job.job_type)
        async with condition:
            condition.notify()

    def process(self, job_type: str, concurrency: int, handler: JobHandler) -> None:
        """Register the handler for a job type with at most `concurrency` jobs in flight."""
        self._handlers[job_type] = (handler, max(1, concurrency))
        if self._running:
            self._spawn_workers(job_type)

    def _spawn_workers(self, job_type: str) -> None:
        _, concurrency = self._handlers[job_type]
        for index in range(concurrency):
            task = asyncio.create_task(self._worker(job_type), name=f"{self.name}:{job_type}:{index}")
            self._workers.append(task)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._closing = False
        for job_type in self._handlers:
            self._spawn_workers(job_type)
        logger.info(
            f"Queue {self.name} started",
            extra={"context": {"handlers": {t: c for t, (_, c) in self._handlers.items()}}},
        )

    async def _worker(self, job_type: str) -> None:
        handler, _ = self._handlers[job_type]
        condition = self._condition(job_type)
        while True:
            async with condition:
                await condition.wait_for(lambda: self._closing or bool(self._waiting.get(job_type)))
                if self._closing:
                    return
                _, _, job = heapq.heappop(self._waiting[job_type])
            await self._run(job, handler)

    async def _run(self, job: Job, handler: JobHandler) -> None:
        log = LoggerAdapter(logger, {"queue": self.name, "job_id": job.id, "job_type": job.job_type})
        job.status = JobStatus.ACTIVE
        self._active += 1
        try:
            value = await asyncio.wait_for(handler(job), timeout=self.options.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.attempts_made += 1
            reason = str(exc) or type(exc).__name__
            if job.attempts_made < job.max_attempts:
                delay = job.backoff.delay_for(job.attempts_made)
                job.status = JobStatus.DELAYED
                job.failed_reason = reason
                self._schedule_retry(job, delay)
                log.warning(
                    f"Job failed, retrying in {delay}s",
                    context={"attempt": job.attempts_made, "max_attempts": job.max_attempts, "error": reason},
                )
                self._emit(Retrying(job=job, attempt=job.attempts_made, delay=delay))
            else:
                job.status = JobStatus.FAILED
                job.failed_reason = reason
                job.finished_at = datetime.now(timezone.utc)
                self._retain(self._failed, job, self.options.remove_on_fail)
                log.error("Job failed permanently", context={"attempts": job.attempts_made, "error": reason})
                self._emit(Failed(job=job, error=reason))
        else:
            job.status = JobStatus.COMPLETED
            job.result = value
            job.progress = 100
            job.finished_at = datetime.now(timezone.utc)
            self._retain(self._completed, job, self.options.remove_on_complete)
            log.info("Job completed")
            self._emit(Completed(job=job, value=value))
        finally:
            self._active -= 1
            self._update_idle()

    def _schedule_retry(self, job: Job, delay: float) -> None:
        task = asyncio.create_task(self._retry_later(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._retry_done)

    def _retry_done(self, task: asyncio.Task) -> None:
        self._delayed.discard(task)
        self._update_idle()

    async def _retry_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._closing:
            await self._push(job)

    def _retain(self, history: deque, job: Job, limit: int) -> None:
        history.append(job.id)
        while len(history) > max(limit, 0):
            self._jobs.pop(history.popleft(), None)

    def _emit(self, outcome: JobOutcome) -> None:
        if self.events is not None:
            self.events.put_nowait(outcome)

    def _update_idle(self) -> None:
        waiting = sum(len(heap) for heap in self._waiting.values())
        if waiting == 0 and self._active == 0 and not self._delayed:
            self._idle.set()

    async def join(self) -> None:
        """Wait until nothing is waiting, running or scheduled for retry."""
        while True:
            await self._idle.wait()
            # a retry timer may have been scheduled after the event fired
            if not self._delayed and not any(self._waiting.values()) and self._active == 0:
                return
            self._idle.clear()
            await asyncio.sleep(0)
            self._update_idle()

    async def close(self) -> None:
        self._closing = True
        for condition in self._conditions.values():
            async with condition:
                condition.notify_all()
        for task in list(self._delayed):
            task.cancel()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        self._running = False
        logger.info(f"Queue {self.name} closed")

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_counts(self) -> dict[str, int]:
        return {
            "waiting": sum(len(heap) for heap in self._waiting.values()),
            "active": self._active,
            "delayed": len(self._delayed),
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    def clean(self, grace_seconds: float, status: JobStatus) -> int:
        """Drop finished jobs of `status` older than the grace period. Returns how many were removed."""
        if status == JobStatus.COMPLETED:
            history = self._completed
        elif status == JobStatus.FAILED:
            history = self._failed
        else:
            raise ValueError(f"Only completed or failed jobs can be cleaned, got {status.value}")

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
        kept = deque()
        removed = 0
        for job_id in history:
            job = self._jobs.get(job_id)
            if job is None or (job.finished_at and job.finished_at < cutoff):
                self._jobs.pop(job_id, None)
                removed += 1
            else:
                kept.append(job_id)
        history.clear()
        history.extend(kept)
        return removed


class JobEventObserver:
    """Consumes job outcomes: logs them and alerts the operator on dead letters."""

    def __init__(self, events: asyncio.Queue, on_dead_letter: Optional[Callable[[Failed], Awaitable[Any]]] = None):
        self.events = events
        self.on_dead_letter = on_dead_letter
        self._task: Optional[asyncio.Task] = None

    async def handle(self, outcome: JobOutcome) -> None:
        job = outcome.job
        context = {"queue": job.queue, "job_id": job.id, "job_type": job.job_type}
        if isinstance(outcome, Completed):
            logger.info("Job outcome: completed", extra={"context": context})
        elif isinstance(outcome, Retrying):
            logger.info(
                "Job outcome: retrying",
                extra={"context": {**context, "attempt": outcome.attempt, "delay": outcome.delay}},
            )
        elif isinstance(outcome, Failed):
            logger.error("Job outcome: dead letter", extra={"context": {**context, "error": outcome.error}})
            if self.on_dead_letter is not None:
                await self.on_dead_letter(outcome)

    async def run(self) -> None:
        while True:
            outcome = await self.events.get()
            try:
                await self.handle(outcome)
            except Exception as e:
                logger.error(f"Job outcome handling failed: {e}", exc_info=True)
            finally:
                self.events.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
