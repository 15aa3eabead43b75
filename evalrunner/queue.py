"""Evaluation job queue with a dead-letter store.

Job records are JSON in a redis hash. Dispatch order comes from a waiting
sorted set scored by ``(priority, sequence)``; jobs waiting on a delay or a
retry backoff sit in a delayed sorted set scored by their due time. The worker
loop promotes due jobs, pops the next waiting one and dispatches it by type to
a registered handler.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, Field

from . import metrics
from .config import (
    CLEANUP_INTERVAL_SECONDS,
    DLQ_MAX_SIZE,
    DLQ_RETENTION_SECONDS,
    JOB_RETENTION_SECONDS,
    WORKER_POLL_SECONDS,
)
from .errors import NotFoundError, ValidationError
from .events import EventBus
from .models import AgentPattern
from .redis_helper import DELAYED_ZSET, JOBS_HASH, SEQUENCE_KEY, WAITING_ZSET

logger = logging.getLogger(__name__)

PRIORITY_SPAN = 1_000_000_000_000


class JobType(str, Enum):
    SINGLE_EVALUATION = "single-evaluation"
    BATCH_EVALUATION = "batch-evaluation"
    API_TEST = "api-test"
    SCHEDULED_EVALUATION = "scheduled-evaluation"


# Types whose handlers need no process-local batch or schedule state
STATELESS_JOB_TYPES = frozenset({JobType.SINGLE_EVALUATION, JobType.API_TEST})


class JobPriority(int, Enum):
    LOW = 10
    NORMAL = 0
    HIGH = -5
    CRITICAL = -10


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


class BackoffOptions(BaseModel):
    type: Literal["fixed", "exponential"] = "exponential"
    delay_ms: int = 2000


class JobOptions(BaseModel):
    delay_ms: int = 0
    attempts: int = 3
    backoff: BackoffOptions = Field(default_factory=BackoffOptions)
    remove_on_complete: bool = False
    remove_on_fail: bool = False
    timeout_ms: int = 300000


class JobPayload(BaseModel):
    pattern: Optional[AgentPattern] = None
    patterns: List[AgentPattern] = Field(default_factory=list)
    input: Any = None
    test_suite_id: Optional[str] = None
    batch_job_id: Optional[str] = None
    schedule_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    id: str
    type: JobType
    priority: int = JobPriority.NORMAL.value
    payload: JobPayload = Field(default_factory=JobPayload)
    options: JobOptions = Field(default_factory=JobOptions)
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    created_at: float
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    due_at: Optional[float] = None
    result: Any = None
    error: Optional[str] = None


class JobSpec(BaseModel):
    type: JobType
    payload: JobPayload = Field(default_factory=JobPayload)
    options: Optional[JobOptions] = None
    priority: int = JobPriority.NORMAL.value


class DeadLetterError(BaseModel):
    message: str
    type: str


class DeadLetterEntry(BaseModel):
    job: Job
    error: DeadLetterError
    failed_at: float
    attempts: int
    can_retry: bool = True


class Throughput(BaseModel):
    minute: int = 0
    hour: int = 0
    day: int = 0


class QueueMetrics(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0
    total_processed: int = 0
    average_processing_time_ms: float = 0.0
    throughput: Throughput = Field(default_factory=Throughput)


Handler = Callable[[Job], Awaitable[Any]]


class DeadLetterStore:
    """Bounded log of jobs that used up their attempts. Oldest entries are evicted first."""

    def __init__(self, max_size: int = DLQ_MAX_SIZE, retention_seconds: float = DLQ_RETENTION_SECONDS):
        self.max_size = max_size
        self.retention_seconds = retention_seconds
        self._entries: Deque[DeadLetterEntry] = deque(maxlen=max_size)

    def add(self, entry: DeadLetterEntry) -> None:
        self._entries.append(entry)
        metrics.dead_letter_size.set(len(self._entries))

    def get(self, job_id: str) -> Optional[DeadLetterEntry]:
        for entry in self._entries:
            if entry.job.id == job_id:
                return entry
        return None

    def remove(self, job_id: str) -> bool:
        entry = self.get(job_id)
        if entry is None:
            return False
        self._entries.remove(entry)
        metrics.dead_letter_size.set(len(self._entries))
        return True

    def purge_expired(self, now: float) -> int:
        keep = [e for e in self._entries if now - e.failed_at < self.retention_seconds]
        purged = len(self._entries) - len(keep)
        self._entries = deque(keep, maxlen=self.max_size)
        metrics.dead_letter_size.set(len(self._entries))
        return purged

    def entries(self) -> List[DeadLetterEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


class JobQueue:
    def __init__(
        self,
        redis_client,
        events: Optional[EventBus] = None,
        dead_letters: Optional[DeadLetterStore] = None,
        concurrency: int = 1,
        poll_seconds: float = WORKER_POLL_SECONDS,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        job_retention_seconds: float = JOB_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
        job_types: Optional[Iterable[JobType]] = None,
    ):
        self.redis = redis_client
        self.events = events
        self.dead_letters = dead_letters or DeadLetterStore()
        self.concurrency = max(1, concurrency)
        self.poll_seconds = poll_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.job_retention_seconds = job_retention_seconds
        self._clock = clock
        # None dispatches every type; otherwise other jobs stay waiting for another worker
        self.job_types: Optional[Set[JobType]] = set(job_types) if job_types is not None else None
        self._handlers: Dict[JobType, Handler] = {}
        self._paused = False
        self._active: Set[str] = set()
        self._inflight: Set[asyncio.Task] = set()
        # (finished_at, processing_ms) of recent completions, newest last
        self._finished: Deque[Tuple[float, float]] = deque()
        self._total_processed = 0
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    def register_handler(self, job_type: JobType, handler: Handler) -> None:
        self._handlers[JobType(job_type)] = handler

    async def enqueue(
        self,
        job_type: JobType,
        payload: Optional[JobPayload] = None,
        options: Optional[JobOptions] = None,
        priority: int = JobPriority.NORMAL,
    ) -> Job:
        job = await self._store_new(JobSpec(type=job_type, payload=payload or JobPayload(), options=options, priority=int(priority)))
        logger.info("enqueued job %s (%s, priority %s)", job.id, job.type.value, job.priority)
        self._emit("job.added", job)
        return job

    async def enqueue_bulk(self, specs: Iterable[JobSpec]) -> List[Job]:
        jobs = [await self._store_new(spec) for spec in specs]
        logger.info("enqueued %s jobs in bulk", len(jobs))
        self._emit("job.bulk.added", jobs)
        return jobs

    async def _store_new(self, spec: JobSpec) -> Job:
        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            type=spec.type,
            priority=int(spec.priority),
            payload=spec.payload,
            options=spec.options or JobOptions(),
            created_at=now,
        )
        if job.options.delay_ms > 0:
            job.status = JobStatus.DELAYED
            job.due_at = now + job.options.delay_ms / 1000.0
            await self._save(job)
            await self.redis.zadd(DELAYED_ZSET, {job.id: job.due_at})
        else:
            await self._save(job)
            await self._push_waiting(job)
        metrics.jobs_enqueued_total.labels(type=job.type.value).inc()
        return job

    async def _push_waiting(self, job: Job) -> None:
        seq = await self.redis.incr(SEQUENCE_KEY)
        await self.redis.zadd(WAITING_ZSET, {job.id: job.priority * PRIORITY_SPAN + seq})

    async def _save(self, job: Job) -> None:
        await self.redis.hset(JOBS_HASH, job.id, job.model_dump_json())

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hget(JOBS_HASH, job_id)
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def get_job(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        raw = await self.redis.hgetall(JOBS_HASH)
        jobs = [Job.model_validate_json(v) for v in raw.values()]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def promote_due(self) -> int:
        now = self._clock()
        due = await self.redis.zrangebyscore(DELAYED_ZSET, float("-inf"), now)
        promoted = 0
        for job_id in due:
            if not await self.redis.zrem(DELAYED_ZSET, job_id):
                continue
            job = await self._load(job_id)
            if job is None:
                continue
            job.status = JobStatus.WAITING
            job.due_at = None
            await self._save(job)
            await self._push_waiting(job)
            promoted += 1
        return promoted

    async def _pop_next(self) -> Optional[Job]:
        if self.job_types is not None:
            return await self._pop_matching()
        while True:
            popped = await self.redis.zpopmin(WAITING_ZSET, 1)
            if not popped:
                return None
            job_id, _ = popped[0]
            job = await self._load(job_id)
            if job is not None:
                return job

    async def _pop_matching(self) -> Optional[Job]:
        for job_id in await self.redis.zrangebyscore(WAITING_ZSET, float("-inf"), float("inf")):
            job = await self._load(job_id)
            if job is not None and job.type not in self.job_types:
                continue
            if not await self.redis.zrem(WAITING_ZSET, job_id):
                continue
            if job is not None:
                return job
        return None

    async def process_next(self) -> Optional[Job]:
        """Dispatch the next waiting job inline and return its final record."""
        await self.promote_due()
        if self._paused:
            return None
        job = await self._pop_next()
        if job is None:
            return None
        return await self._execute(job)

    async def _execute(self, job: Job) -> Job:
        job.status = JobStatus.ACTIVE
        job.processed_at = self._clock()
        self._active.add(job.id)
        await self._save(job)
        self._emit("job.active", job)
        logger.info("processing job %s of type %s", job.id, job.type.value)

        start = time.perf_counter()
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                raise ValidationError(f"no handler registered for job type {job.type.value}")
            result = await asyncio.wait_for(handler(job), timeout=job.options.timeout_ms / 1000.0)
        except Exception as exc:
            await self._handle_failure(job, exc)
        else:
            await self._handle_success(job, result, (time.perf_counter() - start) * 1000)
        finally:
            self._active.discard(job.id)
            metrics.execution_latency_seconds.observe(time.perf_counter() - start)
        return job

    async def _handle_success(self, job: Job, result: Any, elapsed_ms: float) -> None:
        job.status = JobStatus.COMPLETED
        job.finished_at = self._clock()
        job.result = _jsonable(result)
        job.error = None
        self._finished.append((job.finished_at, elapsed_ms))
        self._total_processed += 1
        if job.options.remove_on_complete:
            await self.redis.hdel(JOBS_HASH, job.id)
        else:
            await self._save(job)
        metrics.jobs_completed_total.labels(type=job.type.value).inc()
        logger.info("job %s completed", job.id)
        self._emit("job.completed", {"job": job, "result": result})

    async def _handle_failure(self, job: Job, exc: BaseException) -> None:
        job.attempts += 1
        message = str(exc) or exc.__class__.__name__
        job.error = message
        metrics.jobs_failed_total.labels(type=job.type.value).inc()
        retryable = not isinstance(exc, (ValidationError, NotFoundError))

        if retryable and job.attempts < job.options.attempts:
            delay = self.backoff_seconds(job)
            job.status = JobStatus.DELAYED
            job.due_at = self._clock() + delay
            await self._save(job)
            await self.redis.zadd(DELAYED_ZSET, {job.id: job.due_at})
            logger.warning(
                "job %s failed (attempt %s/%s), retrying in %.1fs: %s",
                job.id, job.attempts, job.options.attempts, delay, message,
            )
            self._emit("job.retrying", {"job": job, "error": message, "delay_seconds": delay})
            return

        job.status = JobStatus.FAILED
        job.finished_at = self._clock()
        if job.options.remove_on_fail:
            await self.redis.hdel(JOBS_HASH, job.id)
        else:
            await self._save(job)
        entry = DeadLetterEntry(
            job=job,
            error=DeadLetterError(message=message, type=exc.__class__.__name__),
            failed_at=job.finished_at,
            attempts=job.attempts,
            can_retry=retryable,
        )
        self.dead_letters.add(entry)
        metrics.jobs_dead_lettered_total.inc()
        logger.error("job %s failed after %s attempts: %s", job.id, job.attempts, message)
        self._emit("job.failed", {"job": job, "error": message})
        self._emit("job.dead_lettered", entry)

    @staticmethod
    def backoff_seconds(job: Job) -> float:
        base = job.options.backoff.delay_ms / 1000.0
        if job.options.backoff.type == "fixed":
            return base
        return base * (2 ** (job.attempts - 1))

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    async def pause(self) -> None:
        self._paused = True
        logger.info("evaluation queue paused")
        self._emit("queue.paused")

    async def resume(self) -> None:
        self._paused = False
        logger.info("evaluation queue resumed")
        self._emit("queue.resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    async def clear(self) -> int:
        """Drop waiting and delayed jobs. Jobs already dispatched are untouched."""
        removed = 0
        for zset in (WAITING_ZSET, DELAYED_ZSET):
            members = await self.redis.zrangebyscore(zset, float("-inf"), float("inf"))
            if members:
                await self.redis.zrem(zset, *members)
                removed += await self.redis.hdel(JOBS_HASH, *members)
        logger.info("evaluation queue cleared (%s jobs)", removed)
        self._emit("queue.cleared", {"removed": removed})
        return removed

    async def retry_failed_job(self, job_id: str) -> Job:
        entry = self.dead_letters.get(job_id)
        if entry is not None and not entry.can_retry:
            raise ValidationError(f"dead-letter entry {job_id} is not retryable")
        job = await self._load(job_id)
        if job is not None and job.status == JobStatus.FAILED:
            job.status = JobStatus.WAITING
            job.attempts = 0
            job.error = None
            job.finished_at = None
            await self._save(job)
            await self._push_waiting(job)
            self.dead_letters.remove(job_id)
            logger.info("retrying job %s", job_id)
            self._emit("job.added", job)
            return job

        if entry is None:
            raise NotFoundError("failed job", job_id)
        new_job = await self.enqueue(entry.job.type, entry.job.payload, entry.job.options, entry.job.priority)
        self.dead_letters.remove(job_id)
        logger.info("re-enqueued dead-lettered job %s as %s", job_id, new_job.id)
        return new_job

    # ------------------------------------------------------------------
    # Metrics & housekeeping
    # ------------------------------------------------------------------
    async def metrics(self) -> QueueMetrics:
        now = self._clock()
        raw = await self.redis.hgetall(JOBS_HASH)
        counts = {status: 0 for status in JobStatus}
        for value in raw.values():
            counts[Job.model_validate_json(value).status] += 1

        waiting, paused = counts[JobStatus.WAITING], 0
        if self._paused:
            waiting, paused = 0, counts[JobStatus.WAITING]

        recent = list(self._finished)
        durations = [d for _, d in recent]
        return QueueMetrics(
            waiting=waiting,
            active=counts[JobStatus.ACTIVE],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            delayed=counts[JobStatus.DELAYED],
            paused=paused,
            total_processed=self._total_processed,
            average_processing_time_ms=sum(durations) / len(durations) if durations else 0.0,
            throughput=Throughput(
                minute=sum(1 for t, _ in recent if now - t < 60),
                hour=sum(1 for t, _ in recent if now - t < 3600),
                day=sum(1 for t, _ in recent if now - t < 86400),
            ),
        )

    async def cleanup(self) -> int:
        now = self._clock()
        raw = await self.redis.hgetall(JOBS_HASH)
        stale = []
        for job_id, value in raw.items():
            job = Job.model_validate_json(value)
            if job.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
                continue
            if now - (job.finished_at or job.created_at) > self.job_retention_seconds:
                stale.append(job_id)
        if stale:
            await self.redis.hdel(JOBS_HASH, *stale)
        while self._finished and now - self._finished[0][0] > 86400:
            self._finished.popleft()
        purged = self.dead_letters.purge_expired(now)
        logger.info("cleaned up %s old jobs and %s dead-letter entries", len(stale), purged)
        return len(stale)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.cleanup()
        self._worker_task = asyncio.create_task(self._run_worker())
        self._cleanup_task = asyncio.create_task(self._run_cleanup())
        logger.info("job queue worker started (concurrency %s)", self.concurrency)

    async def stop(self) -> None:
        self._running = False
        for task in (self._worker_task, self._cleanup_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._worker_task = self._cleanup_task = None
        logger.info("job queue worker stopped")

    async def _run_worker(self) -> None:
        while self._running:
            try:
                await self.promote_due()
                job = None
                if not self._paused and len(self._inflight) < self.concurrency:
                    job = await self._pop_next()
                if job is None:
                    await asyncio.sleep(self.poll_seconds)
                    continue
                task = asyncio.create_task(self._execute(job))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker loop error")
                await asyncio.sleep(self.poll_seconds)

    async def _run_cleanup(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.cleanup()
            except Exception:
                logger.exception("job cleanup failed")

    def _emit(self, name: str, payload: Any = None) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
