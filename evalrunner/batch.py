"""Batch execution of pattern x test-suite combinations.

A background loop takes pending batch jobs one at a time; ``max_concurrency``
bounds fan-out inside a single batch only.
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from . import metrics
from .cancel import CancellationToken
from .config import BATCH_POLL_SECONDS
from .contracts import ResultStore, TestSuiteRunner
from .errors import NotFoundError, ValidationError
from .events import EventBus
from .models import AgentPattern, TestResultStatus, TestRun

logger = logging.getLogger(__name__)

MAX_FINISHED_BATCHES = 200


class PrioritizationStrategy(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"


class ErrorHandlingStrategy(str, Enum):
    FAIL_FAST = "fail-fast"
    CONTINUE = "continue"


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (BatchJobStatus.COMPLETED, BatchJobStatus.FAILED, BatchJobStatus.CANCELLED)


class BatchConfig(BaseModel):
    parallel: bool = True
    max_concurrency: int = Field(default=5, ge=1)
    prioritization: PrioritizationStrategy = PrioritizationStrategy.FIFO
    error_handling: ErrorHandlingStrategy = ErrorHandlingStrategy.CONTINUE


class BatchProgress(BaseModel):
    total_tests: int = 0
    completed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    percent_complete: float = 0.0
    current_pattern: Optional[AgentPattern] = None
    current_test: Optional[str] = None


class BatchSummary(BaseModel):
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    error_tests: int = 0
    skipped_tests: int = 0
    success_rate: float = 0.0
    average_score: float = 0.0
    duration_ms: float = 0.0


class PatternBatchResult(BaseModel):
    pattern: AgentPattern
    tests_run: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    average_score: float = 0.0
    average_latency_ms: float = 0.0
    errors: List[str] = Field(default_factory=list)


class BatchError(BaseModel):
    timestamp: float
    pattern: Optional[AgentPattern] = None
    test_id: Optional[str] = None
    error: str
    severity: str = "error"


class BatchResults(BaseModel):
    test_runs: List[TestRun] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    pattern_results: Dict[str, PatternBatchResult] = Field(default_factory=dict)
    errors: List[BatchError] = Field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class BatchJob(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    patterns: List[AgentPattern]
    test_suite_ids: List[str]
    config: BatchConfig = Field(default_factory=BatchConfig)
    status: BatchJobStatus = BatchJobStatus.PENDING
    progress: BatchProgress = Field(default_factory=BatchProgress)
    results: Optional[BatchResults] = None
    created_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


def _failed(status: TestResultStatus) -> bool:
    return status in (TestResultStatus.FAILED, TestResultStatus.ERROR)


def summarize(test_runs: Iterable[TestRun], duration_ms: float = 0.0) -> BatchSummary:
    """Overall summary of a batch. Pure: same runs give the same summary."""
    results = [r for run in test_runs for r in run.results]
    summary = BatchSummary(
        total_tests=len(results),
        passed_tests=sum(1 for r in results if r.status == TestResultStatus.PASSED),
        failed_tests=sum(1 for r in results if r.status == TestResultStatus.FAILED),
        error_tests=sum(1 for r in results if r.status == TestResultStatus.ERROR),
        skipped_tests=sum(1 for r in results if r.status == TestResultStatus.SKIPPED),
        duration_ms=duration_ms,
    )
    if summary.total_tests:
        summary.success_rate = summary.passed_tests / summary.total_tests
        scores = [r.score for r in results if r.score is not None]
        if scores:
            summary.average_score = sum(scores) / len(scores)
    return summary


def aggregate_patterns(runs: Iterable[Tuple[AgentPattern, TestRun]]) -> Dict[str, PatternBatchResult]:
    """Per-pattern pass/fail counts, mean score and mean latency."""
    grouped: "OrderedDict[AgentPattern, list]" = OrderedDict()
    for pattern, run in runs:
        grouped.setdefault(AgentPattern(pattern), []).extend(run.results)

    out = {}
    for pattern, results in grouped.items():
        scores = [r.score for r in results if r.score is not None]
        latencies = [r.duration_ms for r in results]
        out[pattern.value] = PatternBatchResult(
            pattern=pattern,
            tests_run=len(results),
            tests_passed=sum(1 for r in results if r.status == TestResultStatus.PASSED),
            tests_failed=sum(1 for r in results if _failed(r.status)),
            average_score=sum(scores) / len(scores) if scores else 0.0,
            average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            errors=[r.error for r in results if r.error],
        )
    return out


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchProcessor:
    def __init__(
        self,
        runner: TestSuiteRunner,
        events: Optional[EventBus] = None,
        store: Optional[ResultStore] = None,
        poll_seconds: float = BATCH_POLL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.runner = runner
        self.events = events
        self.store = store
        self.poll_seconds = poll_seconds
        self._clock = clock
        self._jobs: "OrderedDict[str, BatchJob]" = OrderedDict()
        self._pending: List[BatchJob] = []
        self._tokens: Dict[str, CancellationToken] = {}
        self._pattern_runs: Dict[str, List[Tuple[AgentPattern, TestRun]]] = {}
        self._processing = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def create_batch_job(
        self,
        name: str,
        patterns: List[AgentPattern],
        test_suite_ids: List[str],
        config: Optional[BatchConfig] = None,
        description: Optional[str] = None,
    ) -> BatchJob:
        job = BatchJob(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            patterns=list(patterns),
            test_suite_ids=list(test_suite_ids),
            config=config or BatchConfig(),
            created_at=self._clock(),
        )
        self._jobs[job.id] = job
        self._pending.append(job)
        self._tokens[job.id] = CancellationToken()
        self._evict_finished()
        logger.info("created batch job %s (%s patterns x %s suites)", job.id, len(patterns), len(test_suite_ids))
        self._emit("batch.created", job)
        return job

    def get_batch(self, job_id: str) -> BatchJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("batch job", job_id)
        return job

    def list_batches(self) -> List[BatchJob]:
        return list(self._jobs.values())

    async def cancel_batch(self, job_id: str) -> BatchJob:
        job = self.get_batch(job_id)
        if job.status in TERMINAL_STATUSES:
            return job
        job.status = BatchJobStatus.CANCELLED
        self._tokens[job_id].request_cancel()
        if job in self._pending:
            self._pending.remove(job)
        logger.info("batch job %s cancelled", job_id)
        self._emit("batch.cancelled", job)
        return job

    async def execute_batch(self, job_id: str) -> BatchResults:
        job = self.get_batch(job_id)
        if job.status not in (BatchJobStatus.PENDING, BatchJobStatus.QUEUED):
            raise ValidationError(f"batch job {job_id} is {job.status.value}")
        token = self._tokens.setdefault(job_id, CancellationToken())
        if job in self._pending:
            self._pending.remove(job)

        job.status = BatchJobStatus.RUNNING
        job.started_at = self._clock()
        results = BatchResults(started_at=job.started_at)
        job.results = results
        self._pattern_runs[job_id] = []
        logger.info("batch job %s started", job_id)
        self._emit("batch.started", job)

        try:
            if job.config.parallel:
                await self._execute_parallel(job, results, token)
            else:
                await self._execute_sequential(job, results, token)
        except asyncio.CancelledError:
            job.status = BatchJobStatus.CANCELLED
            token.request_cancel()
            logger.warning("batch job %s interrupted", job_id)
            raise
        except Exception as exc:
            job.status = BatchJobStatus.FAILED
            results.errors.append(BatchError(timestamp=self._clock(), error=str(exc), severity="critical"))
            logger.error("batch job %s failed: %s", job_id, exc)
            raise
        else:
            if token.cancelled:
                job.status = BatchJobStatus.CANCELLED
            else:
                job.status = BatchJobStatus.COMPLETED
        finally:
            job.completed_at = self._clock()
            results.finished_at = job.completed_at
            duration_ms = (job.completed_at - job.started_at) * 1000
            results.summary = summarize(results.test_runs, duration_ms)
            results.pattern_results = aggregate_patterns(self._pattern_runs.pop(job_id, []))
            job.progress.current_test = None
            metrics.batches_executed_total.labels(status=job.status.value).inc()
            await self._persist(job, results)
            self._emit("batch.completed", {"job": job, "results": results})
            logger.info("batch job %s finished with status %s", job_id, job.status.value)

        return results

    async def _execute_sequential(self, job: BatchJob, results: BatchResults, token: CancellationToken) -> None:
        pairs = [(p, s) for p in job.patterns for s in job.test_suite_ids]
        job.progress.total_tests = len(pairs)
        for pattern, suite_id in pairs:
            if token.cancelled:
                break
            job.progress.current_pattern = pattern
            await self._run_pair(job, results, pattern, suite_id)

    async def _execute_parallel(self, job: BatchJob, results: BatchResults, token: CancellationToken) -> None:
        pairs = [(p, s) for p in job.patterns for s in job.test_suite_ids]
        job.progress.total_tests = len(pairs)
        for chunk in chunked(pairs, job.config.max_concurrency):
            if token.cancelled:
                break
            outcomes = await asyncio.gather(
                *(self._run_pair(job, results, pattern, suite_id) for pattern, suite_id in chunk),
                return_exceptions=True,
            )
            # under fail-fast the first pair error aborts the batch once the chunk settles
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

    async def _run_pair(self, job: BatchJob, results: BatchResults, pattern: AgentPattern, suite_id: str) -> None:
        job.progress.current_test = f"{AgentPattern(pattern).value}-{suite_id}"
        try:
            run = await self.runner.run_test_suite(pattern, suite_id, {"parallel": False, "batch_job_id": job.id})
        except Exception as exc:
            metrics.batch_pair_failures_total.inc()
            results.errors.append(
                BatchError(timestamp=self._clock(), pattern=pattern, test_id=suite_id, error=str(exc), severity="error")
            )
            job.progress.failed_tests += 1
            self._advance(job)
            logger.warning("batch %s: %s/%s failed: %s", job.id, AgentPattern(pattern).value, suite_id, exc)
            if job.config.error_handling == ErrorHandlingStrategy.FAIL_FAST:
                raise
            return

        results.test_runs.append(run)
        self._pattern_runs.setdefault(job.id, []).append((pattern, run))
        job.progress.failed_tests += sum(1 for r in run.results if _failed(r.status))
        self._advance(job)

    def _advance(self, job: BatchJob) -> None:
        progress = job.progress
        progress.completed_tests = min(progress.completed_tests + 1, progress.total_tests)
        progress.percent_complete = (
            progress.completed_tests / progress.total_tests * 100 if progress.total_tests else 100.0
        )
        self._emit("batch.progress", {"job_id": job.id, "progress": progress})

    async def _persist(self, job: BatchJob, results: BatchResults) -> None:
        if self.store is None:
            return
        try:
            await self.store.persist_batch_results(job, results)
        except Exception:
            logger.exception("failed to persist results for batch %s", job.id)

    # ------------------------------------------------------------------
    # Pending-job loop
    # ------------------------------------------------------------------
    def next_pending(self) -> Optional[BatchJob]:
        if not self._pending:
            return None
        strategy = self._pending[0].config.prioritization
        if strategy == PrioritizationStrategy.LIFO:
            return self._pending.pop()
        return self._pending.pop(0)

    async def process_pending(self) -> Optional[BatchResults]:
        """Run one pending batch if none is executing."""
        if self._processing:
            return None
        job = self.next_pending()
        if job is None or job.status != BatchJobStatus.PENDING:
            return None
        self._processing = True
        try:
            job.status = BatchJobStatus.QUEUED
            return await self.execute_batch(job.id)
        except Exception:
            logger.exception("queue processor error for batch %s", job.id)
            return None
        finally:
            self._processing = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("batch processor started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("batch processor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.process_pending()
            await asyncio.sleep(self.poll_seconds)

    def _evict_finished(self) -> None:
        finished = [j for j in self._jobs.values() if j.status in TERMINAL_STATUSES]
        for job in finished[: max(0, len(finished) - MAX_FINISHED_BATCHES)]:
            del self._jobs[job.id]
            self._tokens.pop(job.id, None)

    def _emit(self, name: str, payload: Any = None) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
