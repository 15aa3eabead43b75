"""Job handlers for the four evaluation job types."""
import logging
from typing import Any, Dict, Optional

from .api_testing import ApiTester
from .batch import BatchProcessor
from .config import PATTERN_RATE_LIMIT_PER_MINUTE
from .contracts import TestSuiteRunner
from .errors import ValidationError
from .queue import Job, JobQueue, JobType
from .ratelimit import RateLimitConfig, RateLimiter
from .retry import RetryService
from .scheduler import EvaluationScheduler

logger = logging.getLogger(__name__)


class JobHandlers:
    def __init__(
        self,
        runner: TestSuiteRunner,
        batch: BatchProcessor,
        scheduler: EvaluationScheduler,
        api_tester: ApiTester,
        retry: Optional[RetryService] = None,
        limiter: Optional[RateLimiter] = None,
        pattern_limit: Optional[RateLimitConfig] = None,
    ):
        self.runner = runner
        self.batch = batch
        self.scheduler = scheduler
        self.api_tester = api_tester
        self.retry = retry
        self.limiter = limiter
        self.pattern_limit = pattern_limit or RateLimitConfig(window_ms=60000, max_requests=PATTERN_RATE_LIMIT_PER_MINUTE)

    def register(self, queue: JobQueue) -> None:
        handlers = {
            JobType.SINGLE_EVALUATION: self.single_evaluation,
            JobType.BATCH_EVALUATION: self.batch_evaluation,
            JobType.API_TEST: self.api_test,
            JobType.SCHEDULED_EVALUATION: self.scheduled_evaluation,
        }
        for job_type in JobType:
            queue.register_handler(job_type, handlers[job_type])

    async def single_evaluation(self, job: Job) -> Any:
        payload = job.payload
        if payload.pattern is None or not payload.test_suite_id:
            raise ValidationError("single-evaluation job requires pattern and test_suite_id")
        pattern = payload.pattern
        identifier = f"pattern:{pattern.value}"
        await self._admit(identifier)

        async def _run():
            return await self.runner.run_test_suite(pattern, payload.test_suite_id, dict(payload.metadata))

        try:
            if self.retry is not None:
                run = await self.retry.execute_with_circuit_breaker(identifier, _run)
            else:
                run = await _run()
        except Exception:
            self._record(identifier, False)
            raise
        self._record(identifier, True)
        return run

    async def batch_evaluation(self, job: Job) -> Any:
        if not job.payload.batch_job_id:
            raise ValidationError("batch-evaluation job requires batch_job_id")
        return await self.batch.execute_batch(job.payload.batch_job_id)

    async def api_test(self, job: Job) -> Any:
        payload = job.payload
        if payload.pattern is None:
            raise ValidationError("api-test job requires pattern")
        identifier = f"pattern:{payload.pattern.value}"
        await self._admit(identifier)
        body: Dict[str, Any] = payload.input if isinstance(payload.input, dict) else {"input": payload.input}
        result = await self.api_tester.test_pattern(payload.pattern, body)
        self._record(identifier, result.success)
        return result

    async def scheduled_evaluation(self, job: Job) -> Any:
        if not job.payload.schedule_id:
            raise ValidationError("scheduled-evaluation job requires schedule_id")
        skip = bool(job.payload.metadata.get("skip_if_running", False))
        entry = await self.scheduler.run_scheduled_job(job.payload.schedule_id, skip_if_running=skip)
        if entry is None:
            return {"skipped": True}
        return entry

    async def _admit(self, identifier: str) -> None:
        if self.limiter is not None:
            await self.limiter.acquire(identifier, self.pattern_limit)

    def _record(self, identifier: str, success: bool) -> None:
        if self.limiter is not None:
            self.limiter.record_outcome(identifier, success)
