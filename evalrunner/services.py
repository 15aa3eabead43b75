"""Wires the automation core together and owns its background loops."""
import logging
from typing import Iterable, Optional

from .api_testing import ApiTester
from .batch import BatchProcessor
from .contracts import InMemoryResultStore, ResultStore, TestSuiteRunner
from .dry_run import DryRunTestRunner
from .events import EventBus
from .handlers import JobHandlers
from .queue import DeadLetterStore, JobQueue, JobType
from .ratelimit import RateLimiter
from .redis_helper import get_redis
from .retry import RetryService
from .scheduler import EvaluationScheduler
from .workflow.orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)


class Services:
    def __init__(
        self,
        redis_client,
        runner: Optional[TestSuiteRunner] = None,
        store: Optional[ResultStore] = None,
        api_tester: Optional[ApiTester] = None,
        events: Optional[EventBus] = None,
        schedule_via_queue: bool = True,
        job_types: Optional[Iterable[JobType]] = None,
    ):
        self.redis = redis_client
        self.events = events or EventBus()
        self.runner = runner or DryRunTestRunner()
        self.store = store or InMemoryResultStore()
        self.api_tester = api_tester or ApiTester()
        self.limiter = RateLimiter(self.events)
        self.retry = RetryService(self.events)
        self.queue = JobQueue(redis_client, self.events, DeadLetterStore(), job_types=job_types)
        self.batch = BatchProcessor(self.runner, self.events, self.store)
        self.scheduler = EvaluationScheduler(self.batch, self.events, queue=self.queue if schedule_via_queue else None)
        self.workflows = WorkflowOrchestrator(self.batch, self.queue, self.api_tester, self.events)
        self.handlers = JobHandlers(self.runner, self.batch, self.scheduler, self.api_tester, self.retry, self.limiter)
        self.handlers.register(self.queue)
        self._started = False

    async def start(self, worker: bool = True, batch_loop: bool = True) -> None:
        if self._started:
            return
        self._started = True
        await self.limiter.start()
        if worker:
            await self.queue.start()
        if batch_loop:
            await self.batch.start()
        logger.info("automation services started")

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.workflows.shutdown()
        await self.batch.stop()
        await self.queue.stop()
        await self.limiter.stop()
        await self.events.shutdown()
        self._started = False
        logger.info("automation services stopped")


_services: Optional[Services] = None


async def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services(await get_redis())
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services
