"""Recurring evaluation schedules.

Every schedule is reduced to one cron expression. An enabled schedule owns a
timer task that sleeps until the next fire time and then triggers a run,
either by enqueueing a ``scheduled-evaluation`` job (when a job queue is
wired in) or by running it directly.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from . import metrics
from .batch import BatchConfig, BatchJobStatus, BatchProcessor
from .config import SCHEDULED_JOB_TIMEOUT_MS
from .cron import CronExpression
from .errors import NotFoundError, ValidationError
from .events import EventBus
from .models import ALL_PATTERNS, AgentPattern

logger = logging.getLogger(__name__)

MAX_HISTORY = 100


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleRunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    ERROR = "error"


class ScheduleConfig(BaseModel):
    type: ScheduleType
    cron_expression: Optional[str] = None
    interval_ms: Optional[int] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=7)
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    minute: Optional[int] = Field(default=None, ge=0, le=59)
    timezone: str = "UTC"


class EvaluationConfig(BaseModel):
    patterns: List[AgentPattern]
    test_suite_ids: List[str]
    batch_config: Optional[BatchConfig] = None


class RunSummary(BaseModel):
    total_tests: int
    passed_tests: int
    failed_tests: int
    duration_ms: float


class ScheduleHistory(BaseModel):
    run_id: str
    batch_job_id: Optional[str] = None
    started_at: float
    completed_at: Optional[float] = None
    status: Optional[ScheduleRunStatus] = None
    summary: Optional[RunSummary] = None
    error: Optional[str] = None


class ScheduledEvaluation(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    schedule: ScheduleConfig
    cron_expression: str
    evaluation: EvaluationConfig
    enabled: bool = True
    last_run: Optional[float] = None
    next_run: Optional[float] = None
    history: List[ScheduleHistory] = Field(default_factory=list)
    created_at: float
    updated_at: float


class ScheduleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    schedule: Optional[ScheduleConfig] = None
    evaluation: Optional[EvaluationConfig] = None
    enabled: Optional[bool] = None


def to_cron_expression(config: ScheduleConfig) -> str:
    minute = config.minute or 0
    hour = config.hour or 0
    if config.type == ScheduleType.CRON:
        if not config.cron_expression:
            raise ValidationError("cron schedule requires cron_expression")
        return config.cron_expression
    if config.type == ScheduleType.INTERVAL:
        if not config.interval_ms or config.interval_ms <= 0:
            raise ValidationError("interval schedule requires a positive interval_ms")
        minutes = max(1, config.interval_ms // 60000)
        if minutes < 60:
            expression, exact = f"*/{minutes} * * * *", 60 % minutes == 0
        elif minutes < 24 * 60:
            hours = minutes // 60
            expression, exact = f"0 */{hours} * * *", minutes % 60 == 0 and 24 % hours == 0
        else:
            expression, exact = "0 0 * * *", minutes == 24 * 60
        # */N restarts at the top of each hour or day, so only divisors keep an even cadence
        if not exact or config.interval_ms % 60000:
            logger.warning(
                "interval of %sms cannot be expressed exactly as cron, using %r", config.interval_ms, expression
            )
        return expression
    if config.type == ScheduleType.DAILY:
        return f"{minute} {hour} * * *"
    if config.type == ScheduleType.WEEKLY:
        return f"{minute} {hour} * * {config.day_of_week or 0}"
    if config.type == ScheduleType.MONTHLY:
        return f"{minute} {hour} 1 * *"
    raise ValidationError(f"unsupported schedule type: {config.type}")


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown timezone {name!r}") from exc


class EvaluationScheduler:
    def __init__(
        self,
        batch: BatchProcessor,
        events: Optional[EventBus] = None,
        queue=None,
        clock: Callable[[], float] = time.time,
        job_timeout_ms: int = SCHEDULED_JOB_TIMEOUT_MS,
    ):
        self.batch = batch
        self.events = events
        self.queue = queue
        self.job_timeout_ms = job_timeout_ms
        self._clock = clock
        self._schedules: Dict[str, ScheduledEvaluation] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._runs: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    async def create_schedule(
        self,
        name: str,
        schedule: ScheduleConfig,
        evaluation: EvaluationConfig,
        enabled: bool = True,
        description: Optional[str] = None,
    ) -> ScheduledEvaluation:
        expression = to_cron_expression(schedule)
        CronExpression.parse(expression)
        _zone(schedule.timezone)
        now = self._clock()
        item = ScheduledEvaluation(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            schedule=schedule,
            cron_expression=expression,
            evaluation=evaluation,
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        self._schedules[item.id] = item
        if item.enabled:
            self._register(item)
        logger.info("created schedule %s (%s)", item.name, expression)
        return item

    async def update_schedule(self, schedule_id: str, updates: ScheduleUpdate) -> ScheduledEvaluation:
        item = self.get_schedule(schedule_id)
        if updates.schedule is not None:
            expression = to_cron_expression(updates.schedule)
            CronExpression.parse(expression)
            _zone(updates.schedule.timezone)
        was_enabled = item.enabled

        for field in ("name", "description", "evaluation", "enabled"):
            value = getattr(updates, field)
            if value is not None:
                setattr(item, field, value)
        if updates.schedule is not None:
            item.schedule = updates.schedule
            item.cron_expression = expression
        item.updated_at = self._clock()

        if was_enabled and not item.enabled:
            self._unregister(schedule_id)
            item.next_run = None
        elif not was_enabled and item.enabled:
            self._register(item)
        elif item.enabled and updates.schedule is not None:
            self._unregister(schedule_id)
            self._register(item)
        return item

    async def delete_schedule(self, schedule_id: str) -> None:
        self.get_schedule(schedule_id)
        self._unregister(schedule_id)
        del self._schedules[schedule_id]
        logger.info("deleted schedule %s", schedule_id)

    def get_schedule(self, schedule_id: str) -> ScheduledEvaluation:
        item = self._schedules.get(schedule_id)
        if item is None:
            raise NotFoundError("schedule", schedule_id)
        return item

    def list_schedules(self) -> List[ScheduledEvaluation]:
        return list(self._schedules.values())

    def is_registered(self, schedule_id: str) -> bool:
        task = self._timers.get(schedule_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    @staticmethod
    def is_running(item: ScheduledEvaluation) -> bool:
        return bool(item.history) and item.history[-1].completed_at is None

    async def run_scheduled_job(self, schedule_id: str, skip_if_running: bool = False) -> Optional[ScheduleHistory]:
        item = self.get_schedule(schedule_id)
        if skip_if_running and self.is_running(item):
            logger.warning("schedule %s is already running, skipping", item.name)
            self._emit("schedule.run.skipped", {"schedule_id": item.id})
            return None

        entry = ScheduleHistory(run_id=str(uuid.uuid4()), started_at=self._clock())
        item.history.append(entry)
        if len(item.history) > MAX_HISTORY:
            del item.history[: len(item.history) - MAX_HISTORY]
        self._emit("schedule.run.started", {"schedule_id": item.id, "run_id": entry.run_id})

        try:
            job = await self.batch.create_batch_job(
                f"Scheduled: {item.name}",
                item.evaluation.patterns,
                item.evaluation.test_suite_ids,
                item.evaluation.batch_config,
            )
            entry.batch_job_id = job.id
            results = await self.batch.execute_batch(job.id)
        except asyncio.CancelledError:
            # job timeouts cancel the run; close the entry so skip_if_running does not stick
            self._fail_run(item, entry, "run interrupted before completion")
            raise
        except Exception as exc:
            self._fail_run(item, entry, str(exc))
        else:
            entry.completed_at = self._clock()
            entry.summary = RunSummary(
                total_tests=results.summary.total_tests,
                passed_tests=results.summary.passed_tests,
                failed_tests=results.summary.failed_tests,
                duration_ms=results.summary.duration_ms,
            )
            if job.status == BatchJobStatus.CANCELLED:
                entry.status = ScheduleRunStatus.CANCELLED
            elif results.summary.failed_tests > 0 or results.errors:
                entry.status = ScheduleRunStatus.PARTIAL
            else:
                entry.status = ScheduleRunStatus.SUCCESS
            self._emit(
                "schedule.run.completed",
                {"schedule_id": item.id, "run_id": entry.run_id, "status": entry.status.value, "results": results},
            )
        finally:
            item.last_run = entry.started_at
            self._update_next_run(item)
            metrics.schedule_runs_total.labels(status=entry.status.value).inc()
        return entry

    def _fail_run(self, item: ScheduledEvaluation, entry: ScheduleHistory, error: str) -> None:
        entry.status = ScheduleRunStatus.ERROR
        entry.error = error
        entry.completed_at = self._clock()
        logger.error("scheduled run of %s failed: %s", item.name, error)
        self._emit("schedule.run.failed", {"schedule_id": item.id, "run_id": entry.run_id, "error": error})

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def next_fire_time(self, item: ScheduledEvaluation, after: Optional[float] = None) -> Optional[float]:
        tz = _zone(item.schedule.timezone)
        base = datetime.fromtimestamp(self._clock() if after is None else after, tz=timezone.utc).astimezone(tz)
        nxt = CronExpression.parse(item.cron_expression).next_after(base)
        return nxt.timestamp() if nxt else None

    def _update_next_run(self, item: ScheduledEvaluation) -> None:
        item.next_run = self.next_fire_time(item) if item.enabled else None

    def _register(self, item: ScheduledEvaluation) -> None:
        self._unregister(item.id)
        self._update_next_run(item)
        self._timers[item.id] = asyncio.get_running_loop().create_task(self._timer(item.id))
        logger.info("registered timer for schedule %s", item.name)

    def _unregister(self, schedule_id: str) -> None:
        task = self._timers.pop(schedule_id, None)
        if task is not None:
            task.cancel()
            logger.info("unregistered timer for schedule %s", schedule_id)

    async def _timer(self, schedule_id: str) -> None:
        while True:
            item = self._schedules.get(schedule_id)
            if item is None or not item.enabled:
                return
            fire_at = self.next_fire_time(item)
            if fire_at is None:
                logger.warning("schedule %s has no future fire time", item.name)
                return
            item.next_run = fire_at
            await asyncio.sleep(max(0.0, fire_at - self._clock()))
            try:
                await self._trigger(schedule_id)
            except Exception:
                logger.exception("failed to trigger schedule %s", schedule_id)

    async def _trigger(self, schedule_id: str) -> None:
        if self.queue is not None:
            from .queue import JobOptions, JobPayload, JobType

            await self.queue.enqueue(
                JobType.SCHEDULED_EVALUATION,
                JobPayload(schedule_id=schedule_id, metadata={"skip_if_running": True}),
                JobOptions(timeout_ms=self.job_timeout_ms),
            )
            return
        task = asyncio.create_task(self.run_scheduled_job(schedule_id, skip_if_running=True))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

    async def shutdown(self) -> None:
        for schedule_id in list(self._timers):
            self._unregister(schedule_id)
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)

    async def install_default_schedules(self) -> List[ScheduledEvaluation]:
        defaults = [
            (
                "Daily Comprehensive Evaluation",
                ScheduleConfig(type=ScheduleType.DAILY, hour=2, minute=0),
                EvaluationConfig(
                    patterns=ALL_PATTERNS,
                    test_suite_ids=["comprehensive"],
                    batch_config=BatchConfig(parallel=True, max_concurrency=5),
                ),
            ),
            (
                "Hourly Quick Check",
                ScheduleConfig(type=ScheduleType.INTERVAL, interval_ms=3600000),
                EvaluationConfig(
                    patterns=ALL_PATTERNS,
                    test_suite_ids=["quick"],
                    batch_config=BatchConfig(parallel=True, max_concurrency=10),
                ),
            ),
            (
                "Weekly Regression Test",
                ScheduleConfig(type=ScheduleType.WEEKLY, day_of_week=0, hour=3, minute=0),
                EvaluationConfig(
                    patterns=ALL_PATTERNS,
                    test_suite_ids=["regression"],
                    batch_config=BatchConfig(parallel=False),
                ),
            ),
        ]
        return [await self.create_schedule(name, sched, evaluation) for name, sched, evaluation in defaults]

    def _emit(self, name: str, payload: Any = None) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
