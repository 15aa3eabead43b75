"""Runs workflows: dependency-ordered stages with conditions, retries and rollback.

Each execution owns a context, a state manager holding caller-requested
checkpoints, and a cancellation token checked between stages. Pausing parks
the run between stages until it is resumed or cancelled; a stage already in
flight always runs to completion.
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .. import metrics
from ..api_testing import ApiTester
from ..batch import BatchProcessor
from ..cancel import CancellationToken
from ..config import WORKFLOW_PAUSE_POLL_SECONDS
from ..errors import (
    EvaluationCoreError,
    NotFoundError,
    StageFailedError,
    ValidationError,
    WorkflowCancelled,
    WorkflowTimeoutError,
)
from ..events import EventBus
from ..models import ALL_PATTERNS
from ..queue import JobOptions, JobPayload, JobPriority, JobQueue, JobSpec, JobType
from .conditions import evaluate_expression, evaluate_rule, get_context_value, meets_threshold, parse_expression
from .graph import execution_order, fan_out_children, validate_stages
from .models import (
    TERMINAL_STAGE_STATUSES,
    ApprovalConfig,
    ApprovalStatus,
    Checkpoint,
    ConditionType,
    ExecutionInfo,
    NotificationConfig,
    RetryPolicy,
    StageCondition,
    StageConfig,
    StageResult,
    StageStatus,
    StageType,
    ValidationOperator,
    ValidationRule,
    Workflow,
    WorkflowConfig,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowResults,
    WorkflowStage,
    WorkflowStatus,
    WorkflowSummary,
)
from .state import WorkflowStateManager

logger = logging.getLogger(__name__)

MAX_EXECUTION_HISTORY = 100
DEFAULT_WORKFLOW_ID = "comprehensive-evaluation"

StageHandler = Callable[[WorkflowStage, "WorkflowExecution", Workflow], Awaitable[Any]]


def stage_backoff_ms(attempt: int, policy: RetryPolicy) -> float:
    return min(1000 * policy.backoff_multiplier ** (attempt - 1), policy.max_backoff_ms)


class _PendingApproval:
    def __init__(self, execution_id: str, stage_id: str, config: ApprovalConfig):
        self.config = config
        self.event = asyncio.Event()
        self.status = ApprovalStatus(execution_id=execution_id, stage_id=stage_id, min_approvals=config.min_approvals)


class WorkflowExecution:
    def __init__(self, workflow: Workflow, initial_context: Optional[Dict[str, Any]], clock: Callable[[], float]):
        self.workflow_id = workflow.id
        self.execution_id = str(uuid.uuid4())
        self.status = WorkflowStatus.RUNNING
        self.context = WorkflowContext(variables=dict(initial_context or {}))
        self.state = WorkflowStateManager(workflow, self.context, clock)
        self.cancel_token = CancellationToken()
        self.results = WorkflowResults(workflow_id=workflow.id, execution_id=self.execution_id)
        self.started_at = clock()
        self.finished_at: Optional[float] = None
        self.approvals: Dict[str, _PendingApproval] = {}

    def info(self) -> ExecutionInfo:
        return ExecutionInfo(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            status=self.status,
            current_stage=self.state.current_stage,
            completed_stages=self.state.completed_stages(),
            pending_stages=self.state.pending_stages(),
            checkpoints=list(self.state.checkpoints),
            pending_approvals=[p.status for p in self.approvals.values()],
            started_at=self.started_at,
            finished_at=self.finished_at,
            results=self.results,
        )


class WorkflowOrchestrator:
    def __init__(
        self,
        batch: BatchProcessor,
        queue: Optional[JobQueue] = None,
        api_tester: Optional[ApiTester] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pause_poll_seconds: float = WORKFLOW_PAUSE_POLL_SECONDS,
    ):
        self.batch = batch
        self.queue = queue
        self.api_tester = api_tester
        self.events = events
        self.pause_poll_seconds = pause_poll_seconds
        self._clock = clock
        self._sleep = sleep
        self._workflows: Dict[str, Workflow] = {}
        self._active: Dict[str, WorkflowExecution] = {}
        self._history: "OrderedDict[str, WorkflowExecution]" = OrderedDict()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stage_handlers: Dict[StageType, StageHandler] = {
            StageType.EVALUATION: self._run_evaluation_stage,
            StageType.BATCH: self._run_batch_stage,
            StageType.API_TEST: self._run_api_test_stage,
            StageType.VALIDATION: self._run_validation_stage,
            StageType.NOTIFICATION: self._run_notification_stage,
            StageType.CONDITIONAL: self._run_conditional_stage,
            StageType.PARALLEL: self._run_parallel_stage,
            StageType.APPROVAL: self._run_approval_stage,
        }

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------
    async def create_workflow(self, definition: WorkflowDefinition) -> Workflow:
        validate_stages(definition.stages)
        for stage in definition.stages:
            for condition in (stage.condition, stage.config.branch):
                self._validate_condition(stage, condition)
        workflow_id = definition.id or str(uuid.uuid4())
        if workflow_id in self._workflows:
            raise ValidationError(f"workflow {workflow_id} already exists")

        workflow = Workflow(
            id=workflow_id,
            name=definition.name,
            description=definition.description,
            stages=list(definition.stages),
            config=definition.config,
            created_at=self._clock(),
        )
        self._workflows[workflow.id] = workflow
        logger.info("created workflow %s with %s stages", workflow.id, len(workflow.stages))
        return workflow

    @staticmethod
    def _validate_condition(stage: WorkflowStage, condition: Optional[StageCondition]) -> None:
        if condition is None:
            return
        if condition.type == ConditionType.EXPRESSION:
            if not condition.expression:
                raise ValidationError(f"stage {stage.id}: expression condition needs an expression")
            parse_expression(condition.expression)
        elif condition.type == ConditionType.THRESHOLD and not condition.field:
            raise ValidationError(f"stage {stage.id}: threshold condition needs a field")

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", workflow_id)
        return workflow

    def list_workflows(self) -> List[Workflow]:
        return list(self._workflows.values())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute_workflow(self, workflow_id: str, initial_context: Optional[Dict[str, Any]] = None) -> WorkflowResults:
        """Run a workflow to the end and return its results.

        Raises ``StageFailedError`` when a stage fails and partial success is
        not allowed. A cancelled run returns normally with status
        ``cancelled``.
        """
        workflow = self.get_workflow(workflow_id)
        execution = self._begin(workflow, initial_context)
        return await self._run(workflow, execution)

    async def start_workflow(self, workflow_id: str, initial_context: Optional[Dict[str, Any]] = None) -> ExecutionInfo:
        """Start a run on a background task and return immediately."""
        workflow = self.get_workflow(workflow_id)
        execution = self._begin(workflow, initial_context)
        task = asyncio.create_task(self._run_detached(workflow, execution))
        self._tasks[execution.execution_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution.execution_id, None))
        return execution.info()

    async def wait_execution(self, execution_id: str) -> ExecutionInfo:
        """Wait for a background run to finish; failures are reported on the returned record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_execution(execution_id)

    def _begin(self, workflow: Workflow, initial_context: Optional[Dict[str, Any]]) -> WorkflowExecution:
        execution = WorkflowExecution(workflow, initial_context, self._clock)
        self._active[execution.execution_id] = execution
        workflow.status = WorkflowStatus.RUNNING
        workflow.last_execution_id = execution.execution_id
        return execution

    async def _run_detached(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        try:
            await self._run(workflow, execution)
        except EvaluationCoreError as exc:
            # already logged and recorded on the execution
            logger.debug("background execution %s ended with %s", execution.execution_id, exc)

    async def _run(self, workflow: Workflow, execution: WorkflowExecution) -> WorkflowResults:
        results = execution.results
        logger.info("workflow %s started (execution %s)", workflow.id, execution.execution_id)
        self._emit("workflow.started", {"workflow_id": workflow.id, "execution_id": execution.execution_id})

        try:
            await self._run_stages(workflow, execution)
        except WorkflowCancelled:
            execution.status = WorkflowStatus.CANCELLED
        except Exception as exc:
            results.error = str(exc)
            logger.error("workflow %s failed: %s", workflow.id, exc)
            if workflow.config.rollback_on_failure:
                self._rollback(execution)
            execution.status = WorkflowStatus.FAILED
            self._emit(
                "workflow.failed",
                {"workflow_id": workflow.id, "execution_id": execution.execution_id, "error": str(exc)},
            )
            raise
        else:
            if execution.cancel_token.cancelled:
                execution.status = WorkflowStatus.CANCELLED
            else:
                execution.status = WorkflowStatus.COMPLETED
        finally:
            self._finish(workflow, execution)

        if execution.status == WorkflowStatus.COMPLETED:
            logger.info("workflow %s completed (execution %s)", workflow.id, execution.execution_id)
            self._emit(
                "workflow.completed",
                {"workflow_id": workflow.id, "execution_id": execution.execution_id, "results": results},
            )
        else:
            logger.info("workflow %s cancelled (execution %s)", workflow.id, execution.execution_id)
        return results

    def _finish(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        execution.finished_at = self._clock()
        results = execution.results
        if execution.cancel_token.cancelled:
            for stage in workflow.stages:
                if stage.id not in results.stages:
                    results.stages[stage.id] = StageResult(
                        stage_id=stage.id, status=StageStatus.CANCELLED, started_at=execution.finished_at
                    )
        statuses = [r.status for r in results.stages.values()]
        failed = statuses.count(StageStatus.FAILED)
        results.status = execution.status
        results.summary = WorkflowSummary(
            total_stages=len(workflow.stages),
            completed_stages=statuses.count(StageStatus.COMPLETED),
            failed_stages=failed,
            skipped_stages=statuses.count(StageStatus.SKIPPED) + statuses.count(StageStatus.CANCELLED),
            duration_ms=(execution.finished_at - execution.started_at) * 1000,
            success=execution.status == WorkflowStatus.COMPLETED
            and (failed == 0 or workflow.config.allow_partial_success),
        )
        workflow.status = execution.status
        metrics.workflow_runs_total.labels(status=execution.status.value).inc()

        self._active.pop(execution.execution_id, None)
        self._history[execution.execution_id] = execution
        while len(self._history) > MAX_EXECUTION_HISTORY:
            self._history.popitem(last=False)

    async def _run_stages(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        by_id = {s.id: s for s in workflow.stages}
        children = fan_out_children(workflow.stages)
        results = execution.results
        token = execution.cancel_token
        deadline = None
        if workflow.config.max_duration_ms:
            deadline = execution.started_at + workflow.config.max_duration_ms / 1000.0

        for stage_id in execution_order(workflow.stages):
            if token.cancelled:
                break
            await self._wait_while_paused(execution)
            if token.cancelled:
                break
            if deadline is not None and self._clock() > deadline:
                raise WorkflowTimeoutError(workflow.id, workflow.config.max_duration_ms)
            # fan-out children run inside their parallel stage
            if stage_id in children or stage_id in results.stages:
                continue

            stage = by_id[stage_id]
            unmet = [d for d in stage.dependencies if not self._is_terminal(results, d)]
            if unmet:
                self._record(execution, stage, self._skipped(stage, f"dependencies not run: {', '.join(unmet)}"))
                continue
            if not self._condition_holds(stage.condition, stage, execution):
                self._record(execution, stage, self._skipped(stage, "condition not met"))
                continue

            execution.state.transition(stage_id)
            result = await self._execute_stage(stage, execution, workflow)
            self._record(execution, stage, result)

            outcomes = [result]
            if stage.type == StageType.PARALLEL and result.status == StageStatus.COMPLETED:
                for child_id, child_result in result.output.items():
                    self._record(execution, by_id[child_id], child_result)
                    outcomes.append(child_result)

            for outcome in outcomes:
                if outcome.status == StageStatus.FAILED and not workflow.config.allow_partial_success:
                    raise StageFailedError(outcome.stage_id, outcome.error)

        if not token.cancelled:
            for stage in workflow.stages:
                if stage.id not in results.stages:
                    self._record(execution, stage, self._skipped(stage, "not reached"))

    @staticmethod
    def _is_terminal(results: WorkflowResults, stage_id: str) -> bool:
        result = results.stages.get(stage_id)
        return result is not None and result.status in TERMINAL_STAGE_STATUSES

    def _skipped(self, stage: WorkflowStage, reason: str) -> StageResult:
        return StageResult(stage_id=stage.id, status=StageStatus.SKIPPED, started_at=self._clock(), error=reason)

    def _record(self, execution: WorkflowExecution, stage: WorkflowStage, result: StageResult) -> None:
        execution.results.stages[stage.id] = result
        if result.status == StageStatus.COMPLETED:
            execution.context.stage_outputs[stage.id] = result.output
        metrics.workflow_stages_total.labels(status=result.status.value).inc()
        if result.status == StageStatus.SKIPPED:
            logger.info("stage %s skipped: %s", stage.id, result.error)
            return
        self._emit(
            "workflow.stage.completed",
            {
                "workflow_id": execution.workflow_id,
                "execution_id": execution.execution_id,
                "stage_id": stage.id,
                "status": result.status.value,
                "result": result,
            },
        )

    async def _wait_while_paused(self, execution: WorkflowExecution) -> None:
        while execution.status == WorkflowStatus.PAUSED and not execution.cancel_token.cancelled:
            await self._sleep(self.pause_poll_seconds)

    def _condition_holds(self, condition: Optional[StageCondition], stage: WorkflowStage, execution: WorkflowExecution) -> bool:
        if condition is None or condition.type == ConditionType.ALWAYS:
            return True
        first = stage.dependencies[0] if stage.dependencies else None
        stages = execution.results.stages
        if condition.type == ConditionType.ON_SUCCESS:
            return first is None or (first in stages and stages[first].status == StageStatus.COMPLETED)
        if condition.type == ConditionType.ON_FAILURE:
            return first is not None and first in stages and stages[first].status == StageStatus.FAILED
        if condition.type == ConditionType.EXPRESSION:
            return evaluate_expression(condition.expression or "", execution.context)
        if condition.type == ConditionType.THRESHOLD:
            return meets_threshold(get_context_value(condition.field or "", execution.context), condition.threshold)
        return True

    async def _execute_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> StageResult:
        policy = stage.retry_policy or RetryPolicy()
        handler = self._stage_handlers[stage.type]
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                if stage.timeout_ms:
                    output = await asyncio.wait_for(handler(stage, execution, workflow), timeout=stage.timeout_ms / 1000.0)
                else:
                    output = await handler(stage, execution, workflow)
            except WorkflowCancelled:
                raise
            except Exception as exc:
                if isinstance(exc, asyncio.TimeoutError):
                    error = f"stage {stage.id} timed out after {stage.timeout_ms}ms"
                elif isinstance(exc, StageFailedError) and exc.error:
                    error = exc.error
                else:
                    error = str(exc) or exc.__class__.__name__
                logger.warning("stage %s attempt %s/%s failed: %s", stage.id, attempt, policy.max_attempts, error)
                if attempt >= policy.max_attempts:
                    now = self._clock()
                    return StageResult(
                        stage_id=stage.id,
                        status=StageStatus.FAILED,
                        started_at=started,
                        completed_at=now,
                        duration_ms=(now - started) * 1000,
                        error=error,
                        retries=attempt - 1,
                    )
                await self._sleep(stage_backoff_ms(attempt, policy) / 1000.0)
                continue

            now = self._clock()
            return StageResult(
                stage_id=stage.id,
                status=StageStatus.COMPLETED,
                started_at=started,
                completed_at=now,
                duration_ms=(now - started) * 1000,
                output=output,
                retries=attempt - 1,
            )

    # ------------------------------------------------------------------
    # Stage bodies
    # ------------------------------------------------------------------
    async def _run_evaluation_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        if self.queue is None:
            raise ValidationError("evaluation stages need a job queue")
        cfg = stage.config
        if not cfg.patterns or not cfg.test_suite_ids:
            raise ValidationError(f"evaluation stage {stage.id} needs patterns and test_suite_ids")
        options = JobOptions(timeout_ms=stage.timeout_ms) if stage.timeout_ms else JobOptions()
        meta = {"workflow_id": execution.workflow_id, "execution_id": execution.execution_id, "stage_id": stage.id}
        specs = [
            JobSpec(
                type=JobType.SINGLE_EVALUATION,
                payload=JobPayload(pattern=pattern, test_suite_id=suite_id, metadata=meta),
                options=options,
                priority=JobPriority.HIGH,
            )
            for pattern in cfg.patterns
            for suite_id in cfg.test_suite_ids
        ]
        jobs = await self.queue.enqueue_bulk(specs)
        return {
            "job_ids": [j.id for j in jobs],
            "patterns": [p.value for p in cfg.patterns],
            "test_suite_ids": list(cfg.test_suite_ids),
        }

    async def _run_batch_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        job = await self.batch.create_batch_job(
            f"Workflow: {workflow.id} - Stage: {stage.id}",
            stage.config.patterns,
            stage.config.test_suite_ids,
        )
        return await self.batch.execute_batch(job.id)

    async def _run_api_test_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        if self.api_tester is None:
            raise ValidationError("api-test stages need an api tester")
        body = stage.config.custom_data if isinstance(stage.config.custom_data, dict) else None
        results = await self.api_tester.test_patterns(stage.config.patterns, body)
        failed = [r.pattern.value for r in results if not r.success]
        if failed:
            raise StageFailedError(stage.id, f"api test failed for {', '.join(failed)}")
        return results

    async def _run_validation_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        checks = []
        for rule in stage.config.validation_rules:
            value = get_context_value(rule.field, execution.context)
            passed = evaluate_rule(rule, value)
            message = "validation passed" if passed else rule.error_message or f"validation failed for {rule.field}"
            checks.append({"field": rule.field, "passed": passed, "value": value, "message": message})
            if not passed:
                raise StageFailedError(stage.id, message)
        return checks

    async def _run_notification_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        config = stage.config.notification_config or NotificationConfig()
        self._emit(
            "workflow.notification",
            {
                "workflow_id": execution.workflow_id,
                "execution_id": execution.execution_id,
                "stage_id": stage.id,
                "channels": config.channels,
                "message": config.message,
                "completed_stages": execution.state.completed_stages(),
            },
        )
        return {"notified": True, "channels": config.channels}

    async def _run_conditional_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        condition = stage.config.branch or stage.condition
        taken = self._condition_holds(condition, stage, execution)
        return {"result": taken, "branch": "then" if taken else "else"}

    async def _run_parallel_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        by_id = {s.id: s for s in workflow.stages}
        children = [by_id[c] for c in stage.config.parallel_stages]

        async def _one(child: WorkflowStage) -> StageResult:
            if not self._condition_holds(child.condition, child, execution):
                return self._skipped(child, "condition not met")
            return await self._execute_stage(child, execution, workflow)

        outcomes = await asyncio.gather(*(_one(c) for c in children))
        return {child.id: outcome for child, outcome in zip(children, outcomes)}

    async def _run_approval_stage(self, stage: WorkflowStage, execution: WorkflowExecution, workflow: Workflow) -> Any:
        config = stage.config.approval_config or ApprovalConfig()
        pending = _PendingApproval(execution.execution_id, stage.id, config)
        execution.approvals[stage.id] = pending
        self._emit(
            "workflow.approval.requested",
            {
                "workflow_id": execution.workflow_id,
                "execution_id": execution.execution_id,
                "stage_id": stage.id,
                "approvers": config.approvers,
                "min_approvals": config.min_approvals,
            },
        )
        logger.info("stage %s waiting for %s approval(s)", stage.id, config.min_approvals)
        try:
            await asyncio.wait_for(pending.event.wait(), timeout=config.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            if not config.auto_approve_after_timeout:
                raise StageFailedError(stage.id, f"approval timed out after {config.timeout_ms}ms")
            pending.status.approved = True
            pending.status.auto_approved = True
            pending.status.approvers.append("auto-approved")
            logger.info("stage %s auto-approved after timeout", stage.id)
        finally:
            execution.approvals.pop(stage.id, None)

        if execution.cancel_token.cancelled:
            raise WorkflowCancelled(f"execution {execution.execution_id} cancelled while awaiting approval")
        return pending.status

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def _get_active(self, execution_id: str) -> WorkflowExecution:
        execution = self._active.get(execution_id)
        if execution is None:
            raise NotFoundError("workflow execution", execution_id)
        return execution

    def get_execution(self, execution_id: str) -> ExecutionInfo:
        execution = self._active.get(execution_id) or self._history.get(execution_id)
        if execution is None:
            raise NotFoundError("workflow execution", execution_id)
        return execution.info()

    def list_executions(self) -> List[ExecutionInfo]:
        return [e.info() for e in list(self._history.values()) + list(self._active.values())]

    async def pause_workflow(self, execution_id: str) -> ExecutionInfo:
        execution = self._get_active(execution_id)
        if execution.status == WorkflowStatus.RUNNING:
            execution.status = WorkflowStatus.PAUSED
            logger.info("workflow execution %s paused", execution_id)
            self._emit("workflow.paused", {"execution_id": execution_id})
        return execution.info()

    async def resume_workflow(self, execution_id: str) -> ExecutionInfo:
        execution = self._get_active(execution_id)
        if execution.status == WorkflowStatus.PAUSED:
            execution.status = WorkflowStatus.RUNNING
            logger.info("workflow execution %s resumed", execution_id)
            self._emit("workflow.resumed", {"execution_id": execution_id})
        return execution.info()

    async def cancel_workflow(self, execution_id: str) -> ExecutionInfo:
        execution = self._get_active(execution_id)
        execution.cancel_token.request_cancel()
        execution.status = WorkflowStatus.CANCELLED
        for pending in execution.approvals.values():
            pending.event.set()
        logger.info("workflow execution %s cancelled", execution_id)
        self._emit("workflow.cancelled", {"execution_id": execution_id})
        return execution.info()

    def checkpoint(self, execution_id: str) -> Checkpoint:
        execution = self._get_active(execution_id)
        cp = execution.state.checkpoint()
        logger.info("checkpoint %s taken for execution %s", cp.id, execution_id)
        return cp

    def rollback(self, execution_id: str) -> Optional[Checkpoint]:
        return self._rollback(self._get_active(execution_id))

    def _rollback(self, execution: WorkflowExecution) -> Optional[Checkpoint]:
        previous = execution.status
        execution.status = WorkflowStatus.ROLLING_BACK
        cp = execution.state.rollback()
        execution.status = previous
        if cp is None:
            logger.warning("no checkpoint to roll back to for execution %s", execution.execution_id)
            return None
        logger.info("execution %s rolled back to checkpoint %s", execution.execution_id, cp.id)
        self._emit(
            "workflow.rolledback",
            {"workflow_id": execution.workflow_id, "execution_id": execution.execution_id, "checkpoint_id": cp.id},
        )
        return cp

    async def approve(self, execution_id: str, stage_id: str, approver: str) -> ApprovalStatus:
        execution = self._get_active(execution_id)
        pending = execution.approvals.get(stage_id)
        if pending is None:
            raise NotFoundError("pending approval", f"{execution_id}/{stage_id}")
        if pending.config.approvers and approver not in pending.config.approvers:
            raise ValidationError(f"{approver} may not approve stage {stage_id}")
        if approver not in pending.status.approvers:
            pending.status.approvers.append(approver)
        if len(pending.status.approvers) >= pending.config.min_approvals:
            pending.status.approved = True
            pending.event.set()
        return pending.status

    async def shutdown(self) -> None:
        for execution in list(self._active.values()):
            execution.cancel_token.request_cancel()
            for pending in execution.approvals.values():
                pending.event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def install_default_workflows(self) -> List[Workflow]:
        if DEFAULT_WORKFLOW_ID in self._workflows:
            return [self._workflows[DEFAULT_WORKFLOW_ID]]
        definition = WorkflowDefinition(
            id=DEFAULT_WORKFLOW_ID,
            name="Comprehensive Pattern Evaluation",
            description="Full evaluation workflow for all agent patterns",
            stages=[
                WorkflowStage(
                    id="pre-check",
                    name="Pre-evaluation Health Check",
                    type=StageType.API_TEST,
                    config=StageConfig(patterns=ALL_PATTERNS),
                ),
                WorkflowStage(
                    id="batch-eval",
                    name="Batch Evaluation",
                    type=StageType.BATCH,
                    config=StageConfig(patterns=ALL_PATTERNS, test_suite_ids=["comprehensive"]),
                    dependencies=["pre-check"],
                    condition=StageCondition(type=ConditionType.ON_SUCCESS),
                ),
                WorkflowStage(
                    id="validation",
                    name="Results Validation",
                    type=StageType.VALIDATION,
                    config=StageConfig(
                        validation_rules=[
                            ValidationRule(
                                field="$batch-eval.summary.success_rate",
                                operator=ValidationOperator.GREATER_THAN,
                                value=0.8,
                                error_message="Success rate below 80%",
                            )
                        ]
                    ),
                    dependencies=["batch-eval"],
                ),
                WorkflowStage(
                    id="notification",
                    name="Send Notifications",
                    type=StageType.NOTIFICATION,
                    config=StageConfig(notification_config=NotificationConfig(channels=["email", "slack"])),
                    dependencies=["validation"],
                ),
            ],
            config=WorkflowConfig(max_duration_ms=3600000, allow_partial_success=True, rollback_on_failure=False),
        )
        return [await self.create_workflow(definition)]

    def _emit(self, name: str, payload: Any = None) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
