import asyncio

import httpx
import pytest

from evalrunner.api_testing import ApiTester
from evalrunner.batch import BatchProcessor
from evalrunner.errors import NotFoundError, StageFailedError, ValidationError, WorkflowTimeoutError
from evalrunner.queue import JobPriority, JobQueue, JobType
from evalrunner.workflow.conditions import evaluate_expression, evaluate_rule, get_context_value
from evalrunner.workflow.graph import execution_order, has_cycle, validate_stages
from evalrunner.workflow.models import (
    ApprovalConfig,
    ConditionType,
    NotificationConfig,
    RetryPolicy,
    StageCondition,
    StageConfig,
    StageStatus,
    StageType,
    ValidationOperator,
    ValidationRule,
    WorkflowConfig,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowStage,
    WorkflowStatus,
)
from evalrunner.workflow.orchestrator import DEFAULT_WORKFLOW_ID, WorkflowOrchestrator, stage_backoff_ms


def stage(stage_id, stage_type=StageType.NOTIFICATION, **kwargs):
    return WorkflowStage(id=stage_id, name=stage_id, type=stage_type, **kwargs)


def definition(*stages, **config):
    return WorkflowDefinition(name="test workflow", stages=list(stages), config=WorkflowConfig(**config))


def approval(stage_id, **approval_kwargs):
    return stage(stage_id, StageType.APPROVAL, config=StageConfig(approval_config=ApprovalConfig(**approval_kwargs)))


def failing_tester(status=500, failures=None):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if failures is None or calls["n"] <= failures:
            return httpx.Response(status, json={"error": "down"})
        return httpx.Response(200, json={"ok": True})

    return ApiTester(base_url="http://patterns.test/api", transport=httpx.MockTransport(handler))


async def eventually(predicate, timeout=2.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached in time")


@pytest.fixture
def make_orchestrator(events, runner, api_tester, redis_client, sleeper):
    created = []

    def _make(tester=None):
        orch = WorkflowOrchestrator(
            BatchProcessor(runner, events),
            JobQueue(redis_client, events),
            tester or api_tester,
            events,
            sleep=sleeper,
            pause_poll_seconds=0.01,
        )
        created.append(orch)
        return orch

    return _make


@pytest.fixture
async def orchestrator(make_orchestrator):
    orch = make_orchestrator()
    yield orch
    await orch.shutdown()


def _pending_approval(orchestrator, execution_id, stage_id):
    def check():
        info = orchestrator.get_execution(execution_id)
        return any(a.stage_id == stage_id for a in info.pending_approvals)

    return check


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------
def test_has_cycle():
    assert has_cycle([stage("a", dependencies=["b"]), stage("b", dependencies=["a"])])
    assert has_cycle([stage("a", dependencies=["a"])])
    assert not has_cycle([stage("a"), stage("b", dependencies=["a"])])


def test_execution_order_respects_dependencies():
    stages = [
        stage("report", dependencies=["validate", "notify"]),
        stage("validate", dependencies=["batch"]),
        stage("notify", dependencies=["batch"]),
        stage("batch", dependencies=["precheck"]),
        stage("precheck"),
        stage("standalone"),
    ]

    order = execution_order(stages)

    assert sorted(order) == sorted(s.id for s in stages)
    for s in stages:
        for dep in s.dependencies:
            assert order.index(dep) < order.index(s.id)


@pytest.mark.parametrize(
    "stages",
    [
        [stage("a"), stage("a")],
        [stage("a", dependencies=["ghost"])],
        [stage("p", StageType.PARALLEL, config=StageConfig(parallel_stages=["ghost"]))],
        [stage("p", StageType.PARALLEL, config=StageConfig(parallel_stages=["p"]))],
        [stage("a", dependencies=["c"]), stage("b", dependencies=["a"]), stage("c", dependencies=["b"])],
    ],
)
def test_validate_stages_rejects_bad_graphs(stages):
    with pytest.raises(ValidationError):
        validate_stages(stages)


def test_fan_out_child_must_not_depend_on_unsettled_stage():
    stages = [
        stage("fan", StageType.PARALLEL, config=StageConfig(parallel_stages=["child"])),
        stage("child", dependencies=["dep"]),
        stage("dep"),
    ]

    with pytest.raises(ValidationError, match="child runs inside parallel stage fan"):
        validate_stages(stages)


def test_fan_out_child_may_depend_on_ancestors_of_its_parallel_stage():
    validate_stages(
        [
            stage("root"),
            stage("dep", dependencies=["root"]),
            stage("fan", StageType.PARALLEL, dependencies=["dep"], config=StageConfig(parallel_stages=["a", "b"])),
            stage("a", dependencies=["root"]),
            stage("b", dependencies=["dep"]),
        ]
    )


@pytest.mark.asyncio
async def test_cyclic_workflow_is_not_registered(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow(
            definition(stage("a", dependencies=["b"]), stage("b", dependencies=["a"]))
        )
    assert orchestrator.list_workflows() == []


@pytest.mark.asyncio
async def test_bad_expression_is_rejected_at_creation(orchestrator):
    bad = stage("a", condition=StageCondition(type=ConditionType.EXPRESSION, expression="__import__('os').system('x')"))
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow(definition(bad))
    assert orchestrator.list_workflows() == []


@pytest.mark.asyncio
async def test_duplicate_workflow_id(orchestrator):
    wf = WorkflowDefinition(id="wf", stages=[stage("a")])
    await orchestrator.create_workflow(wf)
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow(wf)


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------
def test_get_context_value_paths():
    ctx = WorkflowContext(
        variables={"env": "prod", "nested": {"items": [10, 20]}},
        stage_outputs={"batch": {"summary": {"success_rate": 0.9}}},
    )

    assert get_context_value("$env", ctx) == "prod"
    assert get_context_value("$nested.items.1", ctx) == 20
    assert get_context_value("$batch.summary.success_rate", ctx) == 0.9
    assert get_context_value("variables.env", ctx) == "prod"
    assert get_context_value("stage_outputs.batch.summary.success_rate", ctx) == 0.9
    assert get_context_value("$missing.value", ctx) is None
    assert get_context_value("", ctx) is None


@pytest.mark.parametrize(
    "operator, expected, value, outcome",
    [
        (ValidationOperator.EQUALS, 1, 1, True),
        (ValidationOperator.NOT_EQUALS, 1, 2, True),
        (ValidationOperator.GREATER_THAN, 0.8, 0.9, True),
        (ValidationOperator.GREATER_THAN, 0.8, None, False),
        (ValidationOperator.LESS_THAN, 5, "x", False),
        (ValidationOperator.CONTAINS, "err", "no errors", True),
        (ValidationOperator.MATCHES, r"^v\d+$", "v12", True),
        (ValidationOperator.MATCHES, r"^v\d+$", "12", False),
    ],
)
def test_evaluate_rule(operator, expected, value, outcome):
    assert evaluate_rule(ValidationRule(field="f", operator=operator, value=expected), value) is outcome


def test_evaluate_expression():
    ctx = WorkflowContext(variables={"env": "prod", "score": 0.9}, stage_outputs={"check": {"branch": "then"}})

    assert evaluate_expression("env == 'prod' and score > 0.8", ctx)
    assert evaluate_expression("check.branch == 'then'", ctx)
    assert evaluate_expression("variables['env'] in ['prod', 'staging']", ctx)
    assert not evaluate_expression("not score", ctx)
    assert not evaluate_expression("missing > 3", ctx)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_linear_workflow_completes(orchestrator, events):
    sub = events.subscribe("workflow.*")
    wf = await orchestrator.create_workflow(
        definition(
            stage("notify", config=StageConfig(notification_config=NotificationConfig(channels=["slack"]))),
            stage(
                "check",
                StageType.VALIDATION,
                config=StageConfig(
                    validation_rules=[ValidationRule(field="$release", operator=ValidationOperator.EQUALS, value="1.2")]
                ),
                dependencies=["notify"],
            ),
        )
    )

    results = await orchestrator.execute_workflow(wf.id, {"release": "1.2"})

    assert results.status == WorkflowStatus.COMPLETED
    assert {k: r.status for k, r in results.stages.items()} == {
        "notify": StageStatus.COMPLETED,
        "check": StageStatus.COMPLETED,
    }
    assert results.summary.success is True
    assert results.summary.completed_stages == 2
    assert orchestrator.get_workflow(wf.id).status == WorkflowStatus.COMPLETED
    names = [e.name for e in sub.drain()]
    assert names[0] == "workflow.started"
    assert "workflow.notification" in names
    assert names[-1] == "workflow.completed"


@pytest.mark.asyncio
async def test_failed_stage_fails_workflow(make_orchestrator, events):
    orchestrator = make_orchestrator(failing_tester())
    sub = events.subscribe("workflow.failed")
    wf = await orchestrator.create_workflow(
        definition(
            stage("ping", StageType.API_TEST, config=StageConfig(patterns=["routing"])),
            stage("after", dependencies=["ping"]),
        )
    )

    with pytest.raises(StageFailedError) as exc_info:
        await orchestrator.execute_workflow(wf.id)

    assert exc_info.value.stage_id == "ping"
    info = orchestrator.get_execution(orchestrator.get_workflow(wf.id).last_execution_id)
    assert info.status == WorkflowStatus.FAILED
    assert info.results.stages["ping"].status == StageStatus.FAILED
    assert "after" not in info.results.stages
    assert len(sub.drain()) == 1


@pytest.mark.asyncio
async def test_on_success_and_on_failure_conditions(make_orchestrator):
    orchestrator = make_orchestrator(failing_tester())
    wf = await orchestrator.create_workflow(
        definition(
            stage("ping", StageType.API_TEST, config=StageConfig(patterns=["routing"])),
            stage("happy", dependencies=["ping"], condition=StageCondition(type=ConditionType.ON_SUCCESS)),
            stage("sad", dependencies=["ping"], condition=StageCondition(type=ConditionType.ON_FAILURE)),
            allow_partial_success=True,
        )
    )

    results = await orchestrator.execute_workflow(wf.id)

    assert results.status == WorkflowStatus.COMPLETED
    assert results.stages["ping"].status == StageStatus.FAILED
    assert results.stages["happy"].status == StageStatus.SKIPPED
    assert results.stages["sad"].status == StageStatus.COMPLETED
    assert results.summary.failed_stages == 1
    assert results.summary.skipped_stages == 1
    assert results.summary.success is True


@pytest.mark.asyncio
async def test_stage_retry_policy_backs_off(make_orchestrator, sleeper):
    orchestrator = make_orchestrator(failing_tester(status=503, failures=2))
    wf = await orchestrator.create_workflow(
        definition(
            stage(
                "ping",
                StageType.API_TEST,
                config=StageConfig(patterns=["routing"]),
                retry_policy=RetryPolicy(max_attempts=3, backoff_multiplier=2),
            )
        )
    )

    results = await orchestrator.execute_workflow(wf.id)

    assert results.stages["ping"].status == StageStatus.COMPLETED
    assert results.stages["ping"].retries == 2
    assert sleeper.calls == [1.0, 2.0]


def test_stage_backoff_is_capped():
    policy = RetryPolicy(max_attempts=10, backoff_multiplier=3, max_backoff_ms=5000)
    assert [stage_backoff_ms(a, policy) for a in (1, 2, 3)] == [1000, 3000, 5000]


@pytest.mark.asyncio
async def test_stage_timeout(orchestrator):
    slow = approval("wait", timeout_ms=60000)
    slow.timeout_ms = 20
    wf = await orchestrator.create_workflow(definition(slow, allow_partial_success=True))

    results = await orchestrator.execute_workflow(wf.id)

    assert results.stages["wait"].status == StageStatus.FAILED
    assert "timed out" in results.stages["wait"].error


@pytest.mark.asyncio
async def test_expression_and_threshold_conditions(orchestrator):
    wf = await orchestrator.create_workflow(
        definition(
            stage("prod-only", condition=StageCondition(type=ConditionType.EXPRESSION, expression="env == 'prod'")),
            stage("dev-only", condition=StageCondition(type=ConditionType.EXPRESSION, expression="env == 'dev'")),
            stage("good-score", condition=StageCondition(type=ConditionType.THRESHOLD, field="$score", threshold=0.8)),
            stage("great-score", condition=StageCondition(type=ConditionType.THRESHOLD, field="$score", threshold=0.95)),
        )
    )

    results = await orchestrator.execute_workflow(wf.id, {"env": "prod", "score": 0.9})

    statuses = {k: r.status for k, r in results.stages.items()}
    assert statuses == {
        "prod-only": StageStatus.COMPLETED,
        "dev-only": StageStatus.SKIPPED,
        "good-score": StageStatus.COMPLETED,
        "great-score": StageStatus.SKIPPED,
    }


@pytest.mark.asyncio
async def test_conditional_stage_output_drives_later_stage(orchestrator):
    wf = await orchestrator.create_workflow(
        definition(
            stage(
                "branch",
                StageType.CONDITIONAL,
                config=StageConfig(branch=StageCondition(type=ConditionType.EXPRESSION, expression="retries < 3")),
            ),
            stage(
                "then",
                dependencies=["branch"],
                condition=StageCondition(type=ConditionType.EXPRESSION, expression="branch.branch == 'then'"),
            ),
        )
    )

    results = await orchestrator.execute_workflow(wf.id, {"retries": 1})

    assert results.stages["branch"].output == {"result": True, "branch": "then"}
    assert results.stages["then"].status == StageStatus.COMPLETED


@pytest.mark.asyncio
async def test_parallel_stage_runs_children(orchestrator, events):
    sub = events.subscribe("workflow.notification")
    wf = await orchestrator.create_workflow(
        definition(
            stage("fan", StageType.PARALLEL, config=StageConfig(parallel_stages=["n1", "n2"])),
            stage("n1"),
            stage("n2"),
            stage("after", dependencies=["fan"]),
        )
    )

    results = await orchestrator.execute_workflow(wf.id)

    assert {k: r.status for k, r in results.stages.items()} == {
        "fan": StageStatus.COMPLETED,
        "n1": StageStatus.COMPLETED,
        "n2": StageStatus.COMPLETED,
        "after": StageStatus.COMPLETED,
    }
    assert sorted(e.payload["stage_id"] for e in sub.drain()) == ["after", "n1", "n2"]


@pytest.mark.asyncio
async def test_fan_out_child_runs_after_its_dependency(orchestrator, events):
    sub = events.subscribe("workflow.notification")
    wf = await orchestrator.create_workflow(
        definition(
            stage("fan", StageType.PARALLEL, dependencies=["dep"], config=StageConfig(parallel_stages=["child"])),
            stage("child", dependencies=["dep"]),
            stage("dep"),
        )
    )

    results = await orchestrator.execute_workflow(wf.id)

    assert [e.payload["stage_id"] for e in sub.drain()] == ["dep", "child"]
    assert results.stages["child"].status == StageStatus.COMPLETED
    assert results.stages["dep"].completed_at <= results.stages["child"].started_at


@pytest.mark.asyncio
async def test_dependent_fan_out_is_rejected_before_registration(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow(
            definition(
                stage("fan", StageType.PARALLEL, config=StageConfig(parallel_stages=["child"])),
                stage("child", dependencies=["dep"]),
                stage("dep"),
            )
        )
    assert orchestrator.list_workflows() == []


@pytest.mark.asyncio
async def test_every_stage_type_has_a_handler(orchestrator):
    assert set(orchestrator._stage_handlers) == set(StageType)


@pytest.mark.asyncio
async def test_evaluation_stage_enqueues_high_priority_jobs(orchestrator):
    wf = await orchestrator.create_workflow(
        definition(
            stage(
                "eval",
                StageType.EVALUATION,
                config=StageConfig(patterns=["routing", "parallel-processing"], test_suite_ids=["smoke"]),
            )
        )
    )

    results = await orchestrator.execute_workflow(wf.id)

    jobs = await orchestrator.queue.list_jobs()
    assert len(jobs) == 2
    assert {j.type for j in jobs} == {JobType.SINGLE_EVALUATION}
    assert {j.priority for j in jobs} == {JobPriority.HIGH.value}
    assert sorted(results.stages["eval"].output["job_ids"]) == sorted(j.id for j in jobs)
    assert jobs[0].payload.metadata["stage_id"] == "eval"


@pytest.mark.asyncio
async def test_validation_failure_message(orchestrator):
    rule = ValidationRule(field="$coverage", operator=ValidationOperator.GREATER_THAN, value=10, error_message="coverage too low")
    wf = await orchestrator.create_workflow(
        definition(stage("gate", StageType.VALIDATION, config=StageConfig(validation_rules=[rule])))
    )

    with pytest.raises(StageFailedError) as exc_info:
        await orchestrator.execute_workflow(wf.id, {"coverage": 5})
    assert exc_info.value.error == "coverage too low"


@pytest.mark.asyncio
async def test_default_workflow_runs_end_to_end(orchestrator):
    installed = await orchestrator.install_default_workflows()
    assert [w.id for w in installed] == [DEFAULT_WORKFLOW_ID]
    assert await orchestrator.install_default_workflows() == installed

    results = await orchestrator.execute_workflow(DEFAULT_WORKFLOW_ID)

    assert results.status == WorkflowStatus.COMPLETED
    assert all(r.status == StageStatus.COMPLETED for r in results.stages.values())
    assert results.stages["batch-eval"].output.summary.success_rate == 1.0
    assert results.stages["validation"].output[0]["passed"] is True


@pytest.mark.asyncio
async def test_workflow_deadline(orchestrator):
    wf = await orchestrator.create_workflow(
        definition(
            approval("wait", timeout_ms=20, auto_approve_after_timeout=True),
            stage("after", dependencies=["wait"]),
            max_duration_ms=1,
        )
    )

    with pytest.raises(WorkflowTimeoutError):
        await orchestrator.execute_workflow(wf.id)


@pytest.mark.asyncio
async def test_unknown_workflow_and_execution(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.execute_workflow("nope")
    with pytest.raises(NotFoundError):
        orchestrator.get_execution("nope")
    with pytest.raises(NotFoundError):
        await orchestrator.pause_workflow("nope")


# ----------------------------------------------------------------------
# Approvals and control
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_approval_requires_min_approvers(orchestrator, events):
    sub = events.subscribe("workflow.approval.requested")
    wf = await orchestrator.create_workflow(
        definition(approval("sign-off", approvers=["alice", "bob"], min_approvals=2), stage("ship", dependencies=["sign-off"]))
    )
    info = await orchestrator.start_workflow(wf.id)
    await eventually(_pending_approval(orchestrator, info.execution_id, "sign-off"))
    assert sub.drain()[0].payload["approvers"] == ["alice", "bob"]

    with pytest.raises(ValidationError):
        await orchestrator.approve(info.execution_id, "sign-off", "mallory")
    status = await orchestrator.approve(info.execution_id, "sign-off", "alice")
    assert status.approved is False
    with pytest.raises(NotFoundError):
        await orchestrator.approve(info.execution_id, "ship", "alice")
    status = await orchestrator.approve(info.execution_id, "sign-off", "bob")
    assert status.approved is True

    final = await orchestrator.wait_execution(info.execution_id)
    assert final.status == WorkflowStatus.COMPLETED
    assert final.results.stages["sign-off"].output.approvers == ["alice", "bob"]
    assert final.results.stages["ship"].status == StageStatus.COMPLETED


@pytest.mark.asyncio
async def test_approval_timeout(orchestrator):
    auto = await orchestrator.create_workflow(definition(approval("a", timeout_ms=10, auto_approve_after_timeout=True)))
    strict = await orchestrator.create_workflow(definition(approval("a", timeout_ms=10)))

    results = await orchestrator.execute_workflow(auto.id)
    assert results.stages["a"].output.auto_approved is True

    with pytest.raises(StageFailedError):
        await orchestrator.execute_workflow(strict.id)


@pytest.mark.asyncio
async def test_pause_and_resume(orchestrator, events, sleeper):
    sub = events.subscribe("workflow.*")
    wf = await orchestrator.create_workflow(definition(approval("gate"), stage("next", dependencies=["gate"])))
    info = await orchestrator.start_workflow(wf.id)
    await eventually(_pending_approval(orchestrator, info.execution_id, "gate"))

    paused = await orchestrator.pause_workflow(info.execution_id)
    assert paused.status == WorkflowStatus.PAUSED
    await orchestrator.approve(info.execution_id, "gate", "ops")
    await eventually(lambda: "gate" in orchestrator.get_execution(info.execution_id).completed_stages)
    await asyncio.sleep(0.05)
    assert "next" not in orchestrator.get_execution(info.execution_id).results.stages
    assert sleeper.calls and set(sleeper.calls) == {0.01}

    resumed = await orchestrator.resume_workflow(info.execution_id)
    assert resumed.status == WorkflowStatus.RUNNING
    final = await orchestrator.wait_execution(info.execution_id)
    assert final.status == WorkflowStatus.COMPLETED
    names = [e.name for e in sub.drain()]
    assert names.index("workflow.paused") < names.index("workflow.resumed") < names.index("workflow.completed")


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_approval(orchestrator):
    wf = await orchestrator.create_workflow(definition(approval("gate"), stage("next", dependencies=["gate"])))
    info = await orchestrator.start_workflow(wf.id)
    await eventually(_pending_approval(orchestrator, info.execution_id, "gate"))

    await orchestrator.cancel_workflow(info.execution_id)
    final = await orchestrator.wait_execution(info.execution_id)

    assert final.status == WorkflowStatus.CANCELLED
    assert final.results.status == WorkflowStatus.CANCELLED
    assert {r.status for r in final.results.stages.values()} == {StageStatus.CANCELLED}
    assert final.results.summary.success is False
    with pytest.raises(NotFoundError):
        await orchestrator.resume_workflow(info.execution_id)


@pytest.mark.asyncio
async def test_cancel_while_paused(orchestrator):
    wf = await orchestrator.create_workflow(definition(approval("gate"), stage("next", dependencies=["gate"])))
    info = await orchestrator.start_workflow(wf.id)
    await eventually(_pending_approval(orchestrator, info.execution_id, "gate"))
    await orchestrator.pause_workflow(info.execution_id)
    await orchestrator.approve(info.execution_id, "gate", "ops")

    await orchestrator.cancel_workflow(info.execution_id)
    final = await orchestrator.wait_execution(info.execution_id)

    assert final.status == WorkflowStatus.CANCELLED
    assert final.results.stages["next"].status == StageStatus.CANCELLED


@pytest.mark.asyncio
async def test_checkpoint_and_rollback(orchestrator):
    wf = await orchestrator.create_workflow(definition(stage("first"), approval("gate", timeout_ms=60000), stage("last")))
    info = await orchestrator.start_workflow(wf.id, {"build": 7})
    await eventually(_pending_approval(orchestrator, info.execution_id, "gate"))

    cp = orchestrator.checkpoint(info.execution_id)
    assert cp.stage_id == "gate"
    assert cp.state.variables == {"build": 7}
    assert "first" in cp.state.stage_outputs
    assert len(orchestrator.get_execution(info.execution_id).checkpoints) == 1

    restored = orchestrator.rollback(info.execution_id)
    assert restored.id == cp.id
    assert orchestrator.rollback(info.execution_id) is None

    await orchestrator.approve(info.execution_id, "gate", "ops")
    final = await orchestrator.wait_execution(info.execution_id)
    assert final.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_rollback_on_failure(orchestrator, events):
    sub = events.subscribe("workflow.rolledback")
    wf = await orchestrator.create_workflow(
        definition(stage("first"), approval("gate", timeout_ms=200), rollback_on_failure=True)
    )
    info = await orchestrator.start_workflow(wf.id)
    await eventually(_pending_approval(orchestrator, info.execution_id, "gate"))
    cp = orchestrator.checkpoint(info.execution_id)

    final = await orchestrator.wait_execution(info.execution_id)

    assert final.status == WorkflowStatus.FAILED
    assert "approval timed out" in final.results.error
    assert final.checkpoints == []
    assert sub.drain()[0].payload["checkpoint_id"] == cp.id


@pytest.mark.asyncio
async def test_list_executions_includes_history(orchestrator):
    wf = await orchestrator.create_workflow(definition(stage("only")))
    first = await orchestrator.execute_workflow(wf.id)
    second = await orchestrator.execute_workflow(wf.id)

    ids = [e.execution_id for e in orchestrator.list_executions()]
    assert ids == [first.execution_id, second.execution_id]
