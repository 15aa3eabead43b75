from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..batch import BatchJob
from ..queue import DeadLetterEntry, Job, QueueMetrics
from ..ratelimit import RateLimitViolation
from ..retry import CircuitBreaker
from ..scheduler import ScheduledEvaluation, ScheduleHistory, ScheduleUpdate
from ..schemas import ApprovalRequest, BatchCreate, JobCreate, ScheduleCreate, StatusResponse, WorkflowExecuteRequest
from ..services import Services, get_services
from ..workflow.models import ApprovalStatus, Checkpoint, ExecutionInfo, Workflow, WorkflowDefinition

router = APIRouter(prefix="/automation")


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------
@router.post("/batch", response_model=BatchJob)
async def create_batch(body: BatchCreate, services: Services = Depends(get_services)):
    return await services.batch.create_batch_job(
        body.name, body.patterns, body.test_suite_ids, body.config, body.description
    )


@router.get("/batch", response_model=List[BatchJob])
async def list_batches(services: Services = Depends(get_services)):
    return services.batch.list_batches()


@router.get("/batch/{job_id}", response_model=BatchJob)
async def get_batch(job_id: str, services: Services = Depends(get_services)):
    return services.batch.get_batch(job_id)


@router.post("/batch/{job_id}/cancel", response_model=BatchJob)
async def cancel_batch(job_id: str, services: Services = Depends(get_services)):
    return await services.batch.cancel_batch(job_id)


# ----------------------------------------------------------------------
# Schedules
# ----------------------------------------------------------------------
@router.get("/schedules", response_model=List[ScheduledEvaluation])
async def list_schedules(services: Services = Depends(get_services)):
    return services.scheduler.list_schedules()


@router.post("/schedules", response_model=ScheduledEvaluation)
async def create_schedule(body: ScheduleCreate, services: Services = Depends(get_services)):
    return await services.scheduler.create_schedule(
        body.name, body.schedule, body.evaluation, enabled=body.enabled, description=body.description
    )


@router.get("/schedules/{schedule_id}", response_model=ScheduledEvaluation)
async def get_schedule(schedule_id: str, services: Services = Depends(get_services)):
    return services.scheduler.get_schedule(schedule_id)


@router.put("/schedules/{schedule_id}", response_model=ScheduledEvaluation)
async def update_schedule(schedule_id: str, body: ScheduleUpdate, services: Services = Depends(get_services)):
    return await services.scheduler.update_schedule(schedule_id, body)


@router.delete("/schedules/{schedule_id}", response_model=StatusResponse)
async def delete_schedule(schedule_id: str, services: Services = Depends(get_services)):
    await services.scheduler.delete_schedule(schedule_id)
    return StatusResponse(status="deleted")


@router.post("/schedules/{schedule_id}/run", response_model=Optional[ScheduleHistory])
async def run_schedule(schedule_id: str, services: Services = Depends(get_services)):
    return await services.scheduler.run_scheduled_job(schedule_id)


# ----------------------------------------------------------------------
# Queue
# ----------------------------------------------------------------------
@router.post("/queue/jobs", response_model=Job)
async def enqueue_job(body: JobCreate, services: Services = Depends(get_services)):
    return await services.queue.enqueue(body.type, body.payload, body.options, body.priority)


@router.get("/queue/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    return await services.queue.get_job(job_id)


@router.get("/queue/metrics", response_model=QueueMetrics)
async def queue_metrics(services: Services = Depends(get_services)):
    return await services.queue.metrics()


@router.post("/queue/pause", response_model=StatusResponse)
async def pause_queue(services: Services = Depends(get_services)):
    await services.queue.pause()
    return StatusResponse(status="paused")


@router.post("/queue/resume", response_model=StatusResponse)
async def resume_queue(services: Services = Depends(get_services)):
    await services.queue.resume()
    return StatusResponse(status="resumed")


@router.post("/queue/clear", response_model=StatusResponse)
async def clear_queue(services: Services = Depends(get_services)):
    removed = await services.queue.clear()
    return StatusResponse(status="cleared", detail=f"{removed} jobs removed")


@router.get("/queue/dead-letter", response_model=List[DeadLetterEntry])
async def dead_letter(services: Services = Depends(get_services)):
    return services.queue.dead_letters.entries()


@router.post("/queue/retry/{job_id}", response_model=Job)
async def retry_job(job_id: str, services: Services = Depends(get_services)):
    return await services.queue.retry_failed_job(job_id)


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------
@router.post("/workflows", response_model=Workflow)
async def create_workflow(body: WorkflowDefinition, services: Services = Depends(get_services)):
    return await services.workflows.create_workflow(body)


@router.get("/workflows", response_model=List[Workflow])
async def list_workflows(services: Services = Depends(get_services)):
    return services.workflows.list_workflows()


@router.post("/workflows/{workflow_id}/execute", response_model=ExecutionInfo)
async def execute_workflow(
    workflow_id: str,
    body: Optional[WorkflowExecuteRequest] = None,
    services: Services = Depends(get_services),
):
    body = body or WorkflowExecuteRequest()
    info = await services.workflows.start_workflow(workflow_id, body.context)
    if body.wait:
        info = await services.workflows.wait_execution(info.execution_id)
    return info


@router.get("/workflows/execution/{execution_id}", response_model=ExecutionInfo)
async def get_execution(execution_id: str, services: Services = Depends(get_services)):
    return services.workflows.get_execution(execution_id)


@router.post("/workflows/execution/{execution_id}/pause", response_model=ExecutionInfo)
async def pause_workflow(execution_id: str, services: Services = Depends(get_services)):
    return await services.workflows.pause_workflow(execution_id)


@router.post("/workflows/execution/{execution_id}/resume", response_model=ExecutionInfo)
async def resume_workflow(execution_id: str, services: Services = Depends(get_services)):
    return await services.workflows.resume_workflow(execution_id)


@router.post("/workflows/execution/{execution_id}/cancel", response_model=ExecutionInfo)
async def cancel_workflow(execution_id: str, services: Services = Depends(get_services)):
    return await services.workflows.cancel_workflow(execution_id)


@router.post("/workflows/execution/{execution_id}/checkpoint", response_model=Checkpoint)
async def checkpoint_workflow(execution_id: str, services: Services = Depends(get_services)):
    return services.workflows.checkpoint(execution_id)


@router.post("/workflows/execution/{execution_id}/rollback", response_model=Checkpoint)
async def rollback_workflow(execution_id: str, services: Services = Depends(get_services)):
    cp = services.workflows.rollback(execution_id)
    if cp is None:
        raise HTTPException(status_code=409, detail="no checkpoint to roll back to")
    return cp


@router.post("/workflows/execution/{execution_id}/approvals/{stage_id}", response_model=ApprovalStatus)
async def approve_stage(
    execution_id: str, stage_id: str, body: ApprovalRequest, services: Services = Depends(get_services)
):
    return await services.workflows.approve(execution_id, stage_id, body.approver)


# ----------------------------------------------------------------------
# Admission control & resilience
# ----------------------------------------------------------------------
@router.get("/ratelimit/violations", response_model=List[RateLimitViolation])
async def ratelimit_violations(since: Optional[float] = None, services: Services = Depends(get_services)):
    return services.limiter.violations(since)


@router.get("/circuit-breakers/{key}", response_model=CircuitBreaker)
async def get_circuit_breaker(key: str, services: Services = Depends(get_services)):
    breaker = services.retry.get_breaker(key)
    if breaker is None:
        raise HTTPException(status_code=404, detail=f"circuit breaker {key} not found")
    return breaker


@router.post("/circuit-breakers/{key}/reset", response_model=StatusResponse)
async def reset_circuit_breaker(key: str, services: Services = Depends(get_services)):
    if not services.retry.reset_breaker(key):
        raise HTTPException(status_code=404, detail=f"circuit breaker {key} not found")
    return StatusResponse(status="reset")
