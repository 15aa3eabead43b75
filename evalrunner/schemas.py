from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from .batch import BatchConfig
from .models import AgentPattern
from .queue import JobOptions, JobPayload, JobPriority, JobType
from .scheduler import EvaluationConfig, ScheduleConfig


class BatchCreate(BaseModel):
    name: str
    description: Optional[str] = None
    patterns: List[AgentPattern] = Field(min_length=1)
    test_suite_ids: List[str] = Field(min_length=1)
    config: Optional[BatchConfig] = None


class ScheduleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    schedule: ScheduleConfig
    evaluation: EvaluationConfig
    enabled: bool = True


class JobCreate(BaseModel):
    type: JobType
    payload: JobPayload = Field(default_factory=JobPayload)
    options: Optional[JobOptions] = None
    priority: int = JobPriority.NORMAL.value


class WorkflowExecuteRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    wait: bool = False  # block until the run finishes instead of starting it in the background


class ApprovalRequest(BaseModel):
    approver: str


class StatusResponse(BaseModel):
    status: str
    detail: Optional[str] = None
