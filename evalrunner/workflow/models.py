from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import AgentPattern


class StageType(str, Enum):
    EVALUATION = "evaluation"
    BATCH = "batch"
    API_TEST = "api-test"
    VALIDATION = "validation"
    NOTIFICATION = "notification"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    APPROVAL = "approval"


class ConditionType(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "on-success"
    ON_FAILURE = "on-failure"
    EXPRESSION = "expression"
    THRESHOLD = "threshold"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STAGE_STATUSES = (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED)


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLING_BACK = "rolling-back"


class ValidationOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not-equals"
    GREATER_THAN = "greater-than"
    LESS_THAN = "less-than"
    CONTAINS = "contains"
    MATCHES = "matches"


class ValidationRule(BaseModel):
    field: str
    operator: ValidationOperator
    value: Any = None
    error_message: Optional[str] = None


class NotificationConfig(BaseModel):
    channels: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class ApprovalConfig(BaseModel):
    approvers: List[str] = Field(default_factory=list)
    min_approvals: int = Field(default=1, ge=1)
    timeout_ms: int = 3600000
    auto_approve_after_timeout: bool = False


class StageCondition(BaseModel):
    type: ConditionType = ConditionType.ALWAYS
    expression: Optional[str] = None
    threshold: Optional[float] = None
    field: Optional[str] = None


class StageConfig(BaseModel):
    patterns: List[AgentPattern] = Field(default_factory=list)
    test_suite_ids: List[str] = Field(default_factory=list)
    validation_rules: List[ValidationRule] = Field(default_factory=list)
    notification_config: Optional[NotificationConfig] = None
    parallel_stages: List[str] = Field(default_factory=list)
    approval_config: Optional[ApprovalConfig] = None
    # condition evaluated by a conditional stage; falls back to the stage's own condition
    branch: Optional[StageCondition] = None
    custom_data: Any = None


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    backoff_multiplier: float = 2.0
    max_backoff_ms: float = 30000


class WorkflowStage(BaseModel):
    id: str
    name: str
    type: StageType
    config: StageConfig = Field(default_factory=StageConfig)
    dependencies: List[str] = Field(default_factory=list)
    condition: Optional[StageCondition] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = None


class WorkflowConfig(BaseModel):
    max_duration_ms: Optional[int] = None
    allow_partial_success: bool = False
    rollback_on_failure: bool = False


class WorkflowDefinition(BaseModel):
    id: Optional[str] = None
    name: str = "Unnamed Workflow"
    description: Optional[str] = None
    stages: List[WorkflowStage] = Field(default_factory=list)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)


class Workflow(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    stages: List[WorkflowStage]
    config: WorkflowConfig
    status: WorkflowStatus = WorkflowStatus.PENDING
    created_at: float
    last_execution_id: Optional[str] = None


class StageResult(BaseModel):
    stage_id: str
    status: StageStatus
    started_at: float
    completed_at: Optional[float] = None
    duration_ms: Optional[float] = None
    output: Any = None
    error: Optional[str] = None
    retries: int = 0


class WorkflowSummary(BaseModel):
    total_stages: int = 0
    completed_stages: int = 0
    failed_stages: int = 0
    skipped_stages: int = 0
    duration_ms: float = 0.0
    success: bool = False


class WorkflowResults(BaseModel):
    workflow_id: str
    execution_id: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    stages: Dict[str, StageResult] = Field(default_factory=dict)
    summary: WorkflowSummary = Field(default_factory=WorkflowSummary)
    error: Optional[str] = None


class WorkflowContext(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    stage_outputs: Dict[str, Any] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    id: str
    stage_id: Optional[str] = None
    timestamp: float
    state: WorkflowContext


class ApprovalStatus(BaseModel):
    execution_id: str
    stage_id: str
    approvers: List[str] = Field(default_factory=list)
    min_approvals: int = 1
    approved: bool = False
    auto_approved: bool = False


class ExecutionInfo(BaseModel):
    execution_id: str
    workflow_id: str
    status: WorkflowStatus
    current_stage: Optional[str] = None
    completed_stages: List[str] = Field(default_factory=list)
    pending_stages: List[str] = Field(default_factory=list)
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    pending_approvals: List[ApprovalStatus] = Field(default_factory=list)
    started_at: float
    finished_at: Optional[float] = None
    results: Optional[WorkflowResults] = None
