"""Shared domain types for the evaluation engine boundary."""
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AgentPattern(str, Enum):
    SEQUENTIAL_PROCESSING = "sequential-processing"
    ROUTING = "routing"
    PARALLEL_PROCESSING = "parallel-processing"
    ORCHESTRATOR_WORKER = "orchestrator-worker"
    EVALUATOR_OPTIMIZER = "evaluator-optimizer"
    MULTI_STEP_TOOL_USAGE = "multi-step-tool-usage"


ALL_PATTERNS = [p for p in AgentPattern]


class TestRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TestResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class TestRunResult(BaseModel):
    test_case_id: str
    pattern: AgentPattern
    status: TestResultStatus
    score: Optional[float] = None
    duration_ms: float = 0.0
    retry_count: int = 0
    error: Optional[str] = None


class TestRun(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    suite_id: str
    status: TestRunStatus = TestRunStatus.COMPLETED
    results: List[TestRunResult] = Field(default_factory=list)
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
