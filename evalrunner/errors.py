from typing import Optional


class EvaluationCoreError(Exception):
    """Base class for errors raised by the automation core."""


class NotFoundError(EvaluationCoreError):
    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class ValidationError(EvaluationCoreError):
    pass


class TransientFailure(EvaluationCoreError):
    pass


class ExhaustedRetriesError(EvaluationCoreError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        msg = f"operation failed after {attempts} attempts"
        if last_error is not None:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)
        self.attempts = attempts
        self.last_error = last_error


class AdmissionRejected(EvaluationCoreError):
    """Rate, quota or concurrency limit rejected the call before it ran."""

    def __init__(self, message: str, violation=None):
        super().__init__(message)
        self.violation = violation


class CircuitOpenError(EvaluationCoreError):
    def __init__(self, key: str):
        super().__init__(f"circuit breaker is open for {key}")
        self.key = key


class BatchCancelled(EvaluationCoreError):
    pass


class WorkflowCancelled(EvaluationCoreError):
    pass


class StageFailedError(EvaluationCoreError):
    def __init__(self, stage_id: str, error: Optional[str] = None):
        msg = f"stage {stage_id} failed"
        if error:
            msg = f"{msg}: {error}"
        super().__init__(msg)
        self.stage_id = stage_id
        self.error = error


class WorkflowTimeoutError(EvaluationCoreError):
    def __init__(self, workflow_id: str, max_duration_ms: int):
        super().__init__(f"workflow {workflow_id} exceeded its {max_duration_ms}ms budget")
        self.workflow_id = workflow_id
        self.max_duration_ms = max_duration_ms
