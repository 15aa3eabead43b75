import copy
import time
import uuid
from typing import Callable, List, Optional

from .models import Checkpoint, Workflow, WorkflowContext


class WorkflowStateManager:
    """Tracks the current stage of one execution and its context checkpoints.

    Checkpoints are taken on request only. ``rollback`` restores the most
    recent one and drops it, so repeated rollbacks walk further back.
    """

    def __init__(self, workflow: Workflow, context: WorkflowContext, clock: Callable[[], float] = time.time):
        self.workflow = workflow
        self.context = context
        self.current_stage: Optional[str] = None
        self.checkpoints: List[Checkpoint] = []
        self._clock = clock

    def transition(self, stage_id: str) -> None:
        self.current_stage = stage_id

    def completed_stages(self) -> List[str]:
        return list(self.context.stage_outputs)

    def pending_stages(self) -> List[str]:
        return [s.id for s in self.workflow.stages if s.id not in self.context.stage_outputs]

    def checkpoint(self) -> Checkpoint:
        cp = Checkpoint(
            id=str(uuid.uuid4()),
            stage_id=self.current_stage,
            timestamp=self._clock(),
            state=WorkflowContext(
                variables=copy.deepcopy(self.context.variables),
                artifacts=copy.deepcopy(self.context.artifacts),
                stage_outputs=copy.deepcopy(self.context.stage_outputs),
            ),
        )
        self.checkpoints.append(cp)
        return cp

    def rollback(self) -> Optional[Checkpoint]:
        if not self.checkpoints:
            return None
        cp = self.checkpoints.pop()
        # restore in place so holders of the context see the rollback
        self.context.variables = copy.deepcopy(cp.state.variables)
        self.context.artifacts = copy.deepcopy(cp.state.artifacts)
        self.context.stage_outputs = copy.deepcopy(cp.state.stage_outputs)
        return cp
