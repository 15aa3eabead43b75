"""Stage dependency graph checks and ordering."""
from typing import Dict, List, Sequence, Set

from ..errors import ValidationError
from .models import StageType, WorkflowStage


def _index(stages: Sequence[WorkflowStage]) -> Dict[str, WorkflowStage]:
    return {stage.id: stage for stage in stages}


def has_cycle(stages: Sequence[WorkflowStage]) -> bool:
    by_id = _index(stages)
    visited: Set[str] = set()
    on_stack: Set[str] = set()

    def visit(stage_id: str) -> bool:
        visited.add(stage_id)
        on_stack.add(stage_id)
        stage = by_id.get(stage_id)
        for dep in stage.dependencies if stage else ():
            if dep not in visited:
                if visit(dep):
                    return True
            elif dep in on_stack:
                return True
        on_stack.discard(stage_id)
        return False

    return any(visit(s.id) for s in stages if s.id not in visited)


def validate_stages(stages: Sequence[WorkflowStage]) -> None:
    """Raise ``ValidationError`` unless ids are unique, references resolve, the graph is acyclic
    and every fan-out child depends only on stages its parallel stage already waits for.
    """
    ids = [s.id for s in stages]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ValidationError(f"workflow contains duplicate stage ids: {', '.join(dupes)}")

    known = set(ids)
    for stage in stages:
        missing = [d for d in stage.dependencies if d not in known]
        if missing:
            raise ValidationError(f"stage {stage.id} depends on unknown stages: {', '.join(missing)}")
        if stage.type == StageType.PARALLEL:
            unknown = [c for c in stage.config.parallel_stages if c not in known]
            if unknown:
                raise ValidationError(f"parallel stage {stage.id} names unknown stages: {', '.join(unknown)}")
            if stage.id in stage.config.parallel_stages:
                raise ValidationError(f"parallel stage {stage.id} cannot fan out to itself")

    if has_cycle(stages):
        raise ValidationError("workflow contains circular dependencies")

    # children start together with their parallel stage, so their dependencies must already be settled
    by_id = _index(stages)
    for stage in stages:
        if stage.type != StageType.PARALLEL:
            continue
        settled = ancestors(by_id, stage.id)
        for child_id in stage.config.parallel_stages:
            unmet = [d for d in by_id[child_id].dependencies if d not in settled]
            if unmet:
                raise ValidationError(
                    f"stage {child_id} runs inside parallel stage {stage.id} but depends on {', '.join(unmet)}, "
                    f"which {stage.id} does not depend on"
                )


def ancestors(by_id: Dict[str, WorkflowStage], stage_id: str) -> Set[str]:
    """Every stage reachable through ``dependencies`` from ``stage_id``."""
    seen: Set[str] = set()
    stack = list(by_id[stage_id].dependencies)
    while stack:
        dep = stack.pop()
        if dep in seen:
            continue
        seen.add(dep)
        stack.extend(by_id[dep].dependencies)
    return seen


def execution_order(stages: Sequence[WorkflowStage]) -> List[str]:
    """Topological order: every stage comes after all of its dependencies."""
    by_id = _index(stages)
    visited: Set[str] = set()
    order: List[str] = []

    def visit(stage_id: str) -> None:
        if stage_id in visited:
            return
        visited.add(stage_id)
        stage = by_id.get(stage_id)
        if stage is None:
            return
        for dep in stage.dependencies:
            visit(dep)
        order.append(stage_id)

    for stage in stages:
        visit(stage.id)
    return order


def fan_out_children(stages: Sequence[WorkflowStage]) -> Set[str]:
    children: Set[str] = set()
    for stage in stages:
        if stage.type == StageType.PARALLEL:
            children.update(stage.config.parallel_stages)
    return children
