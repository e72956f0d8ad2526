"""Graph helpers over a workflow's steps: indices, start steps and validation."""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel, Field

from .contracts import Workflow

_WHITE, _GRAY, _BLACK = 0, 1, 2


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


def find_cycle(
    edges: Mapping[str, Iterable[str]], order: Optional[Iterable[str]] = None
) -> Optional[List[str]]:
    """Return one cycle as a path (first node repeated at the end), if any.

    Depth-first search with gray/black marking: reaching a gray node means
    it is still on the recursion stack.
    """
    color: Dict[str, int] = {}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = _GRAY
        stack.append(node)
        for target in edges.get(node, ()):
            state = color.get(target, _WHITE)
            if state == _GRAY:
                return stack[stack.index(target):] + [target]
            if state == _WHITE:
                found = visit(target)
                if found:
                    return found
        stack.pop()
        color[node] = _BLACK
        return None

    for node in order if order is not None else edges.keys():
        if color.get(node, _WHITE) == _WHITE:
            found = visit(node)
            if found:
                return found
    return None


class StepGraph:
    """Forward and reverse indices for scheduling a workflow.

    Owned steps (parallel members, loop bodies) are run by their owner and
    are left out of scheduling. Steps referenced only as ``on_error`` or
    ``fallback`` targets are never start steps; ``recovery_owners`` maps
    each recovery target to the scheduled steps that may invoke it.
    """

    def __init__(self, workflow: Workflow) -> None:
        self.workflow = workflow
        self.steps = workflow.step_map()
        self.order = [step.id for step in workflow.steps]
        self.owned: Set[str] = {
            owned for step in workflow.steps for owned in step.owned_steps()
        }
        self.scheduled = [sid for sid in self.order if sid not in self.owned]

        self.predecessors: Dict[str, Set[str]] = {sid: set() for sid in self.scheduled}
        for sid in self.scheduled:
            for target in self.successors(sid):
                self.predecessors[target].add(sid)

        self.recovery_owners: Dict[str, Set[str]] = {}
        for sid in self.scheduled:
            for target in self.steps[sid].recovery_steps():
                self.recovery_owners.setdefault(target, set()).add(sid)
        recovery_targets = {
            target for step in workflow.steps for target in step.recovery_steps()
        }
        self.recovery_only: Set[str] = {
            sid
            for sid in recovery_targets
            if sid in self.predecessors and not self.predecessors[sid]
        }

    def successors(self, step_id: str) -> List[str]:
        step = self.steps.get(step_id)
        if step is None:
            return []
        return [
            target
            for target in step.successors()
            if target in self.steps and target not in self.owned
        ]

    def start_steps(self) -> List[str]:
        return [
            sid
            for sid in self.scheduled
            if not self.predecessors[sid] and sid not in self.recovery_only
        ]


def validate_workflow(workflow: Workflow) -> ValidationReport:
    """Check references, ownership and acyclicity of ``workflow``."""
    errors: List[str] = []

    if not workflow.steps:
        errors.append("Workflow has no steps")

    counts = Counter(step.id for step in workflow.steps)
    for step_id, count in counts.items():
        if count > 1:
            errors.append(f"Duplicate step id: {step_id}")

    step_ids = set(counts)
    owners: Dict[str, List[str]] = {}
    for step in workflow.steps:
        if step.type == "condition" and not step.branches:
            errors.append(f"Condition step {step.id} has no branches")
        for dep in step.config.depends_on:
            if dep not in step_ids:
                errors.append(f"Step {step.id} depends on missing step: {dep}")
        for target in step.next:
            if target not in step_ids:
                errors.append(f"Step {step.id} references missing next step: {target}")
        for branch in step.branches:
            if branch.step_id not in step_ids:
                errors.append(
                    f"Step {step.id} branch {branch.id} references missing step: {branch.step_id}"
                )
        for target in step.recovery_steps():
            if target not in step_ids:
                errors.append(
                    f"Step {step.id} error handling references missing step: {target}"
                )
            elif target == step.id:
                errors.append(f"Step {step.id} cannot recover with itself")
        for owned in step.owned_steps():
            if owned not in step_ids:
                errors.append(f"Step {step.id} runs missing step: {owned}")
            owners.setdefault(owned, []).append(step.id)

    for owned, by in owners.items():
        if len(by) > 1:
            errors.append(f"Step {owned} is run by more than one step: {', '.join(by)}")
    for step in workflow.steps:
        if step.id in owners and step.successors():
            errors.append(
                f"Step {step.id} is run by {owners[step.id][0]} and cannot declare successors"
            )
        for target in step.successors():
            if target in owners:
                errors.append(
                    f"Step {target} is run by {owners[target][0]} and cannot follow {step.id}"
                )

    order = [step.id for step in workflow.steps]
    forward = {step.id: step.successors() for step in workflow.steps}
    cycle = find_cycle(forward, order)
    if cycle:
        errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

    ownership = {step.id: step.owned_steps() for step in workflow.steps}
    owned_cycle = find_cycle(ownership, order)
    if owned_cycle:
        errors.append(f"Workflow step ownership is circular: {' -> '.join(owned_cycle)}")

    return ValidationReport(valid=not errors, errors=errors)
