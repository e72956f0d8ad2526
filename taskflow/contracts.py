"""Core data contracts for the taskflow engine."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .constants import DEFAULT_RETRY_DELAY_MS, DEFAULT_WORKFLOW_VERSION
from .utils.timing import now_ms

logger = logging.getLogger(__name__)

StepType = Literal[
    "thought", "task", "tool", "condition", "parallel", "loop", "input", "output"
]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
ExecutionStatus = Literal["pending", "running", "completed", "failed", "paused"]
TriggerType = Literal["manual", "webhook", "schedule", "event"]

# Sentinel for lookups that resolve to nothing (``None`` is a valid value).
MISSING: Any = object()


@runtime_checkable
class ToolInvoker(Protocol):
    """Executes named side-effecting operations."""

    async def execute(self, name: str, input: Dict[str, Any]) -> Any:
        """Run tool ``name`` with ``input``; raise on failure."""


@runtime_checkable
class ReasoningProvider(Protocol):
    """Turns a fully substituted prompt into text."""

    async def generate(self, prompt: str) -> str:
        """Return generated text; raise on failure."""


class Trigger(BaseModel):
    """How a workflow gets started."""

    type: TriggerType = "manual"
    config: Dict[str, Any] = Field(default_factory=dict)


class StepConfig(BaseModel):
    """Per-step settings. Durations are milliseconds."""

    model: Optional[str] = None
    prompt: Optional[str] = None
    tool: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    output_key: Optional[str] = None
    timeout: Optional[int] = None
    retries: Optional[int] = None
    delay: Optional[int] = None
    depends_on: List[str] = Field(default_factory=list)
    # parallel
    steps: List[str] = Field(default_factory=list)
    concurrency: Optional[int] = None
    # loop
    body: Optional[str] = None
    max_iterations: Optional[int] = None
    loop_condition: Optional[str] = None


class ErrorConfig(BaseModel):
    """Retry and recovery policy for a step."""

    max_retries: int = 0
    retry_delay: int = DEFAULT_RETRY_DELAY_MS
    on_error: Optional[str] = None
    fallback: Optional[str] = None


class BranchConfig(BaseModel):
    """A condition-gated successor of a ``condition`` step."""

    id: str
    condition: str
    step_id: str


class WorkflowStep(BaseModel):
    """One node of the workflow graph."""

    id: str
    name: str
    type: StepType = "task"
    config: StepConfig = Field(default_factory=StepConfig)
    next: List[str] = Field(default_factory=list)
    error_handling: Optional[ErrorConfig] = None
    condition: Optional[str] = None
    branches: List[BranchConfig] = Field(default_factory=list)

    def owned_steps(self) -> List[str]:
        """Steps run by this step rather than by the scheduler."""
        if self.type == "parallel":
            return list(self.config.steps)
        if self.type == "loop" and self.config.body:
            return [self.config.body]
        return []

    def branch_targets(self) -> List[str]:
        return [branch.step_id for branch in self.branches]

    def successors(self) -> List[str]:
        """All forward edges: ``next`` plus branch targets, de-duplicated."""
        seen: List[str] = []
        for step_id in [*self.next, *self.branch_targets()]:
            if step_id not in seen:
                seen.append(step_id)
        return seen

    def recovery_steps(self) -> List[str]:
        if not self.error_handling:
            return []
        return [
            target
            for target in (self.error_handling.fallback, self.error_handling.on_error)
            if target
        ]


class Workflow(BaseModel):
    """A validated graph of steps plus metadata.

    Treated as immutable once parsed; the engine never mutates it.
    """

    id: str = Field(default_factory=lambda: f"workflow-{uuid.uuid4().hex[:12]}")
    name: str
    version: str = DEFAULT_WORKFLOW_VERSION
    description: Optional[str] = None
    triggers: List[Trigger] = Field(default_factory=lambda: [Trigger()])
    variables: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStep] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def step_map(self) -> Dict[str, WorkflowStep]:
        return {step.id: step for step in self.steps}

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Workflow":
        return cls.model_validate_json(data)


class ExecutionContext(BaseModel):
    """Mutable variable/output bag scoped to a single run."""

    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    step_statuses: Dict[str, StepStatus] = Field(default_factory=dict)

    def set_output(self, key: str, value: Any) -> None:
        if key in self.outputs:
            logger.warning(f"Output key '{key}' written more than once in this run")
        self.outputs[key] = value

    def set_status(self, step_id: str, status: StepStatus) -> None:
        self.step_statuses[step_id] = status

    def lookup(self, path: str) -> Any:
        """Resolve a dotted ``path`` against variables, then outputs.

        Returns ``MISSING`` when neither scope has it.
        """
        value = resolve_path(self.variables, path)
        if value is not MISSING:
            return value
        return resolve_path(self.outputs, path)


def resolve_path(root: Any, path: str) -> Any:
    """Walk ``path`` through nested dicts and lists."""
    current = root
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


class StepResult(BaseModel):
    """Outcome of one executor invocation."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    duration: int = 0


class WorkflowExecution(BaseModel):
    """Persisted record of one run. Timestamps are epoch milliseconds."""

    id: str = Field(default_factory=lambda: f"exec-{uuid.uuid4().hex}")
    workflow_id: str
    status: ExecutionStatus = "pending"
    current_step: Optional[str] = None
    step_statuses: Dict[str, StepStatus] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    started_at: int = Field(default_factory=now_ms)
    finished_at: Optional[int] = None
    paused_at: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


class ExecutionResult(BaseModel):
    """Structured result returned by every engine entry point."""

    success: bool
    execution: WorkflowExecution
    output: Any = None
    error: Optional[str] = None
    duration: int = 0
