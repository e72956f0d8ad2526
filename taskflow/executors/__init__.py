"""Step executors and the factory that selects them."""

from __future__ import annotations

from typing import Optional

from ..contracts import ExecutionContext, ReasoningProvider, ToolInvoker, Workflow, WorkflowStep
from .base import BaseExecutor, ExecutorFactory, render_template
from .flow import (
    ConditionExecutor,
    ErrorHandlerExecutor,
    LoopExecutor,
    ParallelExecutor,
    ParallelResult,
)
from .steps import InputExecutor, OutputExecutor, TaskExecutor, ThoughtExecutor, ToolExecutor


def create_executor(
    step: WorkflowStep,
    context: ExecutionContext,
    tools: Optional[ToolInvoker] = None,
    reasoner: Optional[ReasoningProvider] = None,
    workflow: Optional[Workflow] = None,
) -> BaseExecutor:
    """Return the executor for ``step.type``; unknown types run as tasks."""
    factory = ExecutorFactory(workflow=workflow, tools=tools, reasoner=reasoner)
    return factory.create(step, context)


__all__ = [
    "BaseExecutor",
    "ConditionExecutor",
    "ErrorHandlerExecutor",
    "ExecutorFactory",
    "InputExecutor",
    "LoopExecutor",
    "OutputExecutor",
    "ParallelExecutor",
    "ParallelResult",
    "TaskExecutor",
    "ThoughtExecutor",
    "ToolExecutor",
    "create_executor",
    "render_template",
]
