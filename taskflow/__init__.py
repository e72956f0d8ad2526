"""taskflow: DAG workflow orchestration for tool and reasoning steps."""

from .contracts import (
    ExecutionContext,
    ExecutionResult,
    StepResult,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
)
from .engine import WorkflowEngine
from .errors import (
    ParseError,
    StepExecutionError,
    StorageError,
    TaskflowError,
    WorkflowValidationError,
)
from .executors import create_executor
from .graph import validate_workflow
from .persistence import get_store
from .spec import WorkflowParser
from .tools import ToolRegistry, default_registry

__version__ = "0.1.0"
__all__ = [
    "ExecutionContext",
    "ExecutionResult",
    "ParseError",
    "StepExecutionError",
    "StepResult",
    "StorageError",
    "TaskflowError",
    "ToolRegistry",
    "Workflow",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowParser",
    "WorkflowStep",
    "WorkflowValidationError",
    "create_executor",
    "default_registry",
    "get_store",
    "validate_workflow",
]
