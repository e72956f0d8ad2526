"""Exception taxonomy for taskflow."""

from __future__ import annotations

from typing import List, Optional


class TaskflowError(Exception):
    """Base class for all taskflow errors."""


class ParseError(TaskflowError):
    """Raised when a workflow document cannot be parsed."""


class WorkflowValidationError(TaskflowError):
    """Raised when a workflow graph fails validation.

    Always fatal: an execution never starts for an invalid workflow.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Workflow validation failed: {', '.join(self.errors)}")


class StepExecutionError(TaskflowError):
    """A step failed and no error policy recovered it."""

    def __init__(self, step_id: str, message: Optional[str] = None):
        self.step_id = step_id
        self.message = message or "unknown error"
        super().__init__(f"Step {step_id} failed: {self.message}")


class StepTimeoutError(TaskflowError):
    """A step exceeded its configured deadline."""


class ExpressionError(TaskflowError):
    """Raised for malformed condition expressions."""


class StorageError(TaskflowError):
    """Raised by execution stores; never retried by the engine."""
