"""Storage abstraction for workflow definitions and execution records."""

from __future__ import annotations

from typing import Optional, Protocol

from ..constants import DEFAULT_HISTORY_LIMIT
from ..contracts import Workflow, WorkflowExecution


class ExecutionStore(Protocol):
    """Protocol for persistence backends.

    Stores treat JSON-valued fields as opaque; validation happens above this
    layer. Writes to an execution whose ``finished_at`` is already set raise
    :class:`~taskflow.errors.StorageError`.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Return the definition, or ``None``."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all definitions, most recently updated first."""

    async def delete_workflow(self, workflow_id: str) -> None:
        """Remove a definition."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Insert or replace an execution record."""

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Return the record, or ``None``."""

    async def list_executions(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WorkflowExecution]:
        """Return records newest ``started_at`` first."""

    async def update_execution(self, execution: WorkflowExecution) -> None:
        """Persist changes to an existing record."""

    async def delete_execution(self, execution_id: str) -> None:
        """Remove a record."""

    async def close(self) -> None:
        """Release any held resources."""
