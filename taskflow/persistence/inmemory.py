"""In-memory implementation of the execution store."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from ..constants import DEFAULT_HISTORY_LIMIT
from ..contracts import Workflow, WorkflowExecution
from ..errors import StorageError
from ..utils.timing import now_ms
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Store workflows and executions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Tuple[Workflow, int]] = {}
        self._executions: Dict[str, WorkflowExecution] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = (workflow.model_copy(deep=True), now_ms())

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        entry = self._workflows.get(workflow_id)
        return entry[0].model_copy(deep=True) if entry else None

    async def list_workflows(self) -> list[Workflow]:
        entries = sorted(self._workflows.values(), key=lambda e: e[1], reverse=True)
        return [workflow.model_copy(deep=True) for workflow, _ in entries]

    async def delete_workflow(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)

    # ------------------------------------------------------------------
    async def save_execution(self, execution: WorkflowExecution) -> None:
        existing = self._executions.get(execution.id)
        if existing is not None and existing.is_finished:
            raise StorageError(f"Execution {execution.id} is finished and cannot be modified")
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WorkflowExecution]:
        executions = [
            e
            for e in self._executions.values()
            if workflow_id is None or e.workflow_id == workflow_id
        ]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in executions[:limit]]

    async def update_execution(self, execution: WorkflowExecution) -> None:
        if execution.id not in self._executions:
            raise StorageError(f"Execution {execution.id} does not exist")
        await self.save_execution(execution)

    async def delete_execution(self, execution_id: str) -> None:
        self._executions.pop(execution_id, None)

    async def close(self) -> None:
        return None
