"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..constants import DEFAULT_HISTORY_LIMIT
from ..contracts import Workflow, WorkflowExecution
from ..errors import StorageError
from ..utils.timing import now_ms
from .migrations import apply_postgres_migrations
from .repository import ExecutionStore
from .sqlite import EXECUTION_COLUMNS


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Any, default: Any = None) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_execution(row: asyncpg.Record) -> WorkflowExecution:
    return WorkflowExecution(
        id=row["id"],
        workflow_id=row["workflow_id"],
        status=row["status"],
        current_step=row["current_step"],
        variables=_loads(row["variables_json"], {}),
        outputs=_loads(row["outputs_json"], {}),
        step_statuses=_loads(row["step_statuses_json"], {}),
        error=row["error"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        paused_at=row["paused_at"],
        checkpoint=_loads(row["checkpoint_json"]),
    )


class PostgresExecutionStore(ExecutionStore):
    """Persist workflows and executions using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageError(f"Could not connect to Postgres: {e}") from e
        if not self._initialized:
            await apply_postgres_migrations(conn)
            self._initialized = True
        return conn

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        timestamp = now_ms()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, name, version, description, definition_json, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $6)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    version = EXCLUDED.version,
                    description = EXCLUDED.description,
                    definition_json = EXCLUDED.definition_json,
                    updated_at = EXCLUDED.updated_at
                """,
                workflow.id,
                workflow.name,
                workflow.version,
                workflow.description,
                workflow.to_json(),
                timestamp,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT definition_json FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Workflow.model_validate(_loads(row["definition_json"]))

    async def list_workflows(self) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT definition_json FROM workflows ORDER BY updated_at DESC"
            )
        finally:
            await conn.close()
        return [Workflow.model_validate(_loads(r["definition_json"])) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def _write_execution(self, execution: WorkflowExecution, must_exist: bool) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT finished_at FROM executions WHERE id = $1 FOR UPDATE",
                    execution.id,
                )
                if existing is None and must_exist:
                    raise StorageError(f"Execution {execution.id} does not exist")
                if existing is not None and existing["finished_at"] is not None:
                    raise StorageError(
                        f"Execution {execution.id} is finished and cannot be modified"
                    )
                await conn.execute(
                    f"""
                    INSERT INTO executions ({EXECUTION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (id) DO UPDATE SET
                        status = EXCLUDED.status,
                        current_step = EXCLUDED.current_step,
                        variables_json = EXCLUDED.variables_json,
                        outputs_json = EXCLUDED.outputs_json,
                        step_statuses_json = EXCLUDED.step_statuses_json,
                        error = EXCLUDED.error,
                        finished_at = EXCLUDED.finished_at,
                        paused_at = EXCLUDED.paused_at,
                        checkpoint_json = EXCLUDED.checkpoint_json
                    """,
                    execution.id,
                    execution.workflow_id,
                    execution.status,
                    execution.current_step,
                    _dumps(execution.variables),
                    _dumps(execution.outputs),
                    _dumps(execution.step_statuses),
                    execution.error,
                    execution.started_at,
                    execution.finished_at,
                    execution.paused_at,
                    _dumps(execution.checkpoint),
                )
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e
        finally:
            await conn.close()

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await self._write_execution(execution, must_exist=False)

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await self._write_execution(execution, must_exist=True)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return _row_to_execution(row) if row else None

    async def list_executions(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            if workflow_id is None:
                rows = await conn.fetch(
                    f"SELECT {EXECUTION_COLUMNS} FROM executions ORDER BY started_at DESC LIMIT $1",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE workflow_id = $1 "
                    "ORDER BY started_at DESC LIMIT $2",
                    workflow_id,
                    limit,
                )
        finally:
            await conn.close()
        return [_row_to_execution(r) for r in rows]

    async def delete_execution(self, execution_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM executions WHERE id = $1", execution_id)
        finally:
            await conn.close()

    async def close(self) -> None:
        return None
