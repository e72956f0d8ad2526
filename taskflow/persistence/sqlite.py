"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..constants import DEFAULT_HISTORY_LIMIT
from ..contracts import Workflow, WorkflowExecution
from ..errors import StorageError
from ..utils.timing import now_ms
from .migrations import apply_sqlite_migrations
from .repository import ExecutionStore

EXECUTION_COLUMNS = (
    "id, workflow_id, status, current_step, variables_json, outputs_json, "
    "step_statuses_json, error, started_at, finished_at, paused_at, checkpoint_json"
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


def row_to_execution(row: Any) -> WorkflowExecution:
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


class SQLiteExecutionStore(ExecutionStore):
    """Persist workflows and executions using SQLite.

    Statements run in a worker thread; a lock serialises access to the
    shared connection so concurrent writers cannot interleave.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            try:
                apply_sqlite_migrations(self._conn)
            except sqlite3.Error as e:
                raise StorageError(f"Could not migrate {self.db_path}: {e}") from e

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(str(e)) from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _write_execution(self, execution: WorkflowExecution, must_exist: bool) -> None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(
                    "SELECT finished_at FROM executions WHERE id = ?", (execution.id,)
                )
                existing = cur.fetchone()
                if existing is None and must_exist:
                    raise StorageError(f"Execution {execution.id} does not exist")
                if existing is not None and existing["finished_at"] is not None:
                    raise StorageError(
                        f"Execution {execution.id} is finished and cannot be modified"
                    )
                cur.execute(
                    f"INSERT OR REPLACE INTO executions ({EXECUTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
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
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(str(e)) from e

    # ------------------------------------------------------------------
    # Store API
    async def save_workflow(self, workflow: Workflow) -> None:
        timestamp = now_ms()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, name, version, description, definition_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                version = excluded.version,
                description = excluded.description,
                definition_json = excluded.definition_json,
                updated_at = excluded.updated_at
            """,
            workflow.id,
            workflow.name,
            workflow.version,
            workflow.description,
            workflow.to_json(),
            timestamp,
            timestamp,
        )

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition_json FROM workflows WHERE id = ?",
            workflow_id,
        )
        return Workflow.from_json(row["definition_json"]) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT definition_json FROM workflows ORDER BY updated_at DESC",
        )
        return [Workflow.from_json(r["definition_json"]) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._write_execution, execution, False)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        return row_to_execution(row) if row else None

    async def list_executions(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WorkflowExecution]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {EXECUTION_COLUMNS} FROM executions ORDER BY started_at DESC LIMIT ?",
                limit,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE workflow_id = ? "
                "ORDER BY started_at DESC LIMIT ?",
                workflow_id,
                limit,
            )
        return [row_to_execution(r) for r in rows]

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._write_execution, execution, True)

    async def delete_execution(self, execution_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM executions WHERE id = ?", execution_id
        )

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
