"""Workflow engine: schedules steps, applies error policy and persists state."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from .constants import DEFAULT_CONCURRENCY, DEFAULT_HISTORY_LIMIT
from .contracts import (
    ExecutionContext,
    ExecutionResult,
    ReasoningProvider,
    StepResult,
    ToolInvoker,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
)
from .errors import StepExecutionError, StorageError, WorkflowValidationError
from .executors import ErrorHandlerExecutor, ExecutorFactory
from .executors.flow import run_owned_step
from .graph import StepGraph, validate_workflow
from .persistence import ExecutionStore, InMemoryExecutionStore
from .utils.timing import elapsed_ms, now_ms

logger = logging.getLogger(__name__)


class ReadyQueue:
    """Tracks which scheduled steps may run next.

    A step becomes ready once every predecessor has resolved and at least
    one of them activated it. A step whose predecessors all resolved
    without activating it is skipped, and the skip flows on to its own
    successors. A queued step is never skipped. A recovery-only step is
    retired as skipped once every step that could invoke it has resolved.
    """

    def __init__(self, graph: StepGraph) -> None:
        self.graph = graph
        self.queue: Deque[str] = deque()
        self.remaining: Dict[str, int] = {
            sid: len(preds) for sid, preds in graph.predecessors.items()
        }
        self.activated: Set[str] = set()
        self.done: Set[str] = set()

    def start(self) -> List[str]:
        """Queue the start steps; returns recovery steps nothing can invoke."""
        for sid in self.graph.start_steps():
            self.enqueue(sid)
        skipped: List[str] = []
        for sid in self.graph.scheduled:
            if sid in self.graph.recovery_only and not self.graph.recovery_owners.get(sid):
                skipped.append(sid)
                skipped.extend(self.resolve(sid, ()))
        return skipped

    def enqueue(self, step_id: str, first: bool = False) -> None:
        if step_id in self.done or step_id in self.queue:
            return
        if first:
            self.queue.appendleft(step_id)
        else:
            self.queue.append(step_id)

    def pop(self) -> str:
        return self.queue.popleft()

    def peek(self) -> Optional[str]:
        return self.queue[0] if self.queue else None

    def resolve(self, step_id: str, activate: Iterable[str]) -> List[str]:
        """Mark ``step_id`` done and release its successors.

        Returns the ids of steps that ended up skipped.
        """
        self.done.add(step_id)
        if step_id in self.queue:
            self.queue.remove(step_id)
        active = set(activate)
        skipped: List[str] = []
        for target in self.graph.successors(step_id):
            if target in self.done:
                continue
            self.remaining[target] -= 1
            if target in active:
                self.activated.add(target)
            if self.remaining[target] > 0 or target in self.queue:
                continue
            if target in self.activated:
                self.enqueue(target)
            else:
                skipped.append(target)
                skipped.extend(self.resolve(target, ()))
        skipped.extend(self._retire_recovery(step_id))
        return skipped

    def _retire_recovery(self, step_id: str) -> List[str]:
        step = self.graph.steps.get(step_id)
        if step is None:
            return []
        skipped: List[str] = []
        for target in step.recovery_steps():
            if (
                target not in self.graph.recovery_only
                or target in self.done
                or target in self.queue
            ):
                continue
            if self.graph.recovery_owners.get(target, set()) <= self.done:
                skipped.append(target)
                skipped.extend(self.resolve(target, ()))
        return skipped

    def snapshot(self) -> Dict[str, Any]:
        return {
            "queue": list(self.queue),
            "remaining": dict(self.remaining),
            "activated": sorted(self.activated),
            "done": sorted(self.done),
        }

    @classmethod
    def restore(cls, graph: StepGraph, data: Dict[str, Any]) -> "ReadyQueue":
        ready = cls(graph)
        ready.queue = deque(data.get("queue", []))
        ready.remaining.update(data.get("remaining", {}))
        ready.activated = set(data.get("activated", []))
        ready.done = set(data.get("done", []))
        return ready


class WorkflowEngine:
    """Runs workflows one step at a time and records every transition."""

    def __init__(
        self,
        tools: Optional[ToolInvoker] = None,
        reasoner: Optional[ReasoningProvider] = None,
        store: Optional[ExecutionStore] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        default_timeout: Optional[int] = None,
    ) -> None:
        self.tools = tools
        self.reasoner = reasoner
        self.store = store or InMemoryExecutionStore()
        self.concurrency = concurrency
        self.default_timeout = default_timeout
        self._active: Set[str] = set()
        self._pause_requests: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self, workflow: Workflow, input: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        start = time.monotonic()
        context = ExecutionContext(variables={**workflow.variables, **(input or {})})
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            status="running",
            variables=context.variables,
        )
        logger.info(f"Starting execution {execution.id} of workflow {workflow.id}")
        await self.store.save_workflow(workflow)
        await self.store.save_execution(execution)

        report = validate_workflow(workflow)
        if not report.valid:
            error = WorkflowValidationError(report.errors)
            logger.error(f"Execution {execution.id} rejected: {error}")
            return await self._fail(execution, context, str(error), start)

        graph = StepGraph(workflow)
        ready = ReadyQueue(graph)
        self._mark_skipped(context, ready.start())
        return await self._drive(workflow, graph, ready, execution, context, start)

    async def pause(self, execution_id: str) -> bool:
        """Ask a running execution to stop before its next step."""
        if execution_id not in self._active:
            execution = await self.store.get_execution(execution_id)
            status = execution.status if execution else "missing"
            logger.warning(f"Cannot pause execution {execution_id} ({status})")
            return False
        logger.info(f"Pause requested for execution {execution_id}")
        self._pause_requests.add(execution_id)
        return True

    async def resume(
        self, execution_id: str, workflow: Optional[Workflow] = None
    ) -> ExecutionResult:
        start = time.monotonic()
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            error = f"Execution {execution_id} not found"
            logger.error(error)
            return ExecutionResult(
                success=False,
                execution=WorkflowExecution(
                    id=execution_id, workflow_id="", status="failed", error=error
                ),
                error=error,
            )
        if execution.status != "paused":
            error = f"Execution {execution_id} is not paused (status: {execution.status})"
            logger.error(error)
            return ExecutionResult(
                success=False, execution=execution, output=execution.outputs, error=error
            )

        workflow = workflow or await self.store.get_workflow(execution.workflow_id)
        if workflow is None:
            error = f"Workflow {execution.workflow_id} not found"
            logger.error(error)
            return ExecutionResult(
                success=False, execution=execution, output=execution.outputs, error=error
            )

        context = ExecutionContext(
            variables=execution.variables,
            outputs=execution.outputs,
            step_statuses=execution.step_statuses,
        )
        graph = StepGraph(workflow)
        ready = ReadyQueue.restore(graph, execution.checkpoint or {})
        execution.status = "running"
        execution.paused_at = None
        execution.checkpoint = None
        logger.info(f"Resuming execution {execution_id} of workflow {workflow.id}")
        return await self._drive(workflow, graph, ready, execution, context, start)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.store.get_execution(execution_id)

    async def list_executions(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WorkflowExecution]:
        return await self.store.list_executions(workflow_id, limit)

    # ------------------------------------------------------------------
    # Scheduling
    async def _drive(
        self,
        workflow: Workflow,
        graph: StepGraph,
        ready: ReadyQueue,
        execution: WorkflowExecution,
        context: ExecutionContext,
        start: float,
    ) -> ExecutionResult:
        factory = ExecutorFactory(
            workflow=workflow,
            tools=self.tools,
            reasoner=self.reasoner,
            concurrency=self.concurrency,
            default_timeout=self.default_timeout,
        )
        self._active.add(execution.id)
        try:
            await self._persist(execution, context)
            while ready.queue:
                if execution.id in self._pause_requests:
                    return await self._pause(execution, context, ready, start)
                step = graph.steps[ready.pop()]
                await self._run_scheduled(step, graph, ready, factory, execution, context)
        except StorageError:
            raise
        except StepExecutionError as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            return await self._fail(execution, context, str(e), start)
        except Exception as e:
            logger.exception(f"Execution {execution.id} crashed")
            return await self._fail(execution, context, str(e) or e.__class__.__name__, start)
        finally:
            self._active.discard(execution.id)
            self._pause_requests.discard(execution.id)

        execution.status = "completed"
        execution.current_step = None
        execution.finished_at = now_ms()
        await self._persist(execution, context)
        logger.info(f"Execution {execution.id} completed in {elapsed_ms(start)}ms")
        return ExecutionResult(
            success=True,
            execution=execution,
            output=context.outputs,
            duration=elapsed_ms(start),
        )

    async def _run_scheduled(
        self,
        step: WorkflowStep,
        graph: StepGraph,
        ready: ReadyQueue,
        factory: ExecutorFactory,
        execution: WorkflowExecution,
        context: ExecutionContext,
    ) -> None:
        execution.current_step = step.id
        context.set_status(step.id, "running")
        await self._persist(execution, context)
        logger.info(f"Running step {step.id} ({step.type})")

        result = await run_owned_step(factory, step, context)
        if result.success:
            skipped = ready.resolve(step.id, self._activated_by(step, result, graph))
            self._mark_skipped(context, skipped)
            await self._persist(execution, context)
            return

        policy = step.error_handling
        if policy and policy.fallback and policy.fallback not in ready.done:
            fallback = graph.steps[policy.fallback]
            context.set_status(fallback.id, "running")
            recovered = await ErrorHandlerExecutor(factory).execute_fallback(
                step, fallback, context
            )
            context.set_status(fallback.id, "completed" if recovered.success else "failed")
            if fallback.id in graph.predecessors:
                activate = (
                    self._activated_by(fallback, recovered, graph) if recovered.success else ()
                )
                self._mark_skipped(context, ready.resolve(fallback.id, activate))
            else:
                ready.done.add(fallback.id)
            if recovered.success:
                logger.info(f"Step {step.id} recovered by fallback {fallback.id}")
                context.set_status(step.id, "completed")
                skipped = ready.resolve(step.id, graph.successors(step.id))
                self._mark_skipped(context, skipped)
                await self._persist(execution, context)
                return
            logger.warning(f"Fallback {fallback.id} for step {step.id} failed: {recovered.error}")

        if policy and policy.on_error and policy.on_error not in ready.done:
            logger.warning(
                f"Step {step.id} failed ({result.error}); continuing with {policy.on_error}"
            )
            ready.enqueue(policy.on_error, first=True)
            skipped = ready.resolve(step.id, ())
            self._mark_skipped(context, skipped)
            await self._persist(execution, context)
            return

        await self._persist(execution, context)
        raise StepExecutionError(step.id, result.error)

    @staticmethod
    def _activated_by(step: WorkflowStep, result: StepResult, graph: StepGraph) -> List[str]:
        """Successors a completed step activates.

        Condition steps activate only the selected branch target among their
        branch targets; plain ``next`` edges are always activated.
        """
        successors = graph.successors(step.id)
        if step.type != "condition" or not isinstance(result.output, dict):
            return successors
        selected = result.output.get("step_id")
        branch_targets = set(step.branch_targets())
        return [
            target
            for target in successors
            if target not in branch_targets or target == selected
        ]

    @staticmethod
    def _mark_skipped(context: ExecutionContext, skipped: Iterable[str]) -> None:
        for step_id in skipped:
            logger.info(f"Skipping step {step_id}")
            context.set_status(step_id, "skipped")

    # ------------------------------------------------------------------
    # Bookkeeping
    async def _persist(self, execution: WorkflowExecution, context: ExecutionContext) -> None:
        execution.variables = context.variables
        execution.outputs = context.outputs
        execution.step_statuses = context.step_statuses
        await self.store.save_execution(execution)

    async def _pause(
        self,
        execution: WorkflowExecution,
        context: ExecutionContext,
        ready: ReadyQueue,
        start: float,
    ) -> ExecutionResult:
        execution.status = "paused"
        execution.paused_at = ready.peek()
        execution.current_step = None
        execution.checkpoint = ready.snapshot()
        await self._persist(execution, context)
        logger.info(f"Execution {execution.id} paused before step {execution.paused_at}")
        return ExecutionResult(
            success=False,
            execution=execution,
            output=context.outputs,
            duration=elapsed_ms(start),
        )

    async def _fail(
        self,
        execution: WorkflowExecution,
        context: ExecutionContext,
        error: str,
        start: float,
    ) -> ExecutionResult:
        execution.status = "failed"
        execution.error = error
        execution.finished_at = now_ms()
        await self._persist(execution, context)
        return ExecutionResult(
            success=False,
            execution=execution,
            output=context.outputs,
            error=error,
            duration=elapsed_ms(start),
        )
