"""Flow-control executors: condition, parallel, loop and error handling."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_MAX_ITERATIONS, DEFAULT_RETRY_DELAY_MS
from ..contracts import ExecutionContext, StepResult, WorkflowStep
from ..errors import ExpressionError
from ..expressions import evaluate
from ..utils.retry import schedule_retry
from ..utils.timing import elapsed_ms
from .base import BaseExecutor, ExecutorFactory

logger = logging.getLogger(__name__)


class ParallelResult(BaseModel):
    success: bool
    results: Dict[str, StepResult] = Field(default_factory=dict)
    duration: int = 0


class ErrorHandlerExecutor:
    """Retry with linear backoff, and fallback execution."""

    def __init__(self, factory: Optional[ExecutorFactory] = None) -> None:
        self.factory = factory or ExecutorFactory()

    async def execute_with_retry(
        self,
        step: WorkflowStep,
        context: ExecutionContext,
        max_retries: int = 3,
        retry_delay: int = DEFAULT_RETRY_DELAY_MS,
    ) -> StepResult:
        """Attempt ``step`` up to ``max_retries + 1`` times.

        The wait before retry ``n`` is ``retry_delay * n`` milliseconds.
        """
        start = time.monotonic()
        last_error: Optional[str] = None
        for attempt in range(max_retries + 1):
            result = await self.factory.create(step, context).run()
            if result.success:
                return result
            last_error = result.error
            if attempt < max_retries:
                logger.info(f"Retrying step {step.id} ({attempt + 1}/{max_retries})")
                await schedule_retry(attempt + 1, retry_delay)

        return StepResult(
            success=False,
            error=f"Step {step.id} failed after {max_retries} retries: {last_error}",
            duration=elapsed_ms(start),
        )

    async def execute_fallback(
        self,
        step: WorkflowStep,
        fallback_step: WorkflowStep,
        context: ExecutionContext,
    ) -> StepResult:
        logger.info(f"Running fallback step {fallback_step.id} for {step.id}")
        return await self.factory.create(fallback_step, context).run()


async def run_owned_step(
    factory: ExecutorFactory, step: WorkflowStep, context: ExecutionContext
) -> StepResult:
    """Run a parallel member or loop body, honouring its retry policy."""
    context.set_status(step.id, "running")
    policy = step.error_handling
    if policy and policy.max_retries > 0:
        result = await ErrorHandlerExecutor(factory).execute_with_retry(
            step, context, policy.max_retries, policy.retry_delay
        )
    else:
        result = await factory.create(step, context).run()
    context.set_status(step.id, "completed" if result.success else "failed")
    return result


@ExecutorFactory.register("condition")
class ConditionExecutor(BaseExecutor):
    """Evaluates ``step.condition`` and picks the matching branch."""

    async def execute(self) -> StepResult:
        start = time.monotonic()
        if not self.step.condition or not self.step.branches:
            return StepResult(
                success=False,
                error=f"Condition step {self.step.id} needs a condition and branches",
                duration=elapsed_ms(start),
            )
        try:
            value = evaluate(self.step.condition, self.context)
        except ExpressionError as e:
            logger.error(f"Condition of step {self.step.id} is invalid: {e}")
            return StepResult(success=False, error=str(e), duration=elapsed_ms(start))

        wanted = "true" if value else "false"
        branch = next(
            (b for b in self.step.branches if b.id == wanted), self.step.branches[0]
        )
        logger.info(
            f"Condition {self.step.condition!r} of step {self.step.id} is {value}; "
            f"taking branch {branch.id} -> {branch.step_id}"
        )
        output = {"condition": value, "branch": branch.id, "step_id": branch.step_id}
        self.store_output(output)
        return StepResult(success=True, output=output, duration=elapsed_ms(start))


@ExecutorFactory.register("parallel")
class ParallelExecutor(BaseExecutor):
    """Runs member steps concurrently in fixed-size batches.

    Each batch is awaited in full before the next starts, which caps the
    number of in-flight external calls at the batch size.
    """

    async def execute(self) -> StepResult:
        start = time.monotonic()
        members: List[WorkflowStep] = []
        for step_id in self.step.config.steps:
            member = self.factory.get_step(step_id)
            if member is None:
                return StepResult(
                    success=False,
                    error=f"Parallel step {self.step.id} references unknown step {step_id}",
                    duration=elapsed_ms(start),
                )
            members.append(member)

        outcome = await self.execute_steps(members, self.step.config.concurrency)
        output = {sid: result.model_dump() for sid, result in outcome.results.items()}
        self.store_output(output)
        if not outcome.success:
            failed = [sid for sid, result in outcome.results.items() if not result.success]
            return StepResult(
                success=False,
                output=output,
                error=f"Parallel steps failed: {', '.join(failed)}",
                duration=elapsed_ms(start),
            )
        return StepResult(success=True, output=output, duration=elapsed_ms(start))

    async def execute_steps(
        self, steps: List[WorkflowStep], concurrency: Optional[int] = None
    ) -> ParallelResult:
        start = time.monotonic()
        limit = max(1, concurrency or self.factory.concurrency)
        logger.info(f"Running {len(steps)} steps in parallel (max concurrency {limit})")

        results: Dict[str, StepResult] = {}
        for offset in range(0, len(steps), limit):
            batch = steps[offset : offset + limit]
            outcomes = await asyncio.gather(
                *(run_owned_step(self.factory, step, self.context) for step in batch)
            )
            for step, result in zip(batch, outcomes):
                results[step.id] = result

        return ParallelResult(
            success=all(result.success for result in results.values()),
            results=results,
            duration=elapsed_ms(start),
        )


@ExecutorFactory.register("loop")
class LoopExecutor(BaseExecutor):
    """Repeats the body step while ``loop_condition`` holds.

    The condition sees ``{{iteration}}`` (0-based) on top of the context.
    Stops at ``max_iterations`` or on the first failed iteration.
    """

    async def execute(self) -> StepResult:
        start = time.monotonic()
        config = self.step.config
        body = self.factory.get_step(config.body) if config.body else None
        if body is None:
            return StepResult(
                success=False,
                error=f"Loop step {self.step.id} has no body step",
                duration=elapsed_ms(start),
            )

        max_iterations = config.max_iterations
        if max_iterations is None:
            max_iterations = DEFAULT_MAX_ITERATIONS
        delay = config.delay or 0
        logger.info(f"Starting loop {self.step.id} (max {max_iterations} iterations)")

        results: List[dict] = []
        for iteration in range(max_iterations):
            if config.loop_condition:
                try:
                    keep_going = evaluate(
                        config.loop_condition, self.context, {"iteration": iteration}
                    )
                except ExpressionError as e:
                    return StepResult(
                        success=False,
                        output={"iterations": len(results), "results": results},
                        error=str(e),
                        duration=elapsed_ms(start),
                    )
                if not keep_going:
                    logger.info(f"Loop {self.step.id} condition no longer holds at iteration {iteration + 1}")
                    break

            if iteration and body.config.output_key:
                self.context.outputs.pop(body.config.output_key, None)
            result = await run_owned_step(self.factory, body, self.context)
            results.append(result.model_dump())

            if not result.success:
                logger.warning(f"Loop {self.step.id} failed at iteration {iteration + 1}")
                return StepResult(
                    success=False,
                    output={"iterations": iteration + 1, "results": results},
                    error=result.error,
                    duration=elapsed_ms(start),
                )

            if delay > 0 and iteration < max_iterations - 1:
                await asyncio.sleep(delay / 1000)

        logger.info(f"Loop {self.step.id} finished after {len(results)} iterations")
        output = {"iterations": len(results), "results": results}
        self.store_output(output)
        return StepResult(success=True, output=output, duration=elapsed_ms(start))
