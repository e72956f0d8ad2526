"""Executors for plain work steps: tool, thought, task, input and output."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

from ..constants import DEFAULT_OUTPUT_KEY
from ..contracts import StepResult
from ..utils.timing import elapsed_ms, now_ms
from .base import BaseExecutor, ExecutorFactory

logger = logging.getLogger(__name__)


@ExecutorFactory.register("tool")
class ToolExecutor(BaseExecutor):
    """Calls the injected tool invoker with the rendered ``tool_input``."""

    async def execute(self) -> StepResult:
        start = time.monotonic()
        tool_name = self.step.config.tool
        if not tool_name:
            return StepResult(
                success=False,
                error=f"No tool specified for step {self.step.id}",
                duration=elapsed_ms(start),
            )
        if self.tools is None:
            return StepResult(
                success=False,
                error=f"No tool invoker configured for step {self.step.id}",
                duration=elapsed_ms(start),
            )

        tool_input = self.prepare_input(self.step.config.tool_input or {})
        logger.info(f"Running tool {tool_name} for step {self.step.id}")
        try:
            result = await self.tools.execute(tool_name, tool_input)
        except Exception as e:
            logger.error(f"Tool {tool_name} failed for step {self.step.id}: {e}")
            return StepResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                duration=elapsed_ms(start),
            )

        self.store_output(result)
        return StepResult(success=True, output=result, duration=elapsed_ms(start))


@ExecutorFactory.register("thought")
class ThoughtExecutor(BaseExecutor):
    """Sends the rendered prompt to the reasoning provider."""

    async def execute(self) -> StepResult:
        start = time.monotonic()
        if self.reasoner is None:
            return StepResult(
                success=False,
                error=f"No reasoning provider configured for step {self.step.id}",
                duration=elapsed_ms(start),
            )
        prompt = self.replace_variables(self.step.config.prompt or "")
        logger.info(f"Running thought step {self.step.id}")
        try:
            thought = await self.reasoner.generate(prompt)
        except Exception as e:
            logger.error(f"Reasoning failed for step {self.step.id}: {e}")
            return StepResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                duration=elapsed_ms(start),
            )

        result = {"thought": thought, "timestamp": now_ms()}
        self.store_output(result)
        return StepResult(success=True, output=result, duration=elapsed_ms(start))


@ExecutorFactory.register("task")
class TaskExecutor(BaseExecutor):
    """Bookkeeping step: records that the task happened."""

    async def execute(self) -> StepResult:
        start = time.monotonic()
        logger.info(f"Recording task {self.step.id}")
        result = {"task_id": self.step.id, "status": "completed"}
        self.store_output(result)
        return StepResult(success=True, output=result, duration=elapsed_ms(start))


@ExecutorFactory.register("input")
class InputExecutor(BaseExecutor):
    """Exposes the run's input variables as a step output.

    When ``tool_input`` is set, only those keys are taken and its values act
    as defaults for variables the caller did not provide.
    """

    async def execute(self) -> StepResult:
        start = time.monotonic()
        declared = self.step.config.tool_input
        if declared is None:
            snapshot: Dict[str, Any] = dict(self.context.variables)
        else:
            defaults = self.prepare_input(declared)
            snapshot = {
                key: self.context.variables.get(key, default)
                for key, default in defaults.items()
            }
        self.store_output(snapshot)
        return StepResult(success=True, output=snapshot, duration=elapsed_ms(start))


@ExecutorFactory.register("output")
class OutputExecutor(BaseExecutor):
    """Terminal step returning ``outputs[output_key or "result"]`` unchanged."""

    async def execute(self) -> StepResult:
        start = time.monotonic()
        key = self.step.config.output_key or DEFAULT_OUTPUT_KEY
        if key not in self.context.outputs:
            logger.warning(f"Output step {self.step.id} found no output named '{key}'")
        output = self.context.outputs.get(key)
        logger.info(f"Output step {self.step.id} returned '{key}'")
        return StepResult(success=True, output=output, duration=elapsed_ms(start))
