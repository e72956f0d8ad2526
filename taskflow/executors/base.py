"""Executor base class, template rendering and the executor factory."""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from ..constants import DEFAULT_CONCURRENCY
from ..contracts import (
    MISSING,
    ExecutionContext,
    ReasoningProvider,
    StepResult,
    ToolInvoker,
    Workflow,
    WorkflowStep,
)
from ..errors import StepTimeoutError
from ..utils.timing import elapsed_ms

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, ensure_ascii=False)


def render_template(text: str, context: ExecutionContext) -> str:
    """Replace ``{{path}}`` tokens using variables, then outputs.

    Unresolved tokens are left verbatim so partial templates survive.
    """

    def _sub(match: re.Match) -> str:
        value = context.lookup(match.group(1))
        if value is MISSING:
            return match.group(0)
        return render_value(value)

    return PLACEHOLDER_RE.sub(_sub, text)


def render_input(value: Any, context: ExecutionContext) -> Any:
    if isinstance(value, str):
        return render_template(value, context)
    if isinstance(value, dict):
        return {key: render_input(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_input(item, context) for item in value]
    return value


ExecutorT = TypeVar("ExecutorT", bound=Type["BaseExecutor"])


class ExecutorFactory:
    """Builds executors for steps and carries their collaborators.

    Collaborators are injected here rather than looked up globally, so
    concurrent runs with different tool invokers stay isolated.
    """

    _registry: Dict[str, Type["BaseExecutor"]] = {}

    def __init__(
        self,
        workflow: Optional[Workflow] = None,
        tools: Optional[ToolInvoker] = None,
        reasoner: Optional[ReasoningProvider] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        default_timeout: Optional[int] = None,
    ) -> None:
        self.workflow = workflow
        self.tools = tools
        self.reasoner = reasoner
        self.concurrency = concurrency
        self.default_timeout = default_timeout
        self._steps = workflow.step_map() if workflow else {}

    @classmethod
    def register(cls, step_type: str) -> Callable[[ExecutorT], ExecutorT]:
        def decorator(executor_cls: ExecutorT) -> ExecutorT:
            cls._registry[step_type] = executor_cls
            return executor_cls

        return decorator

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return self._steps.get(step_id)

    def create(self, step: WorkflowStep, context: ExecutionContext) -> "BaseExecutor":
        executor_cls = self._registry.get(step.type) or self._registry["task"]
        return executor_cls(step, context, self)


class BaseExecutor(metaclass=abc.ABCMeta):
    """Runs one step against the shared execution context."""

    def __init__(
        self,
        step: WorkflowStep,
        context: ExecutionContext,
        factory: Optional[ExecutorFactory] = None,
    ) -> None:
        self.step = step
        self.context = context
        self.factory = factory or ExecutorFactory()

    @property
    def tools(self) -> Optional[ToolInvoker]:
        return self.factory.tools

    @property
    def reasoner(self) -> Optional[ReasoningProvider]:
        return self.factory.reasoner

    @abc.abstractmethod
    async def execute(self) -> StepResult:
        """Perform the step."""
        raise NotImplementedError

    async def run(self) -> StepResult:
        """Run :meth:`execute` under the step deadline; never raises."""
        start = time.monotonic()
        timeout = self.step.config.timeout or self.factory.default_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self.execute(), timeout / 1000)
            return await self.execute()
        except asyncio.TimeoutError:
            error = StepTimeoutError(f"Step {self.step.id} timed out after {timeout}ms")
            logger.error(str(error))
            return StepResult(success=False, error=str(error), duration=elapsed_ms(start))
        except Exception as e:
            logger.error(f"Step {self.step.id} raised {e.__class__.__name__}: {e}")
            return StepResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                duration=elapsed_ms(start),
            )

    def prepare_input(self, input: Dict[str, Any]) -> Dict[str, Any]:
        return {key: render_input(value, self.context) for key, value in input.items()}

    def replace_variables(self, text: str) -> str:
        return render_template(text, self.context)

    def store_output(self, value: Any) -> None:
        if self.step.config.output_key:
            self.context.set_output(self.step.config.output_key, value)
