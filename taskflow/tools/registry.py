from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

ToolFunction = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolRegistry:
    """Named tools callable by ``tool`` steps.

    Each engine gets its own registry; there is no process-wide instance.
    Tools take the rendered ``tool_input`` dict and may be sync or async.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, ToolFunction] = {}

    def register(self, name: str, fn: ToolFunction) -> ToolFunction:
        if name in self._tools:
            logger.warning(f"Replacing tool {name}")
        self._tools[name] = fn
        return fn

    def tool(self, name: str) -> Callable[[ToolFunction], ToolFunction]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: ToolFunction) -> ToolFunction:
            return self.register(name, fn)

        return decorator

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def execute(self, name: str, input: Dict[str, Any]) -> Any:
        fn = self._tools.get(name)
        if fn is None:
            raise LookupError(f"Unknown tool: {name}")
        logger.debug(f"Calling tool {name} with {input}")
        if inspect.iscoroutinefunction(fn):
            return await fn(input)
        # sync tools run in a worker thread
        result = await asyncio.to_thread(fn, input)
        if inspect.isawaitable(result):
            result = await result
        return result
