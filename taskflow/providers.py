"""Reasoning providers for ``thought`` steps."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic_ai import Agent

logger = logging.getLogger(__name__)


class PydanticAIReasoningProvider:
    """Answers prompts with a pydantic-ai agent.

    Pass either a ready ``agent`` or a ``model`` name to build one.
    """

    def __init__(
        self,
        agent: Optional[Agent] = None,
        model: Optional[str] = None,
        system_prompt: str = "",
    ) -> None:
        if agent is None:
            if model is None:
                raise ValueError("Either an agent or a model name is required")
            agent = Agent(model, system_prompt=system_prompt)
        self.agent = agent

    async def generate(self, prompt: str) -> str:
        logger.debug(f"Sending prompt of {len(prompt)} chars to reasoning agent")
        result = await self.agent.run(prompt)
        return str(result.output)
