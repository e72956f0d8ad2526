"""Run the fetch-and-summarise workflow from Python."""

import asyncio
import sys
from pathlib import Path

from taskflow import WorkflowEngine, WorkflowParser, default_registry, get_store
from taskflow.providers import PydanticAIReasoningProvider


async def main():
    url = sys.argv[1] if len(sys.argv) > 1 else "https://httpbin.org/html"
    workflow = WorkflowParser().load(Path(__file__).with_name("fetch_and_summarise.yaml"))

    engine = WorkflowEngine(
        tools=default_registry(),
        reasoner=PydanticAIReasoningProvider(model="openai:gpt-4o-mini"),
        store=get_store(),
    )
    result = await engine.execute(workflow, {"url": url})

    print("Status:", result.execution.status)
    for step_id, status in result.execution.step_statuses.items():
        print(f"- {step_id}: {status}")
    if result.success:
        print("Summary:", result.output.get("result"))
    else:
        print("Error:", result.error)


if __name__ == "__main__":
    asyncio.run(main())
