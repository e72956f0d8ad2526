"""Pause a run between steps, then resume it with a second engine.

Uses a SQLite store so the paused execution survives between engines.
"""

import asyncio
import tempfile
from pathlib import Path

from taskflow import ToolRegistry, WorkflowEngine, WorkflowParser
from taskflow.persistence import SQLiteExecutionStore

WORKFLOW = """
name: slow-batch
steps:
  - id: extract
    type: tool
    tool: work
    tool_input: {stage: extract}
  - id: load
    type: tool
    tool: work
    tool_input: {stage: load}
    output_key: result
"""


def build_tools(on_stage=None) -> ToolRegistry:
    registry = ToolRegistry()

    async def work(input):
        print("running", input["stage"])
        await asyncio.sleep(0.1)
        if on_stage:
            await on_stage(input["stage"])
        return f"{input['stage']} done"

    registry.register("work", work)
    return registry


async def main():
    db_path = Path(tempfile.mkdtemp()) / "taskflow.db"
    store = SQLiteExecutionStore(db_path)
    workflow = WorkflowParser().parse(WORKFLOW)

    async def pause_after_extract(stage):
        if stage == "extract":
            running = await first.list_executions(workflow.id)
            await first.pause(running[0].id)

    first = WorkflowEngine(tools=build_tools(pause_after_extract), store=store)
    paused = await first.execute(workflow)
    print("First engine stopped with status", paused.execution.status)

    second = WorkflowEngine(tools=build_tools(), store=store)
    resumed = await second.resume(paused.execution.id)
    print("Resumed run finished with status", resumed.execution.status)
    print("Output:", resumed.output)
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
