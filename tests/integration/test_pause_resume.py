"""Pausing a run between steps and resuming it from its checkpoint."""

import pytest

from taskflow import WorkflowEngine, WorkflowParser
from taskflow.persistence import InMemoryExecutionStore, SQLiteExecutionStore
from taskflow.tools import ToolRegistry

WORKFLOW = """
name: three-steps
steps:
  - id: a
    type: tool
    tool: record
    tool_input:
      step: a
    output_key: first
  - id: b
    type: tool
    tool: record
    tool_input:
      step: b
  - id: c
    type: tool
    tool: record
    tool_input:
      step: c
"""


def _pausing_registry(calls, holder):
    registry = ToolRegistry()

    async def record(input):
        calls.append(input["step"])
        if input["step"] == "a" and holder.get("pause"):
            engine = holder["engine"]
            running = await engine.list_executions()
            assert await engine.pause(running[0].id)
        return input["step"]

    registry.register("record", record)
    return registry


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryExecutionStore()
    return SQLiteExecutionStore(tmp_path / "taskflow.db")


@pytest.mark.asyncio
async def test_pause_then_resume_with_fresh_engine(store):
    calls = []
    holder = {"pause": True}
    engine = WorkflowEngine(tools=_pausing_registry(calls, holder), store=store)
    holder["engine"] = engine
    workflow = WorkflowParser().parse(WORKFLOW)

    paused = await engine.execute(workflow)

    assert not paused.success
    assert paused.error is None
    assert calls == ["a"]
    stored = await store.get_execution(paused.execution.id)
    assert stored.status == "paused"
    assert stored.paused_at == "b"
    assert stored.checkpoint["queue"] == ["b"]
    assert stored.finished_at is None

    holder["pause"] = False
    resumer = WorkflowEngine(tools=_pausing_registry(calls, holder), store=store)
    resumed = await resumer.resume(paused.execution.id)

    assert resumed.success, resumed.error
    assert calls == ["a", "b", "c"]
    assert resumed.output == {"first": "a"}
    final = await store.get_execution(paused.execution.id)
    assert final.status == "completed"
    assert final.paused_at is None
    assert final.checkpoint is None
    assert final.step_statuses == {"a": "completed", "b": "completed", "c": "completed"}


@pytest.mark.asyncio
async def test_pause_only_applies_to_running_executions():
    calls = []
    holder = {"pause": False}
    engine = WorkflowEngine(tools=_pausing_registry(calls, holder))
    holder["engine"] = engine

    result = await engine.execute(WorkflowParser().parse(WORKFLOW))

    assert result.success
    assert await engine.pause(result.execution.id) is False
    assert await engine.pause("exec-missing") is False


@pytest.mark.asyncio
async def test_resume_rejects_missing_and_unpaused_executions():
    calls = []
    holder = {"pause": False}
    engine = WorkflowEngine(tools=_pausing_registry(calls, holder))
    holder["engine"] = engine
    finished = await engine.execute(WorkflowParser().parse(WORKFLOW))

    missing = await engine.resume("exec-missing")
    assert not missing.success
    assert missing.error == "Execution exec-missing not found"

    not_paused = await engine.resume(finished.execution.id)
    assert not not_paused.success
    assert "is not paused" in not_paused.error
    assert (await engine.get_execution(finished.execution.id)).status == "completed"
    assert calls == ["a", "b", "c"]
