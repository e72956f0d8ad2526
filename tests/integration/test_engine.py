"""End-to-end tests for the workflow engine."""

import asyncio

import pytest

from taskflow import WorkflowEngine, WorkflowParser
from taskflow.errors import StorageError
from taskflow.persistence import InMemoryExecutionStore
from taskflow.tools import ToolRegistry


def _recording_registry(calls, failing=()):
    registry = ToolRegistry()

    def record(input):
        calls.append(input["step"])
        if input["step"] in failing:
            raise RuntimeError(f"{input['step']} exploded")
        return {"step": input["step"]}

    registry.register("record", record)
    return registry


def _parse(content):
    return WorkflowParser().parse(content)


def _record_step(step_id, **extra):
    lines = [
        f"  - id: {step_id}",
        "    type: tool",
        "    tool: record",
        "    tool_input:",
        f"      step: {step_id}",
    ]
    lines.extend(f"    {key}: {value}" for key, value in extra.items())
    return "\n".join(lines)


@pytest.mark.asyncio
async def test_fetch_transform_output_pipeline():
    registry = ToolRegistry()
    registry.register("http_get", lambda input: {"body": f"content of {input['url']}"})
    registry.register("upper", lambda input: input["text"].upper())
    workflow = _parse(
        """
name: fetch-transform
steps:
  - id: fetch
    type: tool
    tool: http_get
    tool_input:
      url: "{{url}}"
    output_key: raw
  - id: transform
    type: tool
    tool: upper
    tool_input:
      text: "{{raw.body}}"
    output_key: result
  - id: done
    type: output
"""
    )
    store = InMemoryExecutionStore()
    engine = WorkflowEngine(tools=registry, store=store)

    result = await engine.execute(workflow, {"url": "https://example.com"})

    assert result.success, result.error
    assert result.output["result"] == "CONTENT OF HTTPS://EXAMPLE.COM"
    assert result.execution.step_statuses == {
        "fetch": "completed",
        "transform": "completed",
        "done": "completed",
    }
    stored = await engine.get_execution(result.execution.id)
    assert stored.status == "completed"
    assert stored.finished_at is not None
    assert stored.variables["url"] == "https://example.com"
    assert await store.get_workflow(workflow.id) == workflow


@pytest.mark.asyncio
async def test_diamond_join_runs_once_after_both_parents():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: diamond",
                "steps:",
                _record_step("a"),
                _record_step("b", depends_on="a", next="[d]"),
                _record_step("c", depends_on="a"),
                _record_step("d", depends_on="[b, c]"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls))

    result = await engine.execute(workflow)

    assert result.success
    assert calls == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_condition_skips_unselected_branch_and_its_followers():
    calls = []
    workflow = _parse(
        """
name: branching
variables:
  score: 80
steps:
  - id: check
    if: "{{score}} > 50"
    on_true: high
    on_false: low
    next: [join]
"""
        + "\n".join(
            [
                _record_step("high", next="[join]"),
                _record_step("low", next="[low_followup]"),
                _record_step("low_followup", next="[join]"),
                _record_step("join"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls))

    result = await engine.execute(workflow)

    assert result.success
    assert calls == ["high", "join"]
    statuses = result.execution.step_statuses
    assert statuses["low"] == "skipped"
    assert statuses["low_followup"] == "skipped"
    assert statuses["join"] == "completed"

    calls.clear()
    low = await engine.execute(workflow, {"score": 10})
    assert low.success
    assert calls == ["low", "low_followup", "join"]
    assert low.execution.step_statuses["high"] == "skipped"


@pytest.mark.asyncio
async def test_on_error_diverts_control_to_recovery_step():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: diversion",
                "steps:",
                _record_step("risky", on_error="cleanup"),
                _record_step("after"),
                _record_step("cleanup", next="[finish]"),
                _record_step("finish"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"risky"}))

    result = await engine.execute(workflow)

    assert result.success
    assert calls == ["risky", "cleanup", "finish"]
    assert result.execution.step_statuses == {
        "risky": "failed",
        "after": "skipped",
        "cleanup": "completed",
        "finish": "completed",
    }


@pytest.mark.asyncio
async def test_fallback_success_counts_as_step_success():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: fallback",
                "steps:",
                _record_step("primary", fallback="backup"),
                _record_step("next_step"),
                _record_step("backup"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"primary"}))

    result = await engine.execute(workflow)

    assert result.success
    assert calls == ["primary", "backup", "next_step"]
    assert result.execution.step_statuses["primary"] == "completed"
    assert result.execution.step_statuses["backup"] == "completed"


def _rejoining_workflow(policy):
    return _parse(
        "\n".join(
            [
                "name: rejoin",
                "steps:",
                _record_step("risky", **{policy: "rescue"}),
                _record_step("after"),
                _record_step("finish"),
                _record_step("rescue", next="[finish]"),
            ]
        )
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ["on_error", "fallback"])
async def test_unused_recovery_step_does_not_block_its_join(policy):
    calls = []
    engine = WorkflowEngine(tools=_recording_registry(calls))

    result = await engine.execute(_rejoining_workflow(policy))

    assert result.success
    assert calls == ["risky", "after", "finish"]
    assert result.execution.step_statuses == {
        "risky": "completed",
        "after": "completed",
        "rescue": "skipped",
        "finish": "completed",
    }


@pytest.mark.asyncio
async def test_on_error_recovery_rejoins_main_chain():
    calls = []
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"risky"}))

    result = await engine.execute(_rejoining_workflow("on_error"))

    assert result.success
    assert calls == ["risky", "rescue", "finish"]
    assert result.execution.step_statuses == {
        "risky": "failed",
        "after": "skipped",
        "rescue": "completed",
        "finish": "completed",
    }


@pytest.mark.asyncio
async def test_fallback_recovery_rejoins_main_chain():
    calls = []
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"risky"}))

    result = await engine.execute(_rejoining_workflow("fallback"))

    assert result.success
    assert calls == ["risky", "rescue", "after", "finish"]
    assert result.execution.step_statuses["risky"] == "completed"
    assert result.execution.step_statuses["finish"] == "completed"


@pytest.mark.asyncio
async def test_on_error_target_downstream_of_failed_step_still_runs():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: downstream-recovery",
                "steps:",
                _record_step("a", on_error="r"),
                _record_step("b"),
                _record_step("r", depends_on="[b]"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"a"}))

    result = await engine.execute(workflow)

    assert result.success
    assert calls == ["a", "r"]
    assert result.execution.step_statuses == {
        "a": "failed",
        "b": "skipped",
        "r": "completed",
    }


@pytest.mark.asyncio
async def test_unhandled_failure_fails_the_run():
    calls = []
    workflow = _parse(
        "\n".join(["name: failing", "steps:", _record_step("risky"), _record_step("after")])
    )
    engine = WorkflowEngine(tools=_recording_registry(calls, failing={"risky"}))

    result = await engine.execute(workflow)

    assert not result.success
    assert result.error == "Step risky failed: risky exploded"
    assert calls == ["risky"]
    stored = await engine.get_execution(result.execution.id)
    assert stored.status == "failed"
    assert stored.error == result.error
    assert stored.finished_at is not None
    assert stored.step_statuses == {"risky": "failed"}


@pytest.mark.asyncio
async def test_retry_policy_recovers_flaky_step():
    attempts = []
    registry = ToolRegistry()

    def flaky(input):
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("not yet")
        return "ok"

    registry.register("flaky", flaky)
    workflow = _parse(
        """
name: retrying
steps:
  - id: flaky
    type: tool
    tool: flaky
    output_key: result
    retry:
      max_attempts: 2
      delay: 1
"""
    )

    result = await WorkflowEngine(tools=registry).execute(workflow)

    assert result.success
    assert len(attempts) == 3
    assert result.output == {"result": "ok"}


@pytest.mark.asyncio
async def test_invalid_workflow_never_runs_steps():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: cyclic",
                "steps:",
                _record_step("a", next="[b]"),
                _record_step("b", next="[a]"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls))

    result = await engine.execute(workflow)

    assert not result.success
    assert result.error.startswith("Workflow validation failed: Workflow contains a cycle")
    assert calls == []
    assert (await engine.get_execution(result.execution.id)).status == "failed"


@pytest.mark.asyncio
async def test_step_timeout_fails_the_run():
    registry = ToolRegistry()

    async def slow(input):
        await asyncio.sleep(0.5)

    registry.register("slow", slow)
    workflow = _parse(
        """
name: slow
steps:
  - id: slow
    type: tool
    tool: slow
    timeout: 50
"""
    )

    result = await WorkflowEngine(tools=registry).execute(workflow)

    assert not result.success
    assert result.error == "Step slow failed: Step slow timed out after 50ms"


@pytest.mark.asyncio
async def test_parallel_and_loop_steps_inside_a_run():
    calls = []
    workflow = _parse(
        "\n".join(
            [
                "name: fan-and-loop",
                "steps:",
                "  - id: fan",
                "    type: parallel",
                "    steps: [m1, m2, m3]",
                "  - id: repeat",
                "    type: loop",
                "    body: tick",
                "    max_iterations: 5",
                "    output_key: loop",
                _record_step("m1"),
                _record_step("m2"),
                _record_step("m3"),
                _record_step("tick"),
                _record_step("after"),
            ]
        )
    )
    engine = WorkflowEngine(tools=_recording_registry(calls))

    result = await engine.execute(workflow)

    assert result.success
    assert sorted(calls[:3]) == ["m1", "m2", "m3"]
    assert calls[3:] == ["tick"] * 5 + ["after"]
    assert result.output["loop"]["iterations"] == 5
    assert result.execution.step_statuses["m2"] == "completed"


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_share_state():
    registry = ToolRegistry()

    async def echo(input):
        await asyncio.sleep(0.01)
        return input["value"]

    registry.register("echo", echo)
    workflow = _parse(
        """
name: echo
steps:
  - id: echo
    type: tool
    tool: echo
    tool_input:
      value: "{{value}}"
    output_key: result
"""
    )
    engine = WorkflowEngine(tools=registry)

    first, second = await asyncio.gather(
        engine.execute(workflow, {"value": "one"}),
        engine.execute(workflow, {"value": "two"}),
    )

    assert first.output == {"result": "one"}
    assert second.output == {"result": "two"}
    assert len(await engine.list_executions(workflow.id)) == 2


class RecordingStore(InMemoryExecutionStore):
    def __init__(self, fail_after=None):
        super().__init__()
        self.snapshots = []
        self.fail_after = fail_after

    async def save_execution(self, execution):
        if self.fail_after is not None and len(self.snapshots) >= self.fail_after:
            raise StorageError("disk full")
        self.snapshots.append(dict(execution.step_statuses))
        await super().save_execution(execution)


@pytest.mark.asyncio
async def test_every_status_change_is_persisted():
    calls = []
    store = RecordingStore()
    workflow = _parse("\n".join(["name: two", "steps:", _record_step("a"), _record_step("b")]))

    await WorkflowEngine(tools=_recording_registry(calls), store=store).execute(workflow)

    assert {"a": "running"} in store.snapshots
    assert {"a": "completed", "b": "running"} in store.snapshots
    assert store.snapshots[-1] == {"a": "completed", "b": "completed"}


@pytest.mark.asyncio
async def test_storage_errors_propagate():
    calls = []
    workflow = _parse("\n".join(["name: two", "steps:", _record_step("a"), _record_step("b")]))
    engine = WorkflowEngine(tools=_recording_registry(calls), store=RecordingStore(fail_after=2))

    with pytest.raises(StorageError):
        await engine.execute(workflow)
