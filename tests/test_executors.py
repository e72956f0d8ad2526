"""Tests for individual step executors."""

import asyncio
import time

import pytest

from taskflow.contracts import ExecutionContext, StepConfig, Workflow, WorkflowStep
from taskflow.executors import (
    ErrorHandlerExecutor,
    ExecutorFactory,
    InputExecutor,
    OutputExecutor,
    TaskExecutor,
    create_executor,
    render_template,
)


class RecordingTools:
    def __init__(self, responses=None, delay=0.0):
        self.calls = []
        self.responses = responses or {}
        self.delay = delay

    async def execute(self, name, input):
        self.calls.append((name, input))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get(name, {"ok": True})
        if isinstance(response, Exception):
            raise response
        return response


class EchoReasoner:
    def __init__(self):
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        return f"echo: {prompt}"


def _step(step_id, type="task", **config) -> WorkflowStep:
    return WorkflowStep(id=step_id, name=step_id, type=type, config=StepConfig(**config))


def test_render_template_resolves_variables_then_outputs():
    context = ExecutionContext(
        variables={"name": "Ada", "n": 3},
        outputs={"name": "ignored", "data": {"items": [1, 2]}},
    )
    assert render_template("Hi {{name}}, {{ n }} of {{data.items}}", context) == (
        "Hi Ada, 3 of [1, 2]"
    )


def test_render_template_leaves_unknown_tokens_and_is_idempotent():
    context = ExecutionContext(variables={"a": "x"})
    once = render_template("{{a}} and {{b.c}}", context)
    assert once == "x and {{b.c}}"
    assert render_template(once, context) == once


@pytest.mark.asyncio
async def test_tool_executor_renders_nested_input_and_stores_output():
    tools = RecordingTools(responses={"fetch": {"body": "hello"}})
    context = ExecutionContext(variables={"url": "https://example.com"})
    step = _step(
        "fetch",
        type="tool",
        tool="fetch",
        tool_input={"url": "{{url}}", "opts": {"tags": ["{{url}}", 1]}},
        output_key="raw",
    )

    result = await create_executor(step, context, tools=tools).run()

    assert result.success
    assert tools.calls == [
        ("fetch", {"url": "https://example.com", "opts": {"tags": ["https://example.com", 1]}})
    ]
    assert context.outputs["raw"] == {"body": "hello"}


@pytest.mark.asyncio
async def test_tool_executor_failures():
    context = ExecutionContext()
    missing_name = await create_executor(_step("t", type="tool"), context, tools=RecordingTools()).run()
    assert not missing_name.success
    assert "No tool specified" in missing_name.error

    no_invoker = await create_executor(_step("t", type="tool", tool="x"), context).run()
    assert not no_invoker.success

    tools = RecordingTools(responses={"x": RuntimeError("boom")})
    raised = await create_executor(_step("t", type="tool", tool="x"), context, tools=tools).run()
    assert not raised.success
    assert raised.error == "boom"


@pytest.mark.asyncio
async def test_thought_executor_uses_reasoner():
    reasoner = EchoReasoner()
    context = ExecutionContext(variables={"topic": "graphs"})
    step = _step("think", type="thought", prompt="Explain {{topic}}", output_key="thought")

    result = await create_executor(step, context, reasoner=reasoner).run()

    assert result.success
    assert reasoner.prompts == ["Explain graphs"]
    assert context.outputs["thought"]["thought"] == "echo: Explain graphs"
    assert isinstance(context.outputs["thought"]["timestamp"], int)


@pytest.mark.asyncio
async def test_task_input_and_output_executors():
    context = ExecutionContext(variables={"a": 1, "b": 2})

    task = await TaskExecutor(_step("t"), context).run()
    assert task.output == {"task_id": "t", "status": "completed"}

    snapshot = await InputExecutor(_step("in", type="input", output_key="input"), context).run()
    assert snapshot.output == {"a": 1, "b": 2}

    restricted = await InputExecutor(
        _step("in2", type="input", tool_input={"a": None, "c": "default"}), context
    ).run()
    assert restricted.output == {"a": 1, "c": "default"}

    context.outputs["result"] = {"value": 42}
    out = await OutputExecutor(_step("out", type="output"), context).run()
    assert out.output == {"value": 42}


def test_unknown_type_falls_back_to_task():
    step = WorkflowStep.model_construct(
        id="odd", name="odd", type="mystery", config=StepConfig(), next=[],
        error_handling=None, condition=None, branches=[],
    )
    executor = ExecutorFactory().create(step, ExecutionContext())
    assert isinstance(executor, TaskExecutor)


@pytest.mark.asyncio
async def test_timeout_fails_the_step():
    tools = RecordingTools(delay=0.5)
    step = _step("slow", type="tool", tool="x", timeout=50)

    start = time.monotonic()
    result = await create_executor(step, ExecutionContext(), tools=tools).run()

    assert not result.success
    assert result.error == "Step slow timed out after 50ms"
    assert time.monotonic() - start < 0.4


@pytest.mark.asyncio
async def test_condition_executor_selects_branch():
    workflow_step = WorkflowStep(
        id="check",
        name="check",
        type="condition",
        condition="{{score}} > 50",
        branches=[
            {"id": "true", "condition": "{{score}} > 50", "step_id": "high"},
            {"id": "false", "condition": "!({{score}} > 50)", "step_id": "low"},
        ],
    )
    low = await create_executor(workflow_step, ExecutionContext(variables={"score": 10})).run()
    assert low.output == {"condition": False, "branch": "false", "step_id": "low"}

    bad = workflow_step.model_copy(update={"condition": "{{score}} >"})
    broken = await create_executor(bad, ExecutionContext()).run()
    assert not broken.success


@pytest.mark.asyncio
async def test_parallel_executor_runs_in_batches():
    members = [_step(f"m{i}", type="tool", tool="slow") for i in range(12)]
    parallel = _step("fan", type="parallel", steps=[m.id for m in members], concurrency=5)
    workflow = Workflow(name="fan", steps=[parallel, *members])
    tools = RecordingTools(delay=0.05)
    factory = ExecutorFactory(workflow=workflow, tools=tools)
    context = ExecutionContext()

    start = time.monotonic()
    result = await factory.create(parallel, context).run()
    elapsed = time.monotonic() - start

    assert result.success
    assert len(tools.calls) == 12
    assert set(result.output) == {m.id for m in members}
    # three batches of at most five
    assert 0.15 <= elapsed < 0.45
    assert all(context.step_statuses[m.id] == "completed" for m in members)


@pytest.mark.asyncio
async def test_parallel_executor_reports_failed_members():
    ok = _step("ok", type="tool", tool="fine")
    bad = _step("bad", type="tool", tool="broken")
    parallel = _step("fan", type="parallel", steps=["ok", "bad"])
    workflow = Workflow(name="fan", steps=[parallel, ok, bad])
    tools = RecordingTools(responses={"broken": RuntimeError("nope")})

    result = await ExecutorFactory(workflow=workflow, tools=tools).create(
        parallel, ExecutionContext()
    ).run()

    assert not result.success
    assert result.error == "Parallel steps failed: bad"
    assert result.output["ok"]["success"] is True


@pytest.mark.asyncio
async def test_loop_executor_respects_max_iterations():
    body = _step("body", type="tool", tool="tick", output_key="tick")
    loop = _step("loop", type="loop", body="body", max_iterations=5, output_key="loop")
    workflow = Workflow(name="loop", steps=[loop, body])
    tools = RecordingTools()
    context = ExecutionContext()

    result = await ExecutorFactory(workflow=workflow, tools=tools).create(loop, context).run()

    assert result.success
    assert result.output["iterations"] == 5
    assert len(tools.calls) == 5
    assert context.outputs["loop"]["iterations"] == 5


@pytest.mark.asyncio
async def test_loop_executor_stops_when_condition_fails():
    body = _step("body", type="task")
    loop = _step("loop", type="loop", body="body", loop_condition="{{iteration}} < 3")
    workflow = Workflow(name="loop", steps=[loop, body])

    result = await ExecutorFactory(workflow=workflow).create(loop, ExecutionContext()).run()

    assert result.output["iterations"] == 3


@pytest.mark.asyncio
async def test_loop_with_zero_max_iterations_never_runs_body():
    body = _step("body", type="tool", tool="tick")
    loop = _step("loop", type="loop", body="body", max_iterations=0)
    workflow = Workflow(name="loop", steps=[loop, body])
    tools = RecordingTools()

    result = await ExecutorFactory(workflow=workflow, tools=tools).create(
        loop, ExecutionContext()
    ).run()

    assert result.success
    assert result.output == {"iterations": 0, "results": []}
    assert tools.calls == []


@pytest.mark.asyncio
async def test_loop_without_body_fails():
    loop = _step("loop", type="loop")
    result = await ExecutorFactory(workflow=Workflow(name="x", steps=[loop])).create(
        loop, ExecutionContext()
    ).run()
    assert not result.success


class FlakyTools:
    def __init__(self, failures):
        self.failures = failures
        self.attempts = 0

    async def execute(self, name, input):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError(f"attempt {self.attempts} failed")
        return {"attempt": self.attempts}


@pytest.mark.asyncio
async def test_retry_exhaustion_uses_linear_backoff():
    tools = FlakyTools(failures=10)
    step = _step("flaky", type="tool", tool="x")
    handler = ErrorHandlerExecutor(ExecutorFactory(tools=tools))

    start = time.monotonic()
    result = await handler.execute_with_retry(step, ExecutionContext(), max_retries=3, retry_delay=10)
    elapsed = time.monotonic() - start

    assert tools.attempts == 4
    assert not result.success
    assert result.error == "Step flaky failed after 3 retries: attempt 4 failed"
    # waits of 10, 20 and 30 ms
    assert elapsed >= 0.06


@pytest.mark.asyncio
async def test_retry_succeeds_before_exhaustion():
    tools = FlakyTools(failures=1)
    handler = ErrorHandlerExecutor(ExecutorFactory(tools=tools))
    result = await handler.execute_with_retry(
        _step("flaky", type="tool", tool="x"), ExecutionContext(), max_retries=3, retry_delay=1
    )
    assert result.success
    assert result.output == {"attempt": 2}


@pytest.mark.asyncio
async def test_fallback_runs_unconditionally():
    handler = ErrorHandlerExecutor(ExecutorFactory())
    result = await handler.execute_fallback(
        _step("main"), _step("backup"), ExecutionContext()
    )
    assert result.output == {"task_id": "backup", "status": "completed"}
