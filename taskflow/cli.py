"""Command line interface for running and inspecting taskflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from taskflow import WorkflowEngine, WorkflowParser, get_store
from taskflow.config import load_config
from taskflow.errors import ParseError, StorageError
from taskflow.tools import default_registry

app = typer.Typer(help="CLI for taskflow workflows")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting execution history")

app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a taskflow.yaml configuration file"
    ),
) -> None:
    """taskflow CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(level=config.logging.level, format=config.logging.format)
    ctx.obj = config


def _load_workflow(path: Path):
    try:
        return WorkflowParser().load(path)
    except FileNotFoundError:
        typer.secho(f"Workflow file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ParseError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("run")
def run(
    ctx: typer.Context,
    workflow_path: Path,
    input: Optional[str] = typer.Option(
        None, "--input", help="JSON object merged into the workflow variables"
    ),
    output_format: str = typer.Option(
        "text", "--format", help="Result format: text or json"
    ),
    model: Optional[str] = typer.Option(
        None, "--model", help="pydantic-ai model name for thought steps"
    ),
) -> None:
    """
    Execute a workflow file and print its outputs.

    Example:
        taskflow run ./guides/fetch_and_summarise.yaml --input '{"url": "https://example.com"}'
    """
    workflow = _load_workflow(workflow_path)
    variables = {}
    if input:
        try:
            variables = json.loads(input)
        except json.JSONDecodeError as exc:
            typer.secho(f"--input is not valid JSON: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        if not isinstance(variables, dict):
            typer.secho("--input must be a JSON object", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    reasoner = None
    if model:
        from taskflow.providers import PydanticAIReasoningProvider

        reasoner = PydanticAIReasoningProvider(model=model)

    config = ctx.obj or load_config()
    engine = WorkflowEngine(
        tools=default_registry(),
        reasoner=reasoner,
        store=get_store(config=config),
        concurrency=config.engine.concurrency,
        default_timeout=config.engine.default_timeout,
    )
    try:
        result = asyncio.run(engine.execute(workflow, variables))
    except StorageError as exc:
        typer.secho(f"Storage error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if output_format == "json":
        typer.echo(result.model_dump_json(indent=2))
    else:
        typer.echo(f"Execution {result.execution.id}: {result.execution.status}")
        for step_id, status in result.execution.step_statuses.items():
            typer.echo(f"- {step_id}: {status}")
        if result.output:
            typer.echo(f"Outputs: {json.dumps(result.output, default=str)}")
        if result.error:
            typer.echo(f"Error: {result.error}")
    if not result.success:
        raise typer.Exit(code=1)


@app.command("validate")
def validate(workflow_path: Path) -> None:
    """Parse a workflow file and report graph problems."""
    workflow = _load_workflow(workflow_path)
    report = WorkflowParser().validate(workflow)
    if report.valid:
        typer.echo(f"Workflow {workflow.name} is valid ({len(workflow.steps)} steps)")
        return
    typer.secho(f"Workflow {workflow.name} is invalid:", fg=typer.colors.RED)
    for error in report.errors:
        typer.echo(f"- {error}")
    raise typer.Exit(code=1)


@app.command("export")
def export(
    workflow_path: Path,
    to: str = typer.Option("yaml", "--to", help="Target format: yaml or json"),
) -> None:
    """Print a workflow in the document format with explicit edges."""
    workflow = _load_workflow(workflow_path)
    parser = WorkflowParser()
    if to == "json":
        typer.echo(parser.to_json(workflow))
    elif to == "yaml":
        typer.echo(parser.to_yaml(workflow))
    else:
        typer.secho(f"Unsupported export format: {to}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    ctx: typer.Context,
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow id"),
    limit: int = typer.Option(50, "--limit", help="Maximum number of executions"),
) -> None:
    """
    List recent executions, newest first.

    Example:
        taskflow execution list --workflow data-pipeline --limit 10
        # Output: exec-3f2a...    data-pipeline    completed
    """
    store = get_store(config=ctx.obj)
    executions = asyncio.run(store.list_executions(workflow_id, limit))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status}")


@execution_app.command("show")
def execution_show(ctx: typer.Context, execution_id: str) -> None:
    """Show status, step statuses and outputs of one execution."""
    store = get_store(config=ctx.obj)
    execution = asyncio.run(store.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    for step_id, status in execution.step_statuses.items():
        typer.echo(f"- {step_id}: {status}")
    if execution.outputs:
        typer.echo(f"Outputs: {json.dumps(execution.outputs, default=str)}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.paused_at:
        typer.echo(f"Paused before: {execution.paused_at}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
