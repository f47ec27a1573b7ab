"""Command line interface for inspecting patterns and driving executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from procession.config import load_config
from procession.engine import ExecutionEngine
from procession.exceptions import ProcessionError
from procession.notifications import get_sink
from procession.patterns import YamlPatternRepository
from procession.persistence import get_store

app = typer.Typer(help="CLI for procession workflow executions")

# Command groups
pattern_app = typer.Typer(help="Commands for inspecting workflow patterns")
execution_app = typer.Typer(help="Commands for driving workflow executions")

app.add_typer(pattern_app, name="pattern")
app.add_typer(execution_app, name="execution")

PatternsOption = typer.Option(
    None, "--patterns", help="Directory of YAML workflow patterns"
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Procession CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _patterns(path: Optional[Path]) -> YamlPatternRepository:
    config = load_config()
    return YamlPatternRepository(path or config.patterns_path)


def _engine(path: Optional[Path]) -> ExecutionEngine:
    config = load_config()
    return ExecutionEngine(
        _patterns(path),
        get_store(config=config),
        get_sink(config=config),
        settings=config.engine,
    )


def _parse_data(data: Optional[str]) -> dict:
    if not data:
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON data: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(parsed, dict):
        typer.secho("Step data must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return parsed


def _run(engine: ExecutionEngine, coro):
    async def runner():
        try:
            return await coro
        finally:
            await engine.shutdown()

    try:
        return asyncio.run(runner())
    except ProcessionError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@pattern_app.command("list")
def pattern_list(patterns: Optional[Path] = PatternsOption) -> None:
    """List available workflow patterns."""
    repo = _patterns(patterns)
    items = asyncio.run(repo.list_patterns())
    if not items:
        typer.echo("No patterns found")
        return
    for pattern in items:
        typer.echo(f"{pattern.id}\t{pattern.name}\t{len(pattern.steps)} steps")


@pattern_app.command("show")
def pattern_show(pattern_id: str, patterns: Optional[Path] = PatternsOption) -> None:
    """Show the steps of a workflow pattern."""
    repo = _patterns(patterns)
    try:
        pattern = asyncio.run(repo.get_pattern(pattern_id))
    except KeyError:
        typer.echo("Pattern not found")
        raise typer.Exit(code=1)

    typer.echo(f"Pattern {pattern.id}: {pattern.name} ({pattern.type})")
    for step in pattern.steps:
        extras = []
        if step.assignee_roles:
            extras.append(f"roles={','.join(step.assignee_roles)}")
        if step.sla_hours:
            extras.append(f"sla={step.sla_hours:g}h")
        suffix = f" [{' '.join(extras)}]" if extras else ""
        typer.echo(f"- {step.id}: {step.name} ({step.type}){suffix}")


@execution_app.command("start")
def execution_start(
    pattern_id: str,
    user: str = typer.Option(..., "--user", help="User starting the workflow"),
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Organization id"),
    application: Optional[str] = typer.Option(None, "--application"),
    data: Optional[str] = typer.Option(None, "--data", help="Initial data as JSON"),
    patterns: Optional[Path] = PatternsOption,
) -> None:
    """Start a new execution of a pattern."""
    engine = _engine(patterns)
    initial = _parse_data(data)

    async def start():
        try:
            pattern = await engine.patterns.get_pattern(pattern_id)
        except KeyError:
            typer.echo("Pattern not found")
            raise typer.Exit(code=1)
        return await engine.start_workflow(
            pattern, user, application, initial, tenant_id=tenant
        )

    execution = _run(engine, start())
    typer.echo(f"{execution.id}\t{execution.status}\t{execution.current_step}")


@execution_app.command("advance")
def execution_advance(
    execution_id: str,
    data: Optional[str] = typer.Option(None, "--data", help="Step data as JSON"),
    user: Optional[str] = typer.Option(None, "--user"),
    patterns: Optional[Path] = PatternsOption,
) -> None:
    """Complete the current step of an execution with the given data."""
    engine = _engine(patterns)
    step_data = _parse_data(data)

    async def advance():
        await engine.restore_execution(execution_id)
        return await engine.advance_workflow(execution_id, step_data, user)

    execution = _run(engine, advance())
    typer.echo(f"{execution.id}\t{execution.status}\t{execution.current_step}")


@execution_app.command("pause")
def execution_pause(execution_id: str, patterns: Optional[Path] = PatternsOption) -> None:
    """Pause an execution."""
    engine = _engine(patterns)

    async def pause():
        await engine.restore_execution(execution_id)
        await engine.pause_workflow(execution_id)

    _run(engine, pause())
    typer.echo(f"{execution_id}\tpaused")


@execution_app.command("resume")
def execution_resume(execution_id: str, patterns: Optional[Path] = PatternsOption) -> None:
    """Resume a paused execution."""
    engine = _engine(patterns)
    execution = _run(engine, engine.resume_workflow(execution_id))
    typer.echo(f"{execution.id}\t{execution.status}\t{execution.current_step}")


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    reason: str = typer.Option("", "--reason"),
    patterns: Optional[Path] = PatternsOption,
) -> None:
    """Cancel an execution."""
    engine = _engine(patterns)

    async def cancel():
        await engine.restore_execution(execution_id)
        await engine.cancel_workflow(execution_id, reason=reason)

    _run(engine, cancel())
    typer.echo(f"{execution_id}\tcancelled")


@execution_app.command("status")
def execution_status(execution_id: str, patterns: Optional[Path] = PatternsOption) -> None:
    """Show the persisted state of an execution."""
    engine = _engine(patterns)
    execution = _run(engine, engine.get_execution_status(execution_id))
    typer.echo(f"Execution {execution.id}: {execution.status}")
    typer.echo(f"Pattern: {execution.pattern_id}")
    typer.echo(f"Current step: {execution.current_step}")
    if execution.tenant_id:
        typer.echo(f"Tenant: {execution.tenant_id}")
    typer.echo(f"Data: {json.dumps(execution.step_data, sort_keys=True)}")


@execution_app.command("list")
def execution_list(
    user: Optional[str] = typer.Option(None, "--user"),
    tenant: Optional[str] = typer.Option(None, "--tenant"),
    patterns: Optional[Path] = PatternsOption,
) -> None:
    """List executions of a user or a tenant."""
    if not user and not tenant:
        typer.secho("Provide --user or --tenant", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    engine = _engine(patterns)
    if user:
        executions = _run(engine, engine.list_user_executions(user, tenant))
    else:
        executions = _run(engine, engine.list_tenant_executions(tenant))

    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.status}\t{execution.current_step}")


if __name__ == "__main__":  # pragma: no cover
    app()
