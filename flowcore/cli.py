"""Command line interface for flowcore workers and executions."""

from __future__ import annotations

import asyncio
import importlib
import logging
from pathlib import Path
from typing import List, Optional

import typer

from flowcore.actions import ActionRegistry
from flowcore.config import load_config
from flowcore.definitions import load_definitions, validate_definition
from flowcore.engine import WorkflowEngine
from flowcore.errors import FlowcoreError
from flowcore.models import ExecutionStatus
from flowcore.persistence import get_store
from flowcore.worker import WorkerService

app = typer.Typer(help="CLI for flowcore workflow executions")

worker_app = typer.Typer(help="Commands for running workers")
execution_app = typer.Typer(help="Commands for inspecting executions")
definition_app = typer.Typer(help="Commands for workflow definitions")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(definition_app, name="definition")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Root logging level"),
) -> None:
    """flowcore CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_actions(module_path: Optional[str]) -> ActionRegistry:
    """Import ``module_path`` and return its ``actions`` registry."""
    if not module_path:
        return ActionRegistry()
    module = importlib.import_module(module_path)
    registry = getattr(module, "actions", None)
    if not isinstance(registry, ActionRegistry):
        typer.secho(
            f"Module {module_path} does not define an 'actions' ActionRegistry",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return registry


@worker_app.command("run")
def worker_run(
    definitions: List[Path] = typer.Option(
        ..., "--definitions", "-d", help="YAML files with workflow definitions"
    ),
    handlers: Optional[str] = typer.Option(
        None, help="Importable module exposing an 'actions' ActionRegistry"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run before stopping (default: run indefinitely)"
    ),
) -> None:
    """
    Run a pool of workers that fire timers and process queued events.

    Example:
        flowcore worker run -d workflows/approval.yaml --handlers myapp.actions
    """
    config = load_config(str(config_path) if config_path else None)
    engine = WorkflowEngine.from_config(config, actions=_load_actions(handlers))
    for path in definitions:
        for definition in load_definitions(path):
            engine.register_definition(definition)

    async def _run() -> None:
        service = WorkerService(engine)
        await service.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            stats = service.get_statistics()
            await service.stop()
            await engine.close()
            typer.echo(
                f"Processed {stats['total_events_processed']} events "
                f"({stats['total_events_failed']} failed)"
            )

    typer.echo(f"Starting {config.worker.worker_count} workers")
    asyncio.run(_run())


@execution_app.command("list")
def execution_list(
    tenant: str,
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List executions of a tenant with their current state and status.

    Example:
        flowcore execution list acme --status waiting
    """
    store = get_store(config=load_config())

    async def _list():
        try:
            return await store.list_executions(tenant, status)
        finally:
            await store.close()

    executions = asyncio.run(_list())
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.execution_id}\t{execution.workflow_name}@{execution.workflow_version}"
            f"\t{execution.current_state}\t{execution.status.value}"
        )


@execution_app.command("show")
def execution_show(tenant: str, execution_id: str) -> None:
    """Show one execution with its action results, timers and sync points."""
    store = get_store(config=load_config())

    async def _show():
        try:
            execution = await store.get_execution(tenant, execution_id)
            if execution is None:
                return None, [], [], []
            return (
                execution,
                await store.list_action_results(tenant, execution_id),
                await store.list_timers(tenant, execution_id),
                await store.list_sync_points(tenant, execution_id),
            )
        finally:
            await store.close()

    execution, results, timers, sync_points = asyncio.run(_show())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Execution {execution.execution_id}: {execution.status.value} "
        f"in {execution.current_state} (#{execution.last_sequence})"
    )
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    if execution.context_data.data:
        typer.echo(f"Context: {execution.context_data.data}")
    for result in results:
        typer.echo(
            f"- action {result.action_id} [{result.action_kind}]: {result.status.value}"
            f" (attempts {result.attempts})"
            + (f" {result.error_message}" if result.error_message else "")
        )
    for timer in timers:
        typer.echo(
            f"- timer {timer.name}: {timer.status.value} at {timer.fire_time.isoformat()}"
        )
    for point in sync_points:
        typer.echo(
            f"- sync {point.name}: {point.status.value} "
            f"({point.completed_actions}/{point.total_actions})"
        )


@execution_app.command("history")
def execution_history(tenant: str, execution_id: str) -> None:
    """Print the event log of an execution in sequence order."""
    store = get_store(config=load_config())

    async def _history():
        try:
            return await store.list_events(tenant, execution_id)
        finally:
            await store.close()

    events = asyncio.run(_history())
    if not events:
        typer.echo("No events found")
        raise typer.Exit(code=1)
    for event in events:
        typer.echo(
            f"{event.sequence}\t{event.event_name}\t{event.from_state or '-'} -> "
            f"{event.to_state}\t{event.created_at.isoformat()}"
        )


@definition_app.command("validate")
def definition_validate(
    path: Path,
    handlers: Optional[str] = typer.Option(
        None, help="Also check action kinds against this module's 'actions' registry"
    ),
) -> None:
    """Validate the workflow definitions in a YAML file."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    actions = _load_actions(handlers) if handlers else None
    try:
        definitions = load_definitions(path)
        for definition in definitions:
            validate_definition(definition, actions)
    except FlowcoreError as exc:
        typer.secho(f"Invalid: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for definition in definitions:
        typer.echo(
            f"{definition.name}@{definition.version}: "
            f"{len(definition.transitions)} transitions OK"
        )


if __name__ == "__main__":  # pragma: no cover
    app()
