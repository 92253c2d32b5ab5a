"""Command line interface for sagaline definitions, instances and workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import load_config
from .contracts import InstanceStatusReport
from .dispatch import SagaDispatcher
from .errors import DefinitionError, InstanceNotFound, InvalidState
from .models import InstanceStatus
from .persistence import get_store
from .registry import DefinitionRegistry, load_definitions, topological_order
from .transports import BaseTransport, get_transport
from .triggers import TriggerListener

app = typer.Typer(help="CLI for sagaline saga orchestration")

# Command groups
definitions_app = typer.Typer(help="Commands for workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")
worker_app = typer.Typer(help="Commands for running the engine")

app.add_typer(definitions_app, name="definitions")
app.add_typer(instance_app, name="instance")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (defaults to log_level from config)"
    ),
) -> None:
    """Sagaline CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _load_registry(path: Path, default_timeout: Optional[float] = None) -> DefinitionRegistry:
    registry = DefinitionRegistry()
    for definition in load_definitions(path, default_timeout=default_timeout):
        registry.register(definition)
    return registry


@definitions_app.command("validate")
def definitions_validate(path: Path) -> None:
    """
    Validate every workflow definition in a YAML file.

    Checks schema, step names, dependencies, acyclicity and duplicate versions
    exactly as registration at worker startup does.

    Example:
        sagaline definitions validate ./workflows.yaml
        # Output: order_fulfilment v1: OK (3 steps)
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        registry = _load_registry(path)
    except DefinitionError as e:
        typer.secho(f"Invalid: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    refs = registry.list()
    if not refs:
        typer.echo("No workflow definitions found.")
        return
    for ref in refs:
        definition = registry.get(ref.name, ref.version)
        typer.echo(f"{ref.name} v{ref.version}: OK ({len(definition.steps)} steps)")


@definitions_app.command("show")
def definitions_show(
    path: Path,
    name: str,
    version: Optional[int] = typer.Option(None, help="Version (default: latest)"),
) -> None:
    """Show the steps of a definition in execution order."""
    try:
        registry = _load_registry(path)
        definition = registry.get(name, version) if version else registry.latest(name)
    except DefinitionError as e:
        typer.secho(e.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {definition.name} v{definition.version}")
    if definition.description:
        typer.echo(definition.description)
    for step_name in topological_order(definition):
        step = definition.step(step_name)
        compensate = (
            f"{step.compensate.service}.{step.compensate.operation}"
            if step.compensate
            else "-"
        )
        typer.echo(
            f"- {step.name}: {step.invoke.service}.{step.invoke.operation}"
            f" (compensate: {compensate})"
        )
        if step.depends_on:
            typer.echo(f"    depends on: {', '.join(step.depends_on)}")
        typer.echo(
            f"    timeout {step.timeout}s, retry {step.retry.max_attempts}x "
            f"from {step.retry.base_delay}s (x{step.retry.backoff_multiplier})"
        )


@instance_app.command("list")
def instance_list(
    status: Optional[InstanceStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List workflow instances with their current status.

    Example:
        sagaline instance list --status running
        # Output: 6f1c...    order_fulfilment v1    running
    """
    store = get_store()
    if status is None:
        summaries = asyncio.run(store.list_instances())
    else:
        summaries = asyncio.run(store.list_by_status(status))
    if not summaries:
        typer.echo("No instances found")
        return
    for summary in summaries:
        typer.echo(
            f"{summary.instance_id}\t{summary.definition_name} "
            f"v{summary.definition_version}\t{summary.status.value}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show status, step progress and compensation state of an instance.

    Example:
        sagaline instance show 6f1c...
        # Output: Instance 6f1c... (order_fulfilment v1): compensated
        #         - reserve: succeeded, compensated
    """
    store = get_store()
    try:
        instance = asyncio.run(store.load_state(instance_id))
    except InstanceNotFound:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)

    report = InstanceStatusReport.from_instance(instance)
    typer.echo(
        f"Instance {report.instance_id} ({report.definition_name} "
        f"v{report.definition_version}): {report.state.value}"
    )
    if report.compensation_reason:
        typer.echo(f"Compensation reason: {report.compensation_reason}")
    for name in instance.step_names:
        record = instance.last_attempt(name)
        if record is None:
            typer.echo(f"- {name}: not started")
            continue
        line = f"- {name}: {record.outcome.value} (attempt {record.attempt})"
        if record.compensation_status is not None:
            line += f", compensation {record.compensation_status.value}"
        typer.echo(line)
    if report.last_error:
        typer.echo(
            f"Last error: {report.last_error.step_name} attempt "
            f"{report.last_error.attempt}: {report.last_error.detail}"
        )
    for failure in report.failed_compensations:
        typer.secho(
            f"Compensation of {failure.step_name} failed: {failure.detail}",
            fg=typer.colors.RED,
        )
    if report.pending_compensations:
        typer.echo(f"Not compensated: {', '.join(report.pending_compensations)}")
    if report.error:
        typer.echo(f"Error: {json.dumps(report.error)}")


@instance_app.command("purge")
def instance_purge(instance_id: str) -> None:
    """Delete a terminal instance and its event log."""
    store = get_store()
    try:
        asyncio.run(store.purge(instance_id))
    except InstanceNotFound:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    except InvalidState as e:
        typer.secho(e.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Purged {instance_id}")


async def _run_worker(
    transport: BaseTransport,
    dispatcher: SagaDispatcher,
    listener: TriggerListener,
    lifespan: Optional[float],
) -> None:
    async with transport:
        await dispatcher.recover()
        try:
            await listener.start(lifespan=lifespan)
        finally:
            await dispatcher.shutdown()


@worker_app.command("run")
def worker_run(
    definitions_path: Path,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run the engine: register definitions, recover instances, listen for triggers.

    Instances left running or compensating by a previous process are resumed
    before any new trigger is consumed.

    Example:
        sagaline worker run ./workflows.yaml --config ./sagaline.yaml
        sagaline worker run ./workflows.yaml --lifespan 300
    """
    config = load_config(str(config_path) if config_path else None)
    try:
        registry = _load_registry(
            definitions_path, default_timeout=config.engine.default_step_timeout
        )
    except DefinitionError as e:
        typer.secho(f"Invalid: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    transport = get_transport(config=config)
    dispatcher = SagaDispatcher(
        registry=registry,
        store=get_store(config=config) if config_path else get_store(),
        transport=transport,
        config=config,
    )
    listener = TriggerListener(transport, dispatcher, config.triggers)
    typer.echo(f"Starting worker with {len(registry.list())} definitions")
    asyncio.run(_run_worker(transport, dispatcher, listener, lifespan))
