"""CLI entry point for the plan engine."""

import asyncio
import importlib
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import structlog

from devflow.capabilities import builtin
from devflow.config.settings import EngineSettings
from devflow.engine.orchestrator import PlanOrchestrator
from devflow.engine.registry import CapabilityRegistry
from devflow.enums import PlanStatus
from devflow.exceptions import ConfigurationError, DevflowError
from devflow.models.loader import load_plan_document
from devflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides configuration)")
@click.option("--state-dir", default=None, help="Directory for execution records")
@click.option("--plugin", "plugins", multiple=True, help="Module exposing register(registry); repeatable")
@click.pass_context
def cli(
    ctx: click.Context,
    config: str | None,
    log_level: str | None,
    state_dir: str | None,
    plugins: tuple[str, ...],
) -> None:
    """devflow: run approved plans with dependency ordering and rollback."""
    try:
        settings = EngineSettings.from_yaml(config) if config else EngineSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        sys.exit(1)

    if state_dir:
        workflow = settings.workflow.model_copy(update={"state_directory": state_dir})
        settings = settings.model_copy(update={"workflow": workflow})

    configure_logging(log_level or settings.logging.level, json_output=settings.logging.json_output)

    ctx.obj = {"settings": settings, "plugins": plugins}


@cli.command()
@click.argument("plan_file", type=click.Path(path_type=Path))
@click.pass_context
def plan(ctx: click.Context, plan_file: Path) -> None:
    """Register a plan file and print its approval summary."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        plan_id = await orchestrator.plan(load_plan_document(plan_file))
        summary = await orchestrator.summary(plan_id)
        _echo_json(summary.to_dict())

    _run_command(ctx, "plan", run)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def approve(ctx: click.Context, plan_id: str) -> None:
    """Approve a planned plan for validation and execution."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        await orchestrator.approve(plan_id)
        _echo_json({"plan_id": plan_id, "approved": True})

    _run_command(ctx, "approve", run)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def validate(ctx: click.Context, plan_id: str) -> None:
    """Resolve capabilities and dry-run an approved plan."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        await orchestrator.validate(plan_id)
        record = await orchestrator.status(plan_id)
        _echo_json({"plan_id": plan_id, "status": record.status.value})

    _run_command(ctx, "validate", run)


@cli.command()
@click.argument("plan_id")
@click.option("--approve", "approve_first", is_flag=True, help="Approve the plan before executing")
@click.pass_context
def execute(ctx: click.Context, plan_id: str, approve_first: bool) -> None:
    """Execute a plan; exits 1 unless it completes."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        if approve_first:
            await orchestrator.approve(plan_id)
        report = await orchestrator.execute(plan_id)
        _echo_json(report.to_dict())
        return 0 if report.status == PlanStatus.COMPLETED else 1

    _run_command(ctx, "execute", run)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def resume(ctx: click.Context, plan_id: str) -> None:
    """Resume an interrupted run from its persisted state."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        report = await orchestrator.resume(plan_id)
        _echo_json(report.to_dict())
        return 0 if report.status == PlanStatus.COMPLETED else 1

    _run_command(ctx, "resume", run)


@cli.command()
@click.argument("plan_id")
@click.option("--reason", default="Aborted by operator", help="Reason recorded with the abort")
@click.pass_context
def abort(ctx: click.Context, plan_id: str, reason: str) -> None:
    """Abort a plan and roll back its completed steps."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        report = await orchestrator.abort(plan_id, reason=reason)
        _echo_json(report.to_dict())
        return 1 if report.status == PlanStatus.ABORT_FAILED else 0

    _run_command(ctx, "abort", run)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def status(ctx: click.Context, plan_id: str) -> None:
    """Show the persisted execution record of a plan."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        record = await orchestrator.status(plan_id)
        _echo_json(record.to_dict())

    _run_command(ctx, "status", run)


@cli.command()
@click.option("--active", is_flag=True, help="Only plans that have not finished")
@click.option("--resumable", is_flag=True, help="Only runs interrupted while executing or rolling back")
@click.pass_context
def list_plans(ctx: click.Context, active: bool, resumable: bool) -> None:
    """List known plans."""

    async def run(orchestrator: PlanOrchestrator) -> int | None:
        records = await orchestrator.list_plans(active=active, resumable=resumable)
        _echo_json(
            [
                {
                    "plan_id": record.plan_id,
                    "status": record.status.value,
                    "approved": record.approved,
                    "updated_at": record.updated_at,
                }
                for record in records
            ]
        )

    _run_command(ctx, "list_plans", run)


@cli.command()
@click.pass_context
def capabilities(ctx: click.Context) -> None:
    """List registered capabilities."""
    try:
        registry = _build_registry(ctx.obj["plugins"])
    except DevflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    _echo_json(
        [
            {
                "capability": capability.key,
                "supports_dry_run": capability.supports_dry_run,
                "description": capability.description,
            }
            for capability in registry.list_capabilities()
        ]
    )


def _run_command(
    ctx: click.Context,
    name: str,
    func: Callable[[PlanOrchestrator], Awaitable[int | None]],
) -> None:
    """Run an async command body with the shared error handling."""
    try:
        orchestrator = _create_orchestrator(ctx.obj["settings"], ctx.obj["plugins"])
        exit_code = asyncio.run(func(orchestrator))
    except DevflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{name}_unexpected", exc_info=True)
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


def _create_orchestrator(settings: EngineSettings, plugins: tuple[str, ...]) -> PlanOrchestrator:
    """Create an orchestrator with the built-in and plugin capabilities registered."""
    return PlanOrchestrator(settings, _build_registry(plugins))


def _build_registry(plugins: tuple[str, ...]) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    builtin.register(registry)

    for module_name in plugins:
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import plugin {module_name}: {e}") from e

        register = getattr(module, "register", None)
        if not callable(register):
            raise ConfigurationError(f"Plugin {module_name} does not define register(registry)")
        register(registry)
        log.debug("plugin_loaded", plugin=module_name)

    return registry


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    cli()
