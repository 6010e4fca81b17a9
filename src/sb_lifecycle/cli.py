"""Typer CLI for the Service Bus lifecycle orchestrator."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from sb_lifecycle.cloud.factory import create_api
from sb_lifecycle.config.defaults import builtin_scenarios
from sb_lifecycle.config.loader import load_orchestrator_config, load_scenario
from sb_lifecycle.config.models import (
    Backend,
    OrchestratorConfig,
    ScenarioConfig,
)
from sb_lifecycle.errors import OrchestratorError
from sb_lifecycle.graph import ResourceGraph
from sb_lifecycle.orchestrator import Orchestrator, Report, RunResult

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="sbl", help="Service Bus resource lifecycle orchestrator")


def _load(
    scenario: str,
    config_path: str | None = None,
) -> tuple[ScenarioConfig, OrchestratorConfig]:
    if not Path(scenario).exists() and scenario not in builtin_scenarios():
        console.print(f"[red]Scenario not found: {scenario}[/red]")
        raise typer.Exit(1)
    try:
        scenario_cfg = load_scenario(scenario)
        config = load_orchestrator_config(Path(config_path) if config_path else None)
    except (ValueError, TypeError, FileNotFoundError) as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(1) from exc
    return scenario_cfg, config


@app.command()
def scenarios() -> None:
    """List the scenarios shipped with the package."""
    for name in builtin_scenarios():
        console.print(name)


@app.command()
def validate(
    scenario: str = typer.Argument(..., help="Scenario YAML or built-in name"),
    config_path: str | None = typer.Option(
        None, "--config", help="Orchestrator YAML"
    ),
) -> None:
    """Validate a scenario and the orchestrator configuration."""
    scenario_cfg, config = _load(scenario, config_path)
    try:
        ResourceGraph(scenario_cfg.resources).validate()
    except OrchestratorError as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc
    console.print(f"[green]Valid[/green] — scenario_id={scenario_cfg.scenario_id}")
    console.print(f"  resources: {len(scenario_cfg.resources)}")
    console.print(f"  updates:   {len(scenario_cfg.updates)}")
    console.print(f"  deletions: {scenario_cfg.deletions or '(none)'}")
    console.print(f"  backend:   {config.backend} ({config.region})")
    config_source = config_path or "(defaults)"
    console.print(f"  orchestrator config: {config_source}")


@app.command()
def plan(
    scenario: str = typer.Argument(..., help="Scenario YAML or built-in name"),
) -> None:
    """Show the order resources would be created in."""
    scenario_cfg, _config = _load(scenario)
    try:
        ordered = ResourceGraph(scenario_cfg.resources).ordered()
    except OrchestratorError as exc:
        console.print(f"[red]Invalid graph:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title=f"Plan — {scenario_cfg.scenario_id}")
    table.add_column("#", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Parent")
    table.add_column("Options")
    for i, spec in enumerate(ordered, start=1):
        options = ", ".join(f"{k}={v}" for k, v in spec.options.items())
        table.add_row(str(i), str(spec.kind), spec.name, spec.parent or "", options)
    console.print(table)
    if scenario_cfg.randomize_names:
        console.print("[dim]Names get a random suffix at run time[/dim]")


def _print_report(report: Report) -> None:
    console.print(f"[bold]{report.title}[/bold]")
    console.print(report.body.expandtabs(4), markup=False, highlight=False)
    console.print()


def _print_summary(result: RunResult) -> None:
    if result.deleted:
        console.print(f"[yellow]Deleted during run:[/yellow] {result.deleted}")
    if result.rollback_errors:
        table = Table(title="Cleanup failures")
        table.add_column("Resource", style="cyan")
        table.add_column("Kind")
        table.add_column("Error")
        for err in result.rollback_errors:
            table.add_row(err.resource, str(err.kind), str(err))
        console.print(table)
    if result.succeeded:
        console.print(f"[green]Scenario {result.scenario_id} completed[/green]")
    else:
        console.print(f"[red]Scenario {result.scenario_id} failed:[/red] {result.error}")


@app.command()
def run(
    scenario: str = typer.Argument(..., help="Scenario YAML or built-in name"),
    config_path: str | None = typer.Option(
        None, "--config", help="Orchestrator YAML"
    ),
    backend: Backend | None = typer.Option(
        None, "--backend", help="Override the configured backend"
    ),
    keep: bool = typer.Option(False, "--keep", help="Skip teardown"),
    reveal_secrets: bool = typer.Option(
        False, "--reveal-secrets", help="Print keys and connection strings unmasked"
    ),
) -> None:
    """Provision, update, inspect and tear down the resources of a scenario."""
    scenario_cfg, config = _load(scenario, config_path)
    updates: dict[str, object] = {}
    if backend is not None:
        updates["backend"] = backend
    if reveal_secrets:
        updates["reveal_secrets"] = True
    if updates:
        config = config.model_copy(update=updates)
    if keep:
        scenario_cfg = scenario_cfg.model_copy(update={"keep_resources": True})

    async def _run() -> RunResult:
        api = create_api(config)
        try:
            orchestrator = Orchestrator(api, config, on_report=_print_report)
            return await orchestrator.run(scenario_cfg)
        finally:
            await api.close()

    console.print(
        f"[yellow]Running scenario:[/yellow] {scenario_cfg.scenario_id} "
        f"on {config.backend} ({config.region})"
    )
    try:
        result = asyncio.run(_run())
    except OrchestratorError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        raise typer.Exit(1) from exc
    except Exception as exc:
        logger.exception("cli.run_failed", scenario_id=scenario_cfg.scenario_id)
        console.print(f"[red]Run failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    _print_summary(result)
    if not result.succeeded:
        raise typer.Exit(1)
