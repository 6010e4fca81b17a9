#!/usr/bin/env python3
"""Runnable demo: provision a Service Bus topology, change it, inspect it, tear it down.

Prerequisites:
    export SUBSCRIPTION_ID=...   # plus CLIENT_ID / CLIENT_SECRET / TENANT_ID,
                                 # or AZURE_AUTH_LOCATION, or `az login`
    python examples/servicebus_demo.py            # against Azure
    python examples/servicebus_demo.py --memory   # dry run, no cloud calls
"""

from __future__ import annotations

import asyncio
import sys

from rich.console import Console

from sb_lifecycle.cloud.factory import create_api
from sb_lifecycle.config.defaults import build_scenario_config
from sb_lifecycle.config.loader import load_orchestrator_config
from sb_lifecycle.config.models import Backend
from sb_lifecycle.errors import AuthError
from sb_lifecycle.orchestrator import Orchestrator, Report

console = Console()


def main() -> None:
    # 1. Scenario from the built-in demo, with a custom id
    scenario = build_scenario_config({"scenario_id": "demo-walkthrough"})
    console.print("[bold]Scenario built[/bold]", scenario.scenario_id)

    config = load_orchestrator_config()
    if "--memory" in sys.argv:
        config = config.model_copy(update={"backend": Backend.MEMORY})

    def show(report: Report) -> None:
        console.print(f"[cyan]{report.title}[/cyan]")
        console.print(report.body.expandtabs(4), markup=False, highlight=False)

    # 2. Run: provision, update, inspect, delete, teardown
    async def run() -> bool:
        api = create_api(config)
        try:
            result = await Orchestrator(api, config, on_report=show).run(scenario)
        finally:
            await api.close()
        for err in result.rollback_errors:
            console.print(f"[yellow]Left behind:[/yellow] {err.kind} {err.resource}")
        if not result.succeeded:
            console.print(f"[red]Failed:[/red] {result.error}")
        return result.succeeded

    try:
        ok = asyncio.run(run())
    except AuthError as exc:
        console.print(f"[red]Cannot authenticate:[/red] {exc}")
        sys.exit(1)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
