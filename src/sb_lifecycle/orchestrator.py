"""Orchestrator: provision, update, inspect, delete and tear down one scenario."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from sb_lifecycle.cloud.base import CloudResourceAPI, ResourceHandle
from sb_lifecycle.config.models import (
    RULE_KIND_FOR_PARENT,
    OrchestratorConfig,
    ResourceKind,
    ResourceSpec,
    ScenarioConfig,
)
from sb_lifecycle.config.naming import randomize_scenario
from sb_lifecycle.errors import ProvisionError, RollbackError
from sb_lifecycle.graph import ResourceGraph
from sb_lifecycle.lifecycle.executor import LifecycleExecutor
from sb_lifecycle.lifecycle.rollback import RollbackManager
from sb_lifecycle.lifecycle.update import ConfigurationUpdater
from sb_lifecycle.registry import ResourceRegistry
from sb_lifecycle.reporting import format_keys, format_state

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class Report:
    title: str
    body: str


@dataclass
class RunResult:
    """Outcome of one orchestration run."""

    scenario_id: str
    names: dict[str, str] = field(default_factory=dict)  # declared -> actual
    handles: dict[str, ResourceHandle] = field(default_factory=dict)
    reports: list[Report] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    rollback_errors: list[RollbackError] = field(default_factory=list)
    error: ProvisionError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        """Re-raise the provisioning error, if the run had one."""
        if self.error is not None:
            raise self.error


class Orchestrator:
    """Runs a ScenarioConfig against a CloudResourceAPI.

    One registry per run. Whatever happens after the first resource is
    created, teardown runs in a ``finally`` unless the scenario (or config)
    asks to keep resources. A ProvisionError is captured on the RunResult;
    anything else propagates after teardown.
    """

    def __init__(
        self,
        api: CloudResourceAPI,
        config: OrchestratorConfig | None = None,
        *,
        on_report: Callable[[Report], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._api = api
        self._config = config or OrchestratorConfig()
        self._on_report = on_report
        self._rng = rng
        self._timeout = self._config.operation_timeout_seconds

    # -- helpers ---------------------------------------------------------------

    def _emit(self, result: RunResult, title: str, body: str) -> None:
        report = Report(title=title, body=body)
        result.reports.append(report)
        if self._on_report is not None:
            self._on_report(report)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _report_resource(
        self, result: RunResult, handle: ResourceHandle, title: str
    ) -> None:
        try:
            state = await self._bounded(self._api.get(handle))
        except Exception as exc:
            logger.warning(
                "orchestrator.report_failed",
                kind=handle.kind,
                name=handle.name,
                error=str(exc),
            )
            return
        self._emit(result, title, format_state(state))

    async def _list_rules(self, owner: ResourceHandle) -> list[ResourceHandle]:
        rule_kind = RULE_KIND_FOR_PARENT[owner.kind]

        async def _collect() -> list[ResourceHandle]:
            return [
                ResourceHandle(
                    kind=rule_kind,
                    name=state.name,
                    resource_id=state.resource_id,
                    parent=owner,
                )
                async for state in self._api.list(owner, rule_kind)
            ]

        return await self._bounded(_collect())

    async def _report_rules(
        self, result: RunResult, owner: ResourceHandle, title: str
    ) -> list[ResourceHandle]:
        try:
            rules = await self._list_rules(owner)
        except Exception as exc:
            logger.warning(
                "orchestrator.rule_listing_failed", owner=owner.name, error=str(exc)
            )
            return []
        self._emit(
            result,
            title,
            f"Number of authorization rules for {owner.kind} {owner.name}: {len(rules)}",
        )
        for rule in rules:
            await self._report_resource(result, rule, f"Authorization rule {rule.name}")
        return rules

    async def _report_keys(self, result: RunResult, rule: ResourceHandle) -> None:
        try:
            keys = await self._bounded(self._api.get_secrets(rule))
        except Exception as exc:
            logger.warning(
                "orchestrator.keys_failed", rule=rule.name, error=str(exc)
            )
            return
        self._emit(
            result,
            f"Keys for {rule.name}",
            format_keys(keys, reveal_secrets=self._config.reveal_secrets),
        )

    async def _delete(self, registry: ResourceRegistry, name: str) -> bool:
        handle = registry.get(name)
        if handle is None:
            logger.info("orchestrator.delete_skipped", resource=name)
            return False
        logger.info("orchestrator.deleting", kind=handle.kind, name=name)
        try:
            await self._bounded(self._api.delete(handle))
        except Exception as exc:
            msg = f"Deleting {handle.kind} '{name}' failed: {exc}"
            raise ProvisionError(msg, resource=name, kind=handle.kind) from exc
        removed = registry.discard_subtree(handle)
        logger.info("orchestrator.deleted", kind=handle.kind, name=name, cascaded=removed)
        return True

    # -- run -------------------------------------------------------------------

    def plan(self, scenario: ScenarioConfig) -> list[ResourceSpec]:
        """Creation order for *scenario*, without touching the backend."""
        return ResourceGraph(scenario.resources).ordered()

    async def run(self, scenario: ScenarioConfig) -> RunResult:
        names = {spec.name: spec.name for spec in scenario.resources}
        if scenario.randomize_names:
            scenario, names = randomize_scenario(scenario, rng=self._rng)
        graph = ResourceGraph(scenario.resources)
        graph.validate()

        result = RunResult(scenario_id=scenario.scenario_id, names=names)
        registry = ResourceRegistry()
        executor = LifecycleExecutor(
            self._api,
            registry,
            timeout_seconds=self._timeout,
            concurrency=self._config.concurrency,
        )
        updater = ConfigurationUpdater(self._api, registry, timeout_seconds=self._timeout)
        rollback = RollbackManager(
            self._api, timeout_seconds=self._timeout, config=self._config.rollback
        )

        await self._api.wait_until_ready()
        logger.info(
            "orchestrator.started",
            scenario_id=scenario.scenario_id,
            resources=[spec.name for spec in graph.ordered()],
        )
        try:
            result.handles = await executor.provision(graph)
            for spec in graph.ordered():
                await self._report_resource(
                    result, registry[spec.name], f"Created {spec.kind} {spec.name}"
                )

            specs = {spec.name: spec for spec in graph.specs}
            for delta in scenario.updates:
                update = await updater.apply(specs[delta.target], delta)
                specs[delta.target] = update.spec
                await self._report_resource(
                    result, update.handle, f"Updated {update.spec.kind} {delta.target}"
                )
                if delta.remove_rules or delta.add_rules:
                    await self._report_rules(
                        result, update.handle, f"Authorization rules of {delta.target}"
                    )

            if scenario.show_namespace_keys:
                for name, handle in registry:
                    if handle.kind != ResourceKind.NAMESPACE:
                        continue
                    rules = await self._report_rules(
                        result, handle, f"Authorization rules of {name}"
                    )
                    if rules:
                        await self._report_keys(result, rules[0])

            for name in scenario.show_keys_for:
                handle = registry.get(name)
                if handle is not None:
                    await self._report_keys(result, handle)

            for name in scenario.deletions:
                if await self._delete(registry, name):
                    result.deleted.append(name)
        except ProvisionError as exc:
            result.error = exc
            logger.error(
                "orchestrator.provision_failed",
                scenario_id=scenario.scenario_id,
                resource=exc.resource,
                kind=exc.kind,
                error=str(exc),
            )
        finally:
            if scenario.keep_resources or not self._config.rollback.enabled:
                logger.info("orchestrator.resources_kept", resources=registry.names())
            else:
                result.rollback_errors = await rollback.rollback(registry)

        logger.info(
            "orchestrator.finished",
            scenario_id=scenario.scenario_id,
            succeeded=result.succeeded,
            rollback_errors=len(result.rollback_errors),
        )
        return result
