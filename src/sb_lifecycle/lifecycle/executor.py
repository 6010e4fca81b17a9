"""Lifecycle executor: creates a resource graph in dependency order."""

from __future__ import annotations

import asyncio

import structlog

from sb_lifecycle.cloud.base import CloudResourceAPI, ResourceHandle
from sb_lifecycle.config.models import ResourceSpec
from sb_lifecycle.errors import ProvisionError
from sb_lifecycle.graph import ResourceGraph
from sb_lifecycle.registry import ResourceRegistry

logger = structlog.get_logger()


class LifecycleExecutor:
    """Walks a ResourceGraph and records every created handle in the registry.

    With ``concurrency == 1`` specs are created strictly one after another in
    ``graph.ordered()`` order. With more, each graph level is fanned out
    under a semaphore and fully joined before the next level starts (or
    before a failure is raised), so rollback never overlaps a creation.
    """

    def __init__(
        self,
        api: CloudResourceAPI,
        registry: ResourceRegistry,
        *,
        timeout_seconds: float = 600.0,
        concurrency: int = 1,
    ) -> None:
        self._api = api
        self._registry = registry
        self._timeout = timeout_seconds
        self._concurrency = max(1, concurrency)

    async def provision(self, graph: ResourceGraph) -> dict[str, ResourceHandle]:
        """Create every spec in *graph*; raise ProvisionError on the first failure."""
        if self._concurrency == 1:
            for spec in graph.ordered():
                await self.create(spec)
        else:
            semaphore = asyncio.Semaphore(self._concurrency)
            for level in graph.levels():
                await self._create_level(level, semaphore)
        return {spec.name: self._registry[spec.name] for spec in graph.ordered()}

    async def _create_level(
        self, level: list[ResourceSpec], semaphore: asyncio.Semaphore
    ) -> None:
        async def _bounded(spec: ResourceSpec) -> ResourceHandle:
            async with semaphore:
                return await self.create(spec)

        results = await asyncio.gather(
            *(_bounded(spec) for spec in level), return_exceptions=True
        )
        failures: list[ProvisionError] = []
        for result in results:
            if isinstance(result, ProvisionError):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
        if failures:
            if len(failures) > 1:
                logger.error(
                    "executor.level_failed",
                    failed=[f.resource for f in failures],
                )
            raise failures[0]

    async def create(self, spec: ResourceSpec) -> ResourceHandle:
        """Create one spec; its parent must already be in the registry."""
        parent: ResourceHandle | None = None
        if spec.parent is not None:
            parent = self._registry.get(spec.parent)
            if parent is None:
                msg = (
                    f"Cannot create {spec.kind} '{spec.name}': parent "
                    f"'{spec.parent}' has not been created"
                )
                raise ProvisionError(msg, resource=spec.name, kind=spec.kind)

        logger.info(
            "executor.creating", kind=spec.kind, name=spec.name, parent=spec.parent
        )
        try:
            handle = await asyncio.wait_for(
                self._api.create_or_update(
                    spec.kind, spec.name, parent, spec.typed_options()
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            logger.error(
                "executor.create_timed_out",
                kind=spec.kind,
                name=spec.name,
                timeout_seconds=self._timeout,
            )
            msg = (
                f"Creating {spec.kind} '{spec.name}' did not finish within "
                f"{self._timeout}s"
            )
            raise ProvisionError(msg, resource=spec.name, kind=spec.kind) from exc
        except Exception as exc:
            logger.error(
                "executor.create_failed",
                kind=spec.kind,
                name=spec.name,
                error=str(exc),
            )
            msg = f"Creating {spec.kind} '{spec.name}' failed: {exc}"
            raise ProvisionError(msg, resource=spec.name, kind=spec.kind) from exc

        self._registry.record(spec.name, handle)
        logger.info(
            "executor.resource_created",
            kind=spec.kind,
            name=spec.name,
            resource_id=handle.resource_id,
        )
        return handle
