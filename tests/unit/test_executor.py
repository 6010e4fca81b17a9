"""Unit tests for LifecycleExecutor."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from sb_lifecycle.cloud.base import ResourceHandle
from sb_lifecycle.cloud.memory import InMemoryCloudAPI
from sb_lifecycle.config.models import ResourceKind, ResourceSpec
from sb_lifecycle.errors import ProvisionError
from sb_lifecycle.graph import ResourceGraph
from sb_lifecycle.lifecycle.executor import LifecycleExecutor
from sb_lifecycle.registry import ResourceRegistry


class _ScriptedAPI(InMemoryCloudAPI):
    """Memory backend that fails or stalls on chosen names."""

    def __init__(self, *, fail: set[str] = frozenset(), stall: set[str] = frozenset()):
        super().__init__()
        self.fail = set(fail)
        self.stall = set(stall)
        self.in_flight = 0
        self.max_in_flight = 0

    async def create_or_update(
        self,
        kind: ResourceKind,
        name: str,
        parent: ResourceHandle | None,
        options: Any,
    ) -> ResourceHandle:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if name in self.stall:
                await asyncio.sleep(10)
            if name in self.fail:
                msg = f"quota exceeded for {name}"
                raise RuntimeError(msg)
            return await super().create_or_update(kind, name, parent, options)
        finally:
            self.in_flight -= 1


def _graph() -> ResourceGraph:
    return ResourceGraph(
        [
            ResourceSpec(kind=ResourceKind.RESOURCE_GROUP, name="rg"),
            ResourceSpec(kind=ResourceKind.NAMESPACE, name="ns", parent="rg"),
            ResourceSpec(kind=ResourceKind.TOPIC, name="t1", parent="ns"),
            ResourceSpec(kind=ResourceKind.SUBSCRIPTION, name="s1", parent="t1"),
            ResourceSpec(kind=ResourceKind.SUBSCRIPTION, name="s2", parent="t1"),
            ResourceSpec(kind=ResourceKind.SUBSCRIPTION, name="s3", parent="t1"),
        ]
    )


def _created(api: InMemoryCloudAPI) -> list[str]:
    return [name for op, _kind, name in api.calls if op == "create"]


@pytest.mark.asyncio
class TestLifecycleExecutor:
    async def test_creates_parents_before_children(self):
        api = _ScriptedAPI()
        registry = ResourceRegistry()
        handles = await LifecycleExecutor(api, registry).provision(_graph())

        created = [n for n in _created(api) if n != "RootManageSharedAccessKey"]
        assert created == ["rg", "ns", "t1", "s1", "s2", "s3"]
        assert registry.names() == created
        assert handles["s2"].parent is handles["t1"]

    async def test_failure_raises_provision_error_and_keeps_registry(self):
        api = _ScriptedAPI(fail={"s2"})
        registry = ResourceRegistry()
        with pytest.raises(ProvisionError, match="quota exceeded") as exc_info:
            await LifecycleExecutor(api, registry).provision(_graph())

        assert exc_info.value.resource == "s2"
        assert exc_info.value.kind == ResourceKind.SUBSCRIPTION
        assert registry.names() == ["rg", "ns", "t1", "s1"]

    async def test_timeout_becomes_provision_error(self):
        api = _ScriptedAPI(stall={"t1"})
        registry = ResourceRegistry()
        executor = LifecycleExecutor(api, registry, timeout_seconds=0.1)
        with pytest.raises(ProvisionError, match="did not finish within") as exc_info:
            await executor.provision(_graph())
        assert exc_info.value.resource == "t1"
        assert "t1" not in registry

    async def test_missing_parent_in_registry(self):
        api = _ScriptedAPI()
        executor = LifecycleExecutor(api, ResourceRegistry())
        spec = ResourceSpec(kind=ResourceKind.TOPIC, name="t1", parent="ns")
        with pytest.raises(ProvisionError, match="has not been created"):
            await executor.create(spec)
        assert api.calls == []

    async def test_level_fan_out_is_bounded(self):
        api = _ScriptedAPI()
        registry = ResourceRegistry()
        await LifecycleExecutor(api, registry, concurrency=2).provision(_graph())
        assert len(registry) == 6
        assert api.max_in_flight == 2

    async def test_level_failure_joins_siblings_first(self):
        api = _ScriptedAPI(fail={"s1"})
        registry = ResourceRegistry()
        with pytest.raises(ProvisionError) as exc_info:
            await LifecycleExecutor(api, registry, concurrency=4).provision(_graph())
        assert exc_info.value.resource == "s1"
        # siblings in the failing level finished and were recorded
        assert {"s2", "s3"} <= set(registry.names())
        assert api.in_flight == 0
