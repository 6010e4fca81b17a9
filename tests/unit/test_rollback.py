"""Unit tests for RollbackManager."""

from __future__ import annotations

import asyncio

import pytest

from sb_lifecycle.cloud.base import ResourceHandle
from sb_lifecycle.cloud.memory import InMemoryCloudAPI
from sb_lifecycle.config.models import ResourceKind, RollbackConfig
from sb_lifecycle.lifecycle.rollback import RollbackManager
from sb_lifecycle.registry import ResourceRegistry


class _FlakyDeleteAPI(InMemoryCloudAPI):
    def __init__(self, *, fail: set[str] = frozenset(), stall: set[str] = frozenset()):
        super().__init__()
        self.fail = set(fail)
        self.stall = set(stall)
        self.delete_waits: dict[str, bool] = {}

    async def delete(self, handle: ResourceHandle, *, wait: bool = True) -> None:
        self.delete_waits[handle.name] = wait
        if handle.name in self.stall:
            await asyncio.sleep(10)
        if handle.name in self.fail:
            msg = f"conflict deleting {handle.name}"
            raise RuntimeError(msg)
        await super().delete(handle, wait=wait)


async def _provisioned(api: InMemoryCloudAPI) -> ResourceRegistry:
    registry = ResourceRegistry()
    rg = await api.create_or_update(ResourceKind.RESOURCE_GROUP, "rg", None, {})
    registry.record("rg", rg)
    ns = await api.create_or_update(ResourceKind.NAMESPACE, "ns", rg, {})
    registry.record("ns", ns)
    topic = await api.create_or_update(ResourceKind.TOPIC, "t1", ns, {})
    registry.record("t1", topic)
    sub = await api.create_or_update(ResourceKind.SUBSCRIPTION, "s1", topic, {})
    registry.record("s1", sub)
    return registry


def _deleted(api: InMemoryCloudAPI) -> list[str]:
    return [name for op, _kind, name in api.calls if op == "delete"]


@pytest.mark.asyncio
class TestRollbackManager:
    async def test_reverse_creation_order(self):
        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        errors = await RollbackManager(api).rollback(registry)

        assert errors == []
        assert _deleted(api) == ["s1", "t1", "ns", "rg"]
        assert not registry
        assert len(api) == 0

    async def test_partial_registry(self):
        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        registry.discard("s1")
        registry.discard("t1")
        await RollbackManager(api).rollback(registry)
        assert _deleted(api) == ["ns", "rg"]

    async def test_empty_registry_is_noop(self):
        api = _FlakyDeleteAPI()
        errors = await RollbackManager(api).rollback(ResourceRegistry())
        assert errors == []
        assert api.calls == []

    async def test_failures_collected_not_raised(self):
        api = _FlakyDeleteAPI(fail={"t1"})
        registry = await _provisioned(api)
        errors = await RollbackManager(api).rollback(registry)

        assert [e.resource for e in errors] == ["t1"]
        assert errors[0].kind == ResourceKind.TOPIC
        assert isinstance(errors[0].cause, RuntimeError)
        # the teardown carried on past the failure
        assert _deleted(api) == ["s1", "ns", "rg"]
        assert not registry

    async def test_timeout_is_collected(self):
        api = _FlakyDeleteAPI(stall={"ns"})
        registry = await _provisioned(api)
        errors = await RollbackManager(api, timeout_seconds=0.05).rollback(registry)
        assert [e.resource for e in errors] == ["ns"]
        assert "did not finish" in str(errors[0])
        assert "rg" in _deleted(api)

    async def test_already_deleted_resources_are_not_errors(self):
        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        await api.delete(registry["ns"])
        errors = await RollbackManager(api).rollback(registry)
        assert errors == []
        assert not registry

    async def test_cascade_only_deletes_resource_groups(self):
        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        config = RollbackConfig(cascade_only=True)
        errors = await RollbackManager(api, config=config).rollback(registry)
        assert errors == []
        assert _deleted(api) == ["rg"]
        assert not registry
        assert len(api) == 0

    async def test_resource_group_delete_does_not_wait_by_default(self):
        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        await RollbackManager(api).rollback(registry)
        assert api.delete_waits["rg"] is False
        assert api.delete_waits["ns"] is True

        api = _FlakyDeleteAPI()
        registry = await _provisioned(api)
        config = RollbackConfig(wait_for_resource_group=True)
        await RollbackManager(api, config=config).rollback(registry)
        assert api.delete_waits["rg"] is True
