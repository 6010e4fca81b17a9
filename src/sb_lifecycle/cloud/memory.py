"""InMemoryCloudAPI: a local stand-in for the Service Bus control plane.

Mirrors the ARM behaviours the orchestrator relies on: ARM-style resource
ids, create-or-update merges, a ``RootManageSharedAccessKey`` rule on every
new namespace, cascading deletes and 404s for missing resources. Used for
dry runs (``backend: memory``) and throughout the unit tests.
"""

from __future__ import annotations

import base64
import secrets
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from azure.core.exceptions import ResourceNotFoundError
from pydantic import BaseModel

from sb_lifecycle.cloud.base import AccessKeys, ResourceHandle, ResourceState
from sb_lifecycle.config.models import (
    PARENT_KINDS,
    RULE_KINDS,
    AccessRight,
    ResourceKind,
    parse_options,
)

logger = structlog.get_logger()

DEFAULT_NAMESPACE_RULE = "RootManageSharedAccessKey"

_ID_SEGMENTS: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: "providers/Microsoft.ServiceBus/namespaces",
    ResourceKind.TOPIC: "topics",
    ResourceKind.SUBSCRIPTION: "subscriptions",
    ResourceKind.NAMESPACE_AUTHORIZATION_RULE: "authorizationRules",
    ResourceKind.TOPIC_AUTHORIZATION_RULE: "authorizationRules",
}

# Service-side defaults filled in when an option is left unset.
_SERVICE_DEFAULTS: dict[ResourceKind, dict[str, Any]] = {
    ResourceKind.TOPIC: {
        "max_size_in_megabytes": 1024,
        "default_message_time_to_live": timedelta(days=14),
        "enable_partitioning": False,
        "requires_duplicate_detection": False,
        "enable_batched_operations": True,
        "enable_express": False,
        "support_ordering": True,
    },
    ResourceKind.SUBSCRIPTION: {
        "requires_session": False,
        "default_message_time_to_live": timedelta(days=14),
        "lock_duration": timedelta(minutes=1),
        "max_delivery_count": 10,
        "dead_lettering_on_message_expiration": False,
        "dead_lettering_on_filter_evaluation_exceptions": True,
        "enable_batched_operations": True,
    },
}


@dataclass
class _Record:
    handle: ResourceHandle
    properties: dict[str, Any] = field(default_factory=dict)
    keys: AccessKeys | None = None


def _new_key() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode()


class InMemoryCloudAPI:
    """Dictionary-backed implementation of CloudResourceAPI."""

    def __init__(
        self,
        *,
        region: str = "westus",
        subscription_id: str = "00000000-0000-0000-0000-000000000000",
    ) -> None:
        self._region = region
        self._subscription_id = subscription_id
        self._records: dict[str, _Record] = {}
        # (operation, kind, name) for every mutating call, in call order
        self.calls: list[tuple[str, ResourceKind, str]] = []

    # -- helpers ---------------------------------------------------------------

    def _resource_id(
        self, kind: ResourceKind, name: str, parent: ResourceHandle | None
    ) -> str:
        if kind == ResourceKind.RESOURCE_GROUP:
            return f"/subscriptions/{self._subscription_id}/resourceGroups/{name}"
        assert parent is not None
        return f"{parent.resource_id}/{_ID_SEGMENTS[kind]}/{name}"

    def _require(self, handle: ResourceHandle) -> _Record:
        record = self._records.get(handle.resource_id)
        if record is None:
            msg = f"{handle.kind} '{handle.name}' was not found"
            raise ResourceNotFoundError(msg)
        return record

    def _children(self, resource_id: str) -> list[_Record]:
        prefix = resource_id + "/"
        return [r for rid, r in self._records.items() if rid.startswith(prefix)]

    def _connection_string(self, handle: ResourceHandle, key: str) -> str:
        namespace = handle.ancestor(ResourceKind.NAMESPACE)
        assert namespace is not None
        conn = (
            f"Endpoint=sb://{namespace.name}.servicebus.windows.net/;"
            f"SharedAccessKeyName={handle.name};SharedAccessKey={key}"
        )
        if handle.kind == ResourceKind.TOPIC_AUTHORIZATION_RULE:
            assert handle.parent is not None
            conn += f";EntityPath={handle.parent.name}"
        return conn

    def _issue_keys(self, handle: ResourceHandle) -> AccessKeys:
        primary, secondary = _new_key(), _new_key()
        return AccessKeys(
            key_name=handle.name,
            primary_key=primary,
            secondary_key=secondary,
            primary_connection_string=self._connection_string(handle, primary),
            secondary_connection_string=self._connection_string(handle, secondary),
        )

    def _computed(
        self, kind: ResourceKind, name: str, props: dict[str, Any]
    ) -> dict[str, Any]:
        if kind == ResourceKind.RESOURCE_GROUP:
            return {
                "location": props.get("location") or self._region,
                "provisioning_state": "Succeeded",
            }
        if kind == ResourceKind.NAMESPACE:
            sku = props.pop("sku", "Standard")
            return {
                "location": props.get("location") or self._region,
                "sku": {
                    "name": str(sku),
                    "tier": str(sku),
                    "capacity": props.pop("capacity", None),
                },
                "service_bus_endpoint": f"https://{name}.servicebus.windows.net:443/",
                "provisioning_state": "Succeeded",
                "status": "Active",
            }
        if kind == ResourceKind.TOPIC:
            return {"status": "Active", "size_in_bytes": 0}
        if kind == ResourceKind.SUBSCRIPTION:
            return {"status": "Active", "message_count": 0}
        return {}

    # -- CloudResourceAPI --------------------------------------------------------

    async def wait_until_ready(self) -> None:
        logger.info("memory.ready", region=self._region)

    async def create_or_update(
        self,
        kind: ResourceKind,
        name: str,
        parent: ResourceHandle | None,
        options: Any,
    ) -> ResourceHandle:
        expected = PARENT_KINDS[kind]
        if (parent.kind if parent is not None else None) != expected:
            msg = f"{kind} '{name}' must be created under a {expected}"
            raise ValueError(msg)
        if parent is not None:
            self._require(parent)

        if not isinstance(options, BaseModel):
            options = parse_options(kind, options or {})
        props = options.model_dump(exclude_none=True)
        if kind in RULE_KINDS:
            props["rights"] = [AccessRight(r).value for r in props["rights"]]

        resource_id = self._resource_id(kind, name, parent)
        now = datetime.now(UTC)
        existing = self._records.get(resource_id)
        if existing is not None:
            merged = {**existing.properties, **props}
            merged.update(self._computed(kind, name, dict(merged)))
            merged.pop("capacity", None)
            merged["updated_at"] = now
            existing.properties = merged
            self.calls.append(("update", kind, name))
            logger.info("memory.resource_updated", kind=kind, name=name)
            return existing.handle

        handle = ResourceHandle(
            kind=kind, name=name, resource_id=resource_id, parent=parent
        )
        properties = {**_SERVICE_DEFAULTS.get(kind, {}), **props}
        properties.update(self._computed(kind, name, dict(properties)))
        properties.pop("capacity", None)
        properties["created_at"] = now
        properties["updated_at"] = now
        record = _Record(handle=handle, properties=properties)
        if kind in RULE_KINDS:
            record.keys = self._issue_keys(handle)
        self._records[resource_id] = record
        self.calls.append(("create", kind, name))
        logger.info("memory.resource_created", kind=kind, name=name)

        if kind == ResourceKind.NAMESPACE:
            await self.create_or_update(
                ResourceKind.NAMESPACE_AUTHORIZATION_RULE,
                DEFAULT_NAMESPACE_RULE,
                handle,
                {"rights": ["Listen", "Manage", "Send"]},
            )
        return handle

    async def get(self, handle: ResourceHandle) -> ResourceState:
        record = self._require(handle)
        properties = dict(record.properties)
        if handle.kind == ResourceKind.TOPIC:
            properties["subscription_count"] = sum(
                1
                for child in self._children(handle.resource_id)
                if child.handle.kind == ResourceKind.SUBSCRIPTION
            )
        return ResourceState(
            kind=handle.kind,
            name=handle.name,
            resource_id=handle.resource_id,
            properties=properties,
        )

    async def list(
        self, parent: ResourceHandle, kind: ResourceKind
    ) -> AsyncIterator[ResourceState]:
        self._require(parent)
        # snapshot first: callers may delete while iterating
        direct = [
            r.handle
            for r in self._children(parent.resource_id)
            if r.handle.kind == kind and r.handle.parent == parent
        ]
        for handle in direct:
            if handle.resource_id in self._records:
                yield await self.get(handle)

    async def delete(self, handle: ResourceHandle, *, wait: bool = True) -> None:
        if handle.resource_id not in self._records:
            logger.info(
                "memory.resource_already_deleted", kind=handle.kind, name=handle.name
            )
            return
        for child in self._children(handle.resource_id):
            del self._records[child.handle.resource_id]
        del self._records[handle.resource_id]
        self.calls.append(("delete", handle.kind, handle.name))
        logger.info("memory.resource_deleted", kind=handle.kind, name=handle.name)

    async def get_secrets(self, handle: ResourceHandle) -> AccessKeys:
        if handle.kind not in RULE_KINDS:
            msg = f"{handle.kind} '{handle.name}' has no keys"
            raise ValueError(msg)
        record = self._require(handle)
        assert record.keys is not None
        return record.keys

    async def close(self) -> None:
        return None

    # -- inspection --------------------------------------------------------------

    def exists(self, handle: ResourceHandle) -> bool:
        return handle.resource_id in self._records

    def __len__(self) -> int:
        return len(self._records)
