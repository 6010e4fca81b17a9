"""Cloud Resource API protocol and the value types it exchanges.

Defines ResourceHandle / ResourceState / AccessKeys and CloudResourceAPI
(the protocol every backend, Azure ARM or in-memory, must satisfy).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sb_lifecycle.config.models import ResourceKind


@dataclass(frozen=True, slots=True)
class ResourceHandle:
    """Opaque reference to a created resource.

    Carries its parent handle so a backend can rebuild the full scope
    (resource group / namespace / topic) without a lookup.
    """

    kind: ResourceKind
    name: str
    resource_id: str
    parent: ResourceHandle | None = field(default=None, repr=False)

    def lineage(self) -> list[ResourceHandle]:
        """Handles from the top-level ancestor down to this one."""
        chain: list[ResourceHandle] = []
        node: ResourceHandle | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain

    def ancestor(self, kind: ResourceKind) -> ResourceHandle | None:
        """Nearest handle of *kind* in the lineage (including self)."""
        for node in reversed(self.lineage()):
            if node.kind == kind:
                return node
        return None


@dataclass(slots=True)
class ResourceState:
    """Snapshot of a resource as reported by the backend."""

    kind: ResourceKind
    name: str
    resource_id: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AccessKeys:
    """Keys and connection strings of one authorization rule."""

    key_name: str
    primary_key: str = field(repr=False)
    secondary_key: str = field(repr=False)
    primary_connection_string: str = field(repr=False)
    secondary_connection_string: str = field(repr=False)


@runtime_checkable
class CloudResourceAPI(Protocol):
    """Protocol that every cloud backend must satisfy.

    All calls suspend until the remote operation is terminal.
    """

    async def wait_until_ready(self) -> None:
        """Verify the backend is reachable and authorised; raise AuthError if not."""
        ...

    async def create_or_update(
        self,
        kind: ResourceKind,
        name: str,
        parent: ResourceHandle | None,
        options: Any,
    ) -> ResourceHandle:
        """Create the resource, or update it in place if it exists."""
        ...

    async def get(self, handle: ResourceHandle) -> ResourceState:
        """Fetch the current state of a resource."""
        ...

    def list(
        self, parent: ResourceHandle, kind: ResourceKind
    ) -> AsyncIterator[ResourceState]:
        """Lazily iterate children of *kind* under *parent*."""
        ...

    async def delete(self, handle: ResourceHandle, *, wait: bool = True) -> None:
        """Delete a resource; deleting a missing resource is not an error."""
        ...

    async def get_secrets(self, handle: ResourceHandle) -> AccessKeys:
        """Return the keys of an authorization rule."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
