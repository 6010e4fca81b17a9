"""Per-run registry of created resources, consumed by rollback."""

from __future__ import annotations

from collections.abc import Iterator

import structlog

from sb_lifecycle.cloud.base import ResourceHandle

logger = structlog.get_logger()


class ResourceRegistry:
    """Ordered record of the handles created during one orchestration run.

    Appended to by the executor (and by updates that add sub-resources);
    rollback walks it in reverse and discards each entry as it goes.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ResourceHandle] = {}

    def record(self, name: str, handle: ResourceHandle) -> None:
        if name in self._handles:
            # re-recording moves the entry to the end: it was created again
            del self._handles[name]
        self._handles[name] = handle
        logger.debug("registry.recorded", resource=name, kind=handle.kind)

    def get(self, name: str) -> ResourceHandle | None:
        return self._handles.get(name)

    def __getitem__(self, name: str) -> ResourceHandle:
        return self._handles[name]

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __bool__(self) -> bool:
        return bool(self._handles)

    def __iter__(self) -> Iterator[tuple[str, ResourceHandle]]:
        return iter(list(self._handles.items()))

    def names(self) -> list[str]:
        """Recorded names in creation order."""
        return list(self._handles)

    def reversed(self) -> list[tuple[str, ResourceHandle]]:
        """Snapshot of entries in reverse creation order."""
        return list(reversed(self._handles.items()))

    def discard(self, name: str) -> ResourceHandle | None:
        """Forget a single entry; unknown names are ignored."""
        return self._handles.pop(name, None)

    def discard_subtree(self, handle: ResourceHandle) -> list[str]:
        """Forget *handle* and everything recorded beneath it.

        Used after a parent is deleted, since the service cascades the
        delete to its children.
        """
        removed = [
            name
            for name, recorded in self._handles.items()
            if handle in recorded.lineage()
        ]
        for name in removed:
            del self._handles[name]
        return removed
