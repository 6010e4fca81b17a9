"""Rollback manager: best-effort teardown in reverse creation order."""

from __future__ import annotations

import asyncio

import structlog

from sb_lifecycle.cloud.base import CloudResourceAPI, ResourceHandle
from sb_lifecycle.config.models import ResourceKind, RollbackConfig
from sb_lifecycle.errors import RollbackError
from sb_lifecycle.registry import ResourceRegistry

logger = structlog.get_logger()


class RollbackManager:
    """Deletes everything in a registry, newest first.

    A failed delete never stops the teardown and is never raised: it is
    logged and returned as a RollbackError so the error that triggered the
    rollback (if any) stays the one the caller sees.
    """

    def __init__(
        self,
        api: CloudResourceAPI,
        *,
        timeout_seconds: float = 600.0,
        config: RollbackConfig | None = None,
    ) -> None:
        self._api = api
        self._timeout = timeout_seconds
        self._config = config or RollbackConfig()

    async def rollback(self, registry: ResourceRegistry) -> list[RollbackError]:
        """Delete every registered handle in reverse order; the registry ends empty."""
        if not registry:
            logger.info("rollback.nothing_to_clean_up")
            return []

        entries = registry.reversed()
        cascade = self._config.cascade_only and any(
            h.kind == ResourceKind.RESOURCE_GROUP for _, h in entries
        )
        logger.info(
            "rollback.started",
            resources=[name for name, _ in entries],
            cascade_only=cascade,
        )

        errors: list[RollbackError] = []
        for name, handle in entries:
            if cascade and handle.kind != ResourceKind.RESOURCE_GROUP:
                registry.discard(name)
                logger.info(
                    "rollback.left_to_cascade", kind=handle.kind, name=name
                )
                continue
            try:
                error = await self._delete(name, handle)
            finally:
                registry.discard(name)
            if error is not None:
                errors.append(error)

        logger.info(
            "rollback.finished",
            failed=[e.resource for e in errors],
        )
        return errors

    async def _delete(self, name: str, handle: ResourceHandle) -> RollbackError | None:
        wait = True
        if handle.kind == ResourceKind.RESOURCE_GROUP:
            wait = self._config.wait_for_resource_group
        try:
            await asyncio.wait_for(
                self._api.delete(handle, wait=wait), timeout=self._timeout
            )
        except TimeoutError as exc:
            logger.warning(
                "rollback.delete_timed_out",
                kind=handle.kind,
                name=name,
                timeout_seconds=self._timeout,
            )
            return RollbackError(
                f"Deleting {handle.kind} '{name}' did not finish within "
                f"{self._timeout}s",
                resource=name,
                kind=handle.kind,
                cause=exc,
            )
        except Exception as exc:
            logger.warning(
                "rollback.delete_failed",
                kind=handle.kind,
                name=name,
                error=str(exc),
            )
            return RollbackError(
                f"Deleting {handle.kind} '{name}' failed: {exc}",
                resource=name,
                kind=handle.kind,
                cause=exc,
            )
        logger.info("rollback.deleted", kind=handle.kind, name=name, waited=wait)
        return None
