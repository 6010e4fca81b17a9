"""Configuration updates against already-provisioned resources."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from sb_lifecycle.cloud.base import CloudResourceAPI, ResourceHandle
from sb_lifecycle.config.models import (
    RULE_KIND_FOR_PARENT,
    AuthorizationRuleOptions,
    ResourceSpec,
    UpdateSpec,
)
from sb_lifecycle.errors import ProvisionError
from sb_lifecycle.registry import ResourceRegistry

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class UpdateResult:
    spec: ResourceSpec  # target spec with the new options merged in
    handle: ResourceHandle
    properties_changed: list[str] = field(default_factory=list)
    removed_rules: list[str] = field(default_factory=list)
    added_rules: list[str] = field(default_factory=list)


class ConfigurationUpdater:
    """Applies an UpdateSpec to a resource recorded in the registry.

    Property changes re-submit the target with its full, merged options
    (create-or-update replaces the whole resource body). Rule changes are
    separate delete/create calls on the rule sub-collection: removals
    first, then additions, so a rule both removed and re-added ends up
    present with its new rights.
    """

    def __init__(
        self,
        api: CloudResourceAPI,
        registry: ResourceRegistry,
        *,
        timeout_seconds: float = 600.0,
    ) -> None:
        self._api = api
        self._registry = registry
        self._timeout = timeout_seconds

    async def _call(self, awaitable: Awaitable[T], *, resource: str, kind: str, action: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as exc:
            msg = f"{action} {kind} '{resource}' did not finish within {self._timeout}s"
            raise ProvisionError(msg, resource=resource, kind=kind) from exc
        except Exception as exc:
            logger.error(
                "update.call_failed",
                action=action,
                kind=kind,
                name=resource,
                error=str(exc),
            )
            msg = f"{action} {kind} '{resource}' failed: {exc}"
            raise ProvisionError(msg, resource=resource, kind=kind) from exc

    def _rule_key(self, parent: ResourceSpec, rule_name: str) -> str | None:
        """Registry key of a rule owned by *parent*, if one was recorded."""
        for key in (rule_name, f"{parent.name}/{rule_name}"):
            handle = self._registry.get(key)
            if handle is not None and handle.parent is not None and (
                handle.parent.name == parent.name
            ):
                return key
        return None

    async def _find_rule(
        self, parent: ResourceHandle, spec: ResourceSpec, rule_name: str
    ) -> ResourceHandle | None:
        rule_kind = RULE_KIND_FOR_PARENT[spec.kind]
        async for state in self._api.list(parent, rule_kind):
            if state.name == rule_name:
                return ResourceHandle(
                    kind=rule_kind,
                    name=state.name,
                    resource_id=state.resource_id,
                    parent=parent,
                )
        return None

    async def apply(self, spec: ResourceSpec, delta: UpdateSpec) -> UpdateResult:
        handle = self._registry.get(spec.name)
        if handle is None:
            msg = f"Cannot update {spec.kind} '{spec.name}': it has not been created"
            raise ProvisionError(msg, resource=spec.name, kind=spec.kind)

        result = UpdateResult(spec=spec, handle=handle)

        if delta.properties:
            merged = {**spec.options, **delta.properties}
            updated = spec.model_copy(update={"options": merged})
            logger.info(
                "update.properties",
                kind=spec.kind,
                name=spec.name,
                changed=sorted(delta.properties),
            )
            result.handle = await self._call(
                self._api.create_or_update(
                    spec.kind, spec.name, handle.parent, updated.typed_options()
                ),
                resource=spec.name,
                kind=spec.kind,
                action="Updating",
            )
            result.spec = updated
            result.properties_changed = sorted(delta.properties)

        if not (delta.remove_rules or delta.add_rules):
            return result
        rule_kind = RULE_KIND_FOR_PARENT[spec.kind]

        for rule_name in delta.remove_rules:
            key = self._rule_key(spec, rule_name)
            rule = self._registry.get(key) if key else None
            if rule is None:
                rule = await self._call(
                    self._find_rule(result.handle, spec, rule_name),
                    resource=rule_name,
                    kind=rule_kind,
                    action="Listing",
                )
            if rule is None:
                logger.info("update.rule_absent", parent=spec.name, rule=rule_name)
                continue
            await self._call(
                self._api.delete(rule),
                resource=rule_name,
                kind=rule_kind,
                action="Removing",
            )
            if key is not None:
                self._registry.discard(key)
            result.removed_rules.append(rule_name)
            logger.info("update.rule_removed", parent=spec.name, rule=rule_name)

        for new_rule in delta.add_rules:
            rule = await self._call(
                self._api.create_or_update(
                    rule_kind,
                    new_rule.name,
                    result.handle,
                    AuthorizationRuleOptions(rights=new_rule.rights),
                ),
                resource=new_rule.name,
                kind=rule_kind,
                action="Adding",
            )
            key = self._rule_key(spec, new_rule.name)
            if key is None:
                key = (
                    new_rule.name
                    if new_rule.name not in self._registry
                    else f"{spec.name}/{new_rule.name}"
                )
            self._registry.record(key, rule)
            result.added_rules.append(new_rule.name)
            logger.info(
                "update.rule_added",
                parent=spec.name,
                rule=new_rule.name,
                rights=[r.value for r in new_rule.rights],
            )

        return result
