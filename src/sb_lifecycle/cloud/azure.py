"""AzureServiceBusAPI: CloudResourceAPI over the async ARM management SDK."""

from __future__ import annotations

from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

import structlog
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.mgmt.servicebus.aio import ServiceBusManagementClient
from azure.mgmt.servicebus.models import (
    SBAuthorizationRule,
    SBNamespace,
    SBSku,
    SBSubscription,
    SBTopic,
)
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sb_lifecycle.cloud.auth import AzureIdentity, resolve_identity
from sb_lifecycle.cloud.base import AccessKeys, ResourceHandle, ResourceState
from sb_lifecycle.config.models import (
    RULE_KINDS,
    OrchestratorConfig,
    ResourceKind,
    RetryConfig,
    SubscriptionOptions,
    TopicOptions,
    parse_options,
)
from sb_lifecycle.errors import AuthError

logger = structlog.get_logger()

# Attributes read off the SDK models per kind, on top of the options fields.
_COMMON_ATTRS = (
    "location",
    "tags",
    "provisioning_state",
    "status",
    "created_at",
    "updated_at",
)
_READ_ATTRS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.RESOURCE_GROUP: ("location", "tags", "managed_by", "provisioning_state"),
    ResourceKind.NAMESPACE: _COMMON_ATTRS
    + ("sku", "service_bus_endpoint", "metric_id", "zone_redundant"),
    ResourceKind.TOPIC: tuple(TopicOptions.model_fields)
    + _COMMON_ATTRS
    + ("accessed_at", "size_in_bytes", "subscription_count", "count_details"),
    ResourceKind.SUBSCRIPTION: tuple(SubscriptionOptions.model_fields)
    + _COMMON_ATTRS
    + ("accessed_at", "message_count", "count_details"),
    ResourceKind.NAMESPACE_AUTHORIZATION_RULE: ("rights",),
    ResourceKind.TOPIC_AUTHORIZATION_RULE: ("rights",),
}
_NESTED_ATTRS = {
    "sku": ("name", "tier", "capacity"),
    "count_details": (
        "active_message_count",
        "dead_letter_message_count",
        "scheduled_message_count",
        "transfer_message_count",
        "transfer_dead_letter_message_count",
    ),
}


def _read(model: Any, name: str) -> Any:
    """Public attribute *name* of an SDK model, falling back to its properties body."""
    value = getattr(model, name, None)
    if value is None:
        body = getattr(model, "properties", None)
        if isinstance(body, dict):
            value = body.get(name)
        elif body is not None:
            value = getattr(body, name, None)
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return dict(value)
    return value


def _pick(model: Any, names: tuple[str, ...]) -> dict[str, Any]:
    picked: dict[str, Any] = {}
    for name in names:
        value = _read(model, name)
        if value is None:
            continue
        nested = _NESTED_ATTRS.get(name)
        picked[name] = _pick(value, nested) if nested else _plain(value)
    return picked


def _state(kind: ResourceKind, model: Any) -> ResourceState:
    return ResourceState(
        kind=kind,
        name=model.name,
        resource_id=model.id,
        properties=_pick(model, _READ_ATTRS[kind]),
    )


def _path(handle: ResourceHandle) -> list[str]:
    """Names from resource group down to *handle*: [rg, namespace, topic, leaf]."""
    return [node.name for node in handle.lineage()]


class AzureServiceBusAPI:
    """Service Bus + resource group management through ARM.

    Every call awaits the operation to a terminal state: LROs (resource
    group and namespace) are polled to completion by the SDK poller.
    """

    def __init__(
        self,
        identity: AzureIdentity,
        *,
        region: str = "westus",
        retry: RetryConfig | None = None,
        servicebus_client: Any | None = None,
        resource_client: Any | None = None,
    ) -> None:
        self._identity = identity
        self._region = region
        self._retry = retry or RetryConfig()
        self._servicebus = servicebus_client or ServiceBusManagementClient(
            identity.credential, identity.subscription_id
        )
        self._resources = resource_client or ResourceManagementClient(
            identity.credential, identity.subscription_id
        )

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> AzureServiceBusAPI:
        identity = resolve_identity(config.azure)
        return cls(identity, region=config.region, retry=config.retry)

    async def close(self) -> None:
        await self._servicebus.close()
        await self._resources.close()
        close = getattr(self._identity.credential, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> AzureServiceBusAPI:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- Readiness -------------------------------------------------------------

    async def _probe(self) -> None:
        async for _group in self._resources.resource_groups.list(top=1):
            break

    async def wait_until_ready(self) -> None:
        """Verify credentials against the subscription before creating anything.

        Transport errors are retried; authentication failures are fatal.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ServiceRequestError),
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential(
                multiplier=self._retry.initial_wait_seconds,
                exp_base=self._retry.multiplier,
                max=self._retry.max_wait_seconds,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._probe()
        except ClientAuthenticationError as exc:
            msg = f"Azure authentication failed: {exc.message}"
            raise AuthError(msg) from exc
        except HttpResponseError as exc:
            if exc.status_code in (401, 403):
                msg = (
                    f"Subscription {self._identity.subscription_id} is not "
                    f"accessible: {exc.message}"
                )
                raise AuthError(msg) from exc
            raise
        logger.info(
            "azure.ready",
            subscription_id=self._identity.subscription_id,
            credential_source=self._identity.source,
        )

    # -- CRUD ------------------------------------------------------------------

    async def create_or_update(
        self,
        kind: ResourceKind,
        name: str,
        parent: ResourceHandle | None,
        options: Any,
    ) -> ResourceHandle:
        if not isinstance(options, BaseModel):
            options = parse_options(kind, options or {})
        path = (_path(parent) if parent is not None else []) + [name]
        sb = self._servicebus

        if kind == ResourceKind.RESOURCE_GROUP:
            model = await self._resources.resource_groups.create_or_update(
                name,
                {"location": options.location or self._region, "tags": options.tags},
            )
        elif kind == ResourceKind.NAMESPACE:
            sku = SBSku(name=options.sku.value, tier=options.sku.value)
            if options.capacity is not None:
                sku.capacity = options.capacity
            poller = await sb.namespaces.begin_create_or_update(
                path[0],
                name,
                SBNamespace(
                    location=options.location or self._region,
                    sku=sku,
                    tags=options.tags or None,
                ),
            )
            model = await poller.result()
        elif kind == ResourceKind.TOPIC:
            model = await sb.topics.create_or_update(
                path[0], path[1], name, SBTopic(**options.model_dump(exclude_none=True))
            )
        elif kind == ResourceKind.SUBSCRIPTION:
            model = await sb.subscriptions.create_or_update(
                path[0],
                path[1],
                path[2],
                name,
                SBSubscription(**options.model_dump(exclude_none=True)),
            )
        elif kind == ResourceKind.NAMESPACE_AUTHORIZATION_RULE:
            model = await sb.namespaces.create_or_update_authorization_rule(
                path[0],
                path[1],
                name,
                SBAuthorizationRule(rights=[r.value for r in options.rights]),
            )
        elif kind == ResourceKind.TOPIC_AUTHORIZATION_RULE:
            model = await sb.topics.create_or_update_authorization_rule(
                path[0],
                path[1],
                path[2],
                name,
                SBAuthorizationRule(rights=[r.value for r in options.rights]),
            )
        else:
            msg = f"Unsupported resource kind: {kind}"
            raise ValueError(msg)

        logger.info("azure.resource_created", kind=kind, name=name, id=model.id)
        return ResourceHandle(kind=kind, name=name, resource_id=model.id, parent=parent)

    async def get(self, handle: ResourceHandle) -> ResourceState:
        path = _path(handle)
        sb = self._servicebus
        kind = handle.kind
        if kind == ResourceKind.RESOURCE_GROUP:
            model = await self._resources.resource_groups.get(path[0])
        elif kind == ResourceKind.NAMESPACE:
            model = await sb.namespaces.get(path[0], path[1])
        elif kind == ResourceKind.TOPIC:
            model = await sb.topics.get(path[0], path[1], path[2])
        elif kind == ResourceKind.SUBSCRIPTION:
            model = await sb.subscriptions.get(path[0], path[1], path[2], path[3])
        elif kind == ResourceKind.NAMESPACE_AUTHORIZATION_RULE:
            model = await sb.namespaces.get_authorization_rule(
                path[0], path[1], path[2]
            )
        else:
            model = await sb.topics.get_authorization_rule(
                path[0], path[1], path[2], path[3]
            )
        return _state(kind, model)

    def _pager(self, parent: ResourceHandle, kind: ResourceKind) -> Any:
        path = _path(parent)
        sb = self._servicebus
        pagers = {
            (ResourceKind.RESOURCE_GROUP, ResourceKind.NAMESPACE): (
                lambda: sb.namespaces.list_by_resource_group(path[0])
            ),
            (ResourceKind.NAMESPACE, ResourceKind.TOPIC): (
                lambda: sb.topics.list_by_namespace(path[0], path[1])
            ),
            (ResourceKind.NAMESPACE, ResourceKind.NAMESPACE_AUTHORIZATION_RULE): (
                lambda: sb.namespaces.list_authorization_rules(path[0], path[1])
            ),
            (ResourceKind.TOPIC, ResourceKind.SUBSCRIPTION): (
                lambda: sb.subscriptions.list_by_topic(path[0], path[1], path[2])
            ),
            (ResourceKind.TOPIC, ResourceKind.TOPIC_AUTHORIZATION_RULE): (
                lambda: sb.topics.list_authorization_rules(path[0], path[1], path[2])
            ),
        }
        factory = pagers.get((parent.kind, kind))
        if factory is None:
            msg = f"Cannot list {kind} under a {parent.kind}"
            raise ValueError(msg)
        return factory()

    async def list(
        self, parent: ResourceHandle, kind: ResourceKind
    ) -> AsyncIterator[ResourceState]:
        async for model in self._pager(parent, kind):
            yield _state(kind, model)

    async def delete(self, handle: ResourceHandle, *, wait: bool = True) -> None:
        path = _path(handle)
        sb = self._servicebus
        kind = handle.kind
        try:
            if kind == ResourceKind.RESOURCE_GROUP:
                poller = await self._resources.resource_groups.begin_delete(path[0])
                if wait:
                    await poller.result()
            elif kind == ResourceKind.NAMESPACE:
                poller = await sb.namespaces.begin_delete(path[0], path[1])
                if wait:
                    await poller.result()
            elif kind == ResourceKind.TOPIC:
                await sb.topics.delete(path[0], path[1], path[2])
            elif kind == ResourceKind.SUBSCRIPTION:
                await sb.subscriptions.delete(path[0], path[1], path[2], path[3])
            elif kind == ResourceKind.NAMESPACE_AUTHORIZATION_RULE:
                await sb.namespaces.delete_authorization_rule(path[0], path[1], path[2])
            else:
                await sb.topics.delete_authorization_rule(
                    path[0], path[1], path[2], path[3]
                )
        except ResourceNotFoundError:
            logger.info("azure.resource_already_deleted", kind=kind, name=handle.name)
            return
        logger.info("azure.resource_deleted", kind=kind, name=handle.name, waited=wait)

    async def get_secrets(self, handle: ResourceHandle) -> AccessKeys:
        if handle.kind not in RULE_KINDS:
            msg = f"{handle.kind} '{handle.name}' has no keys"
            raise ValueError(msg)
        path = _path(handle)
        if handle.kind == ResourceKind.NAMESPACE_AUTHORIZATION_RULE:
            keys = await self._servicebus.namespaces.list_keys(
                path[0], path[1], path[2]
            )
        else:
            keys = await self._servicebus.topics.list_keys(
                path[0], path[1], path[2], path[3]
            )
        return AccessKeys(
            key_name=keys.key_name or handle.name,
            primary_key=keys.primary_key or "",
            secondary_key=keys.secondary_key or "",
            primary_connection_string=keys.primary_connection_string or "",
            secondary_connection_string=keys.secondary_connection_string or "",
        )
