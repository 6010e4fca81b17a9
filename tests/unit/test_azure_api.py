"""Unit tests for AzureServiceBusAPI against mocked management clients."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.mgmt.resource.resources.models import ResourceGroup, ResourceGroupProperties
from azure.mgmt.servicebus.models import (
    SBAuthorizationRule,
    SBSubscription,
    SBTopic,
    SkuName,
    SkuTier,
)

from sb_lifecycle.cloud.auth import AzureIdentity
from sb_lifecycle.cloud.azure import AzureServiceBusAPI
from sb_lifecycle.cloud.base import ResourceHandle
from sb_lifecycle.config.models import (
    ResourceKind,
    RetryConfig,
    SubscriptionOptions,
)
from sb_lifecycle.errors import AuthError

RG_ID = "/subscriptions/sub/resourceGroups/rg"
NS_ID = f"{RG_ID}/providers/Microsoft.ServiceBus/namespaces/ns"


async def _aiter(items: list[Any]):
    for item in items:
        yield item


def _api(**kwargs: Any) -> tuple[AzureServiceBusAPI, MagicMock, MagicMock]:
    servicebus = MagicMock()
    resources = MagicMock()
    identity = AzureIdentity(credential=AsyncMock(), subscription_id="sub", source="test")
    api = AzureServiceBusAPI(
        identity,
        region="westeurope",
        servicebus_client=servicebus,
        resource_client=resources,
        **kwargs,
    )
    return api, servicebus, resources


def _handles() -> tuple[ResourceHandle, ResourceHandle, ResourceHandle]:
    rg = ResourceHandle(kind=ResourceKind.RESOURCE_GROUP, name="rg", resource_id=RG_ID)
    ns = ResourceHandle(kind=ResourceKind.NAMESPACE, name="ns", resource_id=NS_ID, parent=rg)
    topic = ResourceHandle(
        kind=ResourceKind.TOPIC, name="t1", resource_id=f"{NS_ID}/topics/t1", parent=ns
    )
    return rg, ns, topic


@pytest.mark.asyncio
class TestCreateOrUpdate:
    async def test_resource_group_uses_region(self):
        api, _, resources = _api()
        resources.resource_groups.create_or_update = AsyncMock(
            return_value=SimpleNamespace(id=RG_ID, name="rg")
        )
        handle = await api.create_or_update(ResourceKind.RESOURCE_GROUP, "rg", None, {})
        resources.resource_groups.create_or_update.assert_awaited_once_with(
            "rg", {"location": "westeurope", "tags": {}}
        )
        assert handle.resource_id == RG_ID
        assert handle.parent is None

    async def test_namespace_polls_to_completion(self):
        api, servicebus, _ = _api()
        rg, _, _ = _handles()
        poller = MagicMock()
        poller.result = AsyncMock(return_value=SimpleNamespace(id=NS_ID, name="ns"))
        servicebus.namespaces.begin_create_or_update = AsyncMock(return_value=poller)

        handle = await api.create_or_update(
            ResourceKind.NAMESPACE, "ns", rg, {"sku": "Premium", "capacity": 2}
        )

        poller.result.assert_awaited_once()
        args = servicebus.namespaces.begin_create_or_update.await_args.args
        assert args[:2] == ("rg", "ns")
        assert args[2].sku.name == "Premium"
        assert args[2].sku.capacity == 2
        assert args[2].location == "westeurope"
        assert handle.parent is rg

    async def test_subscription_options_passed_through(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        servicebus.subscriptions.create_or_update = AsyncMock(
            return_value=SimpleNamespace(id=f"{topic.resource_id}/subscriptions/s1", name="s1")
        )
        options = SubscriptionOptions(
            requires_session=True,
            default_message_time_to_live=timedelta(minutes=20),
            max_delivery_count=20,
        )
        await api.create_or_update(ResourceKind.SUBSCRIPTION, "s1", topic, options)

        args = servicebus.subscriptions.create_or_update.await_args.args
        assert args[:4] == ("rg", "ns", "t1", "s1")
        body = args[4]
        assert body.requires_session is True
        assert body.default_message_time_to_live == timedelta(minutes=20)
        assert body.max_delivery_count == 20
        assert body.lock_duration is None

    async def test_topic_rule_rights(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        servicebus.topics.create_or_update_authorization_rule = AsyncMock(
            return_value=SimpleNamespace(id=f"{topic.resource_id}/authorizationRules/r", name="r")
        )
        await api.create_or_update(
            ResourceKind.TOPIC_AUTHORIZATION_RULE, "r", topic, {"rights": ["Send"]}
        )
        args = servicebus.topics.create_or_update_authorization_rule.await_args.args
        assert args[:4] == ("rg", "ns", "t1", "r")
        assert args[4].rights == ["Send"]


@pytest.mark.asyncio
class TestReadAndDelete:
    async def test_get_flattens_resource_group_properties(self):
        api, _, resources = _api()
        rg, _, _ = _handles()
        model = ResourceGroup(location="westeurope", properties=ResourceGroupProperties())
        model.id, model.name = RG_ID, "rg"
        model.properties.provisioning_state = "Succeeded"
        resources.resource_groups.get = AsyncMock(return_value=model)

        state = await api.get(rg)
        assert state.name == "rg"
        assert state.properties["location"] == "westeurope"
        assert state.properties["provisioning_state"] == "Succeeded"
        assert "id" not in state.properties

    async def test_list_topic_rules(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        rule = SBAuthorizationRule(rights=["Listen"])
        rule.id, rule.name = f"{topic.resource_id}/authorizationRules/r", "r"
        servicebus.topics.list_authorization_rules = MagicMock(return_value=_aiter([rule]))

        states = [s async for s in api.list(topic, ResourceKind.TOPIC_AUTHORIZATION_RULE)]
        servicebus.topics.list_authorization_rules.assert_called_once_with("rg", "ns", "t1")
        assert [s.name for s in states] == ["r"]
        assert states[0].properties["rights"] == ["Listen"]

    async def test_list_rejects_unrelated_kinds(self):
        api, _, _ = _api()
        rg, _, _ = _handles()
        with pytest.raises(ValueError, match="Cannot list"):
            [s async for s in api.list(rg, ResourceKind.TOPIC)]

    async def test_get_topic_model(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        model = SBTopic(max_size_in_megabytes=1024, enable_partitioning=True)
        model.id, model.name = topic.resource_id, "t1"
        servicebus.topics.get = AsyncMock(return_value=model)
        state = await api.get(topic)
        assert state.properties["max_size_in_megabytes"] == 1024
        assert state.properties["enable_partitioning"] is True

    async def test_get_subscription_reads_configured_settings(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        model = SBSubscription(
            requires_session=True,
            max_delivery_count=20,
            default_message_time_to_live=timedelta(minutes=20),
            dead_lettering_on_message_expiration=True,
        )
        model.id, model.name = f"{topic.resource_id}/subscriptions/s1", "s1"
        servicebus.subscriptions.get = AsyncMock(return_value=model)
        s1 = ResourceHandle(
            kind=ResourceKind.SUBSCRIPTION, name="s1", resource_id=model.id, parent=topic
        )

        state = await api.get(s1)
        assert type(state.properties) is dict
        assert state.properties["requires_session"] is True
        assert state.properties["max_delivery_count"] == 20
        assert state.properties["default_message_time_to_live"] == timedelta(minutes=20)
        assert state.properties["dead_lettering_on_message_expiration"] is True
        assert "id" not in state.properties
        assert "name" not in state.properties

    async def test_get_namespace_builds_nested_dicts(self):
        api, servicebus, _ = _api()
        _, ns, _ = _handles()
        model = SimpleNamespace(
            id=NS_ID,
            name="ns",
            location="westeurope",
            sku=SimpleNamespace(name=SkuName.STANDARD, tier=SkuTier.STANDARD, capacity=None),
            status="Active",
            service_bus_endpoint="https://ns.servicebus.windows.net:443/",
            properties=None,
        )
        servicebus.namespaces.get = AsyncMock(return_value=model)

        state = await api.get(ns)
        assert state.properties["sku"] == {"name": "Standard", "tier": "Standard"}
        assert state.properties["status"] == "Active"
        assert state.properties["location"] == "westeurope"

    async def test_get_reads_values_from_properties_body(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        model = SimpleNamespace(
            id=topic.resource_id,
            name="t1",
            properties=SimpleNamespace(
                max_size_in_megabytes=2048,
                count_details=SimpleNamespace(active_message_count=3),
            ),
        )
        servicebus.topics.get = AsyncMock(return_value=model)

        state = await api.get(topic)
        assert state.properties["max_size_in_megabytes"] == 2048
        assert state.properties["count_details"] == {"active_message_count": 3}

    async def test_delete_missing_resource_is_not_an_error(self):
        api, servicebus, _ = _api()
        _, _, topic = _handles()
        servicebus.topics.delete = AsyncMock(side_effect=ResourceNotFoundError("gone"))
        await api.delete(topic)
        servicebus.topics.delete.assert_awaited_once_with("rg", "ns", "t1")

    async def test_resource_group_delete_without_wait(self):
        api, _, resources = _api()
        rg, _, _ = _handles()
        poller = MagicMock()
        poller.result = AsyncMock()
        resources.resource_groups.begin_delete = AsyncMock(return_value=poller)
        await api.delete(rg, wait=False)
        resources.resource_groups.begin_delete.assert_awaited_once_with("rg")
        poller.result.assert_not_awaited()

    async def test_namespace_delete_waits(self):
        api, servicebus, _ = _api()
        _, ns, _ = _handles()
        poller = MagicMock()
        poller.result = AsyncMock()
        servicebus.namespaces.begin_delete = AsyncMock(return_value=poller)
        await api.delete(ns)
        poller.result.assert_awaited_once()

    async def test_get_secrets(self):
        api, servicebus, _ = _api()
        _, ns, _ = _handles()
        rule = ResourceHandle(
            kind=ResourceKind.NAMESPACE_AUTHORIZATION_RULE,
            name="RootManageSharedAccessKey",
            resource_id=f"{NS_ID}/authorizationRules/RootManageSharedAccessKey",
            parent=ns,
        )
        servicebus.namespaces.list_keys = AsyncMock(
            return_value=SimpleNamespace(
                key_name="RootManageSharedAccessKey",
                primary_key="pk",
                secondary_key="sk",
                primary_connection_string="pcs",
                secondary_connection_string="scs",
            )
        )
        keys = await api.get_secrets(rule)
        servicebus.namespaces.list_keys.assert_awaited_once_with(
            "rg", "ns", "RootManageSharedAccessKey"
        )
        assert keys.primary_key == "pk"
        assert keys.secondary_connection_string == "scs"


@pytest.mark.asyncio
class TestReadiness:
    async def test_ready(self):
        api, _, resources = _api()
        resources.resource_groups.list = MagicMock(return_value=_aiter([]))
        await api.wait_until_ready()
        resources.resource_groups.list.assert_called_once_with(top=1)

    async def test_transient_errors_are_retried(self):
        retry = RetryConfig(max_attempts=3, initial_wait_seconds=0.001, max_wait_seconds=0.01)
        api, _, resources = _api(retry=retry)
        resources.resource_groups.list = MagicMock(
            side_effect=[ServiceRequestError("dns failure"), _aiter([])]
        )
        await api.wait_until_ready()
        assert resources.resource_groups.list.call_count == 2

    async def test_authentication_failure(self):
        api, _, resources = _api()
        resources.resource_groups.list = MagicMock(
            side_effect=ClientAuthenticationError("invalid client secret")
        )
        with pytest.raises(AuthError, match="authentication failed"):
            await api.wait_until_ready()
        assert resources.resource_groups.list.call_count == 1

    async def test_forbidden_subscription(self):
        api, _, resources = _api()
        err = HttpResponseError(message="AuthorizationFailed")
        err.status_code = 403
        resources.resource_groups.list = MagicMock(side_effect=err)
        with pytest.raises(AuthError, match="not accessible"):
            await api.wait_until_ready()

    async def test_close_releases_clients_and_credential(self):
        api, servicebus, resources = _api()
        servicebus.close = AsyncMock()
        resources.close = AsyncMock()
        await api.close()
        servicebus.close.assert_awaited_once()
        resources.close.assert_awaited_once()
        api._identity.credential.close.assert_awaited_once()
