"""Protocol conformance tests: every backend satisfies CloudResourceAPI."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from sb_lifecycle.cloud.auth import AzureIdentity
from sb_lifecycle.cloud.azure import AzureServiceBusAPI
from sb_lifecycle.cloud.base import CloudResourceAPI
from sb_lifecycle.cloud.factory import create_api
from sb_lifecycle.cloud.memory import InMemoryCloudAPI
from sb_lifecycle.config.models import AzureConfig, Backend, OrchestratorConfig


class TestProtocolConformance:
    def test_memory_backend_satisfies_protocol(self):
        assert isinstance(InMemoryCloudAPI(), CloudResourceAPI)

    def test_azure_backend_satisfies_protocol(self):
        identity = AzureIdentity(credential=AsyncMock(), subscription_id="sub", source="test")
        api = AzureServiceBusAPI(
            identity, servicebus_client=MagicMock(), resource_client=MagicMock()
        )
        assert isinstance(api, CloudResourceAPI)


class TestCreateApi:
    def test_memory(self):
        api = create_api(OrchestratorConfig(backend=Backend.MEMORY, region="eastus"))
        assert isinstance(api, InMemoryCloudAPI)

    def test_azure_resolves_identity(self):
        config = OrchestratorConfig(
            backend=Backend.AZURE,
            azure=AzureConfig(subscription_id="sub"),
        )
        with (
            patch("sb_lifecycle.cloud.auth.DefaultAzureCredential"),
            patch("sb_lifecycle.cloud.azure.ServiceBusManagementClient") as mock_sb,
            patch("sb_lifecycle.cloud.azure.ResourceManagementClient") as mock_rm,
        ):
            api = create_api(config)
        assert isinstance(api, AzureServiceBusAPI)
        assert mock_sb.call_args.args[1] == "sub"
        assert mock_rm.call_args.args[1] == "sub"
