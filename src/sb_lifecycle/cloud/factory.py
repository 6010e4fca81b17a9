"""Backend factory: maps Backend to a concrete CloudResourceAPI."""

from __future__ import annotations

from sb_lifecycle.cloud.base import CloudResourceAPI
from sb_lifecycle.config.models import Backend, OrchestratorConfig


def create_api(config: OrchestratorConfig) -> CloudResourceAPI:
    """Create the Cloud Resource API for the configured backend.

    Credential resolution happens here for Azure, so an AuthError surfaces
    before the orchestrator touches anything.
    """
    if config.backend == Backend.MEMORY:
        from sb_lifecycle.cloud.memory import InMemoryCloudAPI

        return InMemoryCloudAPI(region=config.region)

    if config.backend == Backend.AZURE:
        from sb_lifecycle.cloud.azure import AzureServiceBusAPI

        return AzureServiceBusAPI.from_config(config)

    msg = f"Unknown backend: {config.backend}"
    raise ValueError(msg)
