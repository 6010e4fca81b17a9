"""Credential and subscription resolution for the Azure backend."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential

from sb_lifecycle.config.models import AzureConfig
from sb_lifecycle.errors import AuthError

logger = structlog.get_logger()

# Keys of an SDK auth file (``az ad sp create-for-rbac --sdk-auth``).
_AUTH_FILE_KEYS = {
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "tenantId": "tenant_id",
    "subscriptionId": "subscription_id",
}


@dataclass
class AzureIdentity:
    credential: Any  # azure.core.credentials_async.AsyncTokenCredential
    subscription_id: str
    source: str


def read_auth_file(path: str | Path) -> dict[str, str]:
    """Parse an SDK auth file into ``AzureConfig`` field names."""
    p = Path(path)
    if not p.exists():
        msg = f"Auth file not found: {p}"
        raise AuthError(msg)
    try:
        data = json.loads(p.read_text())
    except json.JSONDecodeError as exc:
        msg = f"Auth file {p} is not valid JSON: {exc}"
        raise AuthError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Auth file {p} must contain a JSON object"
        raise AuthError(msg)
    return {
        field: str(data[key])
        for key, field in _AUTH_FILE_KEYS.items()
        if data.get(key)
    }


def resolve_identity(config: AzureConfig) -> AzureIdentity:
    """Build a credential for *config*; fail before anything is created.

    Explicit settings (env vars) win over the auth file. A complete service
    principal gives a ClientSecretCredential; no principal at all falls back
    to DefaultAzureCredential (CLI login, managed identity...).
    """
    values: dict[str, str | None] = {}
    source = "environment"
    if config.auth_file is not None:
        values.update(read_auth_file(config.auth_file))
        source = str(config.auth_file)

    explicit = {
        "subscription_id": config.subscription_id,
        "tenant_id": config.tenant_id,
        "client_id": config.client_id,
        "client_secret": (
            config.client_secret.get_secret_value() if config.client_secret else None
        ),
    }
    values.update({k: v for k, v in explicit.items() if v})

    subscription_id = values.get("subscription_id")
    if not subscription_id:
        msg = (
            "No Azure subscription configured: set SUBSCRIPTION_ID "
            "or point AZURE_AUTH_LOCATION at an SDK auth file"
        )
        raise AuthError(msg)

    principal = [values.get(k) for k in ("tenant_id", "client_id", "client_secret")]
    if all(principal):
        tenant_id, client_id, client_secret = principal
        assert tenant_id and client_id and client_secret
        credential: Any = ClientSecretCredential(tenant_id, client_id, client_secret)
        logger.info(
            "auth.service_principal",
            client_id=client_id,
            tenant_id=tenant_id,
            source=source,
        )
    elif any(principal):
        msg = (
            "Incomplete service principal: CLIENT_ID, CLIENT_SECRET and "
            "TENANT_ID must all be set"
        )
        raise AuthError(msg)
    else:
        credential = DefaultAzureCredential()
        source = "default-credential-chain"
        logger.info("auth.default_credential")

    return AzureIdentity(
        credential=credential, subscription_id=subscription_id, source=source
    )
