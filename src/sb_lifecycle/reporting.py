"""Human-readable rendering of fetched resource state.

Pure functions: nothing here talks to a backend or prints, and nothing in
provisioning or teardown depends on them.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sb_lifecycle.cloud.base import AccessKeys, ResourceState
from sb_lifecycle.config.models import ResourceKind

_SAS_KEY = re.compile(r"(SharedAccessKey=)[^;]+")


def _fmt(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(_fmt(v) for v in value)
    return str(value)


def _line(label: str, value: Any = None, *, indent: int = 1) -> str:
    return "\t" * indent + f"{label}: {_fmt(value)}"


def _segment(resource_id: str, key: str) -> str | None:
    """Value following *key* in an ARM resource id (case-insensitive)."""
    parts = resource_id.strip("/").split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == key.lower():
            return parts[i + 1]
    return None


def _count(props: dict[str, Any], name: str) -> Any:
    details = props.get("count_details") or {}
    return details.get(name, 0)


def mask_secret(secret: str) -> str:
    if len(secret) <= 4:
        return "****"
    return secret[:4] + "*" * 8


def mask_connection_string(conn: str) -> str:
    return _SAS_KEY.sub(r"\1********", conn)


def format_resource_group(state: ResourceState) -> str:
    props = state.properties
    return "\n".join(
        [
            f"Resource group: {state.resource_id}",
            _line("Name", state.name),
            _line("Location", props.get("location")),
            _line("ProvisioningState", props.get("provisioning_state")),
        ]
    )


def format_namespace(state: ResourceState) -> str:
    props = state.properties
    sku = props.get("sku") or {}
    endpoint = props.get("service_bus_endpoint") or ""
    fqdn = endpoint.removeprefix("https://").split(":")[0].rstrip("/")
    return "\n".join(
        [
            f"Service bus Namespace: {state.resource_id}",
            _line("Name", state.name),
            _line("Region", props.get("location")),
            _line("ResourceGroupName", _segment(state.resource_id, "resourceGroups")),
            _line("CreatedAt", props.get("created_at")),
            _line("UpdatedAt", props.get("updated_at")),
            _line("DnsLabel", state.name),
            _line("FQDN", fqdn),
            _line("Sku"),
            _line("Capacity", sku.get("capacity"), indent=2),
            _line("SkuName", sku.get("name"), indent=2),
            _line("Tier", sku.get("tier"), indent=2),
        ]
    )


def format_topic(state: ResourceState) -> str:
    props = state.properties
    return "\n".join(
        [
            f"Service bus topic: {state.resource_id}",
            _line("Name", state.name),
            _line("ResourceGroupName", _segment(state.resource_id, "resourceGroups")),
            _line("CreatedAt", props.get("created_at")),
            _line("UpdatedAt", props.get("updated_at")),
            _line("AccessedAt", props.get("accessed_at")),
            _line("ActiveMessageCount", _count(props, "active_message_count")),
            _line("CurrentSizeInBytes", props.get("size_in_bytes")),
            _line("DeadLetterMessageCount", _count(props, "dead_letter_message_count")),
            _line("DefaultMessageTtlDuration", props.get("default_message_time_to_live")),
            _line(
                "DuplicateMessageDetectionHistoryDuration",
                props.get("duplicate_detection_history_time_window"),
            ),
            _line("IsBatchedOperationsEnabled", props.get("enable_batched_operations")),
            _line("IsDuplicateDetectionEnabled", props.get("requires_duplicate_detection")),
            _line("IsExpressEnabled", props.get("enable_express")),
            _line("IsPartitioningEnabled", props.get("enable_partitioning")),
            _line("DeleteOnIdleDuration", props.get("auto_delete_on_idle")),
            _line("MaxSizeInMB", props.get("max_size_in_megabytes")),
            _line("ScheduledMessageCount", _count(props, "scheduled_message_count")),
            _line("Status", props.get("status")),
            _line("TransferMessageCount", _count(props, "transfer_message_count")),
            _line("SubscriptionCount", props.get("subscription_count")),
            _line(
                "TransferDeadLetterMessageCount",
                _count(props, "transfer_dead_letter_message_count"),
            ),
        ]
    )


def format_subscription(state: ResourceState) -> str:
    props = state.properties
    return "\n".join(
        [
            f"Service bus subscription: {state.resource_id}",
            _line("Name", state.name),
            _line("ResourceGroupName", _segment(state.resource_id, "resourceGroups")),
            _line("CreatedAt", props.get("created_at")),
            _line("UpdatedAt", props.get("updated_at")),
            _line("AccessedAt", props.get("accessed_at")),
            _line("ActiveMessageCount", _count(props, "active_message_count")),
            _line("DeadLetterMessageCount", _count(props, "dead_letter_message_count")),
            _line("DefaultMessageTtlDuration", props.get("default_message_time_to_live")),
            _line("IsBatchedOperationsEnabled", props.get("enable_batched_operations")),
            _line("DeleteOnIdleDuration", props.get("auto_delete_on_idle")),
            _line("ScheduledMessageCount", _count(props, "scheduled_message_count")),
            _line("Status", props.get("status")),
            _line("TransferMessageCount", _count(props, "transfer_message_count")),
            _line(
                "IsDeadLetteringEnabledForExpiredMessages",
                props.get("dead_lettering_on_message_expiration"),
            ),
            _line("IsSessionEnabled", props.get("requires_session")),
            _line("LockDuration", props.get("lock_duration")),
            _line(
                "MaxDeliveryCountBeforeDeadLetteringMessage",
                props.get("max_delivery_count"),
            ),
            _line(
                "IsDeadLetteringEnabledForFilterEvaluationFailedMessages",
                props.get("dead_lettering_on_filter_evaluation_exceptions"),
            ),
            _line(
                "TransferDeadLetterMessageCount",
                _count(props, "transfer_dead_letter_message_count"),
            ),
        ]
    )


def format_authorization_rule(state: ResourceState) -> str:
    rights = list(state.properties.get("rights") or [])
    scope = "topic" if state.kind == ResourceKind.TOPIC_AUTHORIZATION_RULE else "namespace"
    lines = [
        f"Service bus {scope} authorization rule: {state.resource_id}",
        _line("Name", state.name),
        _line("ResourceGroupName", _segment(state.resource_id, "resourceGroups")),
        _line("Namespace Name", _segment(state.resource_id, "namespaces")),
    ]
    if state.kind == ResourceKind.TOPIC_AUTHORIZATION_RULE:
        lines.append(_line("Topic Name", _segment(state.resource_id, "topics")))
    lines.append(_line("Number of access rights", len(rights)))
    for right in rights:
        lines.append(_line("AccessRight", indent=2))
        lines.append(_line("Name", right, indent=3))
    return "\n".join(lines)


def format_keys(keys: AccessKeys, *, reveal_secrets: bool = False) -> str:
    if reveal_secrets:
        primary, secondary = keys.primary_key, keys.secondary_key
        primary_conn = keys.primary_connection_string
        secondary_conn = keys.secondary_connection_string
    else:
        primary, secondary = mask_secret(keys.primary_key), mask_secret(keys.secondary_key)
        primary_conn = mask_connection_string(keys.primary_connection_string)
        secondary_conn = mask_connection_string(keys.secondary_connection_string)
    return "\n".join(
        [
            f"Authorization keys: {keys.key_name}",
            _line("PrimaryKey", primary),
            _line("PrimaryConnectionString", primary_conn),
            _line("SecondaryKey", secondary),
            _line("SecondaryConnectionString", secondary_conn),
        ]
    )


_FORMATTERS: dict[ResourceKind, Callable[[ResourceState], str]] = {
    ResourceKind.RESOURCE_GROUP: format_resource_group,
    ResourceKind.NAMESPACE: format_namespace,
    ResourceKind.TOPIC: format_topic,
    ResourceKind.SUBSCRIPTION: format_subscription,
    ResourceKind.NAMESPACE_AUTHORIZATION_RULE: format_authorization_rule,
    ResourceKind.TOPIC_AUTHORIZATION_RULE: format_authorization_rule,
}


def format_state(state: ResourceState) -> str:
    """Render any resource state with the formatter for its kind."""
    return _FORMATTERS[state.kind](state)
