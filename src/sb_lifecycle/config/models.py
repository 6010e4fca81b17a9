"""Pydantic configuration models for resource specs, scenarios and the orchestrator."""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Self

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


class ResourceKind(StrEnum):
    """Kinds of resource the orchestrator knows how to manage."""

    RESOURCE_GROUP = "resource_group"
    NAMESPACE = "namespace"
    TOPIC = "topic"
    SUBSCRIPTION = "subscription"
    NAMESPACE_AUTHORIZATION_RULE = "namespace_authorization_rule"
    TOPIC_AUTHORIZATION_RULE = "topic_authorization_rule"


# The one kind of parent each kind must hang off (None = top level).
PARENT_KINDS: dict[ResourceKind, ResourceKind | None] = {
    ResourceKind.RESOURCE_GROUP: None,
    ResourceKind.NAMESPACE: ResourceKind.RESOURCE_GROUP,
    ResourceKind.TOPIC: ResourceKind.NAMESPACE,
    ResourceKind.NAMESPACE_AUTHORIZATION_RULE: ResourceKind.NAMESPACE,
    ResourceKind.SUBSCRIPTION: ResourceKind.TOPIC,
    ResourceKind.TOPIC_AUTHORIZATION_RULE: ResourceKind.TOPIC,
}

RULE_KINDS = frozenset(
    {
        ResourceKind.NAMESPACE_AUTHORIZATION_RULE,
        ResourceKind.TOPIC_AUTHORIZATION_RULE,
    }
)

# Kind of authorization rule owned by each rule-bearing parent kind.
RULE_KIND_FOR_PARENT: dict[ResourceKind, ResourceKind] = {
    ResourceKind.NAMESPACE: ResourceKind.NAMESPACE_AUTHORIZATION_RULE,
    ResourceKind.TOPIC: ResourceKind.TOPIC_AUTHORIZATION_RULE,
}


class AccessRight(StrEnum):
    """Rights an authorization rule can grant."""

    LISTEN = "Listen"
    SEND = "Send"
    MANAGE = "Manage"


class NamespaceSku(StrEnum):
    """Service Bus namespace pricing tiers."""

    BASIC = "Basic"
    STANDARD = "Standard"
    PREMIUM = "Premium"


class Backend(StrEnum):
    """Cloud Resource API implementations."""

    AZURE = "azure"
    MEMORY = "memory"


# -- Per-kind options ----------------------------------------------------------
# Field names match the keyword arguments of the management SDK models, and
# None always means "leave it to the service default".


class ResourceGroupOptions(BaseModel, extra="forbid"):
    """Options for a resource group."""

    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class NamespaceOptions(BaseModel, extra="forbid"):
    """Options for a Service Bus namespace."""

    sku: NamespaceSku = NamespaceSku.STANDARD
    # Messaging units; only meaningful for Premium.
    capacity: int | None = Field(default=None, ge=1)
    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_capacity_tier(self) -> Self:
        if self.capacity is not None and self.sku != NamespaceSku.PREMIUM:
            msg = f"capacity can only be set for the Premium sku, not '{self.sku}'"
            raise ValueError(msg)
        return self


class TopicOptions(BaseModel, extra="forbid"):
    """Options for a topic."""

    max_size_in_megabytes: int | None = Field(default=None, ge=1)
    default_message_time_to_live: timedelta | None = None
    auto_delete_on_idle: timedelta | None = None
    enable_partitioning: bool | None = None
    requires_duplicate_detection: bool | None = None
    duplicate_detection_history_time_window: timedelta | None = None
    enable_batched_operations: bool | None = None
    enable_express: bool | None = None
    support_ordering: bool | None = None


class SubscriptionOptions(BaseModel, extra="forbid"):
    """Options for a topic subscription."""

    requires_session: bool | None = None
    default_message_time_to_live: timedelta | None = None
    lock_duration: timedelta | None = None
    max_delivery_count: int | None = Field(default=None, ge=1)
    dead_lettering_on_message_expiration: bool | None = None
    dead_lettering_on_filter_evaluation_exceptions: bool | None = None
    auto_delete_on_idle: timedelta | None = None
    enable_batched_operations: bool | None = None


class AuthorizationRuleOptions(BaseModel, extra="forbid"):
    """Options for a namespace or topic authorization rule."""

    rights: list[AccessRight] = Field(min_length=1)

    @field_validator("rights")
    @classmethod
    def validate_rights(cls, v: list[AccessRight]) -> list[AccessRight]:
        """Drop duplicates and enforce that Manage implies Send and Listen."""
        rights = list(dict.fromkeys(v))
        if AccessRight.MANAGE in rights and not {
            AccessRight.SEND,
            AccessRight.LISTEN,
        }.issubset(rights):
            msg = "the Manage right requires both Send and Listen"
            raise ValueError(msg)
        return rights


OPTIONS_MODELS: dict[ResourceKind, type[BaseModel]] = {
    ResourceKind.RESOURCE_GROUP: ResourceGroupOptions,
    ResourceKind.NAMESPACE: NamespaceOptions,
    ResourceKind.TOPIC: TopicOptions,
    ResourceKind.SUBSCRIPTION: SubscriptionOptions,
    ResourceKind.NAMESPACE_AUTHORIZATION_RULE: AuthorizationRuleOptions,
    ResourceKind.TOPIC_AUTHORIZATION_RULE: AuthorizationRuleOptions,
}


def parse_options(kind: ResourceKind, options: dict[str, Any]) -> BaseModel:
    """Validate raw *options* against the options model for *kind*."""
    return OPTIONS_MODELS[kind].model_validate(options)


# -- Resource specs ------------------------------------------------------------

ResourceName = Annotated[str, Field(min_length=1, max_length=260)]


class ResourceSpec(BaseModel, frozen=True, extra="forbid"):
    """Declarative description of one resource.

    ``parent`` is the name of another spec in the same graph; the parent's
    kind must be the one listed in ``PARENT_KINDS``.
    """

    kind: ResourceKind
    name: ResourceName
    parent: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_parent_and_options(self) -> Self:
        expected = PARENT_KINDS[self.kind]
        if expected is None and self.parent is not None:
            msg = f"{self.kind} '{self.name}' cannot have a parent"
            raise ValueError(msg)
        if expected is not None and self.parent is None:
            msg = f"{self.kind} '{self.name}' requires a parent {expected}"
            raise ValueError(msg)
        parse_options(self.kind, self.options)
        return self

    def typed_options(self) -> Any:
        """Return the options parsed into the kind-specific model."""
        return parse_options(self.kind, self.options)


class RuleSpec(BaseModel, extra="forbid"):
    """A named authorization rule to add during an update."""

    name: ResourceName
    rights: list[AccessRight]

    @field_validator("rights")
    @classmethod
    def validate_rights(cls, v: list[AccessRight]) -> list[AccessRight]:
        return AuthorizationRuleOptions(rights=v).rights


class UpdateSpec(BaseModel, extra="forbid"):
    """A configuration delta against an already-provisioned resource.

    ``properties`` replaces option values on the target itself, while
    ``remove_rules`` / ``add_rules`` act on its authorization-rule
    sub-collection as independent delete/create calls.
    """

    target: str
    properties: dict[str, Any] = Field(default_factory=dict)
    remove_rules: list[str] = Field(default_factory=list)
    add_rules: list[RuleSpec] = Field(default_factory=list)


class ScenarioConfig(BaseModel, extra="forbid"):
    """One orchestration run: what to create, change, inspect and delete."""

    scenario_id: str
    # Append a random suffix to group/namespace/topic/subscription names.
    randomize_names: bool = False
    resources: list[ResourceSpec] = Field(min_length=1)
    updates: list[UpdateSpec] = Field(default_factory=list)
    # Authorization-rule specs whose keys are fetched and reported.
    show_keys_for: list[str] = Field(default_factory=list)
    # Report namespace rules and the keys of the first one.
    show_namespace_keys: bool = True
    # Resources deleted explicitly before teardown, in this order.
    deletions: list[str] = Field(default_factory=list)
    keep_resources: bool = False

    @model_validator(mode="after")
    def check_references(self) -> Self:
        """Ensure updates, key lookups and deletions name declared resources."""
        by_name = {spec.name: spec for spec in self.resources}
        for update in self.updates:
            target = by_name.get(update.target)
            if target is None:
                msg = f"update target '{update.target}' is not a declared resource"
                raise ValueError(msg)
            if update.properties:
                merged = {**target.options, **update.properties}
                parse_options(target.kind, merged)
            if (update.remove_rules or update.add_rules) and (
                target.kind not in RULE_KIND_FOR_PARENT
            ):
                msg = (
                    f"{target.kind} '{target.name}' has no authorization rules "
                    f"to add or remove"
                )
                raise ValueError(msg)
        for name in self.show_keys_for:
            spec = by_name.get(name)
            if spec is None or spec.kind not in RULE_KINDS:
                msg = f"show_keys_for entry '{name}' is not a declared authorization rule"
                raise ValueError(msg)
        for name in self.deletions:
            if name not in by_name:
                msg = f"deletion '{name}' is not a declared resource"
                raise ValueError(msg)
        return self


# -- Orchestrator --------------------------------------------------------------


class AzureConfig(BaseModel):
    """Credential and subscription settings for the Azure backend."""

    subscription_id: str | None = None
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: SecretStr | None = None
    auth_file: Path | None = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        # ${VAR:-} in YAML resolves to "" when unset
        if isinstance(v, str) and not v.strip():
            return None
        return v


class RollbackConfig(BaseModel):
    """Teardown behaviour."""

    enabled: bool = True
    # Only delete resource groups and let the cascade remove their contents.
    cascade_only: bool = False
    wait_for_resource_group: bool = False


class RetryConfig(BaseModel):
    """Retry / backoff for the pre-flight readiness probe."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=30.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)


class OrchestratorConfig(BaseModel):
    """Orchestrator configuration: backend, region, timeouts and teardown."""

    backend: Backend = Backend.AZURE
    region: str = "westus"
    operation_timeout_seconds: float = Field(default=600.0, gt=0)
    # Creations in flight at once within one graph level.
    concurrency: int = Field(default=1, ge=1)
    reveal_secrets: bool = False
    azure: AzureConfig = AzureConfig()
    rollback: RollbackConfig = RollbackConfig()
    retry: RetryConfig = RetryConfig()
