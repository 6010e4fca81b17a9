"""Error taxonomy for provisioning, rollback and authentication."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class GraphError(OrchestratorError):
    """Raised when a resource graph is malformed (duplicates, cycles, bad parents)."""


class AuthError(OrchestratorError):
    """Raised when credentials or the target subscription cannot be resolved.

    Always fatal and always raised before any resource is created, so there
    is nothing to roll back.
    """


class ProvisionError(OrchestratorError):
    """Raised when a create or update call fails or times out."""

    def __init__(self, message: str, *, resource: str, kind: str) -> None:
        super().__init__(message)
        self.resource = resource
        self.kind = kind


class RollbackError(OrchestratorError):
    """A delete that failed during cleanup.

    Never raised by the rollback manager; instances are collected and
    returned so the caller can log or inspect them.
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        kind: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.resource = resource
        self.kind = kind
        self.cause = cause
