from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - lock_busy (409, retryable)
    - workflow_definition_error (422)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request payload is well-formed but semantically invalid (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LockBusyError(ConflictError):
    """Conversation lock could not be acquired; the caller may re-deliver."""
    error_code = "lock_busy"
    retryable = True

    def __init__(self, resource: str, *, attempts: int = 0) -> None:
        super().__init__(
            f"Failed to acquire lock for resource: {resource}",
            detail={"resource": resource, "attempts": attempts},
        )
        self.resource = resource
        self.attempts = attempts


class LockLostError(ConflictError):
    """The lock expired or changed hands while its holder was still working."""
    error_code = "lock_busy"
    retryable = True

    def __init__(self, resource: str) -> None:
        super().__init__(
            f"Lost lock for resource: {resource}", detail={"resource": resource}
        )
        self.resource = resource


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WorkflowDefinitionError(ServiceError):
    """The workflow graph itself is unusable (unknown node type, no entry node).

    Never retried: it describes a bad graph, not a runtime condition.
    """
    status_code = 422
    error_code = "workflow_definition_error"


class RunawayExecutionError(ServerError):
    """Loop guard tripped: too many visits, too many nodes, or too long."""
    error_code = "workflow_runaway"

    def __init__(self, reason: str, *, node_id: Optional[str] = None, detail: Optional[dict] = None) -> None:
        super().__init__(reason, detail={"node_id": node_id, **(detail or {})})
        self.reason = reason
        self.node_id = node_id


class NodeExecutionError(ServerError):
    """A node failed after its retry policy was exhausted."""
    error_code = "workflow_node_failed"

    def __init__(self, node_id: str, message: str, *, attempts: int = 1) -> None:
        super().__init__(
            f"node {node_id} failed after {attempts} attempt(s): {message}",
            detail={"node_id": node_id, "attempts": attempts, "error": message},
        )
        self.node_id = node_id
        self.attempts = attempts
        self.error = message


class EgressBlockedError(Exception):
    """Outbound request refused by the SSRF / egress policy."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "LockBusyError",
    "LockLostError",
    "ServerError",
    "WorkflowDefinitionError",
    "RunawayExecutionError",
    "NodeExecutionError",
    "EgressBlockedError",
]
