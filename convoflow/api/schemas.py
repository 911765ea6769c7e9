from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convoflow.logging import get_correlation_id

# Maximum nested JSON depth accepted in variables and node configs
MAX_JSON_DEPTH = 20
MAX_MESSAGE_LENGTH = 65536


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject payloads nested deeper than ``max_depth``."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "lock_busy",
    "workflow_definition_error",
    "workflow_runaway",
    "workflow_node_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class InitializeWorkflowRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workflow_id: str = Field(..., min_length=1, max_length=255)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("variables")
    @classmethod
    def _validate_variables(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class InitializeWorkflowResponse(BaseModel):
    conversation_id: str
    workflow_id: str
    execution_id: str


class InboundMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("metadata")
    @classmethod
    def _validate_metadata(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class InboundMessageResponse(BaseModel):
    should_reply_directly: bool
    reply_text: Optional[str] = None
    workflow_is_handling: bool = False


class WorkflowNodeIn(BaseModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None


class WorkflowEdgeIn(BaseModel):
    id: Optional[str] = None
    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    condition: Optional[Dict[str, Any]] = None
    label: Optional[str] = None


class WorkflowDefinitionRequest(BaseModel):
    """Workflow graph as submitted by an operator."""

    id: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = None
    is_active: bool = True
    start_node_ids: Optional[List[str]] = None
    nodes: List[WorkflowNodeIn] = Field(..., min_length=1, max_length=1000)
    edges: List[WorkflowEdgeIn] = Field(default_factory=list, max_length=5000)


class ExecutionStateResponse(BaseModel):
    conversation_id: str
    workflow_id: str
    execution_id: str
    current_node_id: Optional[str] = None
    status: str
    waiting_for_input: bool = False
    expected_input_type: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_visits: Dict[str, int] = Field(default_factory=dict)
    total_dispatches: int = 0
    started_at: str
    updated_at: str
