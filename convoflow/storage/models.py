from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    """Closed set of node kinds the engine can dispatch."""

    # Triggers
    TRIGGER_WAIT = "TRIGGER_WAIT"
    TRIGGER_INACTIVITY = "TRIGGER_INACTIVITY"
    TRIGGER_MESSAGE = "TRIGGER_MESSAGE"
    TRIGGER_INTENT = "TRIGGER_INTENT"
    TRIGGER_USER_INPUT = "TRIGGER_USER_INPUT"
    # Conditions
    CONDITION_KEYWORD = "CONDITION_KEYWORD"
    CONDITION_REGEX = "CONDITION_REGEX"
    CONDITION_EQUALS = "CONDITION_EQUALS"
    CONDITION_CONTAINS = "CONDITION_CONTAINS"
    CONDITION_VARIABLE = "CONDITION_VARIABLE"
    CONDITION_SENTIMENT = "CONDITION_SENTIMENT"
    CONDITION_TIME = "CONDITION_TIME"
    CONDITION_COMPARE = "CONDITION_COMPARE"
    # Actions
    ACTION_MESSAGE = "ACTION_MESSAGE"
    ACTION_WAIT_FOR_INPUT = "ACTION_WAIT_FOR_INPUT"
    ACTION_VALIDATE_INPUT = "ACTION_VALIDATE_INPUT"
    ACTION_ASSIGN_HUMAN = "ACTION_ASSIGN_HUMAN"
    ACTION_SET_VARIABLE = "ACTION_SET_VARIABLE"
    ACTION_API_CALL = "ACTION_API_CALL"
    ACTION_EMAIL = "ACTION_EMAIL"
    ACTION_DELAY = "ACTION_DELAY"
    ACTION_END_CONVERSATION = "ACTION_END_CONVERSATION"
    # AI
    AI_RESPONSE = "AI_RESPONSE"
    AI_SEARCH_KB = "AI_SEARCH_KB"
    AI_CLASSIFY_INTENT = "AI_CLASSIFY_INTENT"
    AI_EXTRACT_INFO = "AI_EXTRACT_INFO"
    AI_VALIDATE_FORMAT = "AI_VALIDATE_FORMAT"
    AI_SUMMARIZE = "AI_SUMMARIZE"

    @classmethod
    def parse(cls, value: Any) -> Optional["NodeType"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class ExecutionStatus(str, Enum):
    INIT = "init"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Node:
    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    @property
    def node_type(self) -> Optional[NodeType]:
        return NodeType.parse(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "")),
            config=dict(data.get("config") or {}),
            label=data.get("label"),
        )


@dataclass
class EdgeCondition:
    field: Optional[str]
    operator: str = "equals"
    value: Any = None
    value2: Any = None
    negate: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EdgeCondition":
        return cls(
            field=data.get("field") or data.get("variable"),
            operator=str(data.get("operator") or "equals"),
            value=data.get("value"),
            value2=data.get("value2"),
            negate=bool(data.get("negate", False)),
        )


@dataclass
class Edge:
    id: str
    source_node_id: str
    target_node_id: str
    condition: Optional[EdgeCondition] = None
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        condition = data.get("condition")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            source_node_id=str(data.get("source_node_id") or data.get("sourceNodeId")),
            target_node_id=str(data.get("target_node_id") or data.get("targetNodeId")),
            condition=EdgeCondition.from_dict(condition) if condition else None,
            label=data.get("label"),
        )


@dataclass
class WorkflowDefinition:
    """Immutable-by-convention graph of typed nodes and directed edges."""

    id: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    start_node_ids: Optional[List[str]] = None
    is_active: bool = True
    name: Optional[str] = None

    def node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        """Outgoing edges of ``node_id`` in definition order."""
        return [edge for edge in self.edges if edge.source_node_id == node_id]

    def entry_node_id(self) -> Optional[str]:
        """Explicit start node if declared, else the first node with no incoming edge."""
        if self.start_node_ids:
            for candidate in self.start_node_ids:
                if self.node(candidate) is not None:
                    return candidate
            return None
        targets = {edge.target_node_id for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        start = data.get("start_node_ids", data.get("startNodeIds"))
        return cls(
            id=str(data["id"]),
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            start_node_ids=list(start) if start else None,
            is_active=bool(data.get("is_active", data.get("isActive", True))),
            name=data.get("name"),
        )


@dataclass
class ExecutionContext:
    """Persisted continuation of one conversation's workflow run.

    Carries the workflow snapshot so a burst can resume from the backing store
    alone, with no process-local state.
    """

    conversation_id: str
    workflow_id: str
    execution_id: str
    current_node_id: Optional[str]
    variables: Dict[str, Any] = field(default_factory=dict)
    waiting_for_input: bool = False
    expected_input_type: Optional[str] = None
    expected_input_validation: Optional[Dict[str, Any]] = None
    workflow: Optional[WorkflowDefinition] = None
    status: str = ExecutionStatus.RUNNING.value
    node_visits: Dict[str, int] = field(default_factory=dict)
    total_dispatches: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        conversation_id: str,
        workflow: WorkflowDefinition,
        entry_node_id: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionContext":
        return cls(
            conversation_id=conversation_id,
            workflow_id=workflow.id,
            execution_id=str(uuid.uuid4()),
            current_node_id=entry_node_id,
            variables=dict(variables or {}),
            workflow=workflow,
        )

    def merge_variables(self, data: Optional[Dict[str, Any]]) -> None:
        if data:
            self.variables.update(data)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["updated_at"] = self.updated_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        workflow = data.get("workflow")
        return cls(
            conversation_id=str(data["conversation_id"]),
            workflow_id=str(data["workflow_id"]),
            execution_id=str(data["execution_id"]),
            current_node_id=data.get("current_node_id"),
            variables=dict(data.get("variables") or {}),
            waiting_for_input=bool(data.get("waiting_for_input", False)),
            expected_input_type=data.get("expected_input_type"),
            expected_input_validation=data.get("expected_input_validation"),
            workflow=WorkflowDefinition.from_dict(workflow) if workflow else None,
            status=data.get("status") or ExecutionStatus.RUNNING.value,
            node_visits={k: int(v) for k, v in (data.get("node_visits") or {}).items()},
            total_dispatches=int(data.get("total_dispatches") or 0),
            started_at=_parse_ts(data.get("started_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return _utcnow()


@dataclass
class NodeExecutionResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    should_continue: bool = True
    waiting_for_input: bool = False

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None, *, should_continue: bool = True) -> "NodeExecutionResult":
        return cls(success=True, data=dict(data or {}), should_continue=should_continue)

    @classmethod
    def suspend(cls, data: Optional[Dict[str, Any]] = None) -> "NodeExecutionResult":
        return cls(success=True, data=dict(data or {}), waiting_for_input=True)

    @classmethod
    def failed(cls, error: str, *, should_continue: bool = False) -> "NodeExecutionResult":
        return cls(success=False, error=error, should_continue=should_continue)


@dataclass
class InboundMessageOutcome:
    should_reply_directly: bool
    reply_text: Optional[str] = None
    workflow_is_handling: bool = False


@dataclass
class Conversation:
    id: str
    tenant_id: Optional[str] = None
    status: str = "open"
    assigned_to: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None


@dataclass
class KnowledgeChunk:
    id: str
    content: str
    source: Optional[str] = None
    score: float = 0.0
    meta: Dict | None = None
