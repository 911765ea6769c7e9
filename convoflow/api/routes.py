from __future__ import annotations

from fastapi import APIRouter, Path

from convoflow.api.schemas import (
    Envelope,
    ExecutionStateResponse,
    InboundMessageRequest,
    InboundMessageResponse,
    InitializeWorkflowRequest,
    InitializeWorkflowResponse,
    WorkflowDefinitionRequest,
)
from convoflow.logging import get_logger
from convoflow.service.errors import NotFoundError, ValidationError
from convoflow.service.runtime import get_runtime
from convoflow.service.workflow import build_engine_summary

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _check_graph_references(body: WorkflowDefinitionRequest) -> None:
    node_ids = [node.id for node in body.nodes]
    duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
    if duplicates:
        raise ValidationError("duplicate node ids", detail={"node_ids": duplicates})
    known = set(node_ids)
    dangling = sorted(
        {
            ref
            for edge in body.edges
            for ref in (edge.source_node_id, edge.target_node_id)
            if ref not in known
        }
        | {ref for ref in body.start_node_ids or [] if ref not in known}
    )
    if dangling:
        raise ValidationError("graph references unknown nodes", detail={"node_ids": dangling})


@router.post("/workflows", response_model=Envelope, status_code=201, tags=["workflows"])
async def register_workflow(body: WorkflowDefinitionRequest):
    """Register or replace a workflow definition in the in-process store.

    Running executions keep the snapshot they started with.
    """
    _check_graph_references(body)
    runtime = get_runtime()
    workflow = runtime.store.save_workflow(body.model_dump())
    logger.info(
        "workflow_definition_saved",
        workflow_id=workflow.id,
        node_count=len(workflow.nodes),
        edge_count=len(workflow.edges),
        is_active=workflow.is_active,
    )
    return Envelope(
        status="ok",
        data={
            "id": workflow.id,
            "entry_node_id": workflow.entry_node_id(),
            "is_active": workflow.is_active,
        },
    )


@router.post(
    "/conversations/{conversation_id}/workflow",
    response_model=Envelope,
    status_code=202,
    tags=["executions"],
)
async def initialize_workflow(
    body: InitializeWorkflowRequest,
    conversation_id: str = Path(..., max_length=255, description="Conversation identifier"),
):
    """Start a workflow on a conversation; the first burst runs in the background."""
    runtime = get_runtime()
    if runtime.store.get_conversation(conversation_id) is None:
        runtime.store.create_conversation(conversation_id, tenant_id=runtime.settings.default_tenant_id)
    execution_id = await runtime.workflow.initialize(conversation_id, body.workflow_id, body.variables)
    return Envelope(
        status="ok",
        data=InitializeWorkflowResponse(
            conversation_id=conversation_id,
            workflow_id=body.workflow_id,
            execution_id=execution_id,
        ),
    )


@router.post("/conversations/{conversation_id}/messages", response_model=Envelope, tags=["executions"])
async def post_inbound_message(
    body: InboundMessageRequest,
    conversation_id: str = Path(..., max_length=255, description="Conversation identifier"),
):
    """Record a visitor message and hand it to the conversation's workflow, if any."""
    runtime = get_runtime()
    runtime.store.append_message(conversation_id, "user", body.text, meta=body.metadata)
    outcome = await runtime.workflow.handle_inbound_message(conversation_id, body.text, body.metadata)
    return Envelope(
        status="ok",
        data=InboundMessageResponse(
            should_reply_directly=outcome.should_reply_directly,
            reply_text=outcome.reply_text,
            workflow_is_handling=outcome.workflow_is_handling,
        ),
    )


@router.get("/conversations/{conversation_id}/workflow", response_model=Envelope, tags=["executions"])
async def get_workflow_state(
    conversation_id: str = Path(..., max_length=255, description="Conversation identifier"),
):
    runtime = get_runtime()
    context = await runtime.workflow.get_state(conversation_id)
    if context is None:
        raise NotFoundError(
            "no active workflow for conversation", detail={"conversation_id": conversation_id}
        )
    return Envelope(status="ok", data=ExecutionStateResponse(**build_engine_summary(context)))


@router.delete("/conversations/{conversation_id}/workflow", response_model=Envelope, tags=["executions"])
async def stop_workflow(
    conversation_id: str = Path(..., max_length=255, description="Conversation identifier"),
):
    runtime = get_runtime()
    removed = await runtime.workflow.stop(conversation_id)
    return Envelope(status="ok", data={"conversation_id": conversation_id, "stopped": removed})


@router.get("/workflow-executions", response_model=Envelope, tags=["executions"])
async def list_workflow_executions():
    runtime = get_runtime()
    conversation_ids = await runtime.workflow.list_active()
    return Envelope(status="ok", data={"conversation_ids": sorted(conversation_ids)})
