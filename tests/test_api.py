from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from convoflow.api import schemas
from convoflow.app import app
from convoflow.service.runtime import get_runtime

BILLING_WORKFLOW = {
    "id": "wf-billing",
    "name": "Billing triage",
    "nodes": [
        {"id": "classify", "type": "AI_CLASSIFY_INTENT", "config": {"intents": ["billing", "sales"]}},
        {"id": "billing", "type": "ACTION_MESSAGE", "config": {"message": "Our billing team can help."}},
        {"id": "sales", "type": "ACTION_MESSAGE", "config": {"message": "Sales will reach out."}},
    ],
    "edges": [
        {
            "source_node_id": "classify",
            "target_node_id": "billing",
            "condition": {"field": "intent", "operator": "equals", "value": "billing"},
        },
        {
            "source_node_id": "classify",
            "target_node_id": "sales",
            "condition": {"field": "intent", "operator": "equals", "value": "sales"},
        },
    ],
}

EMAIL_WORKFLOW = {
    "id": "wf-email",
    "nodes": [
        {
            "id": "ask",
            "type": "ACTION_WAIT_FOR_INPUT",
            "config": {"prompt": "What is your email?", "inputType": "email"},
        },
        {"id": "thanks", "type": "ACTION_MESSAGE", "config": {"message": "Thanks!"}},
    ],
    "edges": [{"source_node_id": "ask", "target_node_id": "thanks"}],
}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _drain(client):
    client.portal.call(get_runtime().workflow.drain)


def _assistant_messages(conversation_id):
    return [m.content for m in get_runtime().store.list_messages(conversation_id) if m.role == "assistant"]


def test_health_and_correlation_header(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["checks"]["backing_store"]["type"] == "MemoryCache"
    assert response.headers["X-Request-ID"] == "req-42"
    assert response.headers["Cache-Control"].startswith("no-store")


def test_billing_conversation_end_to_end(client):
    created = client.post("/v1/workflows", json=BILLING_WORKFLOW)
    assert created.status_code == 201
    assert created.json()["data"]["entry_node_id"] == "classify"

    started = client.post(
        "/v1/conversations/conv-1/workflow",
        json={"workflow_id": "wf-billing", "variables": {"lastUserMessage": "I have a billing question"}},
    )
    assert started.status_code == 202
    body = started.json()
    assert body["status"] == "ok"
    assert body["data"]["execution_id"]

    _drain(client)

    assert _assistant_messages("conv-1") == ["Our billing team can help."]
    state = client.get("/v1/conversations/conv-1/workflow")
    assert state.status_code == 404
    assert state.json()["error"]["code"] == "not_found"


def test_suspended_conversation_over_http(client):
    client.post("/v1/workflows", json=EMAIL_WORKFLOW)
    client.post("/v1/conversations/conv-2/workflow", json={"workflow_id": "wf-email"})
    _drain(client)

    state = client.get("/v1/conversations/conv-2/workflow")
    assert state.status_code == 200
    assert state.json()["data"]["waiting_for_input"] is True
    assert state.json()["data"]["expected_input_type"] == "email"
    assert client.get("/v1/workflow-executions").json()["data"] == {"conversation_ids": ["conv-2"]}

    rejected = client.post("/v1/conversations/conv-2/messages", json={"text": "no thanks"})
    assert rejected.json()["data"] == {
        "should_reply_directly": True,
        "reply_text": "Please enter a valid email address",
        "workflow_is_handling": True,
    }

    accepted = client.post("/v1/conversations/conv-2/messages", json={"text": "jane@example.com"})
    assert accepted.json()["data"]["workflow_is_handling"] is True
    assert _assistant_messages("conv-2") == ["What is your email?", "Thanks!"]
    assert client.get("/v1/conversations/conv-2/workflow").status_code == 404


def test_stop_and_inbound_without_workflow(client):
    client.post("/v1/workflows", json=EMAIL_WORKFLOW)
    client.post("/v1/conversations/conv-3/workflow", json={"workflow_id": "wf-email"})
    _drain(client)

    stopped = client.delete("/v1/conversations/conv-3/workflow")
    assert stopped.json()["data"] == {"conversation_id": "conv-3", "stopped": True}

    inbound = client.post("/v1/conversations/conv-3/messages", json={"text": "hello"})
    assert inbound.json()["data"] == {
        "should_reply_directly": False,
        "reply_text": None,
        "workflow_is_handling": False,
    }
    assert client.delete("/v1/conversations/conv-3/workflow").json()["data"]["stopped"] is False


def test_unknown_workflow_and_invalid_requests(client):
    missing = client.post("/v1/conversations/conv-4/workflow", json={"workflow_id": "nope"})
    assert missing.status_code == 404
    assert missing.json()["status"] == "error"
    assert missing.json()["error"]["code"] == "not_found"

    invalid = client.post("/v1/conversations/conv-4/messages", json={"message": "wrong field"})
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "validation_error"


def test_definition_errors_surface_as_422(client):
    cyclic = {
        "id": "wf-cycle",
        "nodes": [{"id": "a", "type": "ACTION_MESSAGE"}, {"id": "b", "type": "ACTION_MESSAGE"}],
        "edges": [
            {"source_node_id": "a", "target_node_id": "b"},
            {"source_node_id": "b", "target_node_id": "a"},
        ],
    }
    client.post("/v1/workflows", json=cyclic)

    response = client.post("/v1/conversations/conv-5/workflow", json={"workflow_id": "wf-cycle"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "workflow_definition_error"


def test_error_body_rejects_unknown_codes():
    with pytest.raises(ValidationError):
        schemas.ErrorBody(code="teapot", message="nope")


def test_variables_depth_is_bounded():
    nested: dict = {}
    cursor = nested
    for _ in range(schemas.MAX_JSON_DEPTH + 2):
        cursor["x"] = {}
        cursor = cursor["x"]
    with pytest.raises(ValidationError):
        schemas.InitializeWorkflowRequest(workflow_id="wf", variables=nested)


def test_workflow_registration_rejects_dangling_references(client):
    broken = {
        "id": "wf-broken",
        "nodes": [{"id": "a", "type": "ACTION_MESSAGE"}, {"id": "a", "type": "ACTION_MESSAGE"}],
    }
    duplicate = client.post("/v1/workflows", json=broken)
    assert duplicate.status_code == 400
    assert duplicate.json()["error"]["details"] == {"node_ids": ["a"]}

    dangling = client.post(
        "/v1/workflows",
        json={
            "id": "wf-broken",
            "nodes": [{"id": "a", "type": "ACTION_MESSAGE"}],
            "edges": [{"source_node_id": "a", "target_node_id": "ghost"}],
        },
    )
    assert dangling.status_code == 400
    assert dangling.json()["error"]["code"] == "validation_error"
    assert dangling.json()["error"]["details"] == {"node_ids": ["ghost"]}


def test_envelope_request_id_matches_correlation_header(client):
    response = client.get("/v1/workflow-executions", headers={"X-Request-ID": "req-7"})

    assert response.json()["request_id"] == "req-7"
    assert response.json()["data"] == {"conversation_ids": []}
