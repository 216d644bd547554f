from __future__ import annotations

import json
from typing import Any

from fastapi.testclient import TestClient

from copilot_orchestrator.domain.models import Message
from copilot_orchestrator.orchestration.commands import TurnCommand

HEADERS = {"X-Tenant-Id": "tenant-a", "X-User-Id": "user-1"}


def _chat_body(text: str = "Who is ACME?", run_id: str | None = "run-1") -> dict[str, Any]:
    body: dict[str, Any] = {
        "messages": [{"id": "u1", "role": "user", "parts": [{"type": "text", "text": text}]}]
    }
    if run_id:
        body["id"] = run_id
    return body


def _events(raw: str) -> list[str]:
    return [block.removeprefix("data: ") for block in raw.split("\n\n") if block]


def test_health_reports_model_mode(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "service": "copilot-orchestrator",
        "llmMode": "custom",
    }


def test_tools_lists_descriptors(client: TestClient) -> None:
    response = client.get("/tools", headers={"X-Tenant-Id": "tenant-a"})

    tools = {tool["name"]: tool for tool in response.json()["tools"]}
    assert response.status_code == 200
    assert set(tools) == {"collect_inputs", "explode", "lookup_customer"}
    assert tools["collect_inputs"]["kind"] == "client_confirm"
    assert tools["lookup_customer"]["inputSchema"]["required"] == ["query"]


def test_chat_streams_then_replays(client: TestClient) -> None:
    headers = {**HEADERS, "X-Idempotency-Key": "key-1"}

    streamed = client.post("/copilot/chat", json=_chat_body(), headers=headers)

    events = _events(streamed.text)
    chunks = [json.loads(event) for event in events[:-1]]
    assert streamed.status_code == 200
    assert streamed.headers["content-type"].startswith("text/event-stream")
    assert streamed.headers["x-copilot-run-id"] == "run-1"
    assert events[-1] == "[DONE]"
    assert [chunk["type"] for chunk in chunks] == ["start", "text-delta", "finish"]
    assert chunks[1]["delta"] == "Done."
    assert chunks[2]["finishReason"] == "stop"

    replayed = client.post("/copilot/chat", json=_chat_body(), headers=headers)

    assert replayed.status_code == 200
    assert replayed.json()["runId"] == "run-1"
    assert replayed.json()["messageId"] == chunks[0]["messageId"]
    assert replayed.json()["outputText"] == "Done."
    assert replayed.headers["x-copilot-run-id"] == "run-1"


def test_reused_key_with_other_messages_conflicts(client: TestClient) -> None:
    headers = {**HEADERS, "X-Idempotency-Key": "key-1"}
    client.post("/copilot/chat", json=_chat_body("Who is ACME?"), headers=headers)

    response = client.post("/copilot/chat", json=_chat_body("Who is Globex?"), headers=headers)

    assert response.status_code == 409
    assert response.json()["error"] == "idempotency_key_mismatch"


def test_in_flight_duplicate_gets_retry_after(client: TestClient) -> None:
    container = client.app.state.container
    headers = {**HEADERS, "X-Idempotency-Key": "key-1"}

    async def _hold_key() -> None:
        command = TurnCommand(
            tenant_id="tenant-a",
            user_id="user-1",
            idempotency_key="key-1",
            run_id="run-1",
            messages=[Message.model_validate(_chat_body()["messages"][0])],
        )
        await container.orchestrator.gate(command)

    client.portal.call(_hold_key)
    response = client.post("/copilot/chat", json=_chat_body(), headers=headers)

    assert response.status_code == 202
    assert response.json() == {"status": "in_progress", "retryAfterMs": 1000}
    assert response.headers["retry-after"] == "1"


def test_failed_turn_streams_error_then_replays_failure(client: TestClient) -> None:
    headers = {**HEADERS, "X-Idempotency-Key": "key-1"}
    body = _chat_body()
    client.app.state.container.orchestrator.model.tool_calls = [("explode", {"query": "ACME"})]

    streamed = client.post("/copilot/chat", json=body, headers=headers)
    replayed = client.post("/copilot/chat", json=body, headers=headers)

    events = _events(streamed.text)
    assert json.loads(events[-2]) == {"type": "error", "errorText": "Copilot request failed"}
    assert events[-1] == "[DONE]"
    assert replayed.status_code == 500
    assert replayed.json() == {
        "error": "copilot_turn_failed",
        "message": "Copilot request failed",
        "runId": "run-1",
    }


def test_failed_replay_without_run_id_points_at_failed_run(client: TestClient) -> None:
    headers = {**HEADERS, "X-Idempotency-Key": "key-2"}
    body = _chat_body(run_id=None)
    client.app.state.container.orchestrator.model.tool_calls = [("explode", {"query": "ACME"})]

    streamed = client.post("/copilot/chat", json=body, headers=headers)
    replayed = client.post("/copilot/chat", json=body, headers=headers)

    run_id = streamed.headers["x-copilot-run-id"]
    assert replayed.status_code == 500
    assert replayed.headers["x-copilot-run-id"] == run_id
    assert replayed.json()["runId"] == run_id


def test_chat_requires_idempotency_key(client: TestClient) -> None:
    response = client.post("/copilot/chat", json=_chat_body(), headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_chat_requires_identity_headers(client: TestClient) -> None:
    response = client.post(
        "/copilot/chat", json=_chat_body(), headers={"X-Idempotency-Key": "key-1"}
    )

    assert response.status_code == 400


def test_chat_rejects_empty_messages(client: TestClient) -> None:
    response = client.post(
        "/copilot/chat",
        json={"messages": []},
        headers={**HEADERS, "X-Idempotency-Key": "key-1"},
    )

    assert response.status_code == 422


def test_run_lifecycle_endpoints(client: TestClient) -> None:
    created = client.post("/copilot/runs", json={"id": "run-7"}, headers=HEADERS)
    assert created.status_code == 201
    assert created.json()["id"] == "run-7"
    assert created.json()["status"] == "running"

    streamed = client.post(
        "/copilot/runs/run-7/messages",
        json=_chat_body(run_id=None),
        headers={**HEADERS, "X-Idempotency-Key": "key-7"},
    )
    assert streamed.headers["x-copilot-run-id"] == "run-7"

    fetched = client.get("/copilot/runs/run-7", headers=HEADERS)
    messages = client.get("/copilot/runs/run-7/messages", headers=HEADERS)

    assert fetched.json()["status"] == "completed"
    roles = [message["role"] for message in messages.json()["messages"]]
    assert roles == ["user", "assistant"]
    assert messages.json()["messages"][0]["parts"] == [{"type": "text", "text": "Who is ACME?"}]


def test_unknown_run_is_404(client: TestClient) -> None:
    response = client.get("/copilot/runs/missing", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["error"] == "run_not_found"


def test_run_id_of_other_tenant_is_forbidden(client: TestClient) -> None:
    client.post("/copilot/runs", json={"id": "run-9"}, headers=HEADERS)

    response = client.post(
        "/copilot/runs",
        json={"id": "run-9"},
        headers={"X-Tenant-Id": "tenant-b", "X-User-Id": "user-2"},
    )
    hidden = client.get(
        "/copilot/runs/run-9", headers={"X-Tenant-Id": "tenant-b", "X-User-Id": "user-2"}
    )

    assert response.status_code == 403
    assert response.json()["error"] == "tenant_mismatch"
    assert hidden.status_code == 404
