from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from coder_agent.api.main import create_app
from coder_agent.config.settings import Settings
from coder_agent.llm import EchoAgentModel
from coder_agent.storage.memory import InMemoryTaskStore


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app(
        store=InMemoryTaskStore(),
        model=EchoAgentModel(),
        settings_override=Settings(app_name="coder-agent-test"),
    )
    with TestClient(app) as test_client:
        yield test_client


def _message(text: str | None = None, *, data: dict[str, Any] | None = None, **fields: Any) -> dict:
    parts: list[dict[str, Any]] = []
    if text is not None:
        parts.append({"kind": "text", "text": text})
    if data is not None:
        parts.append({"kind": "data", "data": data})
    return {"message": {"role": "user", "parts": parts, **fields}}


def _events(response) -> list[dict[str, Any]]:
    return [
        json.loads(line[len("data: ") :])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


def _drain(client: TestClient) -> None:
    client.portal.call(client.app.state.handler.drain)


def test_health_and_agent_card(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "service": "coder-agent-test"}

    card = client.get("/.well-known/agent-card.json")
    assert card.status_code == 200
    assert card.json()["capabilities"]["streaming"] is True
    assert card.json()["skills"][0]["id"] == "code_generation"

    tools = client.get("/tools")
    assert "read_file" in tools.json()["tools"]


def test_send_message_streams_until_input_required(client: TestClient, workspace: Path) -> None:
    response = client.post(
        "/messages",
        json=_message(
            "hello",
            task_id="T1",
            context_id="C1",
            metadata={"coder_agent": {"workspace_path": str(workspace)}},
        ),
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response)
    assert events[0]["status"]["state"] == "working"
    texts = [
        part["text"]
        for event in events
        if event.get("agent_event") == "text-content"
        for part in event["status"]["message"]["parts"]
    ]
    assert texts == ["Echo: hello"]
    assert events[-1]["final"] is True
    assert events[-1]["status"]["state"] == "input-required"

    _drain(client)
    assert client.app.state.handler._queues == {}
    task = client.get("/tasks/T1")
    assert task.status_code == 200
    assert task.json()["status"]["state"] == "input-required"
    assert task.json()["persisted_state"]["agent_settings"]["workspace_path"] == str(workspace)

    history = client.get("/contexts/C1/history")
    assert [message["role"] for message in history.json()] == ["user", "agent"]


def test_new_task_without_settings_fails(client: TestClient) -> None:
    response = client.post("/messages", json=_message("hello", context_id="C1"))

    events = _events(response)
    assert len(events) == 1
    assert events[0]["status"]["state"] == "failed"
    assert events[0]["final"] is True


def test_tool_approval_across_requests(client: TestClient, workspace: Path) -> None:
    first = client.post(
        "/messages",
        json=_message(
            '/write_file {"path": "hello.txt", "content": "hi"}',
            task_id="T1",
            context_id="C1",
            metadata={"coder_agent": {"workspace_path": str(workspace)}},
        ),
    )
    first_events = _events(first)
    confirmation = next(
        event for event in first_events if event.get("agent_event") == "tool-call-confirmation"
    )
    call = confirmation["status"]["message"]["parts"][0]["data"]["tool_call"]
    assert call["status"] == "awaiting_approval"
    assert first_events[-1]["status"]["state"] == "input-required"
    assert not (workspace / "hello.txt").exists()

    second = client.post(
        "/messages",
        json=_message(
            task_id="T1",
            context_id="C1",
            data={"call_id": call["request"]["call_id"], "outcome": "proceed_once"},
        ),
    )
    second_events = _events(second)

    assert (workspace / "hello.txt").read_text(encoding="utf-8") == "hi"
    assert any(event["kind"] == "artifact-update" for event in second_events)
    assert second_events[-1]["final"] is True
    assert second_events[-1]["status"]["state"] == "input-required"

    _drain(client)
    assert client.app.state.handler._queues == {}


def test_text_while_waiting_for_approval_gets_an_answer(client: TestClient, workspace: Path) -> None:
    first = client.post(
        "/messages",
        json=_message(
            '/write_file {"path": "hello.txt", "content": "hi"}',
            task_id="T1",
            context_id="C1",
            metadata={"coder_agent": {"workspace_path": str(workspace)}},
        ),
    )
    call_id = next(
        event["status"]["message"]["parts"][0]["data"]["tool_call"]["request"]["call_id"]
        for event in _events(first)
        if event.get("agent_event") == "tool-call-confirmation"
    )

    question = client.post("/messages", json=_message("are you there?", task_id="T1", context_id="C1"))

    question_events = _events(question)
    assert len(question_events) == 1
    assert question_events[0]["final"] is True
    assert question_events[0]["status"]["state"] == "input-required"
    assert not (workspace / "hello.txt").exists()
    assert "T1" in client.app.state.handler._queues

    approval = client.post(
        "/messages",
        json=_message(task_id="T1", context_id="C1", data={"call_id": call_id, "outcome": "proceed_once"}),
    )

    texts = [
        part["text"]
        for event in _events(approval)
        if event.get("agent_event") == "text-content"
        for part in event["status"]["message"]["parts"]
    ]
    assert "Echo: are you there?" in texts
    assert (workspace / "hello.txt").read_text(encoding="utf-8") == "hi"
    _drain(client)
    assert client.app.state.handler._queues == {}


def test_cancel_and_resubscribe(client: TestClient, workspace: Path) -> None:
    client.post(
        "/messages",
        json=_message(
            "hello",
            task_id="T1",
            context_id="C1",
            metadata={"coder_agent": {"workspace_path": str(workspace)}},
        ),
    )

    cancelled = client.post("/tasks/T1/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"]["state"] == "canceled"
    assert cancelled.json()["final"] is True

    again = client.post("/tasks/T1/cancel")
    assert again.json()["status"] == cancelled.json()["status"]

    resubscribed = client.get("/tasks/T1/subscribe")
    events = _events(resubscribed)
    assert len(events) == 1
    assert events[0]["status"]["state"] == "canceled"


def test_unknown_task_lookups(client: TestClient) -> None:
    assert client.get("/tasks/missing").status_code == 404
    assert client.get("/tasks/missing/subscribe").status_code == 404

    cancelled = client.post("/tasks/missing/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"]["state"] == "failed"
    assert "missing" in cancelled.json()["status"]["message"]["parts"][0]["text"]

    assert client.get("/contexts/none/history").json() == []


def test_task_is_reloaded_from_store_after_eviction(client: TestClient, workspace: Path) -> None:
    client.post(
        "/messages",
        json=_message(
            "first",
            task_id="T1",
            context_id="C1",
            metadata={"coder_agent": {"workspace_path": str(workspace)}},
        ),
    )
    _drain(client)
    assert client.app.state.executor.evict("T1") is True

    response = client.post("/messages", json=_message("second", task_id="T1", context_id="C1"))

    events = _events(response)
    assert events[-1]["status"]["state"] == "input-required"
    _drain(client)
    history = client.get("/contexts/C1/history").json()
    assert [message["parts"][0]["text"] for message in history] == [
        "first",
        "Echo: first",
        "second",
        "Echo: second",
    ]
