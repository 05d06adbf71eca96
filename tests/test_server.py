"""Tests for the HTTP API, with the agent swapped in directly (no lifespan startup)."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from taskloop.engine import server
from taskloop.engine.agent import Tier

from conftest import build_loop, descriptor, final_turn, make_config, ScriptedModel, tool_turn


@pytest.fixture
def client():
    return TestClient(server.app)


@pytest.fixture
def install_agent(monkeypatch, registry):
    def install(*responses):
        agent = build_loop(ScriptedModel(responses), registry)
        monkeypatch.setattr(server, "agent", agent)
        return agent
    return install


def test_routes_report_not_ready_without_agent(client, monkeypatch):
    monkeypatch.setattr(server, "agent", None)
    assert client.get("/api/tools").status_code == 503
    assert client.post("/api/tasks", json={"request": "hi"}).status_code == 503
    assert client.get("/api/approvals").status_code == 503


def test_list_tools(client, install_agent):
    install_agent()
    body = client.get("/api/tools").json()
    assert body["count"] == 1
    assert body["tools"][0]["name"] == "echo"
    assert body["tools"][0]["permission_tier"] == "safe"


def test_non_streaming_task(client, install_agent):
    install_agent(
        tool_turn(("c1", "echo", {"text": "ping"})),
        final_turn("All done."),
    )
    body = client.post("/api/tasks", json={"request": "echo ping", "stream": False}).json()

    assert body["status"] == "completed"
    assert body["final_text"] == "All done."
    assert body["error"] is None
    types = [e["type"] for e in body["events"]]
    assert types[0] == "task_start"
    assert types[-1] == "task_complete"
    assert "tool_start" in types


def test_history_is_seeded(client, install_agent):
    agent = install_agent(final_turn("Still 4."))
    history = [{"role": "user", "content": "2+2?"}, {"role": "assistant", "content": "4"}]
    client.post("/api/tasks", json={"request": "and now?", "history": history, "stream": False})

    sent = agent.model.calls[0]["conversation"]
    assert [m.text for m in sent] == ["2+2?", "4", "and now?"]


def test_cancel_unknown_and_finished(client, install_agent):
    install_agent(final_turn("done"))
    assert client.post("/api/tasks/nope/cancel").status_code == 404

    task_id = client.post("/api/tasks", json={"request": "x", "stream": False}).json()["task_id"]
    assert client.post(f"/api/tasks/{task_id}/cancel").status_code == 409


def test_resolve_unknown_approval(client, install_agent):
    install_agent()
    resp = client.post("/api/approvals/missing", json={"approved": True})
    assert resp.status_code == 404
    assert client.get("/api/approvals").json() == {"count": 0, "pending": []}


def test_audit_entries(client, install_agent, registry):
    registry.register(descriptor("write_file", lambda args: "ok", Tier.SENSITIVE))
    agent = install_agent()
    agent.gate.classify("write_file", {"path": "a.txt", "token": "abc"})

    body = client.get("/api/audit", params={"limit": 5}).json()
    assert body["count"] == 1
    assert body["entries"][0]["params"]["token"] == "***REDACTED***"


@pytest.mark.asyncio
async def test_stream_formats_sse_items(monkeypatch, registry):
    agent = build_loop(ScriptedModel([final_turn("hello")]), registry)
    monkeypatch.setattr(server, "agent", agent)
    task = agent.create_task("say hello")

    items = [item async for item in server._stream_task_events(task)]

    assert items[0]["event"] == "task_start"
    assert items[-1]["event"] == "task_complete"
    assert [int(i["id"]) for i in items] == sorted(int(i["id"]) for i in items)
    assert json.loads(items[-1]["data"])["final_text"] == "hello"


@pytest.mark.parametrize("healthy, status", [(True, "ok"), (False, "degraded")])
def test_status(client, install_agent, monkeypatch, healthy, status):
    install_agent()
    mock_client = MagicMock()
    mock_client.health_check = AsyncMock(return_value=healthy)
    monkeypatch.setattr(server, "model_client", mock_client)
    monkeypatch.setattr(server, "get_config", lambda: make_config(provider="anthropic", model="claude-test"))

    body = client.get("/api/status").json()

    assert body["status"] == status
    assert body["provider"] == {
        "id": "anthropic", "label": "Anthropic (Claude)", "model": "claude-test", "connected": healthy,
    }
    assert body["agent"]["tools"] == 1
    mock_client.health_check.assert_awaited_once()
