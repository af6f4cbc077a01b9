"""
Conductor API 测试

FastAPI TestClient against a Conductor wired with a scripted model client.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import ScriptedStreamClient, SleepRecorder, error_turn, text_turn

from conductor.app import create_app
from conductor.errors import FailureKind
from conductor.routes import router, set_conductor
from conductor.runtime import Conductor
from conductor.storage import InMemoryStore


def responder(call):
    if call.agent_id == "beta":
        return error_turn(FailureKind.AUTH_FAILURE, "invalid x-api-key")
    return text_turn(f"result from {call.agent_id}", session_id=f"sess_{call.agent_id}")


@pytest.fixture
def conductor(registry, directory):
    return Conductor(
        store=InMemoryStore(),
        directory=directory,
        registry=registry,
        client=ScriptedStreamClient(responder=responder),
        sleep=SleepRecorder(),
    )


@pytest.fixture
def client(conductor):
    with TestClient(create_app(conductor)) as test_client:
        yield test_client


class TestAgentEndpoints:
    """Agent 接口"""

    def test_post_message_and_wait(self, client):
        response = client.post(
            "/api/conductor/agents/alpha/messages",
            json={"content": "hello", "wait": True},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["position"] == 1
        assert data["run"]["status"] == "succeeded"
        assert data["run"]["output_text"] == "result from alpha"
        assert data["run"]["cursor"] == 1

    def test_post_message_unknown_agent(self, client):
        response = client.post("/api/conductor/agents/ghost/messages", json={"content": "hi"})
        assert response.status_code == 404

    def test_post_message_requires_content(self, client):
        response = client.post("/api/conductor/agents/alpha/messages", json={"content": ""})
        assert response.status_code == 422

    def test_failed_run_reported(self, client):
        response = client.post(
            "/api/conductor/agents/beta/messages",
            json={"content": "hello", "wait": True},
        )

        run = response.json()["run"]
        assert run["status"] == "failed"
        assert run["failure"]["kind"] == "auth_failure"
        assert run["failure"]["retryable"] is False

    def test_agent_status(self, client):
        client.post("/api/conductor/agents/alpha/messages", json={"content": "hello", "wait": True})

        response = client.get("/api/conductor/agents/alpha")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "idle"
        assert data["cursor"] == 1
        assert data["session_id"] == "sess_alpha"
        assert data["highest_position"] == 2
        assert data["last_run"]["status"] == "succeeded"

    def test_list_agents(self, client):
        agents = client.get("/api/conductor/agents").json()["agents"]

        assert [a["agent_id"] for a in agents] == ["alpha", "beta", "researcher", "writer"]
        assert all(a["state"] == "idle" for a in agents)

    def test_agent_status_unknown(self, client):
        assert client.get("/api/conductor/agents/ghost").status_code == 404


class TestTaskEndpoints:
    """任务接口"""

    def test_create_task_and_wait(self, client):
        response = client.post("/api/conductor/tasks", json={
            "objective": "Write a report",
            "subtasks": [
                {"objective": "Research", "agent_id": "alpha"},
                {"objective": "Review", "agent_id": "beta"},
            ],
            "wait": True,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "succeeded"
        assert len(data["result"]["caveats"]) == 1
        assert "auth_failure" in data["result"]["caveats"][0]

        tree = client.get(f"/api/conductor/tasks/{data['task_id']}").json()["tree"]
        assert [c["status"] for c in tree["children"]] == ["succeeded", "failed"]

    def test_subtask_needs_binding(self, client):
        response = client.post("/api/conductor/tasks", json={
            "objective": "x",
            "subtasks": [{"objective": "unbound"}],
        })
        assert response.status_code == 422

    def test_create_task_in_background(self, client):
        response = client.post("/api/conductor/tasks", json={
            "objective": "Answer directly",
            "agent_id": "alpha",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] in ("pending", "running", "succeeded")

    def test_unknown_task(self, client):
        assert client.get("/api/conductor/tasks/task_missing").status_code == 404
        assert client.post("/api/conductor/tasks/task_missing/cancel").status_code == 404

    def test_cancel_finished_task_cancels_nothing(self, client):
        created = client.post("/api/conductor/tasks", json={
            "objective": "Quick", "agent_id": "alpha", "wait": True,
        }).json()

        response = client.post(f"/api/conductor/tasks/{created['task_id']}/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] == []

    def test_stats(self, client):
        client.post("/api/conductor/agents/alpha/messages", json={"content": "hi", "wait": True})

        stats = client.get("/api/conductor/stats").json()

        assert stats["scheduler"]["runs"] == 1
        assert stats["loop"]["succeeded"] == 1
        assert "orchestrator" in stats


class TestStream:
    """WebSocket 流"""

    def test_text_deltas_forwarded(self, client):
        with client.websocket_connect("/api/conductor/agents/alpha/stream") as websocket:
            assert websocket.receive_json() == {"type": "subscribed", "agent_id": "alpha"}

            client.post("/api/conductor/agents/alpha/messages", json={"content": "hi", "wait": True})

            assert websocket.receive_json() == {
                "type": "text_delta",
                "agent_id": "alpha",
                "delta": "result from alpha",
            }


def test_unconfigured_runtime_returns_503():
    set_conductor(None)
    app = FastAPI()
    app.include_router(router)

    response = TestClient(app).get("/api/conductor/stats")

    assert response.status_code == 503


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
