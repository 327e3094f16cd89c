"""Tests for the daemon's HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from fakes import echo_manifest, write_echo_binary


@pytest.fixture
def client(data_dir, tmp_path, monkeypatch):
    manifest = tmp_path / "models.json"
    manifest.write_text(json.dumps(echo_manifest(write_echo_binary(tmp_path))), encoding="utf-8")
    monkeypatch.setenv("LLMS_CATALOG", str(manifest))

    from llm_sessions.app import app

    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["sessions"] == []


def test_list_models(client):
    response = client.get("/api/models")
    assert response.json() == {"models": ["LLaMA-v2"]}


def test_session_lifecycle(client):
    response = client.post("/api/sessions/LLaMA-v2/start")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Session started"
    assert body["status"]["state"] == "ready"

    response = client.post("/api/sessions/LLaMA-v2/start")
    assert response.json()["message"] == "Session already running"

    assert client.get("/api/sessions").json() == {"sessions": ["LLaMA-v2"]}

    response = client.post("/api/sessions/LLaMA-v2/query", json={"text": "hello", "query_id": "q-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "you said: hello"
    assert body["query_id"] == "q-1"
    assert body["truncated"] is False

    status = client.get("/api/sessions/LLaMA-v2").json()
    assert status["queries_served"] == 1
    assert status["pid"] is not None

    response = client.post("/api/sessions/LLaMA-v2/stop")
    assert response.status_code == 200
    assert response.json()["message"] == "Session stopped"
    assert response.json()["status"]["state"] == "terminated"

    response = client.post("/api/sessions/LLaMA-v2/query", json={"text": "hello"})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CHANNEL_CLOSED"

    response = client.post("/api/sessions/LLaMA-v2/stop")
    assert response.status_code == 200
    assert response.json()["message"] == "Session was not running"
    assert client.get("/api/sessions").json() == {"sessions": []}


def test_first_query_starts_session(client):
    response = client.post("/api/sessions/LLaMA-v2/query", json={"text": "hi"})
    assert response.status_code == 200
    assert response.json()["text"] == "you said: hi"
    assert client.get("/api/sessions").json() == {"sessions": ["LLaMA-v2"]}


def test_unknown_model(client):
    response = client.post("/api/sessions/GPT-5/query", json={"text": "hi"})
    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["code"] == "MODEL_NOT_FOUND"
    assert "LLaMA-v2" in detail["message"]

    assert client.post("/api/sessions/GPT-5/start").status_code == 404
    assert client.get("/api/sessions/GPT-5").status_code == 404


def test_crash_reported(client):
    client.post("/api/sessions/LLaMA-v2/start")
    response = client.post("/api/sessions/LLaMA-v2/query", json={"text": "crash"})
    assert response.status_code == 410
    assert response.json()["detail"]["code"] == "PROCESS_TERMINATED"

    all_status = client.get("/api/sessions/status").json()["sessions"]
    assert all_status["LLaMA-v2"]["state"] == "terminated"
    assert all_status["LLaMA-v2"]["returncode"] == 3


def test_empty_query_rejected(client):
    response = client.post("/api/sessions/LLaMA-v2/query", json={"text": ""})
    assert response.status_code == 422


def test_cancel_unknown_query(client):
    response = client.post("/api/sessions/LLaMA-v2/queries/nope/cancel")
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_settings(client):
    settings = client.get("/api/settings").json()["settings"]
    assert settings["idle_timeout_ms"] == "1500"

    response = client.put("/api/settings/idle_timeout_ms", json={"value": "800"})
    assert response.status_code == 200
    assert response.json()["applies_after_restart"] is True
    assert client.get("/api/settings/idle_timeout_ms").json()["value"] == "800"


def test_invalid_settings_rejected(client):
    response = client.put("/api/settings/idle_timeout_ms", json={"value": "soon"})
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "INVALID_SETTING"

    assert client.put("/api/settings/stop_grace_seconds", json={"value": "-1"}).status_code == 422
    assert client.put("/api/settings/nope", json={"value": "1"}).status_code == 404
    assert client.get("/api/settings/nope").status_code == 404
