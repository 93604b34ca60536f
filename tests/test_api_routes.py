"""Tests for Flask API routes in app.py.

Integration tests using Flask test_client against a throwaway SQLite
database. Ollama calls are mocked; tests focus on request/response contracts.
"""

import http.client
from unittest import mock

import pytest

import app as app_module
import ollama_bridge
from conftest import FakeOllama, make_history
from conversation_db import ConversationStore


@pytest.fixture(autouse=True)
def patch_app_store(tmp_path, monkeypatch):
    """Redirect the app to a fresh, unseeded store under tmp_path."""
    store = ConversationStore(str(tmp_path / "data" / "interrogate.db"))
    monkeypatch.setattr(app_module, "_store", store)
    monkeypatch.setattr(app_module, "DATA_DIR", str(tmp_path / "data"))
    return store


@pytest.fixture
def store(patch_app_store):
    return patch_app_store


@pytest.fixture
def ollama(monkeypatch):
    """Mock every ollama_bridge entry point the routes touch."""
    fake = FakeOllama()
    monkeypatch.setattr(ollama_bridge, "generate", fake)
    monkeypatch.setattr(ollama_bridge, "available_models", lambda: ["llama3.2:latest", "qwen2.5:latest"])
    monkeypatch.setattr(ollama_bridge, "check_connection", lambda: True)
    monkeypatch.setattr(ollama_bridge, "list_models",
                        lambda: ollama_bridge.ModelList(models=["llama3.2:latest"], available=True))
    return fake


@pytest.fixture
def client():
    """Flask test client."""
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


@pytest.fixture
def conv(store):
    return store.create_conversation("Probe", "A", "B")


# ===================================================================
# Index + init
# ===================================================================


class TestIndex:
    def test_serves_page(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert b"<html" in resp.data.lower()


class TestInit:
    def test_empty_store(self, client, ollama):
        resp = client.get("/api/init")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["conversation"] is None
        assert data["systemPrompts"] == {}
        assert data["availableModels"] == ["llama3.2:latest", "qwen2.5:latest"]

    def test_returns_last_conversation_and_prompts(self, client, ollama, store, conv):
        store.set_last_conversation(conv["id"])
        store.save_system_prompt("subject", "Be honest.")
        data = client.get("/api/init").get_json()
        assert data["conversation"]["id"] == conv["id"]
        assert data["systemPrompts"]["subject"]["content"] == "Be honest."
        assert "interrogator" not in data["systemPrompts"]

    def test_fallback_models_when_ollama_down(self, client, monkeypatch):
        monkeypatch.setattr(ollama_bridge, "list_models",
                            lambda: ollama_bridge.ModelList(models=[], available=False))
        data = client.get("/api/init").get_json()
        assert data["availableModels"] == list(ollama_bridge.FALLBACK_MODELS)


# ===================================================================
# Chat
# ===================================================================


class TestChat:
    def test_automatic_turn(self, client, ollama, store, conv):
        resp = client.post("/api/chat", json={"conversationId": conv["id"]})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["message"]["role"] == "interrogator"
        assert data["message"]["model"] == "A"
        assert data["message"]["index"] == 0
        assert data["conversation"]["history"] == [data["message"]]
        assert store.get_last_conversation_id() == conv["id"]

    def test_alternates(self, client, ollama, conv):
        for _ in range(2):
            data = client.post("/api/chat", json={"conversationId": conv["id"]}).get_json()
        assert data["message"]["role"] == "subject"
        assert [c["model"] for c in ollama.calls] == ["A", "B"]

    def test_explicit_message(self, client, ollama, conv):
        client.post("/api/chat", json={
            "conversationId": conv["id"], "message": "Who are you?", "modelName": "A",
        })
        assert ollama.calls[0]["prompt"] == "Who are you?"

    def test_empty_message_is_automatic(self, client, ollama, conv):
        client.post("/api/chat", json={"conversationId": conv["id"], "message": ""})
        assert ollama.calls[0]["prompt"] != ""

    @pytest.mark.parametrize("body", [
        {},
        {"conversationId": ""},
        {"conversationId": 5},
        {"conversationId": "x", "message": 3},
    ])
    def test_bad_request(self, client, ollama, body):
        resp = client.post("/api/chat", json=body)
        assert resp.status_code == 400
        assert "error" in resp.get_json()
        assert ollama.calls == []

    def test_non_json_body(self, client, ollama):
        resp = client.post("/api/chat", data="nope", content_type="text/plain")
        assert resp.status_code == 400

    def test_unknown_conversation(self, client, ollama):
        resp = client.post("/api/chat", json={"conversationId": "missing"})
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Conversation not found"}

    def test_backend_failure(self, client, ollama, store, conv):
        ollama.fail_with = ollama_bridge.OllamaError("Ollama API error: 500 Internal Server Error", status=500)
        resp = client.post("/api/chat", json={"conversationId": conv["id"]})
        assert resp.status_code == 502
        assert "500" in resp.get_json()["error"]
        assert store.get_conversation(conv["id"])["history"] == []


# ===================================================================
# System prompts
# ===================================================================


class TestSystemPrompt:
    def test_get_missing(self, client):
        resp = client.get("/api/system-prompt/subject")
        assert resp.status_code == 404

    def test_get_bad_role(self, client):
        resp = client.get("/api/system-prompt/judge")
        assert resp.status_code == 400

    def test_save_then_get(self, client):
        resp = client.post("/api/system-prompt", json={"role": "interrogator", "content": "Probe deeply."})
        assert resp.status_code == 200
        saved = resp.get_json()
        assert saved["role"] == "interrogator"
        assert saved["content"] == "Probe deeply."

        got = client.get("/api/system-prompt/interrogator").get_json()
        assert got == saved

    def test_save_replaces(self, client):
        client.post("/api/system-prompt", json={"role": "subject", "content": "v1"})
        client.post("/api/system-prompt", json={"role": "subject", "content": "v2"})
        assert client.get("/api/system-prompt/subject").get_json()["content"] == "v2"

    def test_empty_content_allowed(self, client):
        resp = client.post("/api/system-prompt", json={"role": "subject", "content": ""})
        assert resp.status_code == 200

    @pytest.mark.parametrize("body", [
        {"role": "judge", "content": "x"},
        {"role": "subject"},
        {"content": "x"},
    ])
    def test_save_invalid(self, client, body):
        assert client.post("/api/system-prompt", json=body).status_code == 400


# ===================================================================
# Conversation CRUD
# ===================================================================


class TestConversations:
    def test_create_sets_last_active(self, client, store):
        resp = client.post("/api/conversations", json={
            "name": "Round 1", "interrogator": "llama3.2:latest", "subject": "qwen2.5:latest",
        })
        assert resp.status_code == 200
        conv = resp.get_json()
        assert conv["history"] == []
        assert store.get_last_conversation_id() == conv["id"]

    @pytest.mark.parametrize("body", [
        {"interrogator": "A", "subject": "B"},
        {"name": "  ", "interrogator": "A", "subject": "B"},
        {"name": "n", "subject": "B"},
        {"name": "n", "interrogator": "A", "subject": "B", "history": "x"},
    ])
    def test_create_invalid(self, client, body):
        assert client.post("/api/conversations", json=body).status_code == 400

    def test_list(self, client, store):
        a = store.create_conversation("a", "A", "B")
        b = store.create_conversation("b", "A", "B")
        data = client.get("/api/conversations").get_json()
        assert [c["id"] for c in data] == [a["id"], b["id"]]

    def test_get_one(self, client, conv):
        assert client.get(f"/api/conversations/{conv['id']}").get_json() == conv
        assert client.get("/api/conversations/missing").status_code == 404

    def test_update_models(self, client, conv):
        resp = client.put(f"/api/conversations/{conv['id']}", json={"subject": "C"})
        assert resp.status_code == 200
        assert resp.get_json()["subject"] == "C"
        assert resp.get_json()["interrogator"] == "A"

    def test_clear_history(self, client, store, conv):
        store.update_conversation(conv["id"], {"history": make_history(3)})
        resp = client.put(f"/api/conversations/{conv['id']}", json={"history": []})
        assert resp.status_code == 200
        assert resp.get_json()["history"] == []
        assert store.get_conversation(conv["id"])["history"] == []

    def test_update_missing(self, client):
        resp = client.put("/api/conversations/missing", json={"name": "x"})
        assert resp.status_code == 404

    @pytest.mark.parametrize("history", [
        [{"role": "judge", "content": "x"}],
        [{"role": "subject", "content": 1}],
        ["not a dict"],
    ])
    def test_update_invalid_history(self, client, conv, history):
        resp = client.put(f"/api/conversations/{conv['id']}", json={"history": history})
        assert resp.status_code == 400

    def test_delete(self, client, store, conv):
        store.set_last_conversation(conv["id"])
        resp = client.delete(f"/api/conversations/{conv['id']}")
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True}
        assert store.get_conversation(conv["id"]) is None
        assert store.get_last_conversation_id() is None

        assert client.delete(f"/api/conversations/{conv['id']}").status_code == 404


# ===================================================================
# Status
# ===================================================================


class TestStatus:
    @mock.patch("ollama_bridge.list_models", return_value=ollama_bridge.ModelList(models=["llama3.2:latest"]))
    @mock.patch("ollama_bridge.check_connection", return_value=True)
    def test_connected(self, mock_check, mock_list, client):
        data = client.get("/api/status").get_json()
        assert data == {"ollamaConnected": True, "availableModels": ["llama3.2:latest"]}
        mock_list.assert_called_once()

    @mock.patch("ollama_bridge.list_models")
    @mock.patch("ollama_bridge.check_connection", return_value=False)
    def test_disconnected(self, mock_check, mock_list, client):
        data = client.get("/api/status").get_json()
        assert data == {"ollamaConnected": False, "availableModels": []}
        mock_list.assert_not_called()

    @mock.patch("urllib.request.urlopen", side_effect=http.client.BadStatusLine("garbage"))
    def test_broken_backend_reply(self, mock_urlopen, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        assert resp.get_json() == {"ollamaConnected": False, "availableModels": []}


@mock.patch("urllib.request.urlopen", side_effect=http.client.IncompleteRead(b"partial"))
def test_chat_broken_backend_reply_is_502(mock_urlopen, client, store, conv):
    resp = client.post("/api/chat", json={"conversationId": conv["id"]})
    assert resp.status_code == 502
    assert "error" in resp.get_json()
    assert store.get_conversation(conv["id"])["history"] == []
