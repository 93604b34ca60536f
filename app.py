"""Flask backend for LLM Interrogate — two models questioning each other."""

import logging
import os
import sqlite3
import threading
import time

from flask import Flask, jsonify, render_template, request

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    format="[%(asctime)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    level=logging.INFO,
)
log = logging.getLogger("interrogate")

import llm_config
import ollama_bridge
from conversation_db import ROLES, ConversationNotFound, ConversationStore
from turn_engine import TurnEngine

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")

_store: ConversationStore | None = None
_store_lock = threading.Lock()


class ValidationError(ValueError):
    """Malformed request body or parameter."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_store() -> ConversationStore:
    """Process-wide store, created (and seeded) on first use."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                store = ConversationStore(llm_config.db_path())
                if llm_config.seed_defaults():
                    store.seed_defaults()
                _store = store
    return _store


def get_engine() -> TurnEngine:
    trace = llm_config.trace_settings()
    return TurnEngine(
        get_store(),
        trace_dir=DATA_DIR if trace.get("enabled") else None,
        trace_retention_days=trace.get("retention_days", 14),
    )


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _optional_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string")
    return value


def _required_str(body: dict, key: str) -> str:
    value = _optional_str(body, key)
    if value is None or not value.strip():
        raise ValidationError(f"'{key}' is required")
    return value


def _check_history(history) -> list[dict]:
    if not isinstance(history, list):
        raise ValidationError("'history' must be a list")
    for msg in history:
        if not isinstance(msg, dict):
            raise ValidationError("history items must be objects")
        if msg.get("role") not in ROLES:
            raise ValidationError(f"history role must be one of {', '.join(ROLES)}")
        if not isinstance(msg.get("content"), str):
            raise ValidationError("history content must be a string")
    return history


def _parse_chat_request(body: dict) -> tuple[str, str | None, str | None]:
    conversation_id = _required_str(body, "conversationId")
    message = _optional_str(body, "message")
    model_name = _optional_str(body, "modelName")
    return conversation_id, message or None, model_name


def _parse_conversation_updates(body: dict) -> dict:
    updates = {}
    for key in ("name", "interrogator", "subject"):
        if key in body:
            updates[key] = _required_str(body, key)
    if "history" in body:
        updates["history"] = _check_history(body["history"])
    return updates


# ---------------------------------------------------------------------------
# Flask App
# ---------------------------------------------------------------------------
app = Flask(__name__)


@app.route("/")
def index():
    return render_template("index.html")


@app.route("/api/init")
def api_init():
    """Last active conversation, all system prompts and the model list."""
    try:
        store = get_store()
        conversation = store.get_last_conversation()
        prompts = {p["role"]: p for p in store.list_system_prompts()}
        models = ollama_bridge.available_models()
    except sqlite3.Error:
        log.exception("Error in /api/init")
        return _error("Failed to initialize application", 500)

    return jsonify({
        "conversation": conversation,
        "systemPrompts": prompts,
        "availableModels": models,
    })


@app.route("/api/chat", methods=["POST"])
def api_chat():
    """Take one turn: the engine picks the role, prompts the model and stores the reply."""
    t_start = time.time()
    try:
        conversation_id, message, model_name = _parse_chat_request(_json_body())
    except ValidationError as e:
        return _error(str(e), 400)

    log.info("/api/chat START  conv=%s explicit=%s", conversation_id, bool(message))
    try:
        new_message, conversation = get_engine().take_turn(
            conversation_id, message, requested_model=model_name,
        )
    except ConversationNotFound:
        return _error("Conversation not found", 404)
    except ollama_bridge.OllamaError as e:
        log.warning("/api/chat backend failure: %s", e)
        return _error(str(e), 502)
    except sqlite3.Error:
        log.exception("Error in /api/chat")
        return _error("Failed to update conversation", 500)

    log.info("/api/chat DONE   conv=%s index=%d role=%s total=%.1fs",
             conversation_id, new_message["index"], new_message["role"], time.time() - t_start)
    return jsonify({"message": new_message, "conversation": conversation})


# ---------------------------------------------------------------------------
# System prompt API
# ---------------------------------------------------------------------------

@app.route("/api/system-prompt/<role>")
def api_system_prompt_get(role):
    if role not in ROLES:
        return _error("Role must be 'interrogator' or 'subject'", 400)
    try:
        prompt = get_store().get_system_prompt(role)
    except sqlite3.Error:
        log.exception("Error getting system prompt")
        return _error("Failed to get system prompt", 500)
    if prompt is None:
        return _error("System prompt not found", 404)
    return jsonify(prompt)


@app.route("/api/system-prompt", methods=["POST"])
def api_system_prompt_save():
    """Create or replace the system prompt for one role."""
    try:
        body = _json_body()
        role = _required_str(body, "role")
        content = _optional_str(body, "content")
        if role not in ROLES:
            raise ValidationError("Role must be 'interrogator' or 'subject'")
        if content is None:
            raise ValidationError("'content' is required")
    except ValidationError as e:
        return _error(str(e), 400)

    try:
        prompt = get_store().save_system_prompt(role, content)
    except sqlite3.Error:
        log.exception("Error updating system prompt")
        return _error("Failed to update system prompt", 500)
    log.info("system prompt updated: role=%s len=%d", role, len(content))
    return jsonify(prompt)


# ---------------------------------------------------------------------------
# Conversation CRUD API
# ---------------------------------------------------------------------------

@app.route("/api/conversations")
def api_conversations():
    try:
        return jsonify(get_store().list_conversations())
    except sqlite3.Error:
        log.exception("Error getting conversations")
        return _error("Failed to get conversations", 500)


@app.route("/api/conversations", methods=["POST"])
def api_conversations_create():
    """Create a conversation and make it the last active one."""
    try:
        body = _json_body()
        name = _required_str(body, "name")
        interrogator = _required_str(body, "interrogator")
        subject = _required_str(body, "subject")
        history = _check_history(body.get("history") or [])
    except ValidationError as e:
        return _error(str(e), 400)

    try:
        store = get_store()
        conversation = store.create_conversation(name.strip(), interrogator, subject, history)
        store.set_last_conversation(conversation["id"])
    except sqlite3.Error:
        log.exception("Error creating conversation")
        return _error("Failed to create conversation", 500)
    log.info("conversation created: %s (%s vs %s)", conversation["id"], interrogator, subject)
    return jsonify(conversation)


@app.route("/api/conversations/<conversation_id>")
def api_conversations_get(conversation_id):
    try:
        conversation = get_store().get_conversation(conversation_id)
    except sqlite3.Error:
        log.exception("Error getting conversation")
        return _error("Failed to get conversation", 500)
    if conversation is None:
        return _error("Conversation not found", 404)
    return jsonify(conversation)


@app.route("/api/conversations/<conversation_id>", methods=["PUT"])
def api_conversations_update(conversation_id):
    """Partial update; {"history": []} clears the conversation."""
    try:
        updates = _parse_conversation_updates(_json_body())
    except ValidationError as e:
        return _error(str(e), 400)

    try:
        conversation = get_store().update_conversation(conversation_id, updates)
    except ConversationNotFound:
        return _error("Conversation not found", 404)
    except sqlite3.Error:
        log.exception("Error updating conversation")
        return _error("Failed to update conversation", 500)
    return jsonify(conversation)


@app.route("/api/conversations/<conversation_id>", methods=["DELETE"])
def api_conversations_delete(conversation_id):
    try:
        deleted = get_store().delete_conversation(conversation_id)
    except sqlite3.Error:
        log.exception("Error deleting conversation")
        return _error("Failed to delete conversation", 500)
    if not deleted:
        return _error("Conversation not found", 404)
    log.info("conversation deleted: %s", conversation_id)
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@app.route("/api/status")
def api_status():
    """Ollama liveness and installed models (empty when disconnected)."""
    connected = ollama_bridge.check_connection()
    models = ollama_bridge.list_models().models if connected else []
    return jsonify({
        "ollamaConnected": connected,
        "availableModels": models,
    })


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    server = llm_config.server_settings()
    get_store()
    app.run(debug=True, host=server.get("host", "0.0.0.0"), port=server.get("port", 5051))
