"""Shared test fixtures for LLM Interrogate tests."""

import pytest

import llm_config
from conversation_db import ConversationStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeOllama:
    """Stands in for ollama_bridge.generate and records every call."""

    def __init__(self, replies=None):
        self.calls = []
        self.replies = list(replies or [])
        self.fail_with = None

    def __call__(self, model, prompt, system=None):
        self.calls.append({"model": model, "prompt": prompt, "system": system})
        if self.fail_with is not None:
            raise self.fail_with
        if self.replies:
            return self.replies.pop(0)
        return f"reply {len(self.calls)} from {model}"


class FakeTimer:
    """threading.Timer replacement that only fires when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config loader at a file that does not exist → all defaults."""
    monkeypatch.setattr(llm_config, "CONFIG_PATH", str(tmp_path / "llm_config.json"))
    monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
    monkeypatch.delenv("INTERROGATE_DB", raising=False)
    llm_config.reset_cache()
    yield
    llm_config.reset_cache()


@pytest.fixture
def store(tmp_path):
    return ConversationStore(str(tmp_path / "data" / "interrogate.db"))


@pytest.fixture
def conversation(store):
    """Empty conversation: interrogator model "A", subject model "B"."""
    return store.create_conversation("Test", "A", "B")


@pytest.fixture
def fake_ollama():
    return FakeOllama()


@pytest.fixture
def timers():
    """Factory for FakeTimer; the created timers are collected on .created."""
    created = []

    def factory(interval, function):
        t = FakeTimer(interval, function)
        created.append(t)
        return t

    factory.created = created
    return factory


def make_history(n: int, interrogator: str = "A", subject: str = "B") -> list[dict]:
    """n alternating messages with content "m0", "m1", ..."""
    history = []
    for i in range(n):
        role = "interrogator" if i % 2 == 0 else "subject"
        history.append({
            "index": i,
            "role": role,
            "model": interrogator if role == "interrogator" else subject,
            "content": f"m{i}",
            "timestamp": "2026-01-01T00:00:00+00:00",
        })
    return history
