"""Turn engine — decides who speaks next, builds the prompt and stores the reply.

Turn order is derived from the history length alone: an even number of
messages (including none) means the interrogator speaks, odd means the
subject answers.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import llm_trace
import ollama_bridge
from conversation_db import INTERROGATOR, SUBJECT, ConversationNotFound, ConversationStore

log = logging.getLogger("interrogate")

CONTEXT_WINDOW = 10

BOOTSTRAP_PROMPT = "Start the conversation with a thoughtful, probing question."
FOLLOW_UP_INSTRUCTION = "Ask a follow-up question that probes deeper or explores a new angle."

ROLE_LABELS = {
    INTERROGATOR: "Interrogator",
    SUBJECT: "Subject",
}

# Checked in order; only the first tag whose opening marker prefixes the text is stripped.
THOUGHT_TAGS = (
    ("think", "<think>", "</think>"),
    ("reason", "<reason>", "</reason>"),
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def strip_thoughts(text: str, tags=THOUGHT_TAGS) -> str:
    """Drop a leading reasoning block such as "<think>...</think>".

    Only a block at the very start of the text is removed, up to and including
    the first matching closing marker. Without a closing marker only the
    opening marker is dropped.
    """
    for _name, open_marker, close_marker in tags:
        if text.startswith(open_marker):
            end = text.find(close_marker)
            if end < 0:
                return text[len(open_marker):]
            return text[end + len(close_marker):]
    return text


def acting_role(history: list[dict]) -> str:
    return INTERROGATOR if len(history) % 2 == 0 else SUBJECT


def render_context(history: list[dict], window: int = CONTEXT_WINDOW) -> str:
    recent = history[-window:] if window > 0 else []
    return "\n\n".join(
        f"{ROLE_LABELS.get(msg.get('role'), 'Subject')}: {strip_thoughts(msg.get('content', ''))}"
        for msg in recent
    )


def build_prompt(history: list[dict], role: str) -> str:
    """Prompt for an automatic turn by role, given the history so far."""
    if not history:
        return BOOTSTRAP_PROMPT
    if role == INTERROGATOR:
        context = render_context(history)
        return f"Based on this conversation:\n\n{context}\n\n{FOLLOW_UP_INSTRUCTION}"
    # The subject answers the last message directly, without the context block.
    return strip_thoughts(history[-1].get("content", ""))


@dataclass
class TurnPlan:
    role: str
    model: str
    prompt: str
    index: int


def plan_turn(conversation: dict, message: str | None = None) -> TurnPlan:
    """Work out role, model and prompt for the next turn of conversation.

    An explicit message replaces the automatic prompt but never the role:
    the role always follows history parity.
    """
    history = conversation.get("history") or []
    role = acting_role(history)
    prompt = message if message else build_prompt(history, role)
    return TurnPlan(role=role, model=conversation[role], prompt=prompt, index=len(history))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TurnEngine:
    """Runs one turn at a time against a ConversationStore.

    generate has the signature of ollama_bridge.generate(model, prompt, system)
    and defaults to it, looked up on each call.
    The store also owns the last-conversation pointer, which is updated after
    every stored turn.
    """

    def __init__(
        self,
        store: ConversationStore,
        generate: Callable[..., str] | None = None,
        clock: Callable[[], datetime] = _utc_now,
        trace_dir: str | None = None,
        trace_retention_days: int = 14,
    ):
        self.store = store
        self.generate = generate
        self.clock = clock
        self.trace_dir = trace_dir
        self.trace_retention_days = trace_retention_days

    def _trace(self, conversation_id: str, plan: TurnPlan, stage: str, payload):
        if not self.trace_dir:
            return
        llm_trace.write_trace(
            data_dir=self.trace_dir,
            conversation_id=conversation_id,
            stage=stage,
            payload=payload,
            message_index=plan.index,
            role=plan.role,
            source="turn_engine",
            retention_days=self.trace_retention_days,
        )

    def take_turn(
        self,
        conversation_id: str,
        message: str | None = None,
        requested_model: str | None = None,
    ) -> tuple[dict, dict]:
        """Generate and store the next message. Returns (message, conversation).

        Raises ConversationNotFound, ollama_bridge.OllamaError, or sqlite3.Error.
        Nothing is stored when generation fails.
        """
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        plan = plan_turn(conversation, message)
        if requested_model and requested_model != plan.model:
            log.warning(
                "take_turn: requested model %s but it is the %s's turn (%s) — using %s",
                requested_model, plan.role, plan.model, plan.model,
            )

        system_prompt = self.store.get_system_prompt(plan.role)
        system = system_prompt["content"] if system_prompt else None

        log.info("take_turn: conv=%s index=%d role=%s model=%s explicit=%s",
                 conversation_id, plan.index, plan.role, plan.model, bool(message))
        self._trace(conversation_id, plan, "request", {
            "model": plan.model, "prompt": plan.prompt, "system": system,
        })

        generate = self.generate or ollama_bridge.generate
        t0 = time.time()
        try:
            raw = generate(plan.model, plan.prompt, system)
        except ollama_bridge.OllamaError as e:
            self._trace(conversation_id, plan, "error", {"error": str(e), "status": e.status})
            raise
        self._trace(conversation_id, plan, "response", {
            "response": raw, "elapsed_ms": int((time.time() - t0) * 1000),
        })

        new_message = {
            "model": plan.model,
            "content": strip_thoughts(raw),
            "timestamp": self.clock().isoformat(),
            "role": plan.role,
        }
        updated = self.store.append_message(conversation_id, new_message)
        self.store.set_last_conversation(conversation_id)
        stored = updated["history"][-1]
        if stored["index"] != plan.index:
            log.warning("take_turn: conv=%s changed during generation, stored at index %d (expected %d)",
                        conversation_id, stored["index"], plan.index)
        return stored, updated
