"""SQLite store for conversations, role system prompts and app settings."""

import json
import logging
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timezone

log = logging.getLogger("interrogate")

INTERROGATOR = "interrogator"
SUBJECT = "subject"
ROLES = (INTERROGATOR, SUBJECT)

LAST_CONVERSATION_KEY = "lastConversationId"

UPDATABLE_FIELDS = ("name", "interrogator", "subject", "history")

DEFAULT_SYSTEM_PROMPTS = {
    INTERROGATOR: (
        "You are an AI interrogator whose role is to ask probing, thoughtful questions "
        "to explore complex topics. Ask follow-up questions that dig deeper into responses "
        "and challenge assumptions constructively."
    ),
    SUBJECT: (
        "You are an AI subject being questioned. Provide thoughtful, detailed responses "
        "that demonstrate deep reasoning. Be willing to explore complex ideas and acknowledge "
        "when questions reveal new perspectives or limitations in your understanding."
    ),
}

DEFAULT_CONVERSATION = {
    "name": "Consciousness Exploration",
    "interrogator": "llama3.2:latest",
    "subject": "qwen2.5:latest",
}


class ConversationNotFound(KeyError):
    """No conversation with the given id."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_role(role: str) -> str:
    if role not in ROLES:
        raise ValueError(f"Role must be '{INTERROGATOR}' or '{SUBJECT}'")
    return role


def reindex(history: list[dict]) -> list[dict]:
    """Return a copy of history with index == position for every message."""
    return [{**msg, "index": i} for i, msg in enumerate(history)]


def _row_to_conversation(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "interrogator": row["interrogator"],
        "subject": row["subject"],
        "history": json.loads(row["history"] or "[]"),
        "createdAt": row["created_at"],
    }


def _row_to_prompt(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "role": row["role"],
        "content": row["content"],
        "updatedAt": row["updated_at"],
    }


class ConversationStore:
    """Conversations, per-role system prompts and the last-conversation pointer.

    Every write re-reads the current row and replaces it whole; a process-wide
    lock serialises read-modify-write sequences within this process.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Connection / schema
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        if not self._initialized:
            self._ensure_tables(conn)
            self._initialized = True
        return conn

    def _ensure_tables(self, conn: sqlite3.Connection):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id            TEXT PRIMARY KEY,
                name          TEXT NOT NULL,
                interrogator  TEXT NOT NULL,
                subject       TEXT NOT NULL,
                history       TEXT NOT NULL DEFAULT '[]',
                created_at    TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS system_prompts (
                id          TEXT PRIMARY KEY,
                role        TEXT NOT NULL UNIQUE,
                content     TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS app_settings (
                id          TEXT PRIMARY KEY,
                key         TEXT NOT NULL UNIQUE,
                value       TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
            -- ISO-8601 timestamps sort lexicographically
            CREATE INDEX IF NOT EXISTS idx_conversations_created ON conversations(created_at);
        """)

    def seed_defaults(self):
        """Insert default prompts and a starter conversation into an empty DB."""
        with self._lock:
            conn = self._get_conn()
            try:
                has_prompts = conn.execute("SELECT COUNT(*) FROM system_prompts").fetchone()[0]
                has_convs = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            finally:
                conn.close()

        if not has_prompts:
            for role, content in DEFAULT_SYSTEM_PROMPTS.items():
                self.save_system_prompt(role, content)
            log.info("conversation_db: seeded default system prompts")
        if not has_convs:
            conv = self.create_conversation(**DEFAULT_CONVERSATION)
            self.set_last_conversation(conv["id"])
            log.info("conversation_db: seeded default conversation %s", conv["id"])

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> dict | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_conversation(row) if row else None

    def list_conversations(self) -> list[dict]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM conversations ORDER BY created_at, rowid"
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_conversation(r) for r in rows]

    def create_conversation(self, name: str, interrogator: str, subject: str,
                            history: list[dict] | None = None) -> dict:
        conv = {
            "id": uuid.uuid4().hex,
            "name": name,
            "interrogator": interrogator,
            "subject": subject,
            "history": reindex(history or []),
            "createdAt": _now(),
        }
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO conversations (id, name, interrogator, subject, history, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conv["id"], name, interrogator, subject,
                 json.dumps(conv["history"], ensure_ascii=False), conv["createdAt"]),
            )
            conn.commit()
        finally:
            conn.close()
        return conv

    def _write_conversation(self, conn: sqlite3.Connection, conv: dict):
        conn.execute(
            """UPDATE conversations
               SET name = ?, interrogator = ?, subject = ?, history = ?
               WHERE id = ?""",
            (conv["name"], conv["interrogator"], conv["subject"],
             json.dumps(conv["history"], ensure_ascii=False), conv["id"]),
        )
        conn.commit()

    def update_conversation(self, conversation_id: str, updates: dict) -> dict:
        """Apply a partial update. Unknown keys are ignored; history is re-indexed."""
        with self._lock:
            conv = self.get_conversation(conversation_id)
            if conv is None:
                raise ConversationNotFound(conversation_id)
            for key in UPDATABLE_FIELDS:
                if key in updates:
                    conv[key] = updates[key]
            conv["history"] = reindex(conv["history"])
            conn = self._get_conn()
            try:
                self._write_conversation(conn, conv)
            finally:
                conn.close()
        return conv

    def append_message(self, conversation_id: str, message: dict) -> dict:
        """Append one message at index len(history) and return the updated conversation."""
        with self._lock:
            conv = self.get_conversation(conversation_id)
            if conv is None:
                raise ConversationNotFound(conversation_id)
            history = conv["history"]
            history.append({**message, "index": len(history)})
            conn = self._get_conn()
            try:
                self._write_conversation(conn, conv)
            finally:
                conn.close()
        return conv

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            try:
                cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                deleted = cur.rowcount > 0
                if deleted:
                    conn.execute(
                        "DELETE FROM app_settings WHERE key = ? AND value = ?",
                        (LAST_CONVERSATION_KEY, conversation_id),
                    )
                conn.commit()
            finally:
                conn.close()
        return deleted

    # ------------------------------------------------------------------
    # Last-conversation pointer
    # ------------------------------------------------------------------

    def get_last_conversation_id(self) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT value FROM app_settings WHERE key = ?", (LAST_CONVERSATION_KEY,)
            ).fetchone()
        finally:
            conn.close()
        return row["value"] if row else None

    def get_last_conversation(self) -> dict | None:
        last_id = self.get_last_conversation_id()
        if not last_id:
            return None
        return self.get_conversation(last_id)

    def set_last_conversation(self, conversation_id: str):
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO app_settings (id, key, value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (uuid.uuid4().hex, LAST_CONVERSATION_KEY, conversation_id, _now()),
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # System prompts
    # ------------------------------------------------------------------

    def get_system_prompt(self, role: str) -> dict | None:
        check_role(role)
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM system_prompts WHERE role = ?", (role,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_prompt(row) if row else None

    def list_system_prompts(self) -> list[dict]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM system_prompts ORDER BY role").fetchall()
        finally:
            conn.close()
        return [_row_to_prompt(r) for r in rows]

    def save_system_prompt(self, role: str, content: str) -> dict:
        """Create or replace the single prompt for role."""
        check_role(role)
        now = _now()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO system_prompts (id, role, content, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(role) DO UPDATE SET content = excluded.content,
                                                   updated_at = excluded.updated_at""",
                (uuid.uuid4().hex, role, content, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM system_prompts WHERE role = ?", (role,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_prompt(row)
