"""Per-request trace files for model calls.

Each model request/response is written as its own JSON file, partitioned by
day and conversation, and day directories older than the retention window are
removed.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

log = logging.getLogger("interrogate")

_SAFE_TOKEN_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_PRUNE_INTERVAL_SECONDS = 600

_prune_lock = threading.Lock()
_last_prune_by_root: dict[str, float] = {}


def _safe_token(value: str | None, fallback: str) -> str:
    token = _SAFE_TOKEN_RE.sub("_", (value or "").strip()).strip("._-")
    return token or fallback


def _atomic_write_json(path: str, data: dict):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def prune_old_traces(root: str, retention_days: int, now_utc: datetime, force: bool = False):
    """Delete <root>/<YYYY-MM-DD> directories older than retention_days.

    Runs at most once per _PRUNE_INTERVAL_SECONDS per root unless force is set.
    """
    if retention_days <= 0:
        return
    now_ts = now_utc.timestamp()
    with _prune_lock:
        last = _last_prune_by_root.get(root, 0.0)
        if not force and now_ts - last < _PRUNE_INTERVAL_SECONDS:
            return
        _last_prune_by_root[root] = now_ts

    if not os.path.isdir(root):
        return
    cutoff = (now_utc - timedelta(days=retention_days)).date()
    for name in os.listdir(root):
        path = os.path.join(root, name)
        if not os.path.isdir(path):
            continue
        try:
            day = datetime.strptime(name, "%Y-%m-%d").date()
        except ValueError:
            continue
        if day < cutoff:
            shutil.rmtree(path, ignore_errors=True)


def write_trace(
    *,
    data_dir: str,
    conversation_id: str,
    stage: str,
    payload: Any,
    message_index: int | None = None,
    role: str = "",
    source: str = "",
    retention_days: int = 14,
    now_utc: datetime | None = None,
) -> str | None:
    """Write one trace event and return its path (None if nothing was written).

    Layout:
    <data_dir>/llm_traces/<YYYY-MM-DD>/<conversation_id>/<HHMMSS.mmm>_msg<index>_<stage>_<id>.json
    """
    if not data_dir or not conversation_id or not stage:
        return None

    now = now_utc or datetime.now(timezone.utc)
    root = os.path.join(data_dir, "llm_traces")
    prune_old_traces(root, retention_days=retention_days, now_utc=now)

    msg_tag = f"msg{message_index:06d}" if isinstance(message_index, int) and message_index >= 0 else "msgna"
    ts = now.strftime("%H%M%S.%f")[:-3]
    filename = f"{ts}_{msg_tag}_{_safe_token(stage, 'stage')}_{uuid.uuid4().hex[:8]}.json"
    out_path = os.path.join(
        root, now.strftime("%Y-%m-%d"), _safe_token(conversation_id, "conversation"), filename,
    )

    record = {
        "schema_version": 1,
        "created_at": now.isoformat(),
        "conversation_id": conversation_id,
        "message_index": message_index,
        "role": role,
        "stage": stage,
        "source": source,
        "payload": payload,
    }

    try:
        _atomic_write_json(out_path, record)
    except OSError as e:
        log.warning("llm_trace: failed to write %s — %s", out_path, e)
        return None
    return out_path
