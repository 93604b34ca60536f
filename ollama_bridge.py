"""Bridge to a local Ollama server for single-shot generation."""

import http.client
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field

import llm_config

log = logging.getLogger("interrogate")

# Shown in the model pickers when Ollama cannot be reached
FALLBACK_MODELS = (
    "open-orca-platypus2:latest",
    "qwen3:4b-thinking-2507-fp16",
)

PROBE_TIMEOUT = 5  # seconds, for /api/tags


class OllamaError(Exception):
    """Raised when Ollama is unreachable or answers with a non-success status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class ModelList:
    """Result of a model listing: the names, and whether Ollama answered at all."""
    models: list[str] = field(default_factory=list)
    available: bool = True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _url(path: str) -> str:
    return f"{llm_config.ollama_base_url()}{path}"


def _make_request_body(model: str, prompt: str, system: str | None) -> dict:
    body = {
        "model": model,
        "prompt": prompt,
        "stream": False,
    }
    if system:
        body["system"] = system
    return body


# ---------------------------------------------------------------------------
# Generation — non-streaming
# ---------------------------------------------------------------------------

_UNSET = object()


def generate(model: str, prompt: str, system: str | None = None, timeout=_UNSET) -> str:
    """Send one prompt to Ollama and return the complete response text.

    timeout defaults to the configured value (None waits forever).
    Raises OllamaError on connection failure or non-2xx status.
    """
    if timeout is _UNSET:
        timeout = llm_config.ollama_timeout()
    payload = json.dumps(_make_request_body(model, prompt, system)).encode("utf-8")
    req = urllib.request.Request(
        _url("/api/generate"), data=payload,
        headers={"Content-Type": "application/json"},
    )

    log.info("    ollama_bridge: calling model=%s prompt_len=%d system=%s",
             model, len(prompt), "yes" if system else "no")
    t0 = time.time()
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body_text = e.read().decode("utf-8", errors="replace")[:300]
        log.info("    ollama_bridge: HTTP %d — %s", e.code, body_text)
        raise OllamaError(f"Ollama API error: {e.code} {e.reason}", status=e.code) from e
    except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
        log.info("    ollama_bridge: EXCEPTION %s", e)
        raise OllamaError(f"Failed to generate response: {e}") from e
    except ValueError as e:
        raise OllamaError(f"Ollama returned invalid JSON: {e}") from e

    if not isinstance(data, dict) or "response" not in data:
        raise OllamaError("Ollama response has no 'response' field")

    text = data["response"] or ""
    if not isinstance(text, str):
        raise OllamaError("Ollama response field is not a string")
    log.info("    ollama_bridge: OK in %.1fs response_len=%d", time.time() - t0, len(text))
    return text


# ---------------------------------------------------------------------------
# Model listing / liveness
# ---------------------------------------------------------------------------

def list_models() -> ModelList:
    """Ask Ollama which models are installed.

    Never raises: on any failure returns ModelList(available=False).
    """
    try:
        with urllib.request.urlopen(_url("/api/tags"), timeout=PROBE_TIMEOUT) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (urllib.error.URLError, OSError, http.client.HTTPException, ValueError) as e:
        log.warning("ollama_bridge: list_models failed — %s", e)
        return ModelList(models=[], available=False)

    if not isinstance(data, dict):
        log.warning("ollama_bridge: list_models got a non-object reply")
        return ModelList(models=[], available=False)
    entries = data.get("models")
    if not isinstance(entries, list):
        entries = []
    models = [m["name"] for m in entries if isinstance(m, dict) and isinstance(m.get("name"), str) and m["name"]]
    return ModelList(models=models, available=True)


def available_models() -> list[str]:
    """Installed model names, or FALLBACK_MODELS when Ollama is unavailable."""
    result = list_models()
    if not result.available:
        return list(FALLBACK_MODELS)
    return result.models


def check_connection() -> bool:
    try:
        with urllib.request.urlopen(_url("/api/tags"), timeout=PROBE_TIMEOUT) as resp:
            return 200 <= resp.status < 300
    except (urllib.error.URLError, OSError, http.client.HTTPException, ValueError):
        return False
