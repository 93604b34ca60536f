"""Auto-play for LLM Interrogate.

AutoPlayLoop keeps taking turns on one conversation, with a fixed pause
between turns, until it is disabled or a turn fails. The same loop drives
the command-line runner below, which talks to a running server over HTTP.

Usage:
    python auto_play.py --conversation-id 3f2a...
    python auto_play.py --max-turns 20 --turn-delay 3
    python auto_play.py --base-url http://localhost:5051
"""

import argparse
import json
import logging
import sys
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable

import llm_config

log = logging.getLogger("auto_play")

DEFAULT_TURN_DELAY = 1.5


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class AutoPlayLoop:
    """Cooperative scheduler: at most one turn in flight, one pending tick.

    take_turn(conversation) must return the updated conversation. Each tick
    re-reads the held conversation, so whose turn it is always comes from
    the latest stored history.
    """

    def __init__(
        self,
        take_turn: Callable[[dict], dict],
        turn_delay: float = DEFAULT_TURN_DELAY,
        on_turn: Callable[[dict], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        max_turns: int | None = None,
        timer_factory=threading.Timer,
    ):
        self.take_turn = take_turn
        self.turn_delay = turn_delay
        self.on_turn = on_turn
        self.on_error = on_error
        self.max_turns = max_turns
        self.timer_factory = timer_factory

        self.running = False
        self.busy = False
        self.conversation: dict | None = None
        self.turns_taken = 0
        self.last_error: Exception | None = None

        self._timer = None
        self._cond = threading.Condition()

    # -- control --------------------------------------------------------

    def enable(self, conversation: dict | None = None) -> bool:
        """Start looping. Returns False when there is no conversation to drive."""
        with self._cond:
            if conversation is not None:
                self.conversation = conversation
            if self.conversation is None:
                return False
            self.running = True
            self.last_error = None
            if not self.busy and self._timer is None:
                self._schedule()
            return True

    def disable(self):
        """Stop looping and cancel a pending tick. An in-flight turn still finishes."""
        with self._cond:
            self.running = False
            self._cancel_timer()
            self._cond.notify_all()

    def set_conversation(self, conversation: dict | None):
        """Switch, clear or drop the active conversation; always stops the loop."""
        with self._cond:
            self.running = False
            self._cancel_timer()
            self.conversation = conversation
            self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop is stopped and idle. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self.running and not self.busy, timeout)

    # -- internals -----------------------------------------------------

    def _schedule(self):
        timer = None

        def fire():
            self._tick(timer)

        timer = self.timer_factory(self.turn_delay, fire)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self, timer=None):
        """Run one turn. timer is the Timer that fired; a superseded one does nothing."""
        with self._cond:
            if timer is not None and timer is not self._timer:
                return
            self._timer = None
            if not self.running or self.busy or self.conversation is None:
                return
            self.busy = True
            conversation = self.conversation

        try:
            updated = self.take_turn(conversation)
        except Exception as e:
            with self._cond:
                self.busy = False
                self.running = False
                self.last_error = e
                self._cond.notify_all()
            log.warning("auto-play stopped on error: %s", e)
            if self.on_error:
                self.on_error(e)
            return

        with self._cond:
            self.busy = False
            held = self.conversation
            if held is not None and held.get("id") == updated.get("id"):
                self.conversation = updated
            self.turns_taken += 1
            if self.max_turns is not None and self.turns_taken >= self.max_turns:
                log.info("auto-play: reached max turns (%d)", self.max_turns)
                self.running = False
            if self.running and self._timer is None:
                self._schedule()
            self._cond.notify_all()

        if self.on_turn:
            self.on_turn(updated)


# ---------------------------------------------------------------------------
# HTTP client for a running server
# ---------------------------------------------------------------------------


class AutoPlayError(Exception):
    """The server rejected a request or could not be reached."""


@dataclass
class AutoPlayConfig:
    base_url: str = "http://localhost:5051"
    conversation_id: str | None = None
    turn_delay: float = DEFAULT_TURN_DELAY
    max_turns: int | None = None
    timeout: float | None = None


def _request(method: str, url: str, body: dict | None = None, timeout: float | None = None) -> dict:
    data = json.dumps(body).encode("utf-8") if body is not None else None
    req = urllib.request.Request(
        url, data=data, method=method,
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body_text = e.read().decode("utf-8", errors="replace")
        try:
            message = json.loads(body_text).get("error", body_text)
        except (json.JSONDecodeError, AttributeError):
            message = body_text[:300]
        raise AutoPlayError(f"HTTP {e.code}: {message}") from e
    except (urllib.error.URLError, OSError) as e:
        raise AutoPlayError(f"cannot reach {url}: {e}") from e


def fetch_conversation(config: AutoPlayConfig) -> dict:
    base = config.base_url.rstrip("/")
    if config.conversation_id:
        return _request("GET", f"{base}/api/conversations/{config.conversation_id}", timeout=config.timeout)
    conversation = _request("GET", f"{base}/api/init", timeout=config.timeout).get("conversation")
    if not conversation:
        raise AutoPlayError("server has no active conversation; pass --conversation-id")
    return conversation


def remote_take_turn(config: AutoPlayConfig) -> Callable[[dict], dict]:
    base = config.base_url.rstrip("/")

    def _take_turn(conversation: dict) -> dict:
        result = _request("POST", f"{base}/api/chat",
                          {"conversationId": conversation["id"]}, timeout=config.timeout)
        return result["conversation"]

    return _take_turn


def log_turn(conversation: dict):
    msg = conversation["history"][-1]
    preview = msg["content"][:80].replace("\n", " ")
    print(
        f"\n{'='*60}\n"
        f"Turn {msg['index']} | {msg['role']} ({msg['model']})\n"
        f"{'─'*60}\n"
        f"{preview}{'...' if len(msg['content']) > 80 else ''}\n"
        f"{'='*60}"
    )


def auto_play(config: AutoPlayConfig) -> int:
    """Run auto-play against a server until stopped. Returns an exit code."""
    conversation = fetch_conversation(config)
    log.info("Auto-play started: conversation=%s (%s) history=%d",
             conversation["id"], conversation.get("name", ""), len(conversation.get("history", [])))

    loop = AutoPlayLoop(
        remote_take_turn(config),
        turn_delay=config.turn_delay,
        on_turn=log_turn,
        max_turns=config.max_turns,
    )
    loop.enable(conversation)
    try:
        while not loop.wait(timeout=0.5):
            pass
    except KeyboardInterrupt:
        log.info("Interrupted by user (Ctrl+C)")
        loop.disable()
        loop.wait()

    log.info("Auto-play finished: %d turns", loop.turns_taken)
    if loop.last_error:
        log.error("Stopped on error: %s", loop.last_error)
        return 1
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv=None) -> AutoPlayConfig:
    server = llm_config.server_settings()
    parser = argparse.ArgumentParser(
        description="Let the interrogator and subject talk to each other unattended",
    )
    parser.add_argument(
        "--base-url", default=f"http://localhost:{server.get('port', 5051)}",
        help="Server URL (default: http://localhost:<configured port>)",
    )
    parser.add_argument(
        "--conversation-id", default=None,
        help="Conversation to drive (default: the server's last active conversation)",
    )
    parser.add_argument(
        "--turn-delay", type=float, default=llm_config.turn_delay(),
        help="Seconds between turns (default: from llm_config.json, 1.5)",
    )
    parser.add_argument(
        "--max-turns", type=int, default=None,
        help="Stop after this many turns (default: unlimited)",
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="HTTP timeout per turn in seconds (default: none)",
    )
    args = parser.parse_args(argv)
    return AutoPlayConfig(
        base_url=args.base_url,
        conversation_id=args.conversation_id,
        turn_delay=args.turn_delay,
        max_turns=args.max_turns,
        timeout=args.timeout,
    )


if __name__ == "__main__":
    logging.basicConfig(
        format="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.INFO,
    )
    try:
        sys.exit(auto_play(parse_args()))
    except AutoPlayError as e:
        log.error("%s", e)
        sys.exit(1)
