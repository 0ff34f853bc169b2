"""Output detectors for interactive agent terminals.

Each detector is a small state machine fed `(chunk, now)` that returns the
keystrokes it wants written and when. Timing is the automaton's concern, so
these can be exercised without a process or real clocks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from ..constants import (
    ACCEPT_MODE_DELAY_SECONDS,
    ACCEPT_MODE_ON_MARKER,
    ACCEPT_MODE_STATUS_GLYPH,
    ACCEPT_MODE_TOGGLE_KEYS,
    MAX_ACCEPT_MODE_ATTEMPTS,
    SESSION_CLEARED_MARKER,
    STARTUP_COMMAND_DELAY_SECONDS,
    STATE_DIR_NAME,
    TRUST_BUFFER_IDLE_SECONDS,
    TRUST_CONFIRM_DELAY_SECONDS,
    TRUST_CONFIRM_KEYS,
    TRUST_PROMPT_PHRASE,
)


@dataclass
class ScheduledWrite:
    data: str
    delay: float
    on_sent: Optional[Callable[[], None]] = None


class TrustPromptDetector:
    """idle -> buffering(deadline) -> matched, back to idle once the confirm is sent.

    Dialog text can arrive split across chunks, so chunks accumulate until the
    buffer sits idle past its deadline.
    """

    def __init__(
        self,
        marker: str = STATE_DIR_NAME,
        idle_seconds: float = TRUST_BUFFER_IDLE_SECONDS,
        confirm_delay: float = TRUST_CONFIRM_DELAY_SECONDS,
    ) -> None:
        self.marker = marker
        self.idle_seconds = idle_seconds
        self.confirm_delay = confirm_delay
        self.state = "idle"
        self.buffer = ""
        self.deadline: Optional[float] = None
        self.confirmations = 0

    def expire(self, now: float) -> None:
        if self.state == "buffering" and self.deadline is not None and now >= self.deadline:
            self.buffer = ""
            self.deadline = None
            self.state = "idle"

    def feed(self, chunk: str, now: float) -> list[ScheduledWrite]:
        self.expire(now)
        self.buffer += chunk
        self.deadline = now + self.idle_seconds
        if self.state == "idle":
            self.state = "buffering"

        if TRUST_PROMPT_PHRASE not in self.buffer or self.marker not in self.buffer:
            return []
        if self.state == "matched":
            return []
        self.state = "matched"
        self.buffer = ""
        self.deadline = None
        self.confirmations += 1
        return [ScheduledWrite(TRUST_CONFIRM_KEYS, self.confirm_delay, on_sent=self.acknowledge)]

    def acknowledge(self) -> None:
        if self.state == "matched":
            self.state = "idle"


class AcceptModeDetector:
    """Cycle the edit-accept mode until the status line reports it, at most N times."""

    def __init__(
        self,
        max_attempts: int = MAX_ACCEPT_MODE_ATTEMPTS,
        toggle_delay: float = ACCEPT_MODE_DELAY_SECONDS,
    ) -> None:
        self.max_attempts = max_attempts
        self.toggle_delay = toggle_delay
        self.attempts = 0
        self.done = False
        self._pending = False

    def feed(self, chunk: str, now: float) -> list[ScheduledWrite]:
        if self.done:
            return []
        if ACCEPT_MODE_ON_MARKER in chunk:
            self.done = True
            return []
        if ACCEPT_MODE_STATUS_GLYPH not in chunk or self._pending:
            return []
        if self.attempts >= self.max_attempts:
            self.done = True
            return []
        self._pending = True
        self.attempts += 1
        return [ScheduledWrite(ACCEPT_MODE_TOGGLE_KEYS, self.toggle_delay, on_sent=self._sent)]

    def _sent(self) -> None:
        self._pending = False


_PROMPT_TAIL_RE = re.compile(r"[$%>]\s*$")
_USER_AT_HOST_RE = re.compile(r"\w+@\w+")


class StartupGate:
    """Hold the agent command until the shell looks ready, or until the fallback fires."""

    def __init__(
        self,
        command: str,
        username: Optional[str] = None,
        command_delay: float = STARTUP_COMMAND_DELAY_SECONDS,
    ) -> None:
        self.command = command
        self.username = username
        self.command_delay = command_delay
        self.fired = False

    def looks_ready(self, chunk: str) -> bool:
        if _PROMPT_TAIL_RE.search(chunk) or _USER_AT_HOST_RE.search(chunk):
            return True
        return bool(self.username) and self.username in chunk

    def feed(self, chunk: str, now: float) -> list[ScheduledWrite]:
        if self.fired or not self.looks_ready(chunk):
            return []
        self.fired = True
        return [ScheduledWrite(self.command, self.command_delay)]

    def fallback(self) -> list[ScheduledWrite]:
        if self.fired:
            return []
        self.fired = True
        return [ScheduledWrite(self.command, 0.0)]


class SessionClearedDetector:
    def __init__(self, marker: str = SESSION_CLEARED_MARKER) -> None:
        self.marker = marker

    def feed(self, chunk: str, now: float) -> bool:
        return self.marker in chunk
