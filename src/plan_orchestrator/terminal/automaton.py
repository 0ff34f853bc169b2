"""Interactive agent terminals.

A `TerminalAutomaton` supervises one login shell on a pseudo-terminal, types
the agent command once the shell looks ready and answers the prompts the
agent would otherwise need a human for. `TerminalRegistry` owns every live
automaton in the process.
"""

from __future__ import annotations

import getpass
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import (
    EXIT_COMMAND,
    PASTE_CONFIRM_DELAY_SECONDS,
    PASTE_PREVIEW_MARKER,
    PASTE_PREVIEW_TIMEOUT_SECONDS,
    PLAIN_CONFIRM_DELAY_SECONDS,
    STARTUP_FALLBACK_SECONDS,
    STATE_DIR_NAME,
    TYPE_CHAR_DELAY_SECONDS,
)
from ..errors import AgentSpawnError
from ..events.bus import EventBus
from .channel import OutputChannel, PatternLike
from .detectors import (
    AcceptModeDetector,
    ScheduledWrite,
    SessionClearedDetector,
    StartupGate,
    TrustPromptDetector,
)
from .host import ProcessHandle, ProcessHost
from .sessions import SessionStore, build_agent_command, resolve_session

Scheduler = Callable[[float, Callable[[], None]], None]
ExitListener = Callable[["TerminalAutomaton", Optional[int]], None]


def timer_scheduler(delay: float, fn: Callable[[], None]) -> None:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


def _current_username() -> Optional[str]:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class TerminalAutomaton:
    def __init__(
        self,
        terminal_id: str,
        agent_id: str,
        plan_id: Optional[str],
        working_dir: str,
        command: str,
        *,
        auto_accept: bool,
        trust_marker: str,
        sessions: SessionStore,
        scheduler: Scheduler,
        clock: Callable[[], float],
    ) -> None:
        self.id = terminal_id
        self.agent_id = agent_id
        self.plan_id = plan_id
        self.working_dir = working_dir
        self.command = command
        self.channel = OutputChannel()
        self.exit_code: Optional[int] = None
        self.exited = False

        self._handle: Optional[ProcessHandle] = None
        self._pending: list[str] = []
        self._lock = threading.Lock()
        self._sessions = sessions
        self._scheduler = scheduler
        self._clock = clock
        self._exit_listeners: list[ExitListener] = []

        self.startup = StartupGate(command, username=_current_username())
        self.trust = TrustPromptDetector(marker=trust_marker)
        self.accept_mode = AcceptModeDetector() if auto_accept else None
        self.session_cleared = SessionClearedDetector()

    def attach(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handle = handle
            pending, self._pending = self._pending, []
        for data in pending:
            handle.write(data)
        self._scheduler(STARTUP_FALLBACK_SECONDS, self._startup_fallback)

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def write(self, data: str) -> None:
        with self._lock:
            if self.exited:
                return
            if self._handle is None:
                self._pending.append(data)
                return
            handle = self._handle
        handle.write(data)

    def resize(self, cols: int, rows: int) -> None:
        if self._handle is not None and not self.exited:
            self._handle.resize(cols, rows)

    def kill(self) -> None:
        if self._handle is not None:
            self._handle.kill()

    def _schedule(self, write: ScheduledWrite) -> None:
        def fire() -> None:
            self.write(write.data)
            if write.on_sent is not None:
                write.on_sent()

        self._scheduler(write.delay, fire)

    def _startup_fallback(self) -> None:
        writes = self.startup.fallback()
        if writes:
            logger.debug("No shell prompt seen for {}, sending agent command anyway", self.id)
        for write in writes:
            self._schedule(write)

    def on_data(self, chunk: str) -> None:
        now = self._clock()
        self.channel.publish(chunk)

        writes = self.startup.feed(chunk, now)
        confirms = self.trust.feed(chunk, now)
        if confirms:
            logger.info("Auto-accepting workspace trust prompt in {}", self.id)
        writes += confirms
        if self.accept_mode is not None:
            toggles = self.accept_mode.feed(chunk, now)
            if toggles:
                logger.debug("Cycling accept mode for {} (attempt {})", self.id, self.accept_mode.attempts)
            writes += toggles
        if self.session_cleared.feed(chunk, now):
            self._sessions.clear(self.agent_id)
        for write in writes:
            self._schedule(write)

    def on_exit(self, exit_code: Optional[int]) -> None:
        with self._lock:
            if self.exited:
                return
            self.exited = True
            self.exit_code = exit_code
        self.channel.close()
        for listener in list(self._exit_listeners):
            try:
                listener(self, exit_code)
            except Exception:
                logger.exception("Exit listener failed for {}", self.id)


class TerminalRegistry:
    """All live agent terminals, keyed by terminal id."""

    def __init__(
        self,
        host: ProcessHost,
        bus: EventBus,
        sessions: SessionStore,
        agent_config: dict[str, Any],
        *,
        trust_marker: str = STATE_DIR_NAME,
        scheduler: Scheduler = timer_scheduler,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._host = host
        self._bus = bus
        self._sessions = sessions
        self._agent_config = agent_config
        self._trust_marker = trust_marker
        self._scheduler = scheduler
        self._clock = clock
        self._sleep = sleep
        self._terminals: dict[str, TerminalAutomaton] = {}
        self._lock = threading.Lock()

    def create(
        self,
        agent_id: str,
        working_dir: str,
        *,
        plan_id: Optional[str] = None,
        prompt: Optional[str] = None,
        flags: Optional[str] = None,
        auto_accept: bool = False,
        env: Optional[dict[str, str]] = None,
        on_exit: Optional[ExitListener] = None,
    ) -> TerminalAutomaton:
        """Spawn a login shell in `working_dir` and start the agent in it.

        Raises:
            AgentSpawnError: If the shell cannot be started.
        """
        cwd = working_dir
        if not Path(cwd).is_dir():
            logger.warning("Directory {} does not exist, using home directory", cwd)
            cwd = str(Path.home())

        session = resolve_session(self._sessions, agent_id, self._agent_config["sessions_dir"])
        command = build_agent_command(
            self._agent_config["command"],
            flags,
            session.session_id,
            session.resume,
            prompt,
        )
        terminal_id = f"terminal-{agent_id}-{int(time.time() * 1000)}"
        automaton = TerminalAutomaton(
            terminal_id,
            agent_id,
            plan_id,
            cwd,
            command,
            auto_accept=auto_accept,
            trust_marker=self._trust_marker,
            sessions=self._sessions,
            scheduler=self._scheduler,
            clock=self._clock,
        )
        automaton.add_exit_listener(self._handle_exit)
        if on_exit is not None:
            automaton.add_exit_listener(on_exit)

        process_env = dict(os.environ)
        process_env.update(
            {
                "TERM": "xterm-256color",
                "COLORTERM": "truecolor",
                "PLAN_ORCHESTRATOR_AGENT_ID": agent_id,
            }
        )
        if env:
            process_env.update(env)

        with self._lock:
            self._terminals[terminal_id] = automaton
        try:
            handle = self._host.spawn(
                cwd,
                [self._agent_config["shell"], "-l"],
                process_env,
                automaton.on_data,
                automaton.on_exit,
            )
        except OSError as exc:
            with self._lock:
                self._terminals.pop(terminal_id, None)
            raise AgentSpawnError(f"Failed to start terminal for {agent_id}: {exc}") from exc
        automaton.attach(handle)
        logger.info("Terminal {} started for agent {} (resume={})", terminal_id, agent_id, session.resume)
        return automaton

    def _handle_exit(self, automaton: TerminalAutomaton, exit_code: Optional[int]) -> None:
        with self._lock:
            self._terminals.pop(automaton.id, None)
        self._bus.emit(
            channel="agents",
            event_type="agent.exited",
            entity_id=automaton.agent_id,
            payload={
                "agent_id": automaton.agent_id,
                "plan_id": automaton.plan_id,
                "terminal_id": automaton.id,
                "exit_code": exit_code,
            },
        )

    def get(self, terminal_id: str) -> Optional[TerminalAutomaton]:
        with self._lock:
            return self._terminals.get(terminal_id)

    def for_agent(self, agent_id: str) -> Optional[TerminalAutomaton]:
        with self._lock:
            for automaton in self._terminals.values():
                if automaton.agent_id == agent_id:
                    return automaton
        return None

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._terminals)

    def close(self, terminal_id: str) -> None:
        with self._lock:
            automaton = self._terminals.pop(terminal_id, None)
        if automaton is None:
            return
        logger.info("Closing terminal {}", terminal_id)
        automaton.kill()

    def close_all(self) -> None:
        for terminal_id in self.ids():
            self.close(terminal_id)

    def write(self, terminal_id: str, data: str) -> None:
        automaton = self.get(terminal_id)
        if automaton is not None:
            automaton.write(data)

    def resize(self, terminal_id: str, cols: int, rows: int) -> None:
        automaton = self.get(terminal_id)
        if automaton is not None:
            automaton.resize(cols, rows)

    def send_exit(self, terminal_id: str) -> None:
        self.write(terminal_id, EXIT_COMMAND)

    def inject_text(self, terminal_id: str, text: str, delay: float = TYPE_CHAR_DELAY_SECONDS) -> None:
        """Type `text` one character at a time so it is not treated as a paste."""
        automaton = self.get(terminal_id)
        if automaton is None:
            return
        for char in text:
            automaton.write(char)
            self._sleep(delay)

    def inject_prompt(self, terminal_id: str, prompt: str) -> bool:
        """Write `prompt` in one go, then confirm it once the paste preview shows.

        Returns whether the paste preview was seen.
        """
        automaton = self.get(terminal_id)
        if automaton is None:
            return False
        preview = automaton.channel.expect(PASTE_PREVIEW_MARKER, PASTE_PREVIEW_TIMEOUT_SECONDS)
        automaton.write(prompt)
        pasted = preview.wait()
        self._sleep(PASTE_CONFIRM_DELAY_SECONDS if pasted else PLAIN_CONFIRM_DELAY_SECONDS)
        automaton.write("\r")
        return pasted

    def wait_for_output(self, terminal_id: str, pattern: PatternLike, timeout: float = 5.0) -> bool:
        automaton = self.get(terminal_id)
        if automaton is None:
            return False
        return automaton.channel.wait_for_output(pattern, timeout)
