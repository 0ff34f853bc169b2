"""Run agents without a terminal, reading their stream-JSON output line by line."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..errors import AgentSpawnError

logger = logging.getLogger(__name__)


@dataclass
class HeadlessResult:
    success: bool
    exit_code: int
    result: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class HeadlessAgentSpec:
    agent_id: str
    plan_id: str
    working_dir: str
    prompt: str
    task_id: Optional[str] = None
    model: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    on_event: Optional[Callable[[dict[str, Any]], None]] = None
    on_complete: Optional[Callable[[HeadlessResult], None]] = None


def parse_stream_line(line: str) -> Optional[dict[str, Any]]:
    line = line.strip()
    if not line:
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) and parsed.get("type") else None


def extract_text(event: dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind == "message":
        content = event.get("content")
        return content if isinstance(content, str) else None
    if kind == "assistant":
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            text = "".join(
                str(c.get("text")) for c in content if isinstance(c, dict) and c.get("type") == "text" and c.get("text")
            )
            return text or None
        return None
    if kind == "content_block_delta":
        delta = event.get("delta")
        return delta.get("text") if isinstance(delta, dict) else None
    if kind == "result":
        return event.get("result") or None
    return None


def is_error_event(event: dict[str, Any]) -> bool:
    if event.get("type") == "tool_result":
        return event.get("is_error") is True
    if event.get("type") == "system":
        return event.get("subtype") == "error"
    return False


class HeadlessAgentRunner(ABC):
    @abstractmethod
    def start(self, spec: HeadlessAgentSpec) -> None:
        """Start the agent; `spec.on_complete` fires once it finishes."""
        raise NotImplementedError

    @abstractmethod
    def stop(self, agent_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def stop_all(self, plan_id: Optional[str] = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def running(self, plan_id: Optional[str] = None) -> list[str]:
        raise NotImplementedError


class _RunningAgent:
    def __init__(self, spec: HeadlessAgentSpec, process: subprocess.Popen) -> None:
        self.spec = spec
        self.process = process
        self.started = time.monotonic()
        self.stopped = False
        self.result_event: Optional[dict[str, Any]] = None
        self.stderr_tail: list[str] = []


class SubprocessHeadlessRunner(HeadlessAgentRunner):
    """Run the configured command template with `{prompt}` and `{model}` substituted."""

    def __init__(self, command: list[str], oauth_token: Optional[Callable[[], Optional[str]]] = None) -> None:
        self.command = command
        self._oauth_token = oauth_token
        self._agents: dict[str, _RunningAgent] = {}
        self._lock = threading.Lock()

    def _argv(self, spec: HeadlessAgentSpec) -> list[str]:
        argv: list[str] = []
        for part in self.command:
            if part == "{model}" and not spec.model:
                # drop the flag that precedes an unset model
                if argv and argv[-1].startswith("-"):
                    argv.pop()
                continue
            argv.append(part.replace("{prompt}", spec.prompt).replace("{model}", spec.model or ""))
        return argv

    def start(self, spec: HeadlessAgentSpec) -> None:
        env = dict(os.environ)
        env.update(spec.env)
        if spec.task_id:
            env["PLAN_ORCHESTRATOR_TASK_ID"] = spec.task_id
        token = self._oauth_token() if self._oauth_token else None
        if token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = token
        argv = self._argv(spec)
        try:
            process = subprocess.Popen(
                argv,
                cwd=spec.working_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            raise AgentSpawnError(f"Failed to start headless agent {spec.agent_id}: {exc}") from exc

        running = _RunningAgent(spec, process)
        with self._lock:
            self._agents[spec.agent_id] = running
        logger.info("Headless agent %s started (pid %s) in %s", spec.agent_id, process.pid, spec.working_dir)

        threading.Thread(target=self._drain_stderr, args=(running,), daemon=True).start()
        threading.Thread(
            target=self._read_stdout,
            args=(running,),
            name=f"headless-{spec.agent_id}",
            daemon=True,
        ).start()

    def _drain_stderr(self, running: _RunningAgent) -> None:
        pipe = running.process.stderr
        if pipe is None:
            return
        for line in iter(pipe.readline, ""):
            logger.debug("[%s stderr] %s", running.spec.agent_id, line.rstrip()[:500])
            running.stderr_tail = (running.stderr_tail + [line.rstrip()])[-20:]
        pipe.close()

    def _read_stdout(self, running: _RunningAgent) -> None:
        spec = running.spec
        pipe = running.process.stdout
        if pipe is not None:
            for line in iter(pipe.readline, ""):
                event = parse_stream_line(line)
                if event is None:
                    continue
                if event.get("type") == "result":
                    running.result_event = event
                if spec.on_event is not None:
                    try:
                        spec.on_event(event)
                    except Exception:
                        logger.exception("Headless event handler failed for %s", spec.agent_id)
            pipe.close()
        exit_code = running.process.wait()
        with self._lock:
            self._agents.pop(spec.agent_id, None)
        self._finish(running, exit_code)

    def _finish(self, running: _RunningAgent, exit_code: int) -> None:
        spec = running.spec
        duration_ms = int((time.monotonic() - running.started) * 1000)
        result_text = running.result_event.get("result") if running.result_event else None
        error: Optional[str] = None
        if running.stopped:
            error = "Agent stopped"
        elif exit_code != 0 and running.result_event is None:
            tail = "\n".join(running.stderr_tail[-5:])
            error = f"Agent exited with code {exit_code}" + (f": {tail}" if tail else "")
        result = HeadlessResult(
            success=exit_code == 0 and not running.stopped,
            exit_code=exit_code,
            result=result_text if isinstance(result_text, str) else None,
            error=error,
            duration_ms=duration_ms,
        )
        logger.info("Headless agent %s exited with %s after %sms", spec.agent_id, exit_code, duration_ms)
        if spec.on_complete is not None:
            try:
                spec.on_complete(result)
            except Exception:
                logger.exception("Headless completion handler failed for %s", spec.agent_id)

    def stop(self, agent_id: str) -> bool:
        with self._lock:
            running = self._agents.get(agent_id)
        if running is None:
            return False
        running.stopped = True
        logger.info("Stopping headless agent %s", agent_id)
        running.process.terminate()
        try:
            running.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            running.process.kill()
        return True

    def stop_all(self, plan_id: Optional[str] = None) -> int:
        stopped = 0
        for agent_id in self.running(plan_id):
            if self.stop(agent_id):
                stopped += 1
        return stopped

    def running(self, plan_id: Optional[str] = None) -> list[str]:
        with self._lock:
            return [
                agent_id
                for agent_id, running in self._agents.items()
                if plan_id is None or running.spec.plan_id == plan_id
            ]
