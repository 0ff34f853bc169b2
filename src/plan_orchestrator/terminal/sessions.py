"""Agent session continuity: which session id an agent resumes, and the command that does it."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..storage.file_repos import FileMappingRepository


class SessionStore:
    """Persisted `agent id -> session id` map."""

    def __init__(self, repo: FileMappingRepository) -> None:
        self._repo = repo

    def get(self, agent_id: str) -> Optional[str]:
        value = self._repo.load().get(agent_id)
        return str(value) if value else None

    def set(self, agent_id: str, session_id: str) -> None:
        def mutate(data: dict) -> None:
            data[agent_id] = session_id

        self._repo.update(mutate)

    def clear(self, agent_id: str) -> bool:
        removed: list[bool] = []

        def mutate(data: dict) -> None:
            removed.append(data.pop(agent_id, None) is not None)

        self._repo.update(mutate)
        if removed and removed[0]:
            logger.info("Cleared session id for agent {}", agent_id)
            return True
        return False


def session_has_content(sessions_dir: Path | str, session_id: str) -> bool:
    """Return True when `<sessions_dir>/*/<session_id>.jsonl` exists and is non-empty."""
    root = Path(sessions_dir)
    if not root.is_dir():
        return False
    try:
        for project_dir in root.iterdir():
            session_file = project_dir / f"{session_id}.jsonl"
            if session_file.is_file():
                return session_file.stat().st_size > 0
    except OSError as exc:
        logger.debug("Could not scan sessions in {}: {}", root, exc)
        return False
    return False


def quote_prompt(prompt: str) -> str:
    return "'" + prompt.replace("'", "'\\''") + "'"


def build_agent_command(
    base: str,
    flags: Optional[str],
    session_id: str,
    resume: bool,
    prompt: Optional[str] = None,
) -> str:
    """Build the line typed into the shell to start the agent.

    Flags go before `--resume`/`--session-id` so the trailing prompt is never
    taken as a flag argument.
    """
    command = base
    if flags:
        command += f" {flags}"
    command += f" --resume {session_id}" if resume else f" --session-id {session_id}"
    if prompt:
        command += f" {quote_prompt(prompt)}"
    return command + "\n"


@dataclass
class ResolvedSession:
    session_id: str
    resume: bool


def resolve_session(store: SessionStore, agent_id: str, sessions_dir: Path | str) -> ResolvedSession:
    """Reuse the persisted session only when its record has content; else persist a fresh id."""
    session_id = store.get(agent_id)
    if session_id and session_has_content(sessions_dir, session_id):
        logger.debug("Resuming session {} for agent {}", session_id, agent_id)
        return ResolvedSession(session_id=session_id, resume=True)
    fresh = str(uuid.uuid4())
    store.set(agent_id, fresh)
    logger.debug("Starting fresh session {} for agent {}", fresh, agent_id)
    return ResolvedSession(session_id=fresh, resume=False)
