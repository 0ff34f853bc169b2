"""Load optional orchestrator configuration from `<state>/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_LABEL_PREFIX,
    DEFAULT_MAX_PARALLEL_AGENTS,
    DEFAULT_TASK_STORE_BINARY,
    POLL_INTERVAL_SECONDS,
    STATE_DIR_NAME,
    STATE_HOME_ENV,
)
from .domain.models import Repository
from .io_utils import _load_yaml_with_error

VALID_MODES = {"interactive", "headless"}

DEFAULT_HEADLESS_COMMAND = [
    "claude",
    "-p",
    "{prompt}",
    "--output-format",
    "stream-json",
    "--verbose",
    "--dangerously-skip-permissions",
]


def resolve_state_dir(explicit: Optional[str | Path] = None) -> Path:
    """Return the state root: explicit path, then `$PLAN_ORCHESTRATOR_HOME`, then `~/.plan_orchestrator`."""
    if explicit:
        return Path(explicit).expanduser().resolve()
    env = os.environ.get(STATE_HOME_ENV)
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / STATE_DIR_NAME).resolve()


def load_orchestrator_config(state_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional orchestrator config file.

    Args:
        state_dir: Orchestrator state root.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = state_dir / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_yaml_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def get_dispatch_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the dispatch settings with defaults applied.

    Args:
        config: Orchestrator configuration dictionary.

    Returns:
        Mapping with `poll_interval_seconds`, `default_max_parallel_agents`,
        `label_prefix` and `mode`.
    """
    raw = _get_nested(config, "dispatch")
    raw = raw if isinstance(raw, dict) else {}
    mode = raw.get("mode")
    prefix = raw.get("label_prefix")
    return {
        "poll_interval_seconds": _positive_float(raw.get("poll_interval_seconds"), POLL_INTERVAL_SECONDS),
        "default_max_parallel_agents": _positive_int(
            raw.get("default_max_parallel_agents"), DEFAULT_MAX_PARALLEL_AGENTS
        ),
        "label_prefix": prefix if isinstance(prefix, str) and prefix else DEFAULT_LABEL_PREFIX,
        "mode": mode if isinstance(mode, str) and mode in VALID_MODES else "interactive",
    }


def get_agent_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the interactive agent settings.

    Args:
        config: Orchestrator configuration dictionary.

    Returns:
        Mapping with `command`, `shell`, `sessions_dir` and `model` (may be None).
    """
    raw = _get_nested(config, "agent")
    raw = raw if isinstance(raw, dict) else {}
    command = raw.get("command")
    shell = raw.get("shell")
    sessions_dir = raw.get("sessions_dir")
    model = raw.get("model")
    return {
        "command": command if isinstance(command, str) and command else DEFAULT_AGENT_COMMAND,
        "shell": shell if isinstance(shell, str) and shell else os.environ.get("SHELL") or "/bin/bash",
        "sessions_dir": str(Path(sessions_dir).expanduser())
        if isinstance(sessions_dir, str) and sessions_dir
        else str(Path.home() / ".claude" / "projects"),
        "model": model if isinstance(model, str) and model else None,
    }


def get_headless_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract headless agent settings.

    The command is an argv template; `{prompt}` and `{model}` are substituted
    per agent.
    """
    raw = _get_nested(config, "headless")
    raw = raw if isinstance(raw, dict) else {}
    command = raw.get("command")
    if not (isinstance(command, list) and command and all(isinstance(part, str) for part in command)):
        command = list(DEFAULT_HEADLESS_COMMAND)
    token = raw.get("oauth_token")
    return {
        "command": command,
        "oauth_token": token if isinstance(token, str) and token else None,
    }


def get_task_store_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _get_nested(config, "task_store")
    raw = raw if isinstance(raw, dict) else {}
    binary = raw.get("binary")
    return {"binary": binary if isinstance(binary, str) and binary else DEFAULT_TASK_STORE_BINARY}


def get_repositories(config: dict[str, Any]) -> list[Repository]:
    """Return registered repositories; malformed entries are skipped."""
    raw = _get_nested(config, "repositories")
    if not isinstance(raw, list):
        return []
    repos: list[Repository] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        repo = Repository.from_dict(item)
        if repo.name and repo.root_path:
            repos.append(repo)
    return repos
