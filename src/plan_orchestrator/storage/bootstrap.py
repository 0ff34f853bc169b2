from __future__ import annotations

from pathlib import Path

from ..constants import CONFIG_FILE, EVENTS_FILE, PLANS_DIR, PLANS_FILE, SCHEMA_VERSION
from .file_repos import FileMappingRepository


def ensure_state_root(state_dir: Path) -> Path:
    state_root = state_dir
    state_root.mkdir(parents=True, exist_ok=True)
    (state_root / PLANS_DIR).mkdir(exist_ok=True)

    plans = state_root / PLANS_FILE
    if not plans.exists():
        plans.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")
    events = state_root / EVENTS_FILE
    if not events.exists():
        events.touch()

    config_repo = FileMappingRepository(state_root / CONFIG_FILE, state_root / "config.lock")
    config = config_repo.load()
    config["schema_version"] = SCHEMA_VERSION
    config.setdefault("dispatch", {"poll_interval_seconds": 5, "default_max_parallel_agents": 4, "mode": "interactive"})
    config.setdefault("repositories", [])
    config_repo.save(config)

    return state_root
