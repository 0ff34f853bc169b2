from __future__ import annotations

from pathlib import Path

from ..constants import CONFIG_FILE, CREDENTIALS_FILE, EVENTS_FILE, PLANS_DIR, PLANS_FILE, SESSIONS_FILE
from .bootstrap import ensure_state_root
from .file_repos import (
    FileActivityRepository,
    FileAssignmentRepository,
    FileEventRepository,
    FileMappingRepository,
    FilePlanRepository,
)


class Container:
    def __init__(self, state_dir: Path) -> None:
        self.state_root = ensure_state_root(state_dir.resolve())

        self.plans = FilePlanRepository(self.state_root / PLANS_FILE, self.state_root / "plans.lock")
        self.assignments = FileAssignmentRepository(self.state_root)
        self.activities = FileActivityRepository(self.state_root)
        self.events = FileEventRepository(self.state_root / EVENTS_FILE, self.state_root / "events.lock")
        self.config = FileMappingRepository(self.state_root / CONFIG_FILE, self.state_root / "config.lock")
        self.sessions = FileMappingRepository(self.state_root / SESSIONS_FILE, self.state_root / "sessions.lock")
        self.credentials = FileMappingRepository(
            self.state_root / CREDENTIALS_FILE, self.state_root / "credentials.lock"
        )

    def plan_dir(self, plan_id: str) -> Path:
        return self.state_root / PLANS_DIR / plan_id
