"""Task store backed by the `bd` command-line tracker, one store per plan directory."""

from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from ..constants import TASK_STORE_DIR
from ..domain.models import BeadTask
from ..errors import TaskStoreError
from .interfaces import StatusFilter, TaskStore

_CREATED_ID_RE = re.compile(r"([a-zA-Z0-9.-]+)\s*$")


def _to_task(raw: dict[str, Any]) -> BeadTask:
    blocked_by: list[str] = []
    dependencies = raw.get("dependencies")
    if isinstance(dependencies, list):
        # `blocks` dependencies mean this task is blocked by depends_on_id
        for dep in dependencies:
            if isinstance(dep, dict) and dep.get("type") == "blocks" and dep.get("depends_on_id"):
                blocked_by.append(str(dep["depends_on_id"]))
    labels = raw.get("labels")
    return BeadTask(
        id=str(raw.get("id") or ""),
        title=str(raw.get("title") or ""),
        status=str(raw.get("status") or "open"),
        type=raw.get("issue_type") or raw.get("type"),
        parent=raw.get("parent"),
        assignee=raw.get("owner") or raw.get("assignee"),
        labels=[str(label) for label in labels] if isinstance(labels, list) else [],
        blocked_by=blocked_by,
    )


class BdTaskStore(TaskStore):
    def __init__(self, plan_dir: Path, binary: str = "bd", prefix: str = "orch") -> None:
        self.plan_dir = plan_dir
        self.binary = binary
        self.prefix = prefix

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, "--sandbox", *args]
        logger.debug("Executing: {} (cwd={})", " ".join(cmd), self.plan_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.plan_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise TaskStoreError(cmd, -1, str(exc)) from exc
        if check and result.returncode != 0:
            raise TaskStoreError(cmd, result.returncode, result.stderr or result.stdout)
        return result

    def ensure_initialized(self) -> Path:
        """Create the plan's tracker on first use.

        Also writes the agent settings file that pre-allows tracker commands
        and file access inside the plan directory.
        """
        if (self.plan_dir / TASK_STORE_DIR).exists():
            return self.plan_dir
        logger.info("Initializing task store in {}", self.plan_dir)
        self.plan_dir.mkdir(parents=True, exist_ok=True)
        if not (self.plan_dir / ".git").exists():
            subprocess.run(["git", "init"], cwd=self.plan_dir, capture_output=True, text=True, check=False)
        self._run("init", "--prefix", self.prefix)

        settings_path = self.plan_dir / ".claude" / "settings.json"
        if not settings_path.exists():
            settings_path.parent.mkdir(parents=True, exist_ok=True)
            settings = {
                "permissions": {
                    "allow": [
                        f"Bash({self.binary} *)",
                        f"Bash({self.binary} --sandbox *)",
                        f"Read({self.plan_dir}/**)",
                        f"Edit({self.plan_dir}/**)",
                    ]
                }
            }
            settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
        return self.plan_dir

    def list(self, labels: Optional[Iterable[str]] = None, status: StatusFilter = "all") -> list[BeadTask]:
        self.ensure_initialized()
        args = ["list", "--json", "--limit", "0"]
        if status in ("open", "closed"):
            args += ["--status", status]
        else:
            args.append("--all")
        for label in labels or []:
            args += ["--label", label]

        try:
            result = self._run(*args)
        except TaskStoreError as exc:
            logger.error("Task list failed in {}: {}", self.plan_dir, exc)
            return []
        if not result.stdout.strip():
            return []
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Task list returned invalid JSON: {}", result.stdout[:100])
            return []
        if not isinstance(raw, list):
            logger.warning("Task list returned non-array: {}", result.stdout[:100])
            return []
        return [_to_task(item) for item in raw if isinstance(item, dict)]

    def get(self, task_id: str) -> Optional[BeadTask]:
        self.ensure_initialized()
        result = self._run("show", task_id, "--json", check=False)
        if result.returncode != 0:
            return None
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            return None
        if isinstance(raw, list):
            raw = raw[0] if raw else None
        return _to_task(raw) if isinstance(raw, dict) else None

    def create(
        self,
        title: str,
        *,
        type: str = "task",
        parent: Optional[str] = None,
        assignee: Optional[str] = None,
        labels: Optional[Iterable[str]] = None,
    ) -> str:
        self.ensure_initialized()
        args = ["create"]
        if type == "epic":
            args += ["--type", "epic"]
        if parent:
            args += ["--parent", parent]
        args.append(title)
        result = self._run(*args)

        output = result.stdout.strip()
        match = _CREATED_ID_RE.search(output)
        task_id = match.group(1) if match else output
        logger.info("Created {} {}: {}", type, task_id, title)

        label_list = list(labels or [])
        if assignee or label_list:
            self.update(task_id, assignee=assignee, add_labels=label_list)
        return task_id

    def update(
        self,
        task_id: str,
        *,
        add_labels: Optional[Iterable[str]] = None,
        remove_labels: Optional[Iterable[str]] = None,
        assignee: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        self.ensure_initialized()
        args = ["update", task_id]
        if assignee:
            args += ["--assignee", assignee]
        for label in add_labels or []:
            args += ["--add-label", label]
        for label in remove_labels or []:
            args += ["--remove-label", label]
        if title:
            args += ["--title", title]
        self._run(*args)
        logger.info("Updated task {} (+{} -{})", task_id, list(add_labels or []), list(remove_labels or []))

    def close(self, task_id: str, message: Optional[str] = None) -> None:
        self.ensure_initialized()
        args = ["close", task_id]
        if message:
            args += ["--reason", message]
        self._run(*args)
        logger.info("Closed task {}", task_id)

    def add_dependency(self, task_id: str, blocked_by: str) -> None:
        self.ensure_initialized()
        self._run("dep", blocked_by, "--blocks", task_id)
        logger.info("Added dependency: {} <- {}", task_id, blocked_by)

    def get_dependents(self, task_id: str) -> list[str]:
        self.ensure_initialized()
        result = self._run("dep", "list", task_id, "--direction=up", "--json", check=False)
        if result.returncode != 0 or not result.stdout.strip():
            logger.debug("No dependents for {}", task_id)
            return []
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        dependents: list[str] = []
        for item in raw:
            if isinstance(item, str) and item:
                dependents.append(item)
            elif isinstance(item, dict) and item.get("id"):
                dependents.append(str(item["id"]))
        return dependents
