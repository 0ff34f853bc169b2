from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

import yaml

from ..constants import PLANS_DIR, SCHEMA_VERSION
from ..domain.models import Activity, Plan, TaskAssignment, now_iso
from ..io_utils import FileLock, _atomic_write_yaml
from .interfaces import ActivityRepository, AssignmentRepository, EventRepository, PlanRepository

T = TypeVar("T")


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        out: list[T] = []
        for item in items:
            if isinstance(item, dict):
                out.append(self._loader(item))
        return out

    def _save(self, items: list[T]) -> None:
        payload = {"version": SCHEMA_VERSION, self._key: [self._dumper(item) for item in items]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)


class FilePlanRepository(PlanRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Plan](
            path,
            lock_path,
            "plans",
            loader=Plan.from_dict,
            dumper=lambda p: p.to_dict(),
        )

    def list(self) -> list[Plan]:
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, plan_id: str) -> Optional[Plan]:
        for plan in self.list():
            if plan.id == plan_id:
                return plan
        return None

    def upsert(self, plan: Plan) -> Plan:
        with self._repo._thread_lock:
            with self._repo._lock:
                plans = self._repo._load()
                plan.updated_at = now_iso()
                for idx, existing in enumerate(plans):
                    if existing.id == plan.id:
                        plans[idx] = plan
                        self._repo._save(plans)
                        return plan
                plans.append(plan)
                self._repo._save(plans)
        return plan

    def delete(self, plan_id: str) -> bool:
        with self._repo._thread_lock:
            with self._repo._lock:
                plans = self._repo._load()
                keep = [p for p in plans if p.id != plan_id]
                if len(keep) == len(plans):
                    return False
                self._repo._save(keep)
        return True


class _PerPlanCollection(Generic[T]):
    """One YAML collection file per plan under `plans/<plan_id>/`."""

    def __init__(
        self,
        root: Path,
        file_name: str,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._root = root
        self._file_name = file_name
        self._key = key
        self._loader = loader
        self._dumper = dumper
        self._repos: dict[str, _YamlCollectionRepo[T]] = {}
        self._guard = threading.Lock()

    def for_plan(self, plan_id: str) -> _YamlCollectionRepo[T]:
        with self._guard:
            repo = self._repos.get(plan_id)
            if repo is None:
                plan_dir = self._root / PLANS_DIR / plan_id
                lock_name = self._file_name.rsplit(".", 1)[0] + ".lock"
                repo = _YamlCollectionRepo[T](
                    plan_dir / self._file_name,
                    plan_dir / lock_name,
                    self._key,
                    loader=self._loader,
                    dumper=self._dumper,
                )
                self._repos[plan_id] = repo
            return repo


class FileAssignmentRepository(AssignmentRepository):
    def __init__(self, root: Path) -> None:
        self._collection = _PerPlanCollection[TaskAssignment](
            root,
            "assignments.yaml",
            "assignments",
            loader=TaskAssignment.from_dict,
            dumper=lambda a: a.to_dict(),
        )

    def list(self, plan_id: str) -> list[TaskAssignment]:
        repo = self._collection.for_plan(plan_id)
        with repo._thread_lock:
            with repo._lock:
                return repo._load()

    def get(self, plan_id: str, bead_id: str) -> Optional[TaskAssignment]:
        for assignment in self.list(plan_id):
            if assignment.bead_id == bead_id:
                return assignment
        return None

    def upsert(self, assignment: TaskAssignment) -> TaskAssignment:
        repo = self._collection.for_plan(assignment.plan_id)
        with repo._thread_lock:
            with repo._lock:
                items = repo._load()
                for idx, existing in enumerate(items):
                    if existing.bead_id == assignment.bead_id:
                        items[idx] = assignment
                        repo._save(items)
                        return assignment
                items.append(assignment)
                repo._save(items)
        return assignment

    def clear(self, plan_id: str) -> None:
        repo = self._collection.for_plan(plan_id)
        with repo._thread_lock:
            with repo._lock:
                repo._save([])


class FileActivityRepository(ActivityRepository):
    def __init__(self, root: Path) -> None:
        self._collection = _PerPlanCollection[Activity](
            root,
            "activities.yaml",
            "activities",
            loader=Activity.from_dict,
            dumper=lambda a: a.to_dict(),
        )

    def list(self, plan_id: str) -> list[Activity]:
        repo = self._collection.for_plan(plan_id)
        with repo._thread_lock:
            with repo._lock:
                return repo._load()

    def append(self, activity: Activity) -> Activity:
        repo = self._collection.for_plan(activity.plan_id)
        with repo._thread_lock:
            with repo._lock:
                items = repo._load()
                items.append(activity)
                repo._save(items)
        return activity

    def clear(self, plan_id: str) -> None:
        repo = self._collection.for_plan(plan_id)
        with repo._thread_lock:
            with repo._lock:
                repo._save([])


class FileEventRepository(EventRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
        }
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event, default=str) + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileMappingRepository:
    """A whole-file YAML mapping (config, sessions, credentials)."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                if not self._path.exists():
                    return {}
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                return raw if isinstance(raw, dict) else {}

    def save(self, data: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                _atomic_write_yaml(self._path, data)
        return data

    def update(self, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Load, apply `mutate` in place and save under one lock."""
        with self._thread_lock:
            with self._lock:
                data: dict[str, Any] = {}
                if self._path.exists():
                    raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                    data = raw if isinstance(raw, dict) else {}
                mutate(data)
                _atomic_write_yaml(self._path, data)
        return data
