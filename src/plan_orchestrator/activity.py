"""Per-plan append-only activity log.

Activities are the user-facing history of a plan: every dispatch decision,
warning and failure lands here, is persisted immediately and is pushed to
observers on the `activities` channel.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .domain.models import Activity, ActivityType
from .events.bus import EventBus
from .storage.interfaces import ActivityRepository

logger = logging.getLogger(__name__)


class ActivityLog:
    def __init__(self, repo: ActivityRepository, bus: EventBus) -> None:
        self._repo = repo
        self._bus = bus
        self._cache: dict[str, list[Activity]] = {}
        self._lock = threading.RLock()

    def _load(self, plan_id: str) -> list[Activity]:
        cached = self._cache.get(plan_id)
        if cached is None:
            cached = self._repo.list(plan_id)
            self._cache[plan_id] = cached
        return cached

    def add(
        self,
        plan_id: str,
        type: ActivityType,
        message: str,
        details: Optional[str] = None,
    ) -> Activity:
        activity = Activity(plan_id=plan_id, type=type, message=message, details=details)
        with self._lock:
            self._load(plan_id).append(activity)
            self._repo.append(activity)
        logger.debug("[%s] %s: %s", plan_id, type, message)
        self._bus.emit(
            channel="activities",
            event_type="activity.added",
            entity_id=activity.id,
            payload=activity.to_dict(),
        )
        return activity

    def list(self, plan_id: str) -> list[Activity]:
        with self._lock:
            return list(self._load(plan_id))

    def clear(self, plan_id: str) -> None:
        with self._lock:
            self._cache[plan_id] = []
            self._repo.clear(plan_id)

    def forget(self, plan_id: str) -> None:
        """Drop the cached copy for a deleted plan."""
        with self._lock:
            self._cache.pop(plan_id, None)
