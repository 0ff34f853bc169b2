from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..domain.models import Activity, Plan, TaskAssignment


class PlanRepository(ABC):
    @abstractmethod
    def list(self) -> list[Plan]:
        raise NotImplementedError

    @abstractmethod
    def get(self, plan_id: str) -> Optional[Plan]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, plan: Plan) -> Plan:
        raise NotImplementedError

    @abstractmethod
    def delete(self, plan_id: str) -> bool:
        raise NotImplementedError


class AssignmentRepository(ABC):
    @abstractmethod
    def list(self, plan_id: str) -> list[TaskAssignment]:
        raise NotImplementedError

    @abstractmethod
    def get(self, plan_id: str, bead_id: str) -> Optional[TaskAssignment]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, assignment: TaskAssignment) -> TaskAssignment:
        raise NotImplementedError

    @abstractmethod
    def clear(self, plan_id: str) -> None:
        raise NotImplementedError


class ActivityRepository(ABC):
    @abstractmethod
    def list(self, plan_id: str) -> list[Activity]:
        raise NotImplementedError

    @abstractmethod
    def append(self, activity: Activity) -> Activity:
        raise NotImplementedError

    @abstractmethod
    def clear(self, plan_id: str) -> None:
        raise NotImplementedError


class EventRepository(ABC):
    @abstractmethod
    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        raise NotImplementedError
