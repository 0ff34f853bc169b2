from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, Literal, Optional

from ..domain.models import BeadTask

StatusFilter = Literal["open", "closed", "all"]


class TaskStore(ABC):
    """Narrow view of the external task tracker used by the dispatcher."""

    @abstractmethod
    def ensure_initialized(self) -> Path:
        raise NotImplementedError

    @abstractmethod
    def list(self, labels: Optional[Iterable[str]] = None, status: StatusFilter = "all") -> list[BeadTask]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[BeadTask]:
        raise NotImplementedError

    @abstractmethod
    def create(
        self,
        title: str,
        *,
        type: str = "task",
        parent: Optional[str] = None,
        assignee: Optional[str] = None,
        labels: Optional[Iterable[str]] = None,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def update(
        self,
        task_id: str,
        *,
        add_labels: Optional[Iterable[str]] = None,
        remove_labels: Optional[Iterable[str]] = None,
        assignee: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self, task_id: str, message: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_dependency(self, task_id: str, blocked_by: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_dependents(self, task_id: str) -> list[str]:
        raise NotImplementedError


TaskStoreFactory = Callable[[str], TaskStore]
