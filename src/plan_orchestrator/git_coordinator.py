"""Thread-safe coordination of git mutations across plan pollers.

Git is not designed for concurrent mutation of the same repository, and a
shared feature branch must see one push at a time. This module hands out a
lock per repository path and a lock per plan for feature-branch pushes.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class GitCoordinator:
    """Hand out per-repository and per-plan locks.

    One coordinator exists per process so that every poller thread and every
    cleanup worker agrees on the same locks.
    """

    _instance: Optional[GitCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> GitCoordinator:
        """Singleton pattern to ensure one coordinator per process."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._repo_locks = {}
                    instance._push_locks = {}
                    instance._registry_lock = threading.Lock()
                    cls._instance = instance
        return cls._instance

    def _repo_lock(self, repo_path: Path) -> threading.RLock:
        key = str(Path(repo_path).resolve())
        with self._registry_lock:
            lock = self._repo_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._repo_locks[key] = lock
            return lock

    def push_lock(self, plan_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._push_locks.get(plan_id)
            if lock is None:
                lock = threading.RLock()
                self._push_locks[plan_id] = lock
            return lock

    def release_plan(self, plan_id: str) -> None:
        with self._registry_lock:
            self._push_locks.pop(plan_id, None)

    def execute_git_operation(
        self,
        repo_path: Path,
        operation: Callable[[], T],
        operation_name: str = "git operation",
    ) -> T:
        """Execute a git operation while holding the repository's lock.

        Args:
            repo_path: Repository (or worktree) the operation mutates.
            operation: Function that performs the git operation.
            operation_name: Name of operation for logging.

        Returns:
            Result of the operation.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock on {} ({})", thread_id, repo_path, operation_name)
        with self._repo_lock(repo_path):
            try:
                return operation()
            except Exception as e:
                logger.error("Thread {} git operation failed ({}): {}", thread_id, operation_name, e)
                raise
            finally:
                logger.debug("Thread {} releasing git lock on {} ({})", thread_id, repo_path, operation_name)

    @contextmanager
    def feature_branch_push(self, plan_id: str) -> Iterator[None]:
        """Serialise pushes to a plan's shared feature branch."""
        lock = self.push_lock(plan_id)
        logger.debug("Waiting for feature-branch push lock ({})", plan_id)
        with lock:
            yield


_git_coordinator = GitCoordinator()


def get_git_coordinator() -> GitCoordinator:
    return _git_coordinator
