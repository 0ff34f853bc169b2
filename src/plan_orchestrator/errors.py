"""Exception types raised by the orchestration core."""

from __future__ import annotations

from typing import Sequence


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


class PlanNotFoundError(OrchestratorError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class TaskStoreError(OrchestratorError):
    """The external task CLI exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str) -> None:
        super().__init__(f"{' '.join(command)} failed ({returncode}): {stderr.strip()}")
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


class GitCommandError(OrchestratorError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr


class RebaseConflictError(GitCommandError):
    """A rebase stopped on conflicts and was aborted."""


class CredentialError(OrchestratorError):
    """No usable access credential for headless agents."""


class AgentSpawnError(OrchestratorError):
    """An agent process could not be started."""
