from .models import (
    Activity,
    AgentRecord,
    BeadTask,
    Discussion,
    GitSummary,
    Plan,
    PlanCommit,
    PlanPullRequest,
    Repository,
    TaskAssignment,
    Worktree,
)

__all__ = [
    "Plan",
    "Worktree",
    "Discussion",
    "GitSummary",
    "PlanCommit",
    "PlanPullRequest",
    "TaskAssignment",
    "BeadTask",
    "Repository",
    "Activity",
    "AgentRecord",
]
