from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional


PlanStatus = Literal[
    "draft",
    "discussing",
    "discussed",
    "delegating",
    "in_progress",
    "ready_for_review",
    "completed",
    "failed",
]
BranchStrategy = Literal["feature_branch", "raise_prs"]
AssignmentStatus = Literal["pending", "in_progress", "sent", "completed", "failed"]
WorktreeStatus = Literal["active", "ready_for_review", "cleaned"]
DiscussionStatus = Literal["active", "approved", "cancelled"]
ActivityType = Literal["info", "success", "warning", "error"]
TaskNodeStatus = Literal["pending", "in_progress", "sent", "completed", "failed", "blocked", "ready"]
AgentKind = Literal["orchestrator", "planner", "discussion", "follow_up", "task", "merge"]
AgentMode = Literal["interactive", "headless"]

BRANCH_STRATEGIES: tuple[str, ...] = ("feature_branch", "raise_prs")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


@dataclass
class Repository:
    id: str = ""
    name: str = ""
    root_path: str = ""
    default_branch: str = "main"
    remote_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Repository":
        name = str(data.get("name") or "")
        return cls(
            id=str(data.get("id") or name),
            name=name,
            root_path=str(data.get("root_path") or ""),
            default_branch=str(data.get("default_branch") or "main"),
            remote_url=_opt_str(data.get("remote_url")),
        )


@dataclass
class BeadTask:
    """A task as read from the external task store."""

    id: str
    title: str = ""
    status: str = "open"
    type: Optional[str] = None
    parent: Optional[str] = None
    assignee: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    def label_value(self, prefix: str) -> Optional[str]:
        for label in self.labels:
            if label.startswith(prefix):
                return label[len(prefix):]
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskAssignment:
    bead_id: str
    plan_id: str
    agent_id: str = ""
    status: AssignmentStatus = "pending"
    assigned_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskAssignment":
        return cls(
            bead_id=str(data.get("bead_id") or ""),
            plan_id=str(data.get("plan_id") or ""),
            agent_id=str(data.get("agent_id") or ""),
            status=str(data.get("status") or "pending"),  # type: ignore[arg-type]
            assigned_at=str(data.get("assigned_at") or now_iso()),
            completed_at=_opt_str(data.get("completed_at")),
        )


@dataclass
class Worktree:
    id: str = field(default_factory=lambda: _id("wt"))
    plan_id: str = ""
    task_id: str = ""
    repository_id: str = ""
    path: str = ""
    branch: str = ""
    agent_id: Optional[str] = None
    status: WorktreeStatus = "active"
    created_at: str = field(default_factory=now_iso)
    blocked_by: list[str] = field(default_factory=list)
    base_branch: Optional[str] = None
    commits: list[str] = field(default_factory=list)
    merged_into_feature_branch: bool = False
    merged_at: Optional[str] = None
    merge_task_id: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    pr_base_branch: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Worktree":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("wt"))
        payload["status"] = str(data.get("status") or "active")
        payload["created_at"] = str(data.get("created_at") or now_iso())
        payload["blocked_by"] = list(data.get("blocked_by") or [])
        payload["commits"] = list(data.get("commits") or [])
        payload["merged_into_feature_branch"] = bool(data.get("merged_into_feature_branch"))
        for key in ("plan_id", "task_id", "repository_id", "path", "branch"):
            payload[key] = str(data.get(key) or "")
        return cls(**payload)


@dataclass
class Discussion:
    id: str = field(default_factory=lambda: _id("disc"))
    plan_id: str = ""
    status: DiscussionStatus = "active"
    started_at: str = field(default_factory=now_iso)
    approved_at: Optional[str] = None
    summary: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Discussion":
        return cls(
            id=str(data.get("id") or _id("disc")),
            plan_id=str(data.get("plan_id") or ""),
            status=str(data.get("status") or "active"),  # type: ignore[arg-type]
            started_at=str(data.get("started_at") or now_iso()),
            approved_at=_opt_str(data.get("approved_at")),
            summary=_opt_str(data.get("summary")),
        )


@dataclass
class PlanCommit:
    sha: str
    short_sha: str
    message: str
    task_id: str
    timestamp: str
    repository_id: str
    github_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanCommit":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass
class PlanPullRequest:
    number: int
    title: str
    url: str
    task_id: str
    base_branch: str
    head_branch: str
    status: str
    repository_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanPullRequest":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass
class GitSummary:
    commits: list[PlanCommit] = field(default_factory=list)
    pull_requests: list[PlanPullRequest] = field(default_factory=list)

    def add_commits(self, commits: list[PlanCommit]) -> list[PlanCommit]:
        """Append commits not already recorded; return the ones added.

        After a rebase a worktree may carry commits that another task already
        pushed, so SHAs are the identity.
        """
        existing = {c.sha for c in self.commits}
        fresh = [c for c in commits if c.sha not in existing]
        self.commits.extend(fresh)
        return fresh

    def to_dict(self) -> dict[str, Any]:
        return {
            "commits": [c.to_dict() for c in self.commits],
            "pull_requests": [p.to_dict() for p in self.pull_requests],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GitSummary":
        return cls(
            commits=[PlanCommit.from_dict(c) for c in list(data.get("commits") or []) if isinstance(c, dict)],
            pull_requests=[
                PlanPullRequest.from_dict(p) for p in list(data.get("pull_requests") or []) if isinstance(p, dict)
            ],
        )


@dataclass
class Plan:
    id: str = field(default_factory=lambda: _id("plan"))
    title: str = ""
    description: str = ""
    status: PlanStatus = "draft"
    max_parallel_agents: int = 4
    branch_strategy: BranchStrategy = "feature_branch"
    feature_branch: Optional[str] = None
    worktrees: list[Worktree] = field(default_factory=list)
    discussion: Optional[Discussion] = None
    discussion_output_path: Optional[str] = None
    git_summary: GitSummary = field(default_factory=GitSummary)
    reference_agent_id: Optional[str] = None
    orchestrator_agent_id: Optional[str] = None
    plan_agent_id: Optional[str] = None
    discussion_agent_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def id_part(self) -> str:
        """Short id segment used in branch names (`plan-abc123` -> `abc123`)."""
        parts = self.id.split("-", 1)
        return parts[1] if len(parts) > 1 else self.id

    def worktree_for_task(self, task_id: str) -> Optional[Worktree]:
        for worktree in self.worktrees:
            if worktree.task_id == task_id:
                return worktree
        return None

    def active_worktrees(self) -> list[Worktree]:
        return [w for w in self.worktrees if w.status == "active"]

    def touch(self) -> None:
        self.updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["worktrees"] = [w.to_dict() for w in self.worktrees]
        data["discussion"] = self.discussion.to_dict() if self.discussion else None
        data["git_summary"] = self.git_summary.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("plan"))
        payload["title"] = str(data.get("title") or "")
        payload["description"] = str(data.get("description") or "")
        payload["status"] = str(data.get("status") or "draft")
        try:
            payload["max_parallel_agents"] = max(1, int(data.get("max_parallel_agents") or 4))
        except (TypeError, ValueError):
            payload["max_parallel_agents"] = 4
        strategy = str(data.get("branch_strategy") or "feature_branch")
        payload["branch_strategy"] = strategy if strategy in BRANCH_STRATEGIES else "feature_branch"
        payload["worktrees"] = [Worktree.from_dict(w) for w in list(data.get("worktrees") or []) if isinstance(w, dict)]
        raw_discussion = data.get("discussion")
        payload["discussion"] = Discussion.from_dict(raw_discussion) if isinstance(raw_discussion, dict) else None
        raw_summary = data.get("git_summary")
        payload["git_summary"] = GitSummary.from_dict(raw_summary) if isinstance(raw_summary, dict) else GitSummary()
        payload["created_at"] = str(data.get("created_at") or now_iso())
        payload["updated_at"] = str(data.get("updated_at") or now_iso())
        return cls(**payload)


@dataclass
class Activity:
    plan_id: str
    type: ActivityType
    message: str
    details: Optional[str] = None
    id: str = field(default_factory=lambda: _id("act"))
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Activity":
        return cls(
            plan_id=str(data.get("plan_id") or ""),
            type=str(data.get("type") or "info"),  # type: ignore[arg-type]
            message=str(data.get("message") or ""),
            details=_opt_str(data.get("details")),
            id=str(data.get("id") or _id("act")),
            timestamp=str(data.get("timestamp") or now_iso()),
        )


@dataclass
class AgentRecord:
    """A live agent process owned by a plan. Never persisted."""

    id: str
    plan_id: str
    kind: AgentKind
    mode: AgentMode = "interactive"
    working_dir: str = ""
    task_id: Optional[str] = None
    terminal_id: Optional[str] = None
    started_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
