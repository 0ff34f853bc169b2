"""Tests for worktree naming, base-branch choice, creation and cleanup."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from fakes import _git_init_with_origin, make_context

from plan_orchestrator import git_utils
from plan_orchestrator.context import OrchestratorContext
from plan_orchestrator.domain.models import BeadTask, Plan, Repository, Worktree
from plan_orchestrator.worktrees import WorktreeCoordinator, task_suffix


@pytest.fixture
def repo(tmp_path: Path) -> Repository:
    root = tmp_path / "api"
    _git_init_with_origin(root, tmp_path / "api-origin.git")
    return Repository(
        id="api",
        name="api",
        root_path=str(root),
        default_branch=git_utils.get_current_branch(root),
    )


@pytest.fixture
def ctx(tmp_path: Path, repo: Repository) -> OrchestratorContext:
    return make_context(tmp_path / "state", repositories=[repo])


def _plan(ctx: OrchestratorContext, strategy: str = "feature_branch") -> Plan:
    return ctx.save_plan(Plan(id="plan-abc123", title="Checkout flow", branch_strategy=strategy))  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "task_id, suffix",
    [("orch-abc.5", "5"), ("orch-abc.12.3", "3"), ("orch-42", "42"), ("plain", "plain")],
)
def test_task_suffix(task_id: str, suffix: str) -> None:
    assert task_suffix(task_id) == suffix


class TestNaming:
    def test_feature_and_task_branch_names(self, ctx: OrchestratorContext) -> None:
        plan = _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)

        assert coordinator.feature_branch_name(plan) == "orch/abc123/feature"
        assert coordinator.task_branch_name(plan, "api-1", "orch-abc.1") == "orch/abc123/api-1-1"

    def test_ensure_feature_branch_assigns_once(self, ctx: OrchestratorContext) -> None:
        _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)

        assert coordinator.ensure_feature_branch("plan-abc123") == "orch/abc123/feature"
        ctx.mutate_plan("plan-abc123", lambda p: setattr(p, "feature_branch", "custom/feature"))
        assert coordinator.ensure_feature_branch("plan-abc123") == "custom/feature"


class TestBaseBranch:
    def test_unblocked_task_starts_from_default_branch(self, ctx: OrchestratorContext, repo: Repository) -> None:
        plan = _plan(ctx)
        base = WorktreeCoordinator(ctx).get_base_branch_for_task(plan, BeadTask(id="orch-1"), repo)
        assert base == repo.default_branch

    def test_dependent_task_creates_feature_branch_on_origin(
        self, ctx: OrchestratorContext, repo: Repository
    ) -> None:
        plan = _plan(ctx)
        task = BeadTask(id="orch-2", blocked_by=["orch-1"])

        base = WorktreeCoordinator(ctx).get_base_branch_for_task(plan, task, repo)

        assert base == "orch/abc123/feature"
        assert git_utils.remote_branch_exists(repo.root_path, base)
        assert ctx.get_plan(plan.id).feature_branch == base

    def test_raise_prs_stacks_on_blocker_ready_for_review(
        self, ctx: OrchestratorContext, repo: Repository
    ) -> None:
        plan = _plan(ctx, "raise_prs")
        plan.worktrees.append(
            Worktree(id="api-1", task_id="orch-1", branch="orch/abc123/api-1-1", status="ready_for_review")
        )
        coordinator = WorktreeCoordinator(ctx)

        stacked = coordinator.get_base_branch_for_task(plan, BeadTask(id="orch-2", blocked_by=["orch-1"]), repo)
        labelled = coordinator.get_base_branch_for_task(
            plan, BeadTask(id="orch-3", blocked_by=["orch-9"], labels=["stack-on:release/1"]), repo
        )
        fallback = coordinator.get_base_branch_for_task(plan, BeadTask(id="orch-4", blocked_by=["orch-9"]), repo)

        assert stacked == "orch/abc123/api-1-1"
        assert labelled == "release/1"
        assert fallback == repo.default_branch

    def test_raise_prs_ignores_blocker_still_active(self, ctx: OrchestratorContext, repo: Repository) -> None:
        plan = _plan(ctx, "raise_prs")
        plan.worktrees.append(Worktree(id="api-1", task_id="orch-1", branch="b", status="active"))

        base = WorktreeCoordinator(ctx).get_base_branch_for_task(plan, BeadTask(id="orch-2", blocked_by=["orch-1"]), repo)

        assert base == repo.default_branch


class TestCreateAndCleanup:
    def test_create_task_worktree_records_plan_and_activity(
        self, ctx: OrchestratorContext, repo: Repository
    ) -> None:
        _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)

        worktree = coordinator.create_task_worktree(
            "plan-abc123", BeadTask(id="orch-abc.1", title="Login"), repo, "api-1", agent_id="task-agent-orch-abc.1"
        )

        assert Path(worktree.path).is_dir()
        assert worktree.branch == "orch/abc123/api-1-1"
        assert worktree.base_branch == repo.default_branch
        stored = ctx.get_plan("plan-abc123").worktree_for_task("orch-abc.1")
        assert stored is not None and stored.agent_id == "task-agent-orch-abc.1"
        messages = [a.message for a in ctx.activities.list("plan-abc123")]
        assert "Created worktree: api-1" in messages

    def test_branch_name_collision_gets_suffix(self, ctx: OrchestratorContext, repo: Repository) -> None:
        _plan(ctx)
        subprocess.run(["git", "branch", "orch/abc123/api-1-1"], cwd=repo.root_path, check=True, capture_output=True)

        worktree = WorktreeCoordinator(ctx).create_task_worktree(
            "plan-abc123", BeadTask(id="orch-abc.1"), repo, "api-1"
        )

        assert worktree.branch == "orch/abc123/api-1-1-1"

    def test_failed_creation_logs_error_activity(self, ctx: OrchestratorContext, tmp_path: Path) -> None:
        _plan(ctx)
        broken = Repository(id="ghost", name="ghost", root_path=str(tmp_path / "ghost"), default_branch="main")

        with pytest.raises(Exception):
            WorktreeCoordinator(ctx).create_task_worktree("plan-abc123", BeadTask(id="orch-1"), broken, "ghost-1")

        errors = [a for a in ctx.activities.list("plan-abc123") if a.type == "error"]
        assert errors and errors[0].message == "Failed to create worktree: ghost-1"
        assert ctx.get_plan("plan-abc123").worktrees == []

    def test_cleanup_all_worktrees_only_removes_directories_and_branches(
        self, ctx: OrchestratorContext, repo: Repository
    ) -> None:
        _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)
        worktree = coordinator.create_task_worktree("plan-abc123", BeadTask(id="orch-1"), repo, "api-1")

        coordinator.cleanup_all_worktrees_only("plan-abc123")

        assert not Path(worktree.path).exists()
        assert not (ctx.plan_dir("plan-abc123") / "worktrees").exists()
        assert not git_utils.branch_exists(repo.root_path, worktree.branch)
        assert ctx.get_plan("plan-abc123").worktrees[0].status == "cleaned"

    def test_cleanup_all_worktrees_stops_agents_and_skips_cleaned(
        self, ctx: OrchestratorContext, repo: Repository
    ) -> None:
        _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)
        worktree = coordinator.create_task_worktree("plan-abc123", BeadTask(id="orch-1"), repo, "api-1")
        ctx.start_interactive_agent("plan-abc123", "task-agent-orch-1", "task", worktree.path, "go", task_id="orch-1")
        ctx.start_interactive_agent("plan-abc123", "task-agent-orch-9", "task", worktree.path, "go", task_id="orch-9")

        coordinator.cleanup_all_worktrees("plan-abc123")

        assert not ctx.is_agent_alive("task-agent-orch-1")
        assert ctx.is_agent_alive("task-agent-orch-9")
        assert not Path(worktree.path).exists()
        messages = [a.message for a in ctx.activities.list("plan-abc123")]
        assert messages[-1] == "All worktrees cleaned up"
        assert "Removed worktree: api-1" in messages

        coordinator.cleanup_all_worktrees("plan-abc123")
        messages = [a.message for a in ctx.activities.list("plan-abc123")]
        assert messages.count("Removed worktree: api-1") == 1

    def test_delete_remote_branches(self, ctx: OrchestratorContext, repo: Repository) -> None:
        _plan(ctx)
        coordinator = WorktreeCoordinator(ctx)
        worktree = coordinator.create_task_worktree(
            "plan-abc123", BeadTask(id="orch-2", blocked_by=["orch-1"]), repo, "api-2"
        )
        git_utils.push_branch(worktree.path, worktree.branch)
        feature = ctx.get_plan("plan-abc123").feature_branch or ""
        assert git_utils.remote_branch_exists(repo.root_path, feature)

        coordinator.delete_remote_branches("plan-abc123")

        assert not git_utils.remote_branch_exists(repo.root_path, worktree.branch)
        assert not git_utils.remote_branch_exists(repo.root_path, feature)
