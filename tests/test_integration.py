"""Tests for integrating finished task branches into the feature branch or PRs."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from fakes import FakeHeadlessRunner, InMemoryTaskStore, _commit_file, _git_init_with_origin, make_context

from plan_orchestrator import git_utils, integration
from plan_orchestrator.context import OrchestratorContext
from plan_orchestrator.domain.models import BeadTask, Plan, Repository, Worktree
from plan_orchestrator.integration import BranchIntegrator
from plan_orchestrator.worktrees import WorktreeCoordinator

PLAN_ID = "plan-feat01"


@pytest.fixture
def repo(tmp_path: Path) -> Repository:
    root = tmp_path / "web"
    _git_init_with_origin(root, tmp_path / "web-origin.git")
    return Repository(id="web", name="web", root_path=str(root), default_branch=git_utils.get_current_branch(root))


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore(prefix="bd")


@pytest.fixture
def headless() -> FakeHeadlessRunner:
    return FakeHeadlessRunner()


@pytest.fixture
def ctx(tmp_path: Path, repo: Repository, store: InMemoryTaskStore, headless: FakeHeadlessRunner) -> OrchestratorContext:
    context = make_context(tmp_path / "state", store=store, headless=headless, repositories=[repo])
    context.save_plan(Plan(id=PLAN_ID, title="Feature"))
    return context


@pytest.fixture
def worktrees(ctx: OrchestratorContext) -> WorktreeCoordinator:
    return WorktreeCoordinator(ctx)


@pytest.fixture
def integrator(ctx: OrchestratorContext, worktrees: WorktreeCoordinator) -> BranchIntegrator:
    return BranchIntegrator(ctx, worktrees)


def _messages(ctx: OrchestratorContext) -> list[str]:
    return [a.message for a in ctx.activities.list(PLAN_ID)]


def _task_worktree(
    worktrees: WorktreeCoordinator, repo: Repository, task_id: str, filename: str, content: str
) -> Worktree:
    worktree = worktrees.create_task_worktree(PLAN_ID, BeadTask(id=task_id), repo, f"web-{task_id}")
    _commit_file(Path(worktree.path), filename, content, f"work for {task_id}")
    return worktree


class TestFeatureBranch:
    def test_push_lands_commits_and_records_summary(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
    ) -> None:
        worktree = _task_worktree(worktrees, repo, "orch-1", "login.py", "print('login')\n")

        assert integrator.push_to_feature_branch(PLAN_ID, worktree) is True

        plan = ctx.get_plan(PLAN_ID)
        feature = plan.feature_branch or ""
        assert git_utils.remote_branch_exists(repo.root_path, feature)
        assert [c.message for c in plan.git_summary.commits] == ["work for orch-1"]
        stored = plan.worktree_for_task("orch-1")
        assert stored is not None and stored.merged_into_feature_branch
        assert stored.commits == [plan.git_summary.commits[0].sha]
        assert "Pushed 1 new commit(s) for task orch-1" in _messages(ctx)

    def test_second_push_counts_only_new_commits(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
    ) -> None:
        first = _task_worktree(worktrees, repo, "orch-1", "a.py", "a\n")
        second = _task_worktree(worktrees, repo, "orch-2", "b.py", "b\n")

        integrator.push_to_feature_branch(PLAN_ID, first)
        integrator.push_to_feature_branch(PLAN_ID, second)

        plan = ctx.get_plan(PLAN_ID)
        assert len(plan.git_summary.commits) == 2
        assert "Pushed 1 new commit(s) for task orch-2" in _messages(ctx)

    def test_nothing_to_push(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
    ) -> None:
        worktree = worktrees.create_task_worktree(PLAN_ID, BeadTask(id="orch-1"), repo, "web-1")

        assert integrator.push_to_feature_branch(PLAN_ID, worktree) is False
        assert "No commits to push for task orch-1" in _messages(ctx)

    def test_conflict_hands_off_to_merge_agent(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
        store: InMemoryTaskStore,
        headless: FakeHeadlessRunner,
    ) -> None:
        store.add("First", task_id="orch-1")
        store.add("Second", task_id="orch-2")
        store.add("Depends on second", task_id="orch-3", blocked_by=["orch-2"])
        first = _task_worktree(worktrees, repo, "orch-1", "shared.txt", "first\n")
        second = _task_worktree(worktrees, repo, "orch-2", "shared.txt", "second\n")
        integrator.push_to_feature_branch(PLAN_ID, first)

        assert integrator.push_to_feature_branch(PLAN_ID, second) is False

        assert headless.started == ["merge-agent-orch-2"]
        merge_task_id = ctx.get_plan(PLAN_ID).worktree_for_task("orch-2").merge_task_id  # type: ignore[union-attr]
        assert merge_task_id in store.tasks
        assert set(store.tasks[merge_task_id].labels) == {"merge", "orch-internal"}
        assert merge_task_id in store.tasks["orch-3"].blocked_by
        assert "Spawning merge agent for orch-2" in _messages(ctx)

        headless.finish("merge-agent-orch-2")

        assert store.tasks[merge_task_id].status == "closed"
        stored = ctx.get_plan(PLAN_ID).worktree_for_task("orch-2")
        assert stored is not None and stored.merged_into_feature_branch
        assert _messages(ctx)[-1] == "Merge resolved for orch-2"

    def test_failed_merge_agent_logs_error(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
        headless: FakeHeadlessRunner,
    ) -> None:
        worktree = _task_worktree(worktrees, repo, "orch-1", "x.txt", "x\n")

        integrator.spawn_merge_resolution_agent(PLAN_ID, worktree, "conflict in x.txt")
        headless.finish("merge-agent-orch-1", success=False, exit_code=1, error="gave up")

        errors = [a for a in ctx.activities.list(PLAN_ID) if a.type == "error"]
        assert errors[-1].message == "Merge resolution failed for orch-1"
        assert errors[-1].details == "gave up"

    def test_parallel_blockers_are_consolidated_before_dependent_starts(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
    ) -> None:
        _task_worktree(worktrees, repo, "orch-1", "a.txt", "a\n")
        _task_worktree(worktrees, repo, "orch-2", "b.txt", "b\n")
        worktrees.ensure_feature_branch(PLAN_ID)
        worktrees.set_worktree_status(PLAN_ID, "orch-1", "ready_for_review")
        worktrees.set_worktree_status(PLAN_ID, "orch-2", "ready_for_review")
        dependent = BeadTask(id="orch-3", blocked_by=["orch-1", "orch-2"])

        assert integrator.maybe_spawn_merge_agent(PLAN_ID, dependent) is False

        plan = ctx.get_plan(PLAN_ID)
        assert all(w.merged_into_feature_branch for w in plan.worktrees)
        assert "Multiple parallel tasks need merging" in _messages(ctx)
        assert "Merged task orch-2 into feature branch" in _messages(ctx)

    def test_single_blocker_never_needs_consolidation(
        self, ctx: OrchestratorContext, integrator: BranchIntegrator
    ) -> None:
        assert integrator.maybe_spawn_merge_agent(PLAN_ID, BeadTask(id="orch-3", blocked_by=["orch-1"])) is False

    def test_refresh_git_summary_reads_remote_feature_branch(
        self,
        ctx: OrchestratorContext,
        repo: Repository,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
    ) -> None:
        worktree = _task_worktree(worktrees, repo, "orch-1", "a.txt", "a\n")
        integrator.push_to_feature_branch(PLAN_ID, worktree)
        ctx.mutate_plan(PLAN_ID, lambda p: setattr(p.git_summary, "commits", []))

        integrator.refresh_git_summary(PLAN_ID)

        commits = ctx.get_plan(PLAN_ID).git_summary.commits
        assert [c.task_id for c in commits] == ["orch-1"]
        assert _messages(ctx)[-1] == "Git summary refreshed: 1 commit(s) on feature branch"


class TestPullRequests:
    @pytest.fixture
    def pr_worktree(self, ctx: OrchestratorContext, tmp_path: Path) -> Worktree:
        worktree = Worktree(id="web-1", plan_id=PLAN_ID, task_id="orch-1", repository_id="web", path=str(tmp_path), branch="orch/feat01/web-1-1")
        ctx.mutate_plan(PLAN_ID, lambda p: p.worktrees.append(worktree))
        return worktree

    def test_records_pull_request_from_gh(
        self,
        monkeypatch: pytest.MonkeyPatch,
        ctx: OrchestratorContext,
        integrator: BranchIntegrator,
        pr_worktree: Worktree,
    ) -> None:
        payload = [
            {
                "number": 17,
                "title": "Login",
                "url": "https://github.com/acme/web/pull/17",
                "baseRefName": "main",
                "headRefName": pr_worktree.branch,
                "state": "OPEN",
            }
        ]

        def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
            assert cmd[:3] == ["gh", "pr", "list"]
            return subprocess.CompletedProcess(cmd, 0, json.dumps(payload), "")

        monkeypatch.setattr(integration.subprocess, "run", fake_run)

        pr = integrator.record_pull_request(PLAN_ID, pr_worktree)

        assert pr is not None and pr.number == 17 and pr.status == "open"
        plan = ctx.get_plan(PLAN_ID)
        stored = plan.worktree_for_task("orch-1")
        assert stored is not None and stored.pr_url == payload[0]["url"]
        assert [p.number for p in plan.git_summary.pull_requests] == [17]
        assert _messages(ctx)[-1] == "PR #17 created for task orch-1"

    def test_missing_gh_records_no_pr(
        self,
        monkeypatch: pytest.MonkeyPatch,
        ctx: OrchestratorContext,
        integrator: BranchIntegrator,
        pr_worktree: Worktree,
    ) -> None:
        def missing(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
            raise FileNotFoundError(2, "No such file or directory", "gh")

        monkeypatch.setattr(integration.subprocess, "run", missing)

        assert integrator.record_pull_request(PLAN_ID, pr_worktree) is None
        assert _messages(ctx)[-1] == "No PR found for task orch-1"

    def test_completion_strategy_dispatches_by_plan_setting(
        self,
        monkeypatch: pytest.MonkeyPatch,
        ctx: OrchestratorContext,
        integrator: BranchIntegrator,
        pr_worktree: Worktree,
    ) -> None:
        calls: list[str] = []
        monkeypatch.setattr(integrator, "record_pull_request", lambda plan_id, wt: calls.append("pr"))
        monkeypatch.setattr(integrator, "push_to_feature_branch", lambda plan_id, wt: calls.append("push"))

        integrator.handle_task_completion_strategy(PLAN_ID, "orch-1")
        ctx.mutate_plan(PLAN_ID, lambda p: setattr(p, "branch_strategy", "raise_prs"))
        integrator.handle_task_completion_strategy(PLAN_ID, "orch-1")
        integrator.handle_task_completion_strategy(PLAN_ID, "orch-unknown")

        assert calls == ["push", "pr"]
