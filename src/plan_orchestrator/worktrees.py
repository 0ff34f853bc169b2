"""Per-task git worktrees: naming, base-branch choice, creation and cleanup."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from . import git_utils
from .constants import WORKTREES_DIR
from .context import OrchestratorContext
from .domain.models import BeadTask, Plan, Repository, Worktree
from .errors import GitCommandError


def task_suffix(task_id: str) -> str:
    """`orch-abc.5` -> `5`; ids without a dot use the part after the last dash."""
    if "." in task_id:
        return task_id.rsplit(".", 1)[1]
    return task_id.rsplit("-", 1)[-1]


class WorktreeCoordinator:
    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def feature_branch_name(self, plan: Plan) -> str:
        return f"{self.ctx.label_prefix}/{plan.id_part}/feature"

    def ensure_feature_branch(self, plan_id: str) -> str:
        """Return the plan's feature branch, assigning the default name on first use."""
        plan = self.ctx.get_plan(plan_id)
        if plan.feature_branch:
            return plan.feature_branch
        name = self.feature_branch_name(plan)

        def assign(p: Plan) -> None:
            if not p.feature_branch:
                p.feature_branch = name

        return self.ctx.mutate_plan(plan_id, assign).feature_branch or name

    def task_branch_name(self, plan: Plan, worktree_name: str, task_id: str) -> str:
        return f"{self.ctx.label_prefix}/{plan.id_part}/{worktree_name}-{task_suffix(task_id)}"

    def worktree_path(self, plan_id: str, repo_name: str, worktree_name: str) -> Path:
        return self.ctx.plan_dir(plan_id) / WORKTREES_DIR / repo_name / worktree_name

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def get_base_branch_for_task(self, plan: Plan, task: BeadTask, repo: Repository) -> str:
        """Choose the branch a task's worktree starts from.

        feature_branch: dependent tasks start from the shared feature branch,
        which is created from the default branch when it does not exist yet.
        raise_prs: a task stacks on the branch of its first blocker that is
        ready for review, then on a `stack-on:<branch>` label, else the default.
        """
        if plan.branch_strategy == "feature_branch":
            if not task.blocked_by:
                return repo.default_branch
            feature = plan.feature_branch or self.ensure_feature_branch(plan.id)
            if not git_utils.remote_branch_exists(repo.root_path, feature):
                logger.info("Creating feature branch {} from origin/{}", feature, repo.default_branch)
                self.ctx.git.execute_git_operation(
                    Path(repo.root_path),
                    lambda: git_utils.push_to_remote_branch(
                        repo.root_path, f"origin/{repo.default_branch}", feature
                    ),
                    operation_name="create feature branch",
                )
            return feature

        for blocker_id in task.blocked_by:
            blocker = plan.worktree_for_task(blocker_id)
            if blocker is not None and blocker.status == "ready_for_review" and blocker.branch:
                logger.debug("Stacking {} on blocker branch {}", task.id, blocker.branch)
                return blocker.branch
        stack_on = task.label_value("stack-on:")
        if stack_on:
            return stack_on
        return repo.default_branch

    def create_task_worktree(
        self,
        plan_id: str,
        task: BeadTask,
        repo: Repository,
        worktree_name: str,
        agent_id: Optional[str] = None,
    ) -> Worktree:
        """Create the worktree and branch for `task` and record it on the plan.

        Raises:
            GitCommandError: If git cannot create the worktree.
            RuntimeError: If the checkout comes out empty.
        """
        plan = self.ctx.get_plan(plan_id)
        path = self.worktree_path(plan_id, repo.name, worktree_name)
        try:
            base_branch = self.get_base_branch_for_task(plan, task, repo)
            branch = git_utils.generate_unique_branch_name(
                repo.root_path, self.task_branch_name(plan, worktree_name, task.id)
            )
            self.ctx.git.execute_git_operation(
                Path(repo.root_path),
                lambda: git_utils.create_worktree(repo.root_path, path, branch, base_branch),
                operation_name=f"create worktree {worktree_name}",
            )
        except (GitCommandError, RuntimeError, OSError) as exc:
            logger.error("Failed to create worktree {} for {}: {}", worktree_name, task.id, exc)
            self.ctx.activities.add(plan_id, "error", f"Failed to create worktree: {worktree_name}", str(exc))
            raise

        worktree = Worktree(
            id=worktree_name,
            plan_id=plan_id,
            task_id=task.id,
            repository_id=repo.id,
            path=str(path),
            branch=branch,
            agent_id=agent_id,
            blocked_by=list(task.blocked_by),
            base_branch=base_branch,
        )
        self.ctx.mutate_plan(plan_id, lambda p: p.worktrees.append(worktree))
        self.ctx.activities.add(
            plan_id,
            "info",
            f"Created worktree: {worktree_name}",
            f"Branch: {branch}, Base: {base_branch}",
        )
        return worktree

    def set_worktree_status(self, plan_id: str, task_id: str, status: str) -> Optional[Worktree]:
        found: list[Worktree] = []

        def update(p: Plan) -> None:
            worktree = p.worktree_for_task(task_id)
            if worktree is not None:
                worktree.status = status  # type: ignore[assignment]
                found.append(worktree)

        self.ctx.mutate_plan(plan_id, update)
        return found[0] if found else None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_task_agent(self, plan_id: str, worktree: Worktree) -> None:
        """Stop the task's agent, remove its worktree and mark the record cleaned."""
        self.ctx.stop_agent(worktree.agent_id)
        for record in self.ctx.agents_for_plan(plan_id):
            if record.task_id == worktree.task_id and record.kind == "task":
                self.ctx.stop_agent(record.id)
        repo = self.ctx.repository_by_id(worktree.repository_id)
        if repo is not None:
            try:
                self.ctx.git.execute_git_operation(
                    Path(repo.root_path),
                    lambda: git_utils.remove_worktree(repo.root_path, worktree.path, force=True),
                    operation_name=f"remove worktree {worktree.id}",
                )
                self.ctx.activities.add(plan_id, "info", f"Removed worktree: {worktree.id}")
            except (GitCommandError, OSError) as exc:
                logger.warning("Failed to remove worktree {}: {}", worktree.path, exc)
                self.ctx.activities.add(plan_id, "warning", "Failed to remove worktree", f"{worktree.id}: {exc}")
        self.set_worktree_status(plan_id, worktree.task_id, "cleaned")

    def cleanup_all_worktrees(self, plan_id: str) -> None:
        plan = self.ctx.get_plan(plan_id)
        self.ctx.activities.add(plan_id, "info", "Cleaning up worktrees...")
        for worktree in plan.worktrees:
            if worktree.status == "cleaned":
                continue
            self.cleanup_task_agent(plan_id, worktree)
        self._prune_repositories(self._plan_repositories(plan))
        self.ctx.activities.add(plan_id, "success", "All worktrees cleaned up")

    def cleanup_all_worktrees_only(self, plan_id: str) -> None:
        """Remove every worktree and its local branch; agents must already be stopped.

        Failures are logged and skipped so one bad repository does not block
        the rest. Branches are deleted only after their worktree is gone.
        """
        plan = self.ctx.get_plan(plan_id)
        for worktree in plan.worktrees:
            if worktree.status == "cleaned":
                continue
            repo = self.ctx.repository_by_id(worktree.repository_id)
            if repo is not None:
                self._remove_with_branch(repo, worktree)
            self.set_worktree_status(plan_id, worktree.task_id, "cleaned")

        root = self.ctx.plan_dir(plan_id) / WORKTREES_DIR
        if root.is_dir():
            for repo_dir in root.iterdir():
                repo = self.ctx.repository_by_name(repo_dir.name)
                if repo is None or not repo_dir.is_dir():
                    continue
                for leftover in repo_dir.iterdir():
                    if not leftover.is_dir():
                        continue
                    logger.info("Removing untracked worktree directory {}", leftover)
                    try:
                        git_utils.remove_worktree(repo.root_path, leftover, force=True)
                    except (GitCommandError, OSError) as exc:
                        logger.debug("git could not remove {}: {}", leftover, exc)
            shutil.rmtree(root, ignore_errors=True)
        self._prune_repositories(self.ctx.repositories())

    def _remove_with_branch(self, repo: Repository, worktree: Worktree) -> None:
        def remove() -> None:
            try:
                git_utils.remove_worktree(repo.root_path, worktree.path, force=True)
            except (GitCommandError, OSError) as exc:
                logger.warning("Failed to remove worktree {}: {}", worktree.path, exc)
                return
            if worktree.branch:
                try:
                    git_utils.delete_local_branch(repo.root_path, worktree.branch)
                except GitCommandError as exc:
                    logger.debug("Could not delete branch {}: {}", worktree.branch, exc)

        self.ctx.git.execute_git_operation(Path(repo.root_path), remove, operation_name="remove worktree")

    def _plan_repositories(self, plan: Plan) -> list[Repository]:
        repos: dict[str, Repository] = {}
        for worktree in plan.worktrees:
            repo = self.ctx.repository_by_id(worktree.repository_id)
            if repo is not None:
                repos[repo.id] = repo
        return list(repos.values())

    def _prune_repositories(self, repos: list[Repository]) -> None:
        for repo in repos:
            try:
                git_utils.prune_worktrees(repo.root_path)
            except (GitCommandError, OSError) as exc:
                logger.debug("Prune failed in {}: {}", repo.root_path, exc)

    def delete_remote_branches(self, plan_id: str) -> None:
        """Delete task branches and the feature branch on origin; failures are ignored."""
        plan = self.ctx.get_plan(plan_id)
        for worktree in plan.worktrees:
            repo = self.ctx.repository_by_id(worktree.repository_id)
            if repo is None or not worktree.branch:
                continue
            self._delete_remote(repo, worktree.branch)
        if plan.feature_branch:
            repos = self._plan_repositories(plan) or self.ctx.repositories()[:1]
            for repo in repos:
                self._delete_remote(repo, plan.feature_branch)

    def _delete_remote(self, repo: Repository, branch: str) -> None:
        try:
            git_utils.delete_remote_branch(repo.root_path, branch)
        except (GitCommandError, OSError) as exc:
            logger.debug("Remote branch {} not deleted: {}", branch, exc)
