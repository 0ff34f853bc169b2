"""Integrate finished task branches: the shared feature branch or one PR per task."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from . import git_utils
from .agents.headless import HeadlessResult
from .agents.prompts import build_merge_prompt
from .context import OrchestratorContext
from .domain.models import BeadTask, Plan, PlanCommit, PlanPullRequest, Repository, Worktree, now_iso
from .errors import AgentSpawnError, CredentialError, GitCommandError, TaskStoreError
from .worktrees import WorktreeCoordinator


class BranchIntegrator:
    def __init__(self, ctx: OrchestratorContext, worktrees: WorktreeCoordinator) -> None:
        self.ctx = ctx
        self.worktrees = worktrees

    def handle_task_completion_strategy(self, plan_id: str, task_id: str) -> None:
        plan = self.ctx.get_plan(plan_id)
        worktree = plan.worktree_for_task(task_id)
        if worktree is None:
            logger.debug("No worktree recorded for {}, nothing to integrate", task_id)
            return
        if plan.branch_strategy == "feature_branch":
            self.push_to_feature_branch(plan_id, worktree)
        else:
            self.record_pull_request(plan_id, worktree)

    # ------------------------------------------------------------------
    # feature_branch strategy
    # ------------------------------------------------------------------

    def _repo_for(self, worktree: Worktree) -> Repository:
        repo = self.ctx.repository_by_id(worktree.repository_id)
        if repo is None:
            raise GitCommandError([], 1, f"Unknown repository: {worktree.repository_id}")
        return repo

    def _commit_url(self, repo: Repository, sha: str) -> Optional[str]:
        base = git_utils.github_url_from_remote(repo.remote_url or git_utils.get_remote_url(repo.root_path))
        return f"{base}/commit/{sha}" if base else None

    def push_to_feature_branch(self, plan_id: str, worktree: Worktree) -> bool:
        """Push a finished task's commits onto the plan's feature branch.

        Returns True when the commits landed; False when there was nothing to
        push or a conflict handed the work to a merge agent.

        Raises:
            GitCommandError: If git fails for a reason other than a conflict.
        """
        feature = self.worktrees.ensure_feature_branch(plan_id)
        task_id = worktree.task_id
        try:
            repo = self._repo_for(worktree)
            with self.ctx.git.feature_branch_push(plan_id):
                pending = git_utils.get_commits_between(worktree.path, f"origin/{repo.default_branch}", "HEAD")
                if not pending:
                    self.ctx.activities.add(plan_id, "info", f"No commits to push for task {task_id}")
                    return False
                if not self.safe_rebase_and_push(plan_id, worktree, repo, feature):
                    return False
                added = self._record_pushed_commits(plan_id, worktree, repo)
        except Exception as exc:
            logger.error("Push of {} to {} failed: {}", task_id, feature, exc)
            self.ctx.activities.add(plan_id, "error", f"Failed to push commits for task {task_id}", str(exc))
            raise
        self.ctx.activities.add(
            plan_id,
            "success",
            f"Pushed {added} new commit(s) for task {task_id}",
            f"To feature branch: {feature}",
        )
        return True

    def safe_rebase_and_push(self, plan_id: str, worktree: Worktree, repo: Repository, feature: str) -> bool:
        """Rebase the worktree onto the feature branch and push it there.

        A conflicting rebase is aborted and handed to a merge agent; the
        result is False in that case.
        """
        path = worktree.path

        def rebase() -> bool:
            try:
                git_utils.fetch_branch(path, feature, force=True)
            except GitCommandError as exc:
                logger.debug("Fetch of {} failed (may not exist yet): {}", feature, exc)
            if git_utils.remote_branch_exists(path, feature):
                return git_utils.rebase_onto(path, f"origin/{feature}")
            return True

        clean = self.ctx.git.execute_git_operation(
            Path(repo.root_path), rebase, operation_name=f"rebase {worktree.branch}"
        )
        if not clean:
            self.spawn_merge_resolution_agent(
                plan_id,
                worktree,
                f"Rebase of {worktree.branch} onto origin/{feature} stopped on conflicts",
            )
            return False
        self.ctx.git.execute_git_operation(
            Path(repo.root_path),
            lambda: git_utils.push_to_remote_branch(path, "HEAD", feature, force_with_lease=True),
            operation_name=f"push {worktree.branch}",
        )
        return True

    def _record_pushed_commits(self, plan_id: str, worktree: Worktree, repo: Repository) -> int:
        infos = git_utils.get_commits_between(worktree.path, f"origin/{repo.default_branch}", "HEAD")
        commits = [
            PlanCommit(
                sha=info.sha,
                short_sha=info.short_sha,
                message=info.message,
                task_id=worktree.task_id,
                timestamp=info.timestamp,
                repository_id=repo.id,
                github_url=self._commit_url(repo, info.sha),
            )
            for info in infos
        ]
        added: list[PlanCommit] = []

        def record(p: Plan) -> None:
            added.extend(p.git_summary.add_commits(commits))
            target = p.worktree_for_task(worktree.task_id)
            if target is not None:
                target.commits = list(dict.fromkeys(target.commits + [c.sha for c in added]))
                target.merged_into_feature_branch = True
                target.merged_at = now_iso()

        self.ctx.mutate_plan(plan_id, record)
        return len(added)

    def _mark_merged(self, plan_id: str, task_id: str) -> None:
        def mark(p: Plan) -> None:
            target = p.worktree_for_task(task_id)
            if target is not None:
                target.merged_into_feature_branch = True
                target.merged_at = now_iso()

        self.ctx.mutate_plan(plan_id, mark)

    def spawn_merge_resolution_agent(self, plan_id: str, worktree: Worktree, error: Optional[str] = None) -> None:
        """Hand a conflicting rebase to a headless agent.

        A merge task is created and every dependent of the original task is
        made to wait for it, so nothing builds on the feature branch before
        the conflict is resolved.
        """
        task_id = worktree.task_id
        store = self.ctx.task_store(plan_id)
        try:
            merge_task_id = store.create(
                f"Merge {task_id} into feature branch",
                labels=["merge", f"{self.ctx.label_prefix}-internal"],
            )
            for dependent in store.get_dependents(task_id):
                if dependent != merge_task_id:
                    store.add_dependency(dependent, merge_task_id)
        except TaskStoreError as exc:
            logger.warning("Could not create merge task for {}: {}", task_id, exc)
            merge_task_id = f"{task_id}-merge"

        def remember(p: Plan) -> None:
            target = p.worktree_for_task(task_id)
            if target is not None:
                target.merge_task_id = merge_task_id

        plan = self.ctx.mutate_plan(plan_id, remember)
        self.ctx.activities.add(plan_id, "info", f"Spawning merge agent for {task_id}", "Resolving rebase conflicts")

        prompt = build_merge_prompt(
            plan,
            task_id,
            merge_task_id,
            worktree,
            self.ctx.plan_dir(plan_id),
            self.ctx.task_store_config["binary"],
            error,
        )

        def finished(result: HeadlessResult) -> None:
            if not result.success:
                self.ctx.activities.add(plan_id, "error", f"Merge resolution failed for {task_id}", result.error)
                return
            try:
                merge_task = store.get(merge_task_id)
                if merge_task is not None and merge_task.status != "closed":
                    store.close(merge_task_id, f"Merged {task_id} into feature branch")
            except TaskStoreError as exc:
                logger.warning("Could not close merge task {}: {}", merge_task_id, exc)
            self._mark_merged(plan_id, task_id)
            self.ctx.activities.add(plan_id, "success", f"Merge resolved for {task_id}")

        try:
            self.ctx.start_headless_agent(
                plan_id,
                f"merge-agent-{task_id}",
                "merge",
                worktree.path,
                prompt,
                task_id=merge_task_id,
                on_complete=finished,
            )
        except (CredentialError, AgentSpawnError) as exc:
            logger.error("Merge agent for {} did not start: {}", task_id, exc)
            self.ctx.activities.add(plan_id, "error", f"Merge resolution failed for {task_id}", str(exc))

    def maybe_spawn_merge_agent(self, plan_id: str, task: BeadTask) -> bool:
        """Consolidate parallel blocker branches before a dependent task starts.

        Returns True when the task must wait: a merge is in progress or one
        was just started.
        """
        plan = self.ctx.get_plan(plan_id)
        feature = plan.feature_branch
        if plan.branch_strategy != "feature_branch" or not feature or len(task.blocked_by) <= 1:
            return False
        blockers = [w for w in (plan.worktree_for_task(b) for b in task.blocked_by) if w is not None]
        if not blockers or not all(w.status == "ready_for_review" for w in blockers):
            return False
        if any(w.merge_task_id and not w.merged_into_feature_branch for w in blockers):
            logger.debug("Merge still in progress for a blocker of {}", task.id)
            return True
        unmerged = [w for w in blockers if not w.merged_into_feature_branch]
        if len(unmerged) <= 1:
            return False

        self.ctx.activities.add(
            plan_id,
            "info",
            "Multiple parallel tasks need merging",
            f"Tasks: {', '.join(w.task_id for w in unmerged)}",
        )
        spawned = False
        for worktree in unmerged:
            try:
                repo = self._repo_for(worktree)
                with self.ctx.git.feature_branch_push(plan_id):
                    merged = self.safe_rebase_and_push(plan_id, worktree, repo, feature)
                    if merged:
                        self._record_pushed_commits(plan_id, worktree, repo)
                if merged:
                    self.ctx.activities.add(plan_id, "success", f"Merged task {worktree.task_id} into feature branch")
                else:
                    spawned = True
                    self.ctx.activities.add(
                        plan_id,
                        "info",
                        f"Merge agent spawned for task {worktree.task_id}",
                        "Will push after resolving conflicts",
                    )
            except Exception as exc:
                logger.error("Merging {} failed: {}", worktree.task_id, exc)
                self.ctx.activities.add(plan_id, "error", f"Failed to merge task {worktree.task_id}", str(exc))
        return spawned

    def refresh_git_summary(self, plan_id: str) -> None:
        """Rebuild the commit list from what actually sits on the remote feature branch."""
        plan = self.ctx.get_plan(plan_id)
        feature = plan.feature_branch
        if plan.branch_strategy != "feature_branch" or not feature:
            return
        repos = self.worktrees._plan_repositories(plan) or self.ctx.repositories()[:1]
        if not repos:
            return
        repo = repos[0]
        try:
            git_utils.fetch_branch(repo.root_path, feature, force=True)
        except GitCommandError as exc:
            logger.debug("Could not fetch {} for summary: {}", feature, exc)
            return
        infos = git_utils.get_commits_between(repo.root_path, f"origin/{repo.default_branch}", f"origin/{feature}")

        owners: dict[str, str] = {c.sha: c.task_id for c in plan.git_summary.commits}
        for worktree in plan.worktrees:
            for sha in worktree.commits:
                owners[sha] = worktree.task_id
        commits = [
            PlanCommit(
                sha=info.sha,
                short_sha=info.short_sha,
                message=info.message,
                task_id=owners.get(info.sha, "unknown"),
                timestamp=info.timestamp,
                repository_id=repo.id,
                github_url=self._commit_url(repo, info.sha),
            )
            for info in infos
        ]

        def replace(p: Plan) -> None:
            p.git_summary.commits = commits

        self.ctx.mutate_plan(plan_id, replace)
        self.ctx.activities.add(plan_id, "info", f"Git summary refreshed: {len(commits)} commit(s) on feature branch")

    # ------------------------------------------------------------------
    # raise_prs strategy
    # ------------------------------------------------------------------

    def record_pull_request(self, plan_id: str, worktree: Worktree) -> Optional[PlanPullRequest]:
        """Look up the PR the task agent opened for its branch and record it."""
        task_id = worktree.task_id
        cmd = [
            "gh",
            "pr",
            "list",
            "--head",
            worktree.branch,
            "--json",
            "number,title,url,baseRefName,headRefName,state",
            "--limit",
            "1",
        ]
        try:
            result = subprocess.run(cmd, cwd=worktree.path, capture_output=True, text=True, check=False)
        except OSError as exc:
            logger.warning("gh is not available: {}", exc)
            result = None
        raw: list = []
        if result is not None and result.returncode == 0 and result.stdout.strip():
            try:
                parsed = json.loads(result.stdout)
                raw = parsed if isinstance(parsed, list) else []
            except json.JSONDecodeError:
                logger.warning("gh pr list returned invalid JSON: {}", result.stdout[:100])
        if not raw or not isinstance(raw[0], dict):
            self.ctx.activities.add(plan_id, "info", f"No PR found for task {task_id}")
            return None

        item = raw[0]
        pr = PlanPullRequest(
            number=int(item.get("number") or 0),
            title=str(item.get("title") or ""),
            url=str(item.get("url") or ""),
            task_id=task_id,
            base_branch=str(item.get("baseRefName") or ""),
            head_branch=str(item.get("headRefName") or worktree.branch),
            status=str(item.get("state") or "OPEN").lower(),
            repository_id=worktree.repository_id,
        )

        def record(p: Plan) -> None:
            target = p.worktree_for_task(task_id)
            if target is not None:
                target.pr_number = pr.number
                target.pr_url = pr.url
                target.pr_base_branch = pr.base_branch
            p.git_summary.pull_requests = [x for x in p.git_summary.pull_requests if x.task_id != task_id] + [pr]

        self.ctx.mutate_plan(plan_id, record)
        self.ctx.activities.add(plan_id, "success", f"PR #{pr.number} created for task {task_id}", pr.url)
        return pr
