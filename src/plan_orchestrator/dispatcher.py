"""Poll each active plan's task store and hand ready tasks to agents.

One daemon thread per plan runs `tick_once` on a fixed interval. A tick that
arrives while the previous one for the same plan is still running is dropped,
so two reconciliation passes never race over the same worktrees.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from . import git_utils
from .agents.headless import HeadlessResult
from .agents.prompts import build_headless_task_prompt, build_task_prompt
from .constants import ACTIVE_PLAN_STATUSES
from .context import OrchestratorContext, marker_check
from .domain.models import BeadTask, Plan, Repository, TaskAssignment, Worktree, now_iso
from .errors import GitCommandError, TaskStoreError
from .integration import BranchIntegrator
from .worktrees import WorktreeCoordinator

logger = logging.getLogger(__name__)


class TaskDispatcher:
    def __init__(
        self,
        ctx: OrchestratorContext,
        worktrees: WorktreeCoordinator,
        integrator: BranchIntegrator,
        *,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.ctx = ctx
        self.worktrees = worktrees
        self.integrator = integrator
        self.poll_interval = poll_interval or ctx.dispatch_config["poll_interval_seconds"]
        self._lock = threading.RLock()
        self._threads: dict[str, threading.Thread] = {}
        self._stops: dict[str, threading.Event] = {}
        self._syncing: set[str] = set()
        self._flagged: set[tuple[str, str, str]] = set()

    # ------------------------------------------------------------------
    # Poller lifecycle
    # ------------------------------------------------------------------

    def start_polling(self, plan_id: str) -> None:
        with self._lock:
            thread = self._threads.get(plan_id)
            if thread and thread.is_alive():
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._loop,
                args=(plan_id, stop),
                daemon=True,
                name=f"poller-{plan_id}",
            )
            self._stops[plan_id] = stop
            self._threads[plan_id] = thread
            thread.start()
        logger.info("Started polling for plan %s every %ss", plan_id, self.poll_interval)

    def stop_polling(self, plan_id: str) -> None:
        with self._lock:
            stop = self._stops.pop(plan_id, None)
            self._threads.pop(plan_id, None)
        if stop is not None:
            stop.set()
            logger.info("Stopped polling for plan %s", plan_id)

    def is_polling(self, plan_id: str) -> bool:
        with self._lock:
            thread = self._threads.get(plan_id)
            return bool(thread and thread.is_alive())

    def polling_plan_ids(self) -> list[str]:
        with self._lock:
            return [plan_id for plan_id, thread in self._threads.items() if thread.is_alive()]

    def shutdown(self, *, timeout: float = 10.0) -> None:
        with self._lock:
            stops = list(self._stops.values())
            threads = list(self._threads.values())
            self._stops.clear()
            self._threads.clear()
        for stop in stops:
            stop.set()
        for thread in threads:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=max(timeout, 0.0))

    def _loop(self, plan_id: str, stop: threading.Event) -> None:
        while not stop.is_set():
            if not self.tick_once(plan_id):
                break
            stop.wait(self.poll_interval)
        with self._lock:
            if self._stops.get(plan_id) is stop:
                self._stops.pop(plan_id, None)
                self._threads.pop(plan_id, None)

    def tick_once(self, plan_id: str) -> bool:
        """Run one reconciliation pass; returns False once the plan should stop polling."""
        with self._lock:
            if plan_id in self._syncing:
                logger.debug("Sync already in progress for %s, skipping tick", plan_id)
                return True
            self._syncing.add(plan_id)
        try:
            return self.sync_tasks_for_plan(plan_id)
        finally:
            with self._lock:
                self._syncing.discard(plan_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def sync_tasks_for_plan(self, plan_id: str) -> bool:
        plan = self.ctx.find_plan(plan_id)
        if plan is None or plan.status not in ACTIVE_PLAN_STATUSES:
            logger.info("Plan %s is no longer active, stopping poller", plan_id)
            return False
        try:
            store = self.ctx.task_store(plan_id)
            ready = store.list(labels=[f"{self.ctx.label_prefix}-ready"], status="open")
            for task in ready:
                self.process_ready_task(plan_id, task)
            self._complete_closed_assignments(plan_id)
            self.update_plan_statuses(plan_id)
            self.ctx.bus.emit(channel="tasks", event_type="tasks.updated", entity_id=plan_id, payload={"plan_id": plan_id})
        except Exception as exc:
            logger.exception("Task sync failed for plan %s", plan_id)
            self.ctx.activities.add(plan_id, "error", "Failed to sync tasks", str(exc))
        return True

    def _complete_closed_assignments(self, plan_id: str) -> None:
        """Mark assignments completed once their task is closed upstream; agents keep running."""
        waiting = [a for a in self.ctx.assignments(plan_id) if a.status in ("sent", "in_progress")]
        if not waiting:
            return
        closed = {t.id for t in self.ctx.task_store(plan_id).list(status="closed")}
        for assignment in waiting:
            if assignment.bead_id not in closed:
                continue
            assignment.status = "completed"
            assignment.completed_at = now_iso()
            self.ctx.save_assignment(assignment)
            self.ctx.activities.add(plan_id, "success", f"Task {assignment.bead_id} completed")

    def active_agent_count(self, plan: Plan) -> int:
        """Active worktrees whose agent is alive, counted fresh from current state."""
        return sum(1 for w in plan.active_worktrees() if self.ctx.is_agent_alive(w.agent_id))

    def _flag_once(self, plan_id: str, task: BeadTask, message: str, details: Optional[str] = None) -> None:
        key = (plan_id, task.id, message)
        if key in self._flagged:
            return
        self._flagged.add(key)
        self.ctx.activities.add(plan_id, "warning", message, details)

    def process_ready_task(self, plan_id: str, task: BeadTask) -> bool:
        """Dispatch one ready task; returns True when an agent was started for it."""
        if self.ctx.container.assignments.get(plan_id, task.id) is not None:
            return False
        plan = self.ctx.get_plan(plan_id)
        active = self.active_agent_count(plan)
        if active >= plan.max_parallel_agents:
            logger.debug("Plan %s at capacity (%s/%s), %s waits", plan_id, active, plan.max_parallel_agents, task.id)
            return False

        repo_name = task.label_value("repo:")
        worktree_name = task.label_value("worktree:")
        if not repo_name or not worktree_name:
            self._flag_once(
                plan_id,
                task,
                f"Task {task.id} missing repo/worktree assignment",
                "Orchestrator must assign repo and worktree before marking ready",
            )
            return False
        repo = self.ctx.repository_by_name(repo_name)
        if repo is None:
            self._flag_once(plan_id, task, f"Unknown repository: {repo_name}")
            return False

        if plan.branch_strategy == "feature_branch" and task.blocked_by and plan.feature_branch:
            if self.integrator.maybe_spawn_merge_agent(plan_id, task):
                logger.info("Deferring %s until its blockers are merged", task.id)
                return False
            self._fetch_feature_branch(plan_id, repo, plan.feature_branch)

        self.ctx.activities.add(
            plan_id,
            "info",
            f"Processing task: {task.id}",
            f"Repo: {repo_name}, Worktree: {worktree_name}",
        )
        agent_id = f"task-agent-{task.id}"
        assignment = self.ctx.save_assignment(TaskAssignment(bead_id=task.id, plan_id=plan_id, agent_id=agent_id))

        try:
            worktree = self.worktrees.create_task_worktree(plan_id, task, repo, worktree_name, agent_id=agent_id)
        except Exception as exc:
            logger.error("Worktree creation failed for %s: %s", task.id, exc)
            self.ctx.activities.add(plan_id, "error", f"Failed to create task agent for {task.id}", str(exc))
            assignment.status = "failed"
            self.ctx.save_assignment(assignment)
            return False

        try:
            if self.ctx.mode == "headless":
                self._start_headless_task(plan_id, task, repo, worktree)
            else:
                self._start_interactive_task(plan_id, task, repo, worktree)
        except Exception as exc:
            logger.exception("Agent start failed for %s", task.id)
            self.ctx.activities.add(plan_id, "error", f"Failed to start task agent for {task.id}", str(exc))
            assignment.status = "failed"
            self.ctx.save_assignment(assignment)
            return False

        assignment.status = "in_progress"
        self.ctx.save_assignment(assignment)
        try:
            self.ctx.task_store(plan_id).update(
                task.id,
                add_labels=[f"{self.ctx.label_prefix}-sent"],
                remove_labels=[f"{self.ctx.label_prefix}-ready"],
            )
        except TaskStoreError as exc:
            logger.warning("Could not relabel %s as sent: %s", task.id, exc)
            self.ctx.activities.add(plan_id, "warning", f"Could not mark task {task.id} as sent", str(exc))
        self.ctx.activities.add(
            plan_id,
            "success",
            f"Task {task.id} started",
            f"Agent created in worktree: {worktree_name}",
        )
        return True

    def _fetch_feature_branch(self, plan_id: str, repo: Repository, feature: str) -> None:
        if not git_utils.remote_branch_exists(repo.root_path, feature):
            return
        try:
            git_utils.fetch_branch(repo.root_path, feature, force=True)
            self.ctx.activities.add(plan_id, "info", "Fetched feature branch for dependent task", feature)
        except GitCommandError as exc:
            logger.warning("Fetching %s failed: %s", feature, exc)
            self.ctx.activities.add(plan_id, "warning", "Failed to fetch feature branch", str(exc))

    def _start_interactive_task(self, plan_id: str, task: BeadTask, repo: Repository, worktree: Worktree) -> None:
        plan = self.ctx.get_plan(plan_id)
        plan_dir = self.ctx.plan_dir(plan_id)
        prompt = build_task_prompt(plan, task, plan_dir, repo, self.ctx.task_store_config["binary"])
        self.ctx.start_interactive_agent(
            plan_id,
            worktree.agent_id or f"task-agent-{task.id}",
            "task",
            worktree.path,
            prompt,
            flags=f'--add-dir "{worktree.path}" --add-dir "{plan_dir}"',
            auto_accept=True,
            task_id=task.id,
            completion=marker_check(),
            on_complete=lambda: self.mark_worktree_ready_for_review(plan_id, task.id),
        )

    def _start_headless_task(self, plan_id: str, task: BeadTask, repo: Repository, worktree: Worktree) -> None:
        plan = self.ctx.get_plan(plan_id)
        prompt = build_headless_task_prompt(
            plan,
            task,
            self.ctx.plan_dir(plan_id),
            repo,
            worktree,
            self.ctx.task_store_config["binary"],
        )

        def finished(result: HeadlessResult) -> None:
            success = result.success or self._task_closed(plan_id, task.id)
            if success:
                self.ctx.activities.add(plan_id, "success", f"Task {task.id} completed (headless)")
                self.mark_worktree_ready_for_review(plan_id, task.id)
            else:
                self.ctx.activities.add(plan_id, "error", f"Task {task.id} failed", result.error)

        self.ctx.start_headless_agent(
            plan_id,
            worktree.agent_id or f"task-agent-{task.id}",
            "task",
            worktree.path,
            prompt,
            task_id=task.id,
            on_complete=finished,
        )

    def _task_closed(self, plan_id: str, task_id: str) -> bool:
        """An agent killed after closing its task still counts as a success."""
        try:
            task = self.ctx.task_store(plan_id).get(task_id)
        except TaskStoreError:
            return False
        return task is not None and task.status == "closed"

    def mark_worktree_ready_for_review(self, plan_id: str, task_id: str) -> None:
        """Move a finished task's worktree to review and integrate its branch.

        The agent's session has ended, so its terminal is closed; the git
        worktree itself stays for review.
        """
        plan = self.ctx.find_plan(plan_id)
        worktree = plan.worktree_for_task(task_id) if plan else None
        if worktree is None or worktree.status != "active":
            return
        self.worktrees.set_worktree_status(plan_id, task_id, "ready_for_review")
        self.ctx.stop_agent(worktree.agent_id)
        try:
            self.integrator.handle_task_completion_strategy(plan_id, task_id)
        except Exception as exc:
            logger.warning("Completion strategy failed for %s: %s", task_id, exc)
            self.ctx.activities.add(plan_id, "warning", f"Completion handling failed for task {task_id}", str(exc))

    def update_plan_statuses(self, plan_id: str) -> None:
        """Advance the plan from the state of its tasks.

        All tasks closed moves delegating/in_progress to ready_for_review;
        open tasks move delegating, or a ready_for_review plan with new
        follow-ups, to in_progress.
        """
        plan = self.ctx.find_plan(plan_id)
        if plan is None or plan.status not in ACTIVE_PLAN_STATUSES:
            return
        tasks = [t for t in self.ctx.task_store(plan_id).list(status="all") if t.type != "epic"]
        if not tasks:
            return
        open_tasks = [t for t in tasks if t.status != "closed"]

        if plan.status in ("delegating", "in_progress"):
            if not open_tasks:
                if self._transition(plan_id, ("delegating", "in_progress"), "ready_for_review"):
                    try:
                        self.integrator.refresh_git_summary(plan_id)
                    except Exception as exc:
                        logger.warning("Git summary refresh failed for %s: %s", plan_id, exc)
                    self.ctx.activities.add(plan_id, "success", "All tasks completed")
            elif plan.status == "delegating":
                if self._transition(plan_id, ("delegating",), "in_progress"):
                    self.ctx.activities.add(
                        plan_id, "info", "Tasks are being worked on", f"{len(open_tasks)} task(s) remaining"
                    )
        elif plan.status == "ready_for_review" and open_tasks:
            if self._transition(plan_id, ("ready_for_review",), "in_progress"):
                self.ctx.activities.add(plan_id, "info", f"Resuming with {len(open_tasks)} follow-up task(s)")

    def _transition(self, plan_id: str, expected: tuple[str, ...], status: str) -> bool:
        moved: list[bool] = []

        def apply(p: Plan) -> None:
            if p.status in expected:
                p.status = status  # type: ignore[assignment]
                moved.append(True)

        self.ctx.mutate_plan(plan_id, apply)
        return bool(moved)
