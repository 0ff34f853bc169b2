"""Plan lifecycle: discussion, execution, follow-ups, completion, cancellation and restart.

Status flow::

    draft -> discussing -> discussed -> delegating -> in_progress -> ready_for_review -> completed
                                            \\______________\\_______________\\-> failed -> (restart)

`restart_plan` is the only transition that moves backwards.
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Optional

from . import git_utils
from .agents.prompts import (
    build_discussion_prompt,
    build_follow_up_prompt,
    build_orchestrator_prompt,
    build_planner_prompt,
)
from .config import resolve_state_dir
from .constants import (
    ACTIVE_PLAN_STATUSES,
    CANCELLABLE_PLAN_STATUSES,
    DISCUSSION_OUTPUT_FILE,
    TASK_STORE_DIR,
)
from .context import OrchestratorContext, marker_check
from .dispatcher import TaskDispatcher
from .domain.models import (
    BRANCH_STRATEGIES,
    Activity,
    Discussion,
    GitSummary,
    Plan,
    PlanStatus,
    Repository,
    TaskAssignment,
    now_iso,
)
from .errors import TaskStoreError
from .events.bus import EventBus
from .graph import DependencyGraph, GraphStats, build_graph, calculate_graph_stats
from .integration import BranchIntegrator
from .storage.container import Container
from .worktrees import WorktreeCoordinator

logger = logging.getLogger(__name__)

PLAN_STATUSES: tuple[str, ...] = (
    "draft",
    "discussing",
    "discussed",
    "delegating",
    "in_progress",
    "ready_for_review",
    "completed",
    "failed",
)


class PlanManager:
    def __init__(
        self,
        ctx: OrchestratorContext,
        *,
        worktrees: Optional[WorktreeCoordinator] = None,
        integrator: Optional[BranchIntegrator] = None,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> None:
        self.ctx = ctx
        self.worktrees = worktrees or WorktreeCoordinator(ctx)
        self.integrator = integrator or BranchIntegrator(ctx, self.worktrees)
        self.dispatcher = dispatcher or TaskDispatcher(ctx, self.worktrees, self.integrator)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_plan(
        self,
        title: str,
        description: str = "",
        *,
        max_parallel_agents: Optional[int] = None,
        branch_strategy: str = "feature_branch",
    ) -> Plan:
        if not title.strip():
            raise ValueError("Plan title must not be empty")
        if branch_strategy not in BRANCH_STRATEGIES:
            raise ValueError(f"Unknown branch strategy: {branch_strategy}")
        limit = max_parallel_agents or self.ctx.dispatch_config["default_max_parallel_agents"]
        if limit < 1:
            raise ValueError("max_parallel_agents must be at least 1")
        plan = Plan(
            title=title.strip(),
            description=description,
            max_parallel_agents=limit,
            branch_strategy=branch_strategy,  # type: ignore[arg-type]
        )
        if branch_strategy == "feature_branch":
            plan.feature_branch = self.worktrees.feature_branch_name(plan)
        self.ctx.save_plan(plan)
        logger.info("Created plan %s (%s)", plan.id, plan.title)
        return plan

    def list_plans(self) -> list[Plan]:
        return self.ctx.container.plans.list()

    def get_plan(self, plan_id: str) -> Plan:
        return self.ctx.get_plan(plan_id)

    def update_plan_status(self, plan_id: str, status: str) -> Plan:
        if status not in PLAN_STATUSES:
            raise ValueError(f"Unknown plan status: {status}")
        return self.ctx.mutate_plan(plan_id, lambda p: setattr(p, "status", status))

    def delete_plan(self, plan_id: str) -> bool:
        """Stop everything the plan runs and remove its record and directory."""
        plan = self.ctx.find_plan(plan_id)
        if plan is None:
            logger.warning("Plan not found for deletion: %s", plan_id)
            return False
        logger.info("Deleting plan %s", plan_id)
        self.dispatcher.stop_polling(plan_id)
        self.ctx.kill_plan_agents(plan_id)
        try:
            self.worktrees.cleanup_all_worktrees_only(plan_id)
        except Exception:
            logger.exception("Worktree cleanup failed while deleting %s", plan_id)
        self.ctx.release_executing(plan_id)
        self.ctx.git.release_plan(plan_id)
        self.ctx.container.plans.delete(plan_id)
        self.ctx.activities.forget(plan_id)
        self.ctx.forget_task_store(plan_id)
        shutil.rmtree(self.ctx.plan_dir(plan_id), ignore_errors=True)
        self.ctx.bus.emit(channel="plans", event_type="plan.deleted", entity_id=plan_id, payload={"plan_id": plan_id})
        return True

    def delete_plans(self, plan_ids: list[str]) -> dict[str, Any]:
        deleted: list[str] = []
        errors: list[dict[str, str]] = []
        for plan_id in plan_ids:
            try:
                if self.delete_plan(plan_id):
                    deleted.append(plan_id)
                else:
                    errors.append({"plan_id": plan_id, "error": f"Plan not found: {plan_id}"})
            except Exception as exc:
                errors.append({"plan_id": plan_id, "error": str(exc)})
        return {"deleted": deleted, "errors": errors}

    def clone_plan(self, plan_id: str, *, include_discussion: bool = False) -> Plan:
        """Copy title, description and settings into a fresh draft.

        With `include_discussion`, an approved discussion and its output file
        are carried over and the copy starts as discussed.
        """
        source = self.ctx.get_plan(plan_id)
        clone = Plan(
            title=f"{source.title} (Copy)",
            description=source.description,
            max_parallel_agents=source.max_parallel_agents,
            branch_strategy=source.branch_strategy,
        )
        if clone.branch_strategy == "feature_branch":
            clone.feature_branch = self.worktrees.feature_branch_name(clone)
        if include_discussion and source.discussion_output_path:
            target = self.ctx.plan_dir(clone.id) / DISCUSSION_OUTPUT_FILE
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source.discussion_output_path, target)
                clone.discussion_output_path = str(target)
                clone.status = "discussed"
                if source.discussion is not None:
                    clone.discussion = Discussion(
                        plan_id=clone.id,
                        status=source.discussion.status,
                        started_at=source.discussion.started_at,
                        approved_at=source.discussion.approved_at,
                        summary=source.discussion.summary,
                    )
            except OSError as exc:
                logger.warning("Failed to copy discussion output for %s: %s", plan_id, exc)
        self.ctx.save_plan(clone)
        logger.info("Cloned plan %s to %s", plan_id, clone.id)
        return clone

    def get_activities(self, plan_id: str) -> list[Activity]:
        self.ctx.get_plan(plan_id)
        return self.ctx.activities.list(plan_id)

    def get_assignments(self, plan_id: str) -> list[TaskAssignment]:
        self.ctx.get_plan(plan_id)
        return self.ctx.assignments(plan_id)

    def get_graph(self, plan_id: str) -> tuple[DependencyGraph, GraphStats]:
        self.ctx.get_plan(plan_id)
        tasks = self.ctx.task_store(plan_id).list(status="all")
        graph = build_graph(tasks, self.ctx.assignments(plan_id))
        return graph, calculate_graph_stats(graph)

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def list_repositories(self) -> list[Repository]:
        return self.ctx.repositories()

    def add_repository(self, path: str, name: Optional[str] = None) -> Repository:
        """Register a local git repository for task placement.

        Raises:
            ValueError: If the path is not a git repository or the name is taken.
        """
        root = Path(path).expanduser().resolve()
        if not git_utils.is_git_repository(root):
            raise ValueError(f"Not a git repository: {root}")
        repo = Repository(
            id=name or root.name,
            name=name or root.name,
            root_path=str(root),
            default_branch=git_utils.get_default_branch(root),
            remote_url=git_utils.get_remote_url(root),
        )
        if self.ctx.repository_by_name(repo.name) is not None:
            raise ValueError(f"Repository already registered: {repo.name}")

        def append(data: dict) -> None:
            repos = data.get("repositories")
            data["repositories"] = (repos if isinstance(repos, list) else []) + [repo.to_dict()]

        self.ctx.container.config.update(append)
        logger.info("Registered repository %s at %s", repo.name, root)
        return repo

    def _reference_repository(self, reference: Optional[str]) -> Optional[Repository]:
        if reference:
            return self.ctx.repository_by_id(reference)
        repos = self.ctx.repositories()
        return repos[0] if repos else None

    # ------------------------------------------------------------------
    # Discussion
    # ------------------------------------------------------------------

    def start_discussion(self, plan_id: str, reference_agent_id: Optional[str] = None) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status != "draft":
            return plan
        repo = self._reference_repository(reference_agent_id)
        plan_dir = self.ctx.plan_dir(plan_id)
        plan_dir.mkdir(parents=True, exist_ok=True)
        codebase = repo.root_path if repo else str(plan_dir)
        output_path = plan_dir / DISCUSSION_OUTPUT_FILE
        agent_id = f"discussion-{plan_id}"

        def start(p: Plan) -> None:
            p.status = "discussing"
            p.discussion = Discussion(plan_id=plan_id)
            p.discussion_agent_id = agent_id
            if repo is not None:
                p.reference_agent_id = repo.id

        plan = self.ctx.mutate_plan(plan_id, start)
        self.ctx.activities.add(plan_id, "info", "Discussion phase started")

        def wrote_output(text: str) -> bool:
            mentioned = DISCUSSION_OUTPUT_FILE in text and ("Wrote" in text or "lines to" in text)
            return mentioned and output_path.exists()

        try:
            self.ctx.start_interactive_agent(
                plan_id,
                agent_id,
                "discussion",
                codebase,
                build_discussion_prompt(plan, plan_dir, codebase),
                flags=f'--add-dir "{codebase}" --add-dir "{plan_dir}"',
                completion=wrote_output,
                on_complete=lambda: self.complete_discussion(plan_id),
            )
        except Exception as exc:
            logger.exception("Discussion agent failed to start for %s", plan_id)
            self.ctx.activities.add(plan_id, "error", "Failed to start discussion", str(exc))

            def revert(p: Plan) -> None:
                p.status = "draft"
                p.discussion = None
                p.discussion_agent_id = None

            return self.ctx.mutate_plan(plan_id, revert)
        self.ctx.activities.add(plan_id, "info", "Discussion agent started - waiting for input")
        return plan

    def complete_discussion(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status != "discussing":
            return plan
        self.ctx.stop_agent(plan.discussion_agent_id)
        output_path = self.ctx.plan_dir(plan_id) / DISCUSSION_OUTPUT_FILE

        def approve(p: Plan) -> None:
            if p.discussion is None:
                p.discussion = Discussion(plan_id=plan_id)
            p.discussion.status = "approved"
            p.discussion.approved_at = now_iso()
            p.discussion.summary = f"Discussion completed - see {DISCUSSION_OUTPUT_FILE} for decisions made."
            p.discussion_output_path = str(output_path)
            p.discussion_agent_id = None
            p.status = "discussed"

        plan = self.ctx.mutate_plan(plan_id, approve)
        self.ctx.activities.add(plan_id, "success", "Discussion completed - ready for execution")
        return plan

    def cancel_discussion(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status != "discussing":
            return plan
        self.ctx.stop_agent(plan.discussion_agent_id)

        def cancel(p: Plan) -> None:
            if p.discussion is not None:
                p.discussion.status = "cancelled"
            p.discussion_agent_id = None
            p.status = "draft"

        plan = self.ctx.mutate_plan(plan_id, cancel)
        self.ctx.activities.add(plan_id, "info", "Discussion cancelled - returned to draft")
        return plan

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_plan(self, plan_id: str, reference_agent_id: Optional[str] = None) -> Plan:
        """Start the orchestrator and planner agents and begin polling.

        Repeated calls while the plan is executing return it unchanged. The
        in-memory marker is claimed before the status check because a second
        caller can arrive before the first status write lands.
        """
        plan = self.ctx.get_plan(plan_id)
        if not self.ctx.mark_executing(plan_id):
            logger.info("Plan %s is already executing", plan_id)
            return plan
        if plan.status not in ("draft", "discussed"):
            self.ctx.release_executing(plan_id)
            logger.info("Plan %s cannot execute from %s", plan_id, plan.status)
            return plan

        previous_status: PlanStatus = plan.status
        reference = reference_agent_id or plan.reference_agent_id
        repo = self._reference_repository(reference)
        if repo is None:
            self.ctx.activities.add(plan_id, "error", f"Reference agent not found: {reference}")
            self.ctx.release_executing(plan_id)
            return plan

        self.ctx.activities.clear(plan_id)
        self.ctx.activities.add(plan_id, "info", f"Plan execution started with reference: {repo.name}")
        plan_dir = self.ctx.plan_dir(plan_id)
        try:
            self.ctx.task_store(plan_id).ensure_initialized()
        except (TaskStoreError, OSError) as exc:
            logger.error("Task store init failed for %s: %s", plan_id, exc)
            self.ctx.activities.add(plan_id, "error", "Failed to initialize task store", str(exc))
            self.ctx.release_executing(plan_id)
            return plan

        def delegate(p: Plan) -> None:
            p.status = "delegating"
            p.reference_agent_id = repo.id
            if p.branch_strategy == "feature_branch" and not p.feature_branch:
                p.feature_branch = self.worktrees.feature_branch_name(p)

        plan = self.ctx.mutate_plan(plan_id, delegate)
        orchestrator_id = f"orchestrator-{plan_id}"
        planner_id = f"plan-agent-{plan_id}"
        binary = self.ctx.task_store_config["binary"]
        try:
            self.ctx.start_interactive_agent(
                plan_id,
                orchestrator_id,
                "orchestrator",
                str(plan_dir),
                build_orchestrator_prompt(plan, self.ctx.repositories(), binary, self.ctx.label_prefix),
                flags=f'--add-dir "{plan_dir}"',
            )
            self.ctx.activities.add(plan_id, "info", "Orchestrator agent started")
            self.ctx.start_interactive_agent(
                plan_id,
                planner_id,
                "planner",
                str(plan_dir),
                build_planner_prompt(plan, plan_dir, repo.root_path, binary),
                flags=f'--add-dir "{repo.root_path}" --add-dir "{plan_dir}"',
                completion=marker_check(),
                on_complete=lambda: self._cleanup_planner(plan_id),
            )
            self.ctx.activities.add(plan_id, "info", "Plan agent started")
        except Exception as exc:
            logger.exception("Failed to start orchestrator for %s", plan_id)
            self.ctx.stop_agent(orchestrator_id)
            self.ctx.stop_agent(planner_id)
            self.ctx.activities.add(plan_id, "error", "Failed to start orchestrator", str(exc))
            self.ctx.release_executing(plan_id)
            return self.ctx.mutate_plan(plan_id, lambda p: setattr(p, "status", previous_status))

        def record_agents(p: Plan) -> None:
            p.orchestrator_agent_id = orchestrator_id
            p.plan_agent_id = planner_id

        plan = self.ctx.mutate_plan(plan_id, record_agents)
        self.ctx.activities.add(plan_id, "success", "Orchestrator monitoring started")
        self.dispatcher.start_polling(plan_id)
        self.ctx.activities.add(plan_id, "info", "Watching for tasks...")
        return plan

    def _cleanup_planner(self, plan_id: str) -> None:
        plan = self.ctx.find_plan(plan_id)
        if plan is None or not plan.plan_agent_id:
            return
        self.ctx.stop_agent(plan.plan_agent_id)
        self.ctx.mutate_plan(plan_id, lambda p: setattr(p, "plan_agent_id", None))
        logger.info("Planner for %s finished", plan_id)

    def request_follow_ups(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status != "ready_for_review":
            self.ctx.activities.add(plan_id, "warning", "Cannot request follow-ups", f"Plan status is {plan.status}")
            return plan
        plan_dir = self.ctx.plan_dir(plan_id)
        store = self.ctx.task_store(plan_id)
        completed = [t for t in store.list(status="closed") if t.type != "epic"]
        agent_id = f"followup-{plan_id}-{int(time.time() * 1000)}"

        def finished() -> None:
            self.ctx.stop_agent(agent_id)
            self.check_for_new_tasks_and_resume(plan_id)

        self.ctx.start_interactive_agent(
            plan_id,
            agent_id,
            "follow_up",
            str(plan_dir),
            build_follow_up_prompt(
                plan,
                completed,
                self.ctx.repositories(),
                self.ctx.task_store_config["binary"],
                self.ctx.label_prefix,
            ),
            flags=f'--add-dir "{plan_dir}"',
            completion=marker_check(),
            on_complete=finished,
        )
        self.ctx.activities.add(plan_id, "info", "Follow-up agent started")
        return plan

    def check_for_new_tasks_and_resume(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        open_tasks = [t for t in self.ctx.task_store(plan_id).list(status="open") if t.type != "epic"]
        if not open_tasks:
            self.ctx.activities.add(plan_id, "info", "No follow-up tasks created")
            return plan

        def resume(p: Plan) -> None:
            if p.status == "ready_for_review":
                p.status = "in_progress"

        plan = self.ctx.mutate_plan(plan_id, resume)
        self.ctx.activities.add(plan_id, "info", f"Resuming plan with {len(open_tasks)} follow-up task(s)")
        self.dispatcher.start_polling(plan_id)
        return plan

    def complete_plan(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status not in ACTIVE_PLAN_STATUSES:
            logger.info("Plan %s cannot complete from %s", plan_id, plan.status)
            return plan
        self.dispatcher.stop_polling(plan_id)
        try:
            self.integrator.refresh_git_summary(plan_id)
        except Exception as exc:
            logger.warning("Git summary refresh failed for %s: %s", plan_id, exc)
        self.ctx.headless.stop_all(plan_id)
        self.worktrees.cleanup_all_worktrees(plan_id)
        self.ctx.kill_plan_agents(plan_id)

        def finish(p: Plan) -> None:
            p.status = "completed"
            p.orchestrator_agent_id = None
            p.plan_agent_id = None

        plan = self.ctx.mutate_plan(plan_id, finish)
        self.ctx.activities.add(plan_id, "success", "Plan completed", "All work finished and cleaned up")
        self.ctx.release_executing(plan_id)
        self.ctx.git.release_plan(plan_id)
        return plan

    def cancel_plan(self, plan_id: str) -> Plan:
        """Stop agents and mark the plan failed now; remove worktrees in the background."""
        plan = self.ctx.get_plan(plan_id)
        if plan.status not in CANCELLABLE_PLAN_STATUSES:
            logger.info("Plan %s cannot be cancelled from %s", plan_id, plan.status)
            return plan
        self.dispatcher.stop_polling(plan_id)
        self.ctx.kill_plan_agents(plan_id)

        def fail(p: Plan) -> None:
            p.status = "failed"
            p.orchestrator_agent_id = None
            p.plan_agent_id = None
            p.discussion_agent_id = None

        plan = self.ctx.mutate_plan(plan_id, fail)
        self.ctx.activities.add(plan_id, "error", "Plan cancelled", "Execution was stopped by user")
        self.ctx.release_executing(plan_id)
        self.ctx.run_in_background(
            lambda: self.worktrees.cleanup_all_worktrees_only(plan_id),
            name=f"worktree cleanup for {plan_id}",
        )
        return plan

    def restart_plan(self, plan_id: str) -> Plan:
        plan = self.ctx.get_plan(plan_id)
        if plan.status != "failed":
            logger.info("Cannot restart plan %s from %s", plan_id, plan.status)
            return plan
        self.dispatcher.stop_polling(plan_id)
        self.ctx.kill_plan_agents(plan_id)
        self.worktrees.cleanup_all_worktrees_only(plan_id)
        self.worktrees.delete_remote_branches(plan_id)
        for agent_id in (f"orchestrator-{plan_id}", f"plan-agent-{plan_id}"):
            self.ctx.sessions.clear(agent_id)

        kept_discussion = plan.discussion is not None and plan.discussion.status == "approved"

        def reset(p: Plan) -> None:
            p.worktrees = []
            p.git_summary = GitSummary()
            p.reference_agent_id = None
            p.orchestrator_agent_id = None
            p.plan_agent_id = None
            p.feature_branch = None
            p.status = "discussed" if kept_discussion else "draft"

        self.ctx.activities.clear(plan_id)
        self.ctx.container.assignments.clear(plan_id)
        shutil.rmtree(self.ctx.plan_dir(plan_id) / TASK_STORE_DIR, ignore_errors=True)
        self.ctx.forget_task_store(plan_id)
        self.ctx.release_executing(plan_id)
        self.ctx.git.release_plan(plan_id)
        plan = self.ctx.mutate_plan(plan_id, reset)
        self.ctx.activities.add(
            plan_id,
            "info",
            "Plan restarted",
            "Discussion preserved" if kept_discussion else "Returned to draft",
        )
        return plan

    def recover(self) -> list[str]:
        """Resume polling for plans left active by a previous process.

        Agents from the previous process are not reattached; the next tick
        dispatches whatever is still ready.
        """
        resumed: list[str] = []
        for plan in self.list_plans():
            if plan.status in ACTIVE_PLAN_STATUSES:
                self.dispatcher.start_polling(plan.id)
                resumed.append(plan.id)
        if resumed:
            logger.info("Resumed polling for %s plan(s): %s", len(resumed), ", ".join(resumed))
        return resumed

    def shutdown(self) -> None:
        self.dispatcher.shutdown()
        self.ctx.shutdown()


def open_manager(state_dir: Optional[str | Path] = None) -> PlanManager:
    """Build a `PlanManager` over the state root, wiring storage, bus and context."""
    container = Container(resolve_state_dir(state_dir))
    bus = EventBus(container.events)
    return PlanManager(OrchestratorContext(container, bus))
