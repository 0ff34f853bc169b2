"""Build the text prompts handed to each kind of plan agent."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable, Optional

from ..constants import DISCUSSION_OUTPUT_FILE, EXIT_COMMAND
from ..domain.models import BeadTask, Plan, Repository, Worktree

_EXIT = EXIT_COMMAND.strip()


def _repo_block(repositories: Iterable[Repository]) -> str:
    lines = [f"- {r.name}: {r.root_path} (branch: {r.default_branch})" for r in repositories]
    return "\n".join(lines) if lines else "(No repositories registered - add one with `plan-orchestrator repo add`)"


def build_discussion_prompt(plan: Plan, plan_dir: Path, codebase_path: str) -> str:
    output_path = plan_dir / DISCUSSION_OUTPUT_FILE
    return f"""[PLAN DISCUSSION]
Plan: {plan.title}
{plan.description}

You are helping refine this plan BEFORE any code is written.

Process:
1. Review the codebase at {codebase_path} to understand the existing architecture.
2. Ask the user one question at a time; prefer multiple choice.
3. Propose 2-3 approaches with trade-offs and lead with your recommendation.
4. Present the design in short sections and confirm each one.

Cover requirements, architecture, testing, monitoring and edge cases.

When the user is satisfied, write a summary to: {output_path}

  # Discussion Summary: {plan.title}
  ## Requirements Agreed Upon
  ## Architecture Decisions
  ## Testing Strategy
  ## Edge Cases to Handle
  ## Proposed Task Breakdown
  - Task 1: <description> (Dependencies: none)
  - Task 2: <description> (Dependencies: Task 1)

Then type {_EXIT} to signal that the discussion is complete.
"""


def build_orchestrator_prompt(
    plan: Plan,
    repositories: Iterable[Repository],
    task_binary: str,
    label_prefix: str,
) -> str:
    bd = f"{task_binary} --sandbox"
    return f"""[PLAN ORCHESTRATOR]
Plan ID: {plan.id}
Title: {plan.title}

You are the orchestrator. Your job is to:
1. Wait for the planner to finish creating tasks
2. Assign each task to a repository and worktree
3. Mark the first task(s) as ready
4. Watch for closed tasks and mark their dependents ready

=== AVAILABLE REPOSITORIES ===
{_repo_block(repositories)}

=== CONFIGURATION ===
Max parallel agents: {plan.max_parallel_agents}
(Extra ready tasks are queued automatically.)

=== RULES ===
1. Do not work on tasks yourself.
2. Worktree names must include the task number: "<descriptive-name>-<task-number>".
   For task "orch-xyz.5" use "5" (e.g. "fix-login-5").
3. Mark a task ready only when all of its blockers are closed.

=== COMMANDS ===
List tasks:            {bd} list --json
List including closed: {bd} list --all --json
Assign placement:      {bd} update <task-id> --add-label "repo:<repo-name>" --add-label "worktree:<name>-<task-number>"
Mark ready:            {bd} update <task-id> --add-label {label_prefix}-ready
Find dependents:       {bd} dep list <task-id> --direction=up

When filtering with jq use `select(.x == "y")` or `| not`; `!=` breaks in bash history expansion.
"""


def build_planner_prompt(plan: Plan, plan_dir: Path, codebase_path: str, task_binary: str) -> str:
    bd = f"{task_binary} --sandbox"
    discussion_block = ""
    if plan.discussion is not None and plan.discussion.status == "approved" and plan.discussion_output_path:
        discussion_block = f"""
=== DISCUSSION OUTCOMES ===
Read the agreed requirements, decisions and proposed task breakdown at:
{plan.discussion_output_path}
Create tasks that match the structure in that file.
"""
    return f"""[PLAN PLANNER]
Plan ID: {plan.id}
Title: {plan.title}

{plan.description}
{discussion_block}
You are the planner. Break the work into discrete tasks with dependencies.
The orchestrator handles assignment and readiness.

You are running in: {plan_dir}
The codebase to analyze is at: {codebase_path}

Create the epic:         {bd} create --type epic "{plan.title}"
Create a task under it:  {bd} create --parent <epic-id> "<task title>"
B depends on A:          {bd} dep <task-A-id> --blocks <task-B-id>

When all tasks and dependencies exist, summarise the plan for the user and
type {_EXIT}.
"""


def _completion_steps(plan: Plan, task: BeadTask, base_branch: str, close_cmd: str) -> str:
    if plan.branch_strategy == "raise_prs":
        return f"""2. Commit your changes with a clear message
3. Push your branch and open a PR against {base_branch}:
   gh api repos/OWNER/REPO/pulls -f head="BRANCH" -f base="{base_branch}" -f title="..." -f body="..."
4. Close the task with the PR URL: {close_cmd} {task.id} --message "PR: <url>\""""
    return f"""2. Commit your changes with a clear message (do not push; the orchestrator pushes on completion)
3. Close the task: {close_cmd} {task.id} --message "Completed\""""


def build_task_prompt(
    plan: Plan,
    task: BeadTask,
    plan_dir: Path,
    repository: Optional[Repository],
    task_binary: str,
) -> str:
    """Prompt typed into an interactive task agent's terminal."""
    base_branch = repository.default_branch if repository else "main"
    close_cmd = f"cd {plan_dir} && {task_binary} --sandbox close"
    return f"""[TASK ASSIGNMENT]
Task ID: {task.id}
Title: {task.title}

You are working in a dedicated git worktree for this task.
Base: {base_branch}

=== COMPLETION REQUIREMENTS ===
1. Complete the work described in the task
{_completion_steps(plan, task, base_branch, close_cmd)}

When finished, type {_EXIT} to signal completion.
"""


def build_headless_task_prompt(
    plan: Plan,
    task: BeadTask,
    plan_dir: Path,
    repository: Optional[Repository],
    worktree: Optional[Worktree],
    task_binary: str,
) -> str:
    """Prompt for a non-interactive task agent; there is no human to ask."""
    base_branch = (worktree.base_branch if worktree else None) or (repository.default_branch if repository else "main")
    close_cmd = f"cd {plan_dir} && {task_binary} --sandbox close"
    return f"""[TASK - HEADLESS MODE]
Task ID: {task.id}
Title: {task.title}

You are in a dedicated git worktree for this task. Base branch: {base_branch}

Commit with `git commit -m "..."` once the work is complete.
Do not use HEREDOC or --file for commit messages.

=== COMPLETION REQUIREMENTS ===
1. Complete the work described in the task title
{_completion_steps(plan, task, base_branch, close_cmd)}

There is no interactive mode. Do not wait for input; if you are blocked,
close the task with a message explaining why.
"""


def build_merge_prompt(
    plan: Plan,
    task_id: str,
    merge_task_id: str,
    worktree: Worktree,
    plan_dir: Path,
    task_binary: str,
    error: Optional[str] = None,
) -> str:
    feature = plan.feature_branch or ""
    close_cmd = f"cd {plan_dir} && {task_binary} --sandbox close {merge_task_id}"
    error_block = f"\n=== ORIGINAL ERROR ===\n{error}\n" if error else ""
    return f"""[MERGE CONFLICT RESOLUTION]
Merge task ID: {merge_task_id}
Original task: {task_id}
Branch: {worktree.branch}
Feature branch: {feature}
{error_block}
Your branch conflicts with the shared feature branch. Integrate it:
1. git fetch origin {feature}
2. git rebase origin/{feature}
3. Resolve every conflict, keeping the intent of both sides, then
   `git add <files>` and `git rebase --continue`
4. Run the project's tests if they exist
5. git push origin HEAD:refs/heads/{feature}
6. Close the merge task:
   {close_cmd} --message "Merged {task_id} into {feature}"

If the conflicts cannot be resolved automatically, abort the rebase and close
the task anyway so dependents are not stuck:
   {close_cmd} --message "CONFLICT: Could not auto-resolve - manual intervention required"
"""


def build_follow_up_prompt(
    plan: Plan,
    completed: Iterable[BeadTask],
    repositories: Iterable[Repository],
    task_binary: str,
    label_prefix: str,
) -> str:
    completed_block = "\n".join(f"- {t.id}: {t.title}" for t in completed) or "(No completed tasks yet)"
    repos = list(repositories)
    repo_names = "\n".join(f"- {r.name}" for r in repos) or "(No repositories available)"
    worktree_block = (
        "\n".join(f"- {w.id} (repo: {w.repository_id}, task: {w.task_id}, status: {w.status})" for w in plan.worktrees)
        or "(No worktrees yet)"
    )
    default_repo = repos[0].name if repos else "<repo-name>"
    default_worktree = f"followup-{int(time.time() * 1000)}"
    bd = f"{task_binary} --sandbox"
    return f"""[PLAN FOLLOW-UP]
Plan: {plan.title}
{plan.description}

The plan is ready for review and the user wants to add follow-up work.

=== COMPLETED TASKS ===
{completed_block}

=== AVAILABLE REPOSITORIES ===
{repo_names}

=== EXISTING WORKTREES ===
{worktree_block}

=== CREATING FOLLOW-UP TASKS ===
1. {bd} create "Task title"
2. {bd} dep <completed-task-id> --blocks <new-task-id>   (when it builds on earlier work)
3. {bd} update <task-id> --add-label "repo:{default_repo}" --add-label "worktree:{default_worktree}" --add-label {label_prefix}-ready

Every task needs the repo and worktree labels before it is marked ready.
Type {_EXIT} when the user has no more follow-ups.
"""
