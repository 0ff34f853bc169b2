from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any, Callable, Iterable

from loguru import logger
from rich.console import Console
from rich.table import Table

from .constants import ACTIVE_PLAN_STATUSES
from .domain.models import Activity, Plan
from .errors import OrchestratorError, PlanNotFoundError
from .graph import DependencyGraph, GraphStats
from .plan_manager import PlanManager, open_manager

_STATUS_STYLES = {
    "completed": "green",
    "closed": "green",
    "ready_for_review": "cyan",
    "in_progress": "yellow",
    "sent": "yellow",
    "delegating": "yellow",
    "failed": "red",
    "blocked": "dim",
}

_ACTIVITY_STYLES = {"success": "green", "warning": "yellow", "error": "red", "info": "white"}


def configure_logging(verbose: bool = False) -> None:
    """Route loguru and stdlib logging to stderr at INFO, or DEBUG when verbose."""
    level = "DEBUG" if verbose else "INFO"
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s | %(levelname)-8s | %(name)s - %(message)s",
        force=True,
    )


def _manager(args: argparse.Namespace) -> PlanManager:
    return open_manager(args.state_dir)


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _wait_while(manager: PlanManager, plan_id: str, statuses: Iterable[str], interval: float = 1.0) -> Plan:
    """Keep the process (and the agents it hosts) alive while the plan stays in `statuses`."""
    waiting = set(statuses)
    plan = manager.get_plan(plan_id)
    try:
        while plan.status in waiting:
            time.sleep(interval)
            plan = manager.get_plan(plan_id)
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted; agents started by this process will stop\n")
    finally:
        manager.shutdown()
    return plan


def _plan_action(
    action: Callable[[PlanManager, argparse.Namespace], Plan],
    wait_statuses: tuple[str, ...] = (),
) -> Callable[[argparse.Namespace], int]:
    def handler(args: argparse.Namespace) -> int:
        manager = _manager(args)
        try:
            plan = action(manager, args)
        except (OrchestratorError, ValueError) as exc:
            sys.stderr.write(str(exc) + "\n")
            return 1
        if wait_statuses and not getattr(args, "no_wait", False) and plan.status in wait_statuses:
            plan = _wait_while(manager, plan.id, wait_statuses)
        _emit({"plan": plan.to_dict()})
        return 0

    return handler


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------


def _render_plan(console: Console, plan: Plan) -> None:
    summary = Table(show_header=False, box=None)
    summary.add_row("Plan:", f"[bold]{plan.title}[/bold] ({plan.id})")
    summary.add_row("Status:", _styled(plan.status, _STATUS_STYLES))
    summary.add_row("Strategy:", plan.branch_strategy)
    summary.add_row("Feature branch:", plan.feature_branch or "-")
    summary.add_row("Max agents:", str(plan.max_parallel_agents))
    summary.add_row("Updated:", plan.updated_at)
    if plan.git_summary.commits:
        summary.add_row("Commits:", str(len(plan.git_summary.commits)))
    console.print(summary)

    if not plan.worktrees:
        return
    table = Table(title="Worktrees", show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Branch")
    table.add_column("Base")
    table.add_column("Agent", style="dim")
    for worktree in plan.worktrees:
        table.add_row(
            worktree.task_id,
            _styled(worktree.status, _STATUS_STYLES),
            worktree.branch or "-",
            worktree.base_branch or "-",
            worktree.agent_id or "-",
        )
    console.print(table)


def _render_graph(console: Console, graph: DependencyGraph, stats: GraphStats) -> None:
    table = Table(title="Dependency Graph", show_header=True)
    table.add_column("Depth", justify="right")
    table.add_column("Task", style="cyan")
    table.add_column("Title")
    table.add_column("Status", style="bold")
    table.add_column("Blocked by", style="dim")
    nodes = sorted(graph.nodes.values(), key=lambda node: (node.depth, node.id))
    for node in nodes:
        marker = " [magenta]*[/magenta]" if node.is_on_critical_path else ""
        table.add_row(
            str(node.depth),
            node.id + marker,
            node.title,
            _styled(node.status, _STATUS_STYLES),
            ", ".join(node.blocked_by) or "-",
        )
    console.print(table)
    counts = ", ".join(f"{key}: {value}" for key, value in stats.to_dict().items())
    console.print(f"[bold]Stats[/bold] {counts}")
    if graph.critical_path:
        console.print(f"[magenta]Critical path[/magenta] {' -> '.join(graph.critical_path)}")
    if graph.unreachable:
        console.print(f"[red]Unreachable (cycle)[/red] {', '.join(graph.unreachable)}")


def _render_activities(console: Console, activities: list[Activity]) -> None:
    table = Table(title="Activity", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Type")
    table.add_column("Message")
    table.add_column("Details", style="dim")
    for item in activities:
        table.add_row(item.timestamp, _styled(item.type, _ACTIVITY_STYLES), item.message, item.details or "")
    console.print(table)


# ----------------------------------------------------------------------
# Plan commands
# ----------------------------------------------------------------------


def _plan_create(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        plan = manager.create_plan(
            args.title,
            args.description or "",
            max_parallel_agents=args.max_parallel_agents,
            branch_strategy=args.branch_strategy,
        )
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    _emit({"plan": plan.to_dict()})
    return 0


def _plan_list(args: argparse.Namespace) -> int:
    plans = _manager(args).list_plans()
    if args.status:
        plans = [plan for plan in plans if plan.status == args.status]
    _emit({"plans": [plan.to_dict() for plan in plans]})
    return 0


def _plan_show(args: argparse.Namespace) -> int:
    try:
        plan = _manager(args).get_plan(args.plan_id)
    except PlanNotFoundError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    if args.json:
        _emit({"plan": plan.to_dict()})
    else:
        _render_plan(Console(), plan)
    return 0


def _plan_delete(args: argparse.Namespace) -> int:
    result = _manager(args).delete_plans(args.plan_ids)
    _emit(result)
    return 0 if not result["errors"] else 1


def _plan_graph(args: argparse.Namespace) -> int:
    try:
        graph, stats = _manager(args).get_graph(args.plan_id)
    except OrchestratorError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    if args.json:
        _emit({"graph": graph.to_dict(), "stats": stats.to_dict()})
    else:
        _render_graph(Console(), graph, stats)
    return 0


def _activity_list(args: argparse.Namespace) -> int:
    try:
        activities = _manager(args).get_activities(args.plan_id)
    except PlanNotFoundError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    if args.limit:
        activities = activities[-args.limit :]
    if args.json:
        _emit({"activities": [item.to_dict() for item in activities]})
    else:
        _render_activities(Console(), activities)
    return 0


# ----------------------------------------------------------------------
# Repositories
# ----------------------------------------------------------------------


def _repo_add(args: argparse.Namespace) -> int:
    try:
        repo = _manager(args).add_repository(args.path, args.name)
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    _emit({"repository": repo.to_dict()})
    return 0


def _repo_list(args: argparse.Namespace) -> int:
    _emit({"repositories": [repo.to_dict() for repo in _manager(args).list_repositories()]})
    return 0


# ----------------------------------------------------------------------
# Long-running processes
# ----------------------------------------------------------------------


def _run(args: argparse.Namespace) -> int:
    manager = _manager(args)
    resumed = manager.recover()
    sys.stderr.write(f"Polling {len(resumed)} active plan(s); press Ctrl-C to stop\n")
    try:
        while True:
            time.sleep(args.interval)
            for plan in manager.list_plans():
                if plan.status in ACTIVE_PLAN_STATUSES and not manager.dispatcher.is_polling(plan.id):
                    manager.dispatcher.start_polling(plan.id)
    except KeyboardInterrupt:
        sys.stderr.write("Stopping\n")
    finally:
        manager.shutdown()
    return 0


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    app = create_app(state_dir=args.state_dir)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orchestrate coding agents across a plan's task graph")
    parser.add_argument(
        "--state-dir",
        default=None,
        help="State directory (default: $PLAN_ORCHESTRATOR_HOME or ~/.plan_orchestrator)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the HTTP control server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    run = subparsers.add_parser("run", help="Resume active plans and keep their pollers alive")
    run.add_argument("--interval", default=5.0, type=float, help="Seconds between checks for newly active plans")
    run.set_defaults(func=_run)

    plan = subparsers.add_parser("plan", help="Manage plans")
    plan_sub = plan.add_subparsers(dest="plan_cmd", required=True)
    pcreate = plan_sub.add_parser("create", help="Create a draft plan")
    pcreate.add_argument("title")
    pcreate.add_argument("--description", default="")
    pcreate.add_argument("--max-parallel-agents", default=None, type=int)
    pcreate.add_argument("--branch-strategy", default="feature_branch", choices=["feature_branch", "raise_prs"])
    pcreate.set_defaults(func=_plan_create)
    plist = plan_sub.add_parser("list", help="List plans")
    plist.add_argument("--status", default=None)
    plist.set_defaults(func=_plan_list)
    pshow = plan_sub.add_parser("show", help="Show a plan and its worktrees")
    pshow.add_argument("plan_id")
    pshow.add_argument("--json", action="store_true")
    pshow.set_defaults(func=_plan_show)
    pdelete = plan_sub.add_parser("delete", help="Delete one or more plans")
    pdelete.add_argument("plan_ids", nargs="+")
    pdelete.set_defaults(func=_plan_delete)
    pclone = plan_sub.add_parser("clone", help="Copy a plan into a new draft")
    pclone.add_argument("plan_id")
    pclone.add_argument("--include-discussion", action="store_true")
    pclone.set_defaults(
        func=_plan_action(lambda m, a: m.clone_plan(a.plan_id, include_discussion=a.include_discussion))
    )
    pexecute = plan_sub.add_parser("execute", help="Start the orchestrator and dispatch ready tasks")
    pexecute.add_argument("plan_id")
    pexecute.add_argument("--reference", default=None, help="Repository id or name the agents start in")
    pexecute.add_argument("--no-wait", action="store_true", help="Return without waiting for the plan to finish")
    pexecute.set_defaults(
        func=_plan_action(lambda m, a: m.execute_plan(a.plan_id, a.reference), ACTIVE_PLAN_STATUSES[:2])
    )
    pcancel = plan_sub.add_parser("cancel", help="Stop all agents and mark the plan failed")
    pcancel.add_argument("plan_id")
    pcancel.set_defaults(func=_plan_action(lambda m, a: m.cancel_plan(a.plan_id)))
    prestart = plan_sub.add_parser("restart", help="Reset a plan to draft (or discussed)")
    prestart.add_argument("plan_id")
    prestart.set_defaults(func=_plan_action(lambda m, a: m.restart_plan(a.plan_id)))
    pcomplete = plan_sub.add_parser("complete", help="Finish a plan and clean up its worktrees")
    pcomplete.add_argument("plan_id")
    pcomplete.set_defaults(func=_plan_action(lambda m, a: m.complete_plan(a.plan_id)))
    pfollow = plan_sub.add_parser("follow-ups", help="Ask an agent for follow-up tasks")
    pfollow.add_argument("plan_id")
    pfollow.add_argument("--no-wait", action="store_true")
    pfollow.set_defaults(
        func=_plan_action(lambda m, a: m.request_follow_ups(a.plan_id), ("ready_for_review",))
    )
    pgraph = plan_sub.add_parser("graph", help="Show the task dependency graph")
    pgraph.add_argument("plan_id")
    pgraph.add_argument("--json", action="store_true")
    pgraph.set_defaults(func=_plan_graph)

    discussion = subparsers.add_parser("discussion", help="Drive the planning discussion")
    discussion_sub = discussion.add_subparsers(dest="discussion_cmd", required=True)
    dstart = discussion_sub.add_parser("start", help="Start a discussion agent")
    dstart.add_argument("plan_id")
    dstart.add_argument("--reference", default=None)
    dstart.add_argument("--no-wait", action="store_true")
    dstart.set_defaults(
        func=_plan_action(lambda m, a: m.start_discussion(a.plan_id, a.reference), ("discussing",))
    )
    dcomplete = discussion_sub.add_parser("complete", help="Approve the discussion output")
    dcomplete.add_argument("plan_id")
    dcomplete.set_defaults(func=_plan_action(lambda m, a: m.complete_discussion(a.plan_id)))
    dcancel = discussion_sub.add_parser("cancel", help="Abandon the discussion")
    dcancel.add_argument("plan_id")
    dcancel.set_defaults(func=_plan_action(lambda m, a: m.cancel_discussion(a.plan_id)))

    repo = subparsers.add_parser("repo", help="Manage registered repositories")
    repo_sub = repo.add_subparsers(dest="repo_cmd", required=True)
    radd = repo_sub.add_parser("add", help="Register a local git repository")
    radd.add_argument("path")
    radd.add_argument("--name", default=None)
    radd.set_defaults(func=_repo_add)
    rlist = repo_sub.add_parser("list", help="List registered repositories")
    rlist.set_defaults(func=_repo_list)

    activity = subparsers.add_parser("activity", help="Inspect plan activity")
    activity_sub = activity.add_subparsers(dest="activity_cmd", required=True)
    alist = activity_sub.add_parser("list", help="List a plan's activity log")
    alist.add_argument("plan_id")
    alist.add_argument("--limit", default=0, type=int)
    alist.add_argument("--json", action="store_true")
    alist.set_defaults(func=_activity_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
