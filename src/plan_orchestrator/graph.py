"""Dependency graph construction for plan tasks.

Builds a DAG from the task store's flat task list plus this orchestrator's
assignment records, deriving each node's status, its BFS depth from the roots
and the critical path (longest chain of incomplete, mutually blocking tasks).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from loguru import logger

from .domain.models import BeadTask, TaskAssignment


@dataclass
class TaskNode:
    id: str
    title: str
    status: str
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    depth: int = 0
    is_on_critical_path: bool = False
    assignment: Optional[TaskAssignment] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["assignment"] = self.assignment.to_dict() if self.assignment else None
        return data


@dataclass
class GraphEdge:
    source: str
    target: str
    is_on_critical_path: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.source, "to": self.target, "is_on_critical_path": self.is_on_critical_path}


@dataclass
class DependencyGraph:
    nodes: dict[str, TaskNode] = field(default_factory=dict)
    edges: list[GraphEdge] = field(default_factory=list)
    roots: list[str] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)
    critical_path: list[str] = field(default_factory=list)
    max_depth: int = 0
    unreachable: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
            "roots": list(self.roots),
            "leaves": list(self.leaves),
            "critical_path": list(self.critical_path),
            "max_depth": self.max_depth,
            "unreachable": list(self.unreachable),
        }


@dataclass
class GraphStats:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    sent: int = 0
    blocked: int = 0
    ready: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _node_status(
    task: BeadTask,
    assignment: Optional[TaskAssignment],
    tasks: dict[str, BeadTask],
    assignments: dict[str, TaskAssignment],
) -> str:
    # Closed wins over any assignment: merge-only tasks never get one.
    if task.status == "closed":
        return "completed"
    if assignment is not None:
        return assignment.status

    def _resolved(blocker_id: str) -> bool:
        blocker = tasks.get(blocker_id)
        if blocker is None:
            # Unknown ids (epics, removed tasks) must not deadlock the plan.
            return True
        if blocker.status == "closed":
            return True
        blocker_assignment = assignments.get(blocker_id)
        return blocker_assignment is not None and blocker_assignment.status == "completed"

    return "ready" if all(_resolved(b) for b in task.blocked_by) else "blocked"


def _assign_depths(nodes: dict[str, TaskNode]) -> list[str]:
    """BFS-layer nodes from the roots; return ids never reached."""
    visited: set[str] = set()
    current = [node.id for node in nodes.values() if not node.blocked_by]
    depth = 0
    while current:
        next_level: list[str] = []
        for node_id in current:
            if node_id in visited:
                continue
            visited.add(node_id)
            node = nodes.get(node_id)
            if node is None:
                continue
            node.depth = depth
            next_level.extend(node.blocks)
        depth += 1
        current = next_level

    unvisited = [node_id for node_id in nodes if node_id not in visited]
    if unvisited:
        for node_id in unvisited:
            node = nodes[node_id]
            logger.warning(
                "Task {} unreachable from any root (blocked_by={}, blocks={})",
                node_id,
                node.blocked_by,
                node.blocks,
            )
    return unvisited


def _find_critical_path(nodes: dict[str, TaskNode]) -> list[str]:
    def _incomplete(node_id: str) -> bool:
        node = nodes.get(node_id)
        return node is not None and node.status != "completed"

    incomplete = [node for node in nodes.values() if node.status != "completed"]
    if not incomplete:
        return []

    leaves = [node for node in incomplete if not any(_incomplete(b) for b in node.blocks)]
    longest: list[str] = []

    def _walk(node_id: str, path: list[str]) -> None:
        nonlocal longest
        node = nodes.get(node_id)
        if node is None or node_id in path:
            return
        new_path = [node_id] + path
        blockers = [b for b in node.blocked_by if _incomplete(b)]
        if not blockers:
            if len(new_path) > len(longest):
                longest = new_path
            return
        for blocker_id in blockers:
            _walk(blocker_id, new_path)

    for leaf in leaves:
        _walk(leaf.id, [])
    return longest


def build_graph(tasks: Iterable[BeadTask], assignments: Iterable[TaskAssignment]) -> DependencyGraph:
    """Build the dependency graph for one plan.

    Args:
        tasks: Tasks from the external store (epics are dropped).
        assignments: Assignment records for the same plan.

    Returns:
        A freshly built `DependencyGraph`; callers must not mutate it.
    """
    task_list = [task for task in tasks if task.type != "epic"]
    task_map = {task.id: task for task in task_list}
    assignment_map = {a.bead_id: a for a in assignments}

    graph = DependencyGraph()
    for task in task_list:
        assignment = assignment_map.get(task.id)
        graph.nodes[task.id] = TaskNode(
            id=task.id,
            title=task.title,
            status=_node_status(task, assignment, task_map, assignment_map),
            blocked_by=list(task.blocked_by),
            assignment=assignment,
        )

    for task in task_list:
        node = graph.nodes[task.id]
        for blocker_id in node.blocked_by:
            blocker = graph.nodes.get(blocker_id)
            if blocker is None:
                logger.debug("Blocker {} of task {} not in graph", blocker_id, task.id)
                continue
            blocker.blocks.append(task.id)
            graph.edges.append(GraphEdge(source=blocker_id, target=task.id))

    graph.unreachable = _assign_depths(graph.nodes)

    graph.critical_path = _find_critical_path(graph.nodes)
    position = {node_id: idx for idx, node_id in enumerate(graph.critical_path)}
    for node_id in graph.critical_path:
        graph.nodes[node_id].is_on_critical_path = True
    for edge in graph.edges:
        if edge.source in position and edge.target in position:
            edge.is_on_critical_path = abs(position[edge.source] - position[edge.target]) == 1

    graph.roots = [node.id for node in graph.nodes.values() if not node.blocked_by]
    graph.leaves = [node.id for node in graph.nodes.values() if not node.blocks]
    graph.max_depth = max([0] + [node.depth for node in graph.nodes.values()])
    return graph


def calculate_graph_stats(graph: DependencyGraph) -> GraphStats:
    stats = GraphStats()
    for node in graph.nodes.values():
        stats.total += 1
        status = node.status
        if status == "completed":
            stats.completed += 1
        elif status == "in_progress":
            stats.in_progress += 1
        elif status in ("sent", "pending"):
            # pending = dispatched but not yet acknowledged
            stats.sent += 1
        elif status == "blocked":
            stats.blocked += 1
        elif status in ("ready", "planned"):
            stats.ready += 1
        elif status == "failed":
            stats.failed += 1
    return stats

