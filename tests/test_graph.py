"""Tests for dependency graph construction and stats."""

from __future__ import annotations

import pytest

from plan_orchestrator.domain.models import BeadTask, TaskAssignment
from plan_orchestrator.graph import build_graph, calculate_graph_stats


def _task(task_id: str, *blocked_by: str, status: str = "open", type: str = "task") -> BeadTask:
    return BeadTask(id=task_id, title=f"Task {task_id}", status=status, type=type, blocked_by=list(blocked_by))


class TestBuildGraph:
    def test_diamond_depths_edges_and_critical_path(self) -> None:
        tasks = [_task("a"), _task("b", "a"), _task("c", "a"), _task("d", "b", "c")]

        graph = build_graph(tasks, [])

        assert graph.roots == ["a"]
        assert graph.leaves == ["d"]
        assert {n.id: n.depth for n in graph.nodes.values()} == {"a": 0, "b": 1, "c": 1, "d": 2}
        assert graph.max_depth == 2
        assert {(e.source, e.target) for e in graph.edges} == {("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")}
        assert len(graph.critical_path) == 3
        assert graph.critical_path[0] == "a"
        assert graph.critical_path[-1] == "d"
        assert graph.nodes["a"].is_on_critical_path
        assert graph.unreachable == []

    def test_epics_are_excluded(self) -> None:
        graph = build_graph([_task("epic-1", type="epic"), _task("a")], [])
        assert list(graph.nodes) == ["a"]

    def test_status_derivation(self) -> None:
        tasks = [
            _task("done", status="closed"),
            _task("waiting", "open-blocker"),
            _task("open-blocker"),
            _task("unblocked", "done"),
            _task("assigned"),
        ]
        assignments = [TaskAssignment(bead_id="assigned", plan_id="p", status="in_progress")]

        graph = build_graph(tasks, assignments)

        assert graph.nodes["done"].status == "completed"
        assert graph.nodes["waiting"].status == "blocked"
        assert graph.nodes["open-blocker"].status == "ready"
        assert graph.nodes["unblocked"].status == "ready"
        assert graph.nodes["assigned"].status == "in_progress"

    def test_closed_task_wins_over_assignment(self) -> None:
        tasks = [_task("a", status="closed")]
        assignments = [TaskAssignment(bead_id="a", plan_id="p", status="sent")]
        assert build_graph(tasks, assignments).nodes["a"].status == "completed"

    def test_completed_assignment_resolves_blocker(self) -> None:
        tasks = [_task("a"), _task("b", "a")]
        assignments = [TaskAssignment(bead_id="a", plan_id="p", status="completed")]
        assert build_graph(tasks, assignments).nodes["b"].status == "ready"

    def test_unknown_blocker_does_not_deadlock(self) -> None:
        graph = build_graph([_task("a", "missing-epic")], [])
        assert graph.nodes["a"].status == "ready"
        assert graph.edges == []

    def test_cycle_members_are_reported_unreachable(self) -> None:
        tasks = [_task("root"), _task("x", "y"), _task("y", "x")]

        graph = build_graph(tasks, [])

        assert sorted(graph.unreachable) == ["x", "y"]
        assert graph.nodes["root"].depth == 0

    def test_critical_path_ignores_completed_tasks(self) -> None:
        tasks = [_task("a", status="closed"), _task("b", "a"), _task("c", "b")]
        graph = build_graph(tasks, [])
        assert graph.critical_path == ["b", "c"]
        assert not graph.nodes["a"].is_on_critical_path

    def test_shortcut_edge_is_not_on_critical_path(self) -> None:
        tasks = [_task("a"), _task("b", "a"), _task("c", "b", "a")]

        graph = build_graph(tasks, [])

        assert graph.critical_path == ["a", "b", "c"]
        flagged = {(e.source, e.target): e.is_on_critical_path for e in graph.edges}
        assert flagged == {("a", "b"): True, ("b", "c"): True, ("a", "c"): False}

    def test_fan_out_before_and_after_root_closes(self) -> None:
        tasks = [_task("A"), _task("B", "A"), _task("C", "A")]

        before = build_graph(tasks, [])
        assert {n.id: n.depth for n in before.nodes.values()} == {"A": 0, "B": 1, "C": 1}
        assert {n.id: n.status for n in before.nodes.values()} == {"A": "ready", "B": "blocked", "C": "blocked"}

        tasks[0].status = "closed"
        after = build_graph(tasks, [])

        assert {n.id: n.status for n in after.nodes.values()} == {"A": "completed", "B": "ready", "C": "ready"}
        assert calculate_graph_stats(after).to_dict() == {
            "total": 3,
            "completed": 1,
            "in_progress": 0,
            "sent": 0,
            "blocked": 0,
            "ready": 2,
            "failed": 0,
        }

    def test_to_dict_is_serialisable_shape(self) -> None:
        tasks = [_task("a"), _task("b", "a")]
        assignments = [TaskAssignment(bead_id="a", plan_id="p", agent_id="task-agent-a", status="sent")]

        data = build_graph(tasks, assignments).to_dict()

        assert {node["id"] for node in data["nodes"]} == {"a", "b"}
        node_a = next(node for node in data["nodes"] if node["id"] == "a")
        assert node_a["assignment"]["agent_id"] == "task-agent-a"
        assert data["edges"][0] == {"from": "a", "to": "b", "is_on_critical_path": True}


def test_calculate_graph_stats_buckets_statuses() -> None:
    tasks = [
        _task("done", status="closed"),
        _task("run"),
        _task("sent"),
        _task("pend"),
        _task("fail"),
        _task("ready"),
        _task("blocked", "ready"),
    ]
    assignments = [
        TaskAssignment(bead_id="run", plan_id="p", status="in_progress"),
        TaskAssignment(bead_id="sent", plan_id="p", status="sent"),
        TaskAssignment(bead_id="pend", plan_id="p", status="pending"),
        TaskAssignment(bead_id="fail", plan_id="p", status="failed"),
    ]

    stats = calculate_graph_stats(build_graph(tasks, assignments))

    assert stats.to_dict() == {
        "total": 7,
        "completed": 1,
        "in_progress": 1,
        "sent": 2,
        "blocked": 1,
        "ready": 1,
        "failed": 1,
    }


@pytest.mark.parametrize("closed_id, drained_bucket", [("solo", "ready"), ("waiting", "blocked")])
def test_closing_an_unassigned_task_moves_one_bucket(closed_id: str, drained_bucket: str) -> None:
    tasks = [
        _task("done", status="closed"),
        _task("busy"),
        _task("solo"),
        _task("waiting", "busy"),
    ]
    assignments = [TaskAssignment(bead_id="busy", plan_id="p", status="in_progress")]
    before = calculate_graph_stats(build_graph(tasks, assignments)).to_dict()

    next(t for t in tasks if t.id == closed_id).status = "closed"
    after = calculate_graph_stats(build_graph(tasks, assignments)).to_dict()

    delta = {key: after[key] - before[key] for key in before if after[key] != before[key]}
    assert delta == {"completed": 1, drained_bucket: -1}
    assert after["total"] == before["total"] == 4
