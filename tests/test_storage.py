"""Tests for file-backed storage, the event bus and the activity log."""

from __future__ import annotations

import threading
from pathlib import Path

import yaml

from plan_orchestrator.activity import ActivityLog
from plan_orchestrator.domain.models import Plan, TaskAssignment, Worktree
from plan_orchestrator.events.bus import EventBus
from plan_orchestrator.storage.container import Container


class TestBootstrap:
    def test_state_root_layout(self, tmp_path: Path) -> None:
        container = Container(tmp_path / "state")
        root = container.state_root

        assert (root / "plans").is_dir()
        assert (root / "events.jsonl").exists()
        config = yaml.safe_load((root / "config.yaml").read_text())
        assert config["schema_version"] == 1
        assert config["repositories"] == []
        assert config["dispatch"]["mode"] == "interactive"

    def test_bootstrap_keeps_existing_config(self, tmp_path: Path) -> None:
        Container(tmp_path / "state").config.update(lambda data: data.update({"dispatch": {"mode": "headless"}}))
        container = Container(tmp_path / "state")
        assert container.config.load()["dispatch"] == {"mode": "headless"}


class TestPlanRepository:
    def test_upsert_round_trips_nested_records(self, tmp_path: Path) -> None:
        repo = Container(tmp_path / "state").plans
        plan = Plan(title="Persist", branch_strategy="raise_prs")
        plan.worktrees.append(Worktree(id="api-1", plan_id=plan.id, task_id="orch-1", branch="b", pr_number=3))

        repo.upsert(plan)
        loaded = repo.get(plan.id)

        assert loaded is not None
        assert loaded.branch_strategy == "raise_prs"
        assert loaded.worktrees[0].pr_number == 3
        assert loaded.worktrees[0].status == "active"

    def test_upsert_replaces_and_delete_reports(self, tmp_path: Path) -> None:
        repo = Container(tmp_path / "state").plans
        plan = repo.upsert(Plan(title="One"))
        plan.title = "Renamed"
        repo.upsert(plan)

        assert [p.title for p in repo.list()] == ["Renamed"]
        assert repo.delete(plan.id) is True
        assert repo.delete(plan.id) is False
        assert repo.list() == []

    def test_concurrent_upserts_do_not_lose_plans(self, tmp_path: Path) -> None:
        repo = Container(tmp_path / "state").plans

        def create(n: int) -> None:
            repo.upsert(Plan(title=f"Plan {n}"))

        threads = [threading.Thread(target=create, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(repo.list()) == 8


class TestPerPlanCollections:
    def test_assignments_are_upserted_by_task(self, tmp_path: Path) -> None:
        repo = Container(tmp_path / "state").assignments
        repo.upsert(TaskAssignment(bead_id="orch-1", plan_id="plan-a"))
        repo.upsert(TaskAssignment(bead_id="orch-1", plan_id="plan-a", status="in_progress"))
        repo.upsert(TaskAssignment(bead_id="orch-1", plan_id="plan-b"))

        [assignment] = repo.list("plan-a")
        assert assignment.status == "in_progress"
        assert repo.get("plan-b", "orch-1") is not None
        assert (tmp_path / "state" / "plans" / "plan-a" / "assignments.yaml").exists()

        repo.clear("plan-a")
        assert repo.list("plan-a") == []
        assert len(repo.list("plan-b")) == 1


class TestEvents:
    def test_bus_persists_and_filters_by_channel(self, tmp_path: Path) -> None:
        container = Container(tmp_path / "state")
        bus = EventBus(container.events)
        plans_seen: list[dict] = []
        everything: list[dict] = []
        bus.subscribe(plans_seen.append, channels=["plans"])
        subscription = bus.subscribe(everything.append)

        bus.emit(channel="plans", event_type="plan.updated", entity_id="plan-1", payload={"status": "draft"})
        subscription.unsubscribe()
        bus.emit(channel="tasks", event_type="tasks.updated", entity_id="plan-1", payload={"plan_id": "plan-1"})

        assert [e["type"] for e in plans_seen] == ["plan.updated"]
        assert [e["type"] for e in everything] == ["plan.updated"]
        recent = container.events.list_recent(10)
        assert [e["channel"] for e in recent] == ["plans", "tasks"]
        assert recent[0]["id"].startswith("evt-")

    def test_failing_subscriber_does_not_block_others(self, tmp_path: Path) -> None:
        bus = EventBus(Container(tmp_path / "state").events)
        seen: list[dict] = []

        def boom(event: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe(boom)
        bus.subscribe(seen.append)
        bus.emit(channel="agents", event_type="agent.started", entity_id="a", payload={})

        assert len(seen) == 1

    def test_list_recent_limits_and_skips_garbage(self, tmp_path: Path) -> None:
        container = Container(tmp_path / "state")
        for n in range(5):
            container.events.append(channel="plans", event_type="plan.updated", entity_id=f"p{n}", payload={})
        with (container.state_root / "events.jsonl").open("a") as handle:
            handle.write("not json\n")

        recent = container.events.list_recent(3)

        assert [e["entity_id"] for e in recent] == ["p3", "p4"]
        assert container.events.list_recent(0) == []


class TestActivityLog:
    def test_add_persists_and_emits(self, tmp_path: Path) -> None:
        container = Container(tmp_path / "state")
        bus = EventBus(container.events)
        seen: list[dict] = []
        bus.subscribe(seen.append, channels=["activities"])
        log = ActivityLog(container.activities, bus)

        log.add("plan-1", "warning", "Task orch-1 missing repo/worktree assignment", "details")

        assert [a.message for a in ActivityLog(container.activities, bus).list("plan-1")] == [
            "Task orch-1 missing repo/worktree assignment"
        ]
        assert seen[0]["payload"]["type"] == "warning"
        assert seen[0]["payload"]["plan_id"] == "plan-1"

    def test_clear_and_forget(self, tmp_path: Path) -> None:
        container = Container(tmp_path / "state")
        log = ActivityLog(container.activities, EventBus(container.events))
        log.add("plan-1", "info", "one")
        log.add("plan-1", "info", "two")

        log.clear("plan-1")
        log.add("plan-1", "success", "three")

        assert [a.message for a in log.list("plan-1")] == ["three"]
        log.forget("plan-1")
        assert [a.message for a in log.list("plan-1")] == ["three"]
