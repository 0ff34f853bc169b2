"""Tests for the `bd`-backed task store, with the subprocess boundary patched."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from plan_orchestrator.errors import TaskStoreError
from plan_orchestrator.task_store import bd_client
from plan_orchestrator.task_store.bd_client import BdTaskStore


class _FakeBd:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.responses: dict[str, subprocess.CompletedProcess[str]] = {}

    def respond(self, subcommand: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses[subcommand] = subprocess.CompletedProcess([], returncode, stdout, stderr)

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(cmd))
        subcommand = cmd[2] if len(cmd) > 2 else ""
        return self.responses.get(subcommand, subprocess.CompletedProcess(cmd, 0, "", ""))


@pytest.fixture
def fake_bd(monkeypatch: pytest.MonkeyPatch) -> _FakeBd:
    fake = _FakeBd()
    monkeypatch.setattr(bd_client.subprocess, "run", fake)
    return fake


@pytest.fixture
def store(tmp_path: Path) -> BdTaskStore:
    (tmp_path / ".beads").mkdir()
    return BdTaskStore(tmp_path)


def test_list_maps_blocking_dependencies_and_labels(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond(
        "list",
        json.dumps(
            [
                {
                    "id": "orch-2",
                    "title": "Wire API",
                    "status": "open",
                    "issue_type": "task",
                    "labels": ["orch-ready", "repo:api"],
                    "dependencies": [
                        {"type": "blocks", "depends_on_id": "orch-1"},
                        {"type": "parent-child", "depends_on_id": "orch-epic"},
                    ],
                }
            ]
        ),
    )

    [task] = store.list(labels=["orch-ready"], status="open")

    assert task.id == "orch-2"
    assert task.blocked_by == ["orch-1"]
    assert task.label_value("repo:") == "api"
    assert fake_bd.calls[0] == [
        "bd", "--sandbox", "list", "--json", "--limit", "0", "--status", "open", "--label", "orch-ready"
    ]


def test_list_all_passes_all_flag(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    store.list()
    assert "--all" in fake_bd.calls[0]


def test_list_tolerates_failures_and_bad_output(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond("list", "not json")
    assert store.list() == []

    fake_bd.respond("list", '{"id": "x"}')
    assert store.list() == []

    fake_bd.respond("list", "", returncode=1, stderr="database locked")
    assert store.list() == []


def test_create_parses_id_and_applies_labels(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond("create", "Created issue: orch-7\n")

    task_id = store.create("Add login", labels=["orch-ready"], assignee="task-agent")

    assert task_id == "orch-7"
    update = fake_bd.calls[-1]
    assert update[2:4] == ["update", "orch-7"]
    assert ["--add-label", "orch-ready"] == update[update.index("--add-label"):update.index("--add-label") + 2]


def test_failed_mutation_raises(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond("close", returncode=2, stderr="no such issue")

    with pytest.raises(TaskStoreError) as excinfo:
        store.close("orch-9", message="done")

    assert excinfo.value.returncode == 2
    assert "no such issue" in str(excinfo.value)


def test_missing_binary_raises_task_store_error(monkeypatch: pytest.MonkeyPatch, store: BdTaskStore) -> None:
    def missing(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(bd_client.subprocess, "run", missing)

    with pytest.raises(TaskStoreError) as excinfo:
        store.update("orch-1", add_labels=["x"])
    assert excinfo.value.returncode == -1


def test_get_returns_none_when_missing(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond("show", returncode=1, stderr="not found")
    assert store.get("orch-404") is None

    fake_bd.respond("show", json.dumps([{"id": "orch-1", "title": "T", "status": "closed"}]))
    task = store.get("orch-1")
    assert task is not None and task.status == "closed"


def test_get_dependents_accepts_strings_and_objects(fake_bd: _FakeBd, store: BdTaskStore) -> None:
    fake_bd.respond("dep", json.dumps(["orch-2", {"id": "orch-3"}, {"title": "no id"}]))
    assert store.get_dependents("orch-1") == ["orch-2", "orch-3"]


def test_ensure_initialized_writes_agent_settings(fake_bd: _FakeBd, tmp_path: Path) -> None:
    plan_dir = tmp_path / "plan"
    store = BdTaskStore(plan_dir, prefix="orch")

    store.ensure_initialized()

    commands = [call[:3] for call in fake_bd.calls]
    assert ["git", "init"] in [call[:2] for call in fake_bd.calls]
    assert ["bd", "--sandbox", "init"] in commands
    settings = json.loads((plan_dir / ".claude" / "settings.json").read_text())
    assert "Bash(bd *)" in settings["permissions"]["allow"]
