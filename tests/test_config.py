from __future__ import annotations

from pathlib import Path

import pytest

from plan_orchestrator.config import (
    DEFAULT_HEADLESS_COMMAND,
    get_agent_config,
    get_dispatch_config,
    get_headless_config,
    get_repositories,
    get_task_store_config,
    load_orchestrator_config,
    resolve_state_dir,
)


def test_dispatch_defaults() -> None:
    assert get_dispatch_config({}) == {
        "poll_interval_seconds": 5.0,
        "default_max_parallel_agents": 4,
        "label_prefix": "orch",
        "mode": "interactive",
    }


@pytest.mark.parametrize(
    "raw",
    [
        {"poll_interval_seconds": "soon", "default_max_parallel_agents": -2, "mode": "batch", "label_prefix": ""},
        {"poll_interval_seconds": 0, "default_max_parallel_agents": None, "mode": 3, "label_prefix": 7},
    ],
)
def test_invalid_dispatch_values_fall_back(raw: dict) -> None:
    assert get_dispatch_config({"dispatch": raw}) == get_dispatch_config({})


def test_dispatch_overrides() -> None:
    cfg = get_dispatch_config(
        {"dispatch": {"poll_interval_seconds": "0.5", "default_max_parallel_agents": "2", "mode": "headless", "label_prefix": "team"}}
    )
    assert cfg == {
        "poll_interval_seconds": 0.5,
        "default_max_parallel_agents": 2,
        "label_prefix": "team",
        "mode": "headless",
    }


def test_agent_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHELL", "/bin/fish")
    cfg = get_agent_config({"agent": "nonsense"})
    assert cfg["command"] == "claude"
    assert cfg["shell"] == "/bin/fish"
    assert cfg["sessions_dir"].endswith(str(Path(".claude") / "projects"))
    assert cfg["model"] is None


def test_agent_config_overrides() -> None:
    cfg = get_agent_config({"agent": {"command": "claude --model opus", "shell": "/bin/zsh", "model": "opus"}})
    assert cfg["command"] == "claude --model opus"
    assert cfg["shell"] == "/bin/zsh"
    assert cfg["model"] == "opus"


def test_headless_command_must_be_list_of_strings() -> None:
    assert get_headless_config({"headless": {"command": "claude -p"}})["command"] == DEFAULT_HEADLESS_COMMAND
    assert get_headless_config({"headless": {"command": ["a", 1]}})["command"] == DEFAULT_HEADLESS_COMMAND
    cfg = get_headless_config({"headless": {"command": ["my-agent", "{prompt}"], "oauth_token": "tok"}})
    assert cfg == {"command": ["my-agent", "{prompt}"], "oauth_token": "tok"}


def test_task_store_binary() -> None:
    assert get_task_store_config({}) == {"binary": "bd"}
    assert get_task_store_config({"task_store": {"binary": "/opt/bd"}}) == {"binary": "/opt/bd"}


def test_repositories_skip_malformed_entries() -> None:
    repos = get_repositories(
        {
            "repositories": [
                {"id": "api", "name": "api", "root_path": "/src/api", "default_branch": "develop"},
                {"id": "nameless", "root_path": "/src/x"},
                "not-a-mapping",
                {"id": "web", "name": "web"},
            ]
        }
    )
    assert [r.name for r in repos] == ["api"]
    assert repos[0].default_branch == "develop"
    assert get_repositories({"repositories": {"api": {}}}) == []


class TestLoading:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_orchestrator_config(tmp_path) == ({}, None)

    def test_corrupt_file_reports_error(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("dispatch: [unclosed\n", encoding="utf-8")
        data, err = load_orchestrator_config(tmp_path)
        assert data == {}
        assert err is not None and err.startswith("config.yaml: YAMLError")

    def test_non_mapping_reports_error(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("- a\n- b\n", encoding="utf-8")
        assert load_orchestrator_config(tmp_path) == ({}, "config.yaml: expected object, got list")

    def test_valid_file(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("dispatch:\n  mode: headless\n", encoding="utf-8")
        assert load_orchestrator_config(tmp_path) == ({"dispatch": {"mode": "headless"}}, None)


class TestStateDir:
    def test_explicit_path_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PLAN_ORCHESTRATOR_HOME", str(tmp_path / "env"))
        assert resolve_state_dir(tmp_path / "explicit") == (tmp_path / "explicit").resolve()

    def test_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PLAN_ORCHESTRATOR_HOME", str(tmp_path / "env"))
        assert resolve_state_dir() == (tmp_path / "env").resolve()

    def test_home_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PLAN_ORCHESTRATOR_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert resolve_state_dir() == (tmp_path / ".plan_orchestrator").resolve()
