"""Tests for the git helpers, run against real temporary repositories."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from fakes import _commit_file, _git_init, _git_init_with_origin

from plan_orchestrator.errors import GitCommandError
from plan_orchestrator.git_utils import (
    branch_exists,
    create_worktree,
    delete_remote_branch,
    generate_unique_branch_name,
    get_commits_between,
    get_current_branch,
    get_default_branch,
    get_head_commit,
    github_url_from_remote,
    is_git_repository,
    list_worktrees,
    push_branch,
    push_with_retry,
    rebase_onto,
    remote_branch_exists,
    remove_worktree,
)


def _clone(origin: Path, path: Path) -> None:
    subprocess.run(["git", "clone", str(origin), str(path)], check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)


def _git_out(path: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True).stdout.strip()


class TestBranches:
    def test_generate_unique_branch_name_appends_counter(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        subprocess.run(["git", "branch", "orch/t1"], cwd=repo, check=True, capture_output=True)
        subprocess.run(["git", "branch", "orch/t1-1"], cwd=repo, check=True, capture_output=True)

        assert generate_unique_branch_name(repo, "orch/t1") == "orch/t1-2"
        assert generate_unique_branch_name(repo, "orch/t9") == "orch/t9"

    def test_default_branch_falls_back_to_current(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        current = get_current_branch(repo)
        assert current
        assert get_default_branch(repo) == current

    def test_head_commit_and_repository_detection(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)

        assert is_git_repository(repo)
        assert not is_git_repository(tmp_path / "missing")
        assert get_head_commit(repo) == _git_out(repo, "rev-parse", "HEAD")


class TestWorktrees:
    def test_create_list_and_remove_worktree_without_remote(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        base = get_current_branch(repo)
        worktree = tmp_path / "wt" / "task-1"

        create_worktree(repo, worktree, "orch/task-1", base)

        assert (worktree / "README.md").exists()
        listed = {info.branch: info for info in list_worktrees(repo)}
        assert "orch/task-1" in listed
        assert Path(listed["orch/task-1"].path).resolve() == worktree.resolve()
        assert listed["orch/task-1"].head == get_head_commit(repo)

        remove_worktree(repo, worktree, force=True)
        assert not worktree.exists()
        assert "orch/task-1" not in {info.branch for info in list_worktrees(repo)}

    def test_create_worktree_replaces_stale_directory(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        base = get_current_branch(repo)
        worktree = tmp_path / "wt"
        worktree.mkdir()
        (worktree / "junk.txt").write_text("x")

        create_worktree(repo, worktree, "orch/fresh", base)

        assert not (worktree / "junk.txt").exists()
        assert (worktree / "README.md").exists()

    def test_remove_unregistered_worktree_prunes_quietly(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        stray = tmp_path / "stray"
        stray.mkdir()

        remove_worktree(repo, stray, force=True)

    def test_create_worktree_prefers_pushed_remote_branch(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        origin = tmp_path / "origin.git"
        _git_init_with_origin(repo, origin)
        other = tmp_path / "other"
        _clone(origin, other)
        subprocess.run(["git", "checkout", "-b", "orch/feature"], cwd=other, check=True, capture_output=True)
        _commit_file(other, "feature.txt", "from another agent\n", "feature work")
        push_branch(other, "orch/feature")

        worktree = tmp_path / "wt"
        create_worktree(repo, worktree, "orch/task-2", "orch/feature")

        assert (worktree / "feature.txt").read_text() == "from another agent\n"


class TestRemoteOperations:
    def test_push_branch_and_delete_remote_branch(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init_with_origin(repo, tmp_path / "origin.git")
        subprocess.run(["git", "branch", "orch/side"], cwd=repo, check=True, capture_output=True)

        push_branch(repo, "orch/side")
        assert remote_branch_exists(repo, "orch/side")
        assert branch_exists(repo, "orch/side")

        delete_remote_branch(repo, "orch/side")
        assert not remote_branch_exists(repo, "orch/side")

    def test_push_with_retry_rebases_after_rejection(self, tmp_path: Path) -> None:
        origin = tmp_path / "origin.git"
        first = tmp_path / "first"
        _git_init_with_origin(first, origin)
        branch = get_current_branch(first)
        second = tmp_path / "second"
        _clone(origin, second)

        _commit_file(second, "b.txt", "b\n", "second agent")
        push_with_retry(second, "HEAD", branch)
        _commit_file(first, "a.txt", "a\n", "first agent")

        push_with_retry(first, "HEAD", branch)

        log = _git_out(origin, "log", "--format=%s", branch)
        assert log.splitlines()[:2] == ["first agent", "second agent"]

    def test_push_with_retry_raises_for_unknown_remote(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        with pytest.raises(GitCommandError):
            push_with_retry(repo, "HEAD", "main", remote="nowhere", max_retries=2)


class TestHistory:
    def test_rebase_onto_returns_false_and_aborts_on_conflict(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        base = get_current_branch(repo)
        _commit_file(repo, "shared.txt", "one\n", "add shared")
        subprocess.run(["git", "checkout", "-b", "topic"], cwd=repo, check=True, capture_output=True)
        _commit_file(repo, "shared.txt", "topic\n", "topic edit")
        subprocess.run(["git", "checkout", base], cwd=repo, check=True, capture_output=True)
        _commit_file(repo, "shared.txt", "base\n", "base edit")
        subprocess.run(["git", "checkout", "topic"], cwd=repo, check=True, capture_output=True)

        assert rebase_onto(repo, base) is False
        assert get_current_branch(repo) == "topic"
        assert (repo / "shared.txt").read_text() == "topic\n"

    def test_rebase_onto_clean(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        base = get_current_branch(repo)
        subprocess.run(["git", "checkout", "-b", "topic"], cwd=repo, check=True, capture_output=True)
        _commit_file(repo, "topic.txt", "t\n", "topic")
        subprocess.run(["git", "checkout", base], cwd=repo, check=True, capture_output=True)
        _commit_file(repo, "base.txt", "b\n", "base")
        subprocess.run(["git", "checkout", "topic"], cwd=repo, check=True, capture_output=True)

        assert rebase_onto(repo, base) is True
        assert (repo / "base.txt").exists()

    def test_get_commits_between_handles_pipes_in_subjects(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        _git_init(repo)
        start = get_head_commit(repo)
        _commit_file(repo, "x.txt", "x\n", "feat: a | b")

        [commit] = get_commits_between(repo, start or "", "HEAD")

        assert commit.message == "feat: a | b"
        assert commit.sha.startswith(commit.short_sha)
        assert "T" in commit.timestamp
        assert get_commits_between(repo, "HEAD", "HEAD") == []


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("git@github.com:acme/widgets.git", "https://github.com/acme/widgets"),
        ("https://github.com/acme/widgets.git", "https://github.com/acme/widgets"),
        ("https://github.com/acme/widgets", "https://github.com/acme/widgets"),
        ("https://gitlab.com/acme/widgets.git", None),
        (None, None),
    ],
)
def test_github_url_from_remote(remote: str | None, expected: str | None) -> None:
    assert github_url_from_remote(remote) == expected
