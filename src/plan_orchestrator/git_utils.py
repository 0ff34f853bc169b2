"""Provide the git helpers used for worktree and branch lifecycle."""

from __future__ import annotations

import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import GitCommandError, RebaseConflictError


def _git(repo_path: Path | str, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    start = time.monotonic()
    result = subprocess.run(
        ["git", *args],
        cwd=repo_path,
        capture_output=True,
        text=True,
        check=False,
    )
    elapsed_ms = int((time.monotonic() - start) * 1000)
    if result.returncode != 0:
        logger.debug("git {} failed in {} ({}ms): {}", " ".join(args), repo_path, elapsed_ms, result.stderr.strip())
        if check:
            raise GitCommandError(list(args), result.returncode, result.stderr or result.stdout)
    else:
        logger.debug("git {} in {} ({}ms)", " ".join(args), repo_path, elapsed_ms)
    return result


def _ok(repo_path: Path | str, *args: str) -> bool:
    return _git(repo_path, *args, check=False).returncode == 0


def get_default_branch(repo_path: Path | str) -> str:
    """Return origin's HEAD branch, else `main`, `master`, the current branch or `main`."""
    result = _git(repo_path, "symbolic-ref", "refs/remotes/origin/HEAD", check=False)
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip().replace("refs/remotes/origin/", "")
    for candidate in ("main", "master"):
        if _ok(repo_path, "rev-parse", "--verify", candidate):
            return candidate
    return get_current_branch(repo_path) or "main"


def get_current_branch(repo_path: Path | str) -> str:
    result = _git(repo_path, "branch", "--show-current", check=False)
    return result.stdout.strip() if result.returncode == 0 else ""


def get_remote_url(repo_path: Path | str) -> Optional[str]:
    result = _git(repo_path, "remote", "get-url", "origin", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_head_commit(repo_path: Path | str) -> Optional[str]:
    result = _git(repo_path, "rev-parse", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def is_git_repository(path: Path | str) -> bool:
    return Path(path).is_dir() and _ok(path, "rev-parse", "--git-dir")


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------


@dataclass
class WorktreeInfo:
    path: str
    branch: str = ""
    head: str = ""


def prune_worktrees(repo_path: Path | str) -> None:
    logger.debug("Pruning stale worktree references in {}", repo_path)
    _git(repo_path, "worktree", "prune")


def create_worktree(repo_path: Path | str, worktree_path: Path, branch: str, base_branch: str) -> None:
    """Create `worktree_path` on a new `branch` started from `base_branch`.

    Prefers `origin/<base_branch>` so a branch another agent just pushed is
    picked up; falls back to the local base branch when there is no remote.

    Raises:
        GitCommandError: If the worktree cannot be added.
        RuntimeError: If the resulting checkout contains nothing but `.git`.
    """
    logger.info("Creating worktree {} on {} from {}", worktree_path, branch, base_branch)
    if worktree_path.is_dir():
        logger.warning("Worktree path {} already exists, removing it first", worktree_path)
        if not _ok(repo_path, "worktree", "remove", str(worktree_path), "--force"):
            shutil.rmtree(worktree_path, ignore_errors=True)
        _git(repo_path, "worktree", "prune", check=False)

    worktree_path.parent.mkdir(parents=True, exist_ok=True)

    # A plain fetch may not update a ref that was pushed moments ago.
    if not _ok(repo_path, "fetch", "origin", f"{base_branch}:refs/remotes/origin/{base_branch}", "--force"):
        if not _ok(repo_path, "fetch", "origin"):
            logger.debug("Fetch failed for {} (network may be unavailable)", repo_path)

    if not _ok(repo_path, "worktree", "add", "-b", branch, str(worktree_path), f"origin/{base_branch}"):
        logger.debug("Falling back to local branch {} (remote not found)", base_branch)
        _git(repo_path, "worktree", "add", "-b", branch, str(worktree_path), base_branch)

    entries = [p.name for p in worktree_path.iterdir() if p.name != ".git"]
    if not entries:
        logger.error("Worktree {} created but appears empty (base {})", worktree_path, base_branch)
        raise RuntimeError(
            f"Worktree created but is empty. Base branch '{base_branch}' may not have been fetched correctly."
        )


def remove_worktree(repo_path: Path | str, worktree_path: Path | str, force: bool = False) -> None:
    logger.info("Removing worktree {} (force={})", worktree_path, force)
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    try:
        _git(repo_path, *args)
    except GitCommandError as exc:
        if "is not a working tree" in exc.stderr:
            logger.debug("Worktree {} not registered, pruning", worktree_path)
            prune_worktrees(repo_path)
            return
        raise


def list_worktrees(repo_path: Path | str) -> list[WorktreeInfo]:
    result = _git(repo_path, "worktree", "list", "--porcelain", check=False)
    if result.returncode != 0:
        return []
    worktrees: list[WorktreeInfo] = []
    current: Optional[WorktreeInfo] = None
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            if current:
                worktrees.append(current)
            current = WorktreeInfo(path=line[len("worktree "):])
        elif line.startswith("HEAD ") and current:
            current.head = line[len("HEAD "):]
        elif line.startswith("branch ") and current:
            current.branch = line[len("branch "):].replace("refs/heads/", "")
    if current:
        worktrees.append(current)
    return worktrees


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


def branch_exists(repo_path: Path | str, branch: str) -> bool:
    return _ok(repo_path, "rev-parse", "--verify", branch) or _ok(repo_path, "rev-parse", "--verify", f"origin/{branch}")


def generate_unique_branch_name(repo_path: Path | str, base_name: str) -> str:
    name = base_name
    counter = 1
    while branch_exists(repo_path, name):
        name = f"{base_name}-{counter}"
        counter += 1
    return name


def delete_local_branch(repo_path: Path | str, branch: str) -> None:
    logger.debug("Deleting local branch {} in {}", branch, repo_path)
    _git(repo_path, "branch", "-D", branch)


def delete_remote_branch(repo_path: Path | str, branch: str, remote: str = "origin") -> None:
    logger.info("Deleting remote branch {}/{}", remote, branch)
    _git(repo_path, "push", remote, "--delete", branch)


def remote_branch_exists(repo_path: Path | str, branch: str, remote: str = "origin") -> bool:
    return _ok(repo_path, "ls-remote", "--exit-code", "--heads", remote, branch)


def fetch_branch(repo_path: Path | str, branch: str, remote: str = "origin", force: bool = False) -> None:
    """Fetch one branch; `force` uses an explicit refspec so the tracking ref is overwritten."""
    logger.debug("Fetching {} from {} in {}", branch, remote, repo_path)
    if force:
        _git(repo_path, "fetch", remote, f"{branch}:refs/remotes/{remote}/{branch}", "--force")
    else:
        _git(repo_path, "fetch", remote, branch)


def push_branch(repo_path: Path | str, branch: str, remote: str = "origin", set_upstream: bool = True) -> None:
    logger.info("Pushing {} to {}", branch, remote)
    args = ["push"]
    if set_upstream:
        args.append("-u")
    _git(repo_path, *args, remote, branch)


def push_to_remote_branch(
    repo_path: Path | str,
    local_ref: str,
    remote_branch: str,
    remote: str = "origin",
    force_with_lease: bool = False,
) -> None:
    """Push `local_ref` to `remote/remote_branch` (e.g. HEAD to a shared feature branch)."""
    logger.info("Pushing {} to {}/{} (force_with_lease={})", local_ref, remote, remote_branch, force_with_lease)
    args = ["push"]
    if force_with_lease:
        args.append("--force-with-lease")
    _git(repo_path, *args, remote, f"{local_ref}:refs/heads/{remote_branch}")


def rebase_onto(repo_path: Path | str, target: str) -> bool:
    """Rebase the checked-out branch onto `target`.

    Returns False after aborting when the rebase stops on conflicts.

    Raises:
        GitCommandError: For failures other than conflicts.
    """
    try:
        _git(repo_path, "rebase", target)
        return True
    except GitCommandError as exc:
        output = exc.stderr
        if "CONFLICT" in output or "could not apply" in output:
            logger.warning("Rebase of {} onto {} hit conflicts, aborting", repo_path, target)
            _git(repo_path, "rebase", "--abort", check=False)
            return False
        raise


def push_with_retry(
    repo_path: Path | str,
    local_ref: str,
    remote_branch: str,
    remote: str = "origin",
    max_retries: int = 3,
) -> None:
    """Push, rebasing onto the remote branch and retrying on non-fast-forward rejections.

    Raises:
        RebaseConflictError: If the retry rebase conflicts.
        GitCommandError: If the push still fails after `max_retries`.
    """
    for attempt in range(1, max_retries + 1):
        if attempt > 1:
            logger.info("Retry {}/{}: fetch and rebase onto {}/{}", attempt, max_retries, remote, remote_branch)
            _git(repo_path, "fetch", remote, check=False)
            try:
                if not rebase_onto(repo_path, f"{remote}/{remote_branch}"):
                    raise RebaseConflictError(
                        ["rebase", f"{remote}/{remote_branch}"],
                        1,
                        f"Rebase conflict while pushing to {remote_branch}. Manual resolution required.",
                    )
            except RebaseConflictError:
                raise
            except GitCommandError as exc:
                logger.warning("Rebase failed, attempting push anyway: {}", exc)
        try:
            push_to_remote_branch(repo_path, local_ref, remote_branch, remote)
            if attempt > 1:
                logger.info("Push to {} succeeded on attempt {}", remote_branch, attempt)
            return
        except GitCommandError as exc:
            rejected = any(marker in exc.stderr for marker in ("non-fast-forward", "rejected", "failed to push"))
            if not rejected or attempt == max_retries:
                logger.error("Push to {} failed after {} attempt(s)", remote_branch, attempt)
                raise
            logger.warning("Push to {} rejected (non-fast-forward), will retry", remote_branch)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass
class CommitInfo:
    sha: str
    short_sha: str
    message: str
    timestamp: str


def get_commits_between(repo_path: Path | str, base_ref: str, head_ref: str) -> list[CommitInfo]:
    result = _git(repo_path, "log", "--format=%H|%h|%s|%aI", f"{base_ref}..{head_ref}", check=False)
    if result.returncode != 0 or not result.stdout.strip():
        return []
    commits: list[CommitInfo] = []
    for line in result.stdout.strip().splitlines():
        # Subjects may contain `|`; sha fields and timestamp never do.
        sha, short_sha, rest = (line.split("|", 2) + ["", ""])[:3]
        message, _, timestamp = rest.rpartition("|")
        commits.append(CommitInfo(sha=sha, short_sha=short_sha, message=message, timestamp=timestamp))
    return commits


_SSH_RE = re.compile(r"git@github\.com:(.+?)(?:\.git)?$")
_HTTPS_RE = re.compile(r"https://github\.com/(.+?)(?:\.git)?$")


def github_url_from_remote(remote_url: Optional[str]) -> Optional[str]:
    """Convert `git@github.com:org/repo.git` or its https form to `https://github.com/org/repo`."""
    if not remote_url:
        return None
    for pattern in (_SSH_RE, _HTTPS_RE):
        match = pattern.search(remote_url)
        if match:
            return f"https://github.com/{match.group(1)}"
    return None
