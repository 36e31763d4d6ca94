"""Git remote and rebase operations."""

from pathlib import Path

from phaseflow.git.runner import run_git, GitResult, NETWORK_TIMEOUT

CONFLICT_MARKERS = ("CONFLICT", "could not apply")


def fetch(repo: Path, remote: str = "origin", branch: str | None = None) -> GitResult:
    """Fetch from remote."""
    args = ["fetch", remote]
    if branch:
        args.append(branch)
    return run_git(args, repo, timeout=NETWORK_TIMEOUT)


def push_set_upstream(worktree: Path, remote: str, branch: str) -> GitResult:
    """Push and set upstream tracking."""
    return run_git(["push", "-u", remote, branch], worktree, timeout=NETWORK_TIMEOUT)


def rebase(worktree: Path, onto: str) -> GitResult:
    return run_git(["rebase", onto], worktree, timeout=NETWORK_TIMEOUT)


def rebase_abort(worktree: Path) -> GitResult:
    return run_git(["rebase", "--abort"], worktree)


def is_conflict(result: GitResult) -> bool:
    """Whether a failed rebase stopped on conflicts."""
    return any(marker in result.output for marker in CONFLICT_MARKERS)
