"""Git commit operations."""

from pathlib import Path

from phaseflow.git.runner import run_git, GitResult


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes including untracked files."""
    return run_git(["add", "-A"], worktree)


def commit(worktree: Path, message: str, allow_empty: bool = False) -> GitResult:
    """Create a commit with the given message."""
    args = ["commit", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    return run_git(args, worktree)
