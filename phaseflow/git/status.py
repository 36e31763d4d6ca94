"""Git status operations."""

from pathlib import Path

from phaseflow.git.runner import run_git


def has_uncommitted_changes(worktree: Path) -> bool:
    """Check if worktree has any uncommitted changes (staged, unstaged, or untracked)."""
    result = run_git(["status", "--porcelain"], worktree)
    return bool(result.stdout.strip())


def has_unpushed_commits(worktree: Path) -> bool:
    """Check for local commits not on the upstream branch.

    A branch with no upstream is treated as unpushed if it has any commit
    that no remote branch contains, so never-pushed work is not destroyed.
    """
    result = run_git(["log", "--oneline", "@{u}..HEAD"], worktree)
    if result.success:
        return bool(result.stdout.strip())

    result = run_git(["log", "--oneline", "HEAD", "--not", "--remotes"], worktree)
    if result.success:
        return bool(result.stdout.strip())
    return False


def get_repo_root(path: Path) -> Path | None:
    """Top-level directory of the repository containing path."""
    result = run_git(["rev-parse", "--show-toplevel"], path)
    if result.success and result.stdout.strip():
        return Path(result.stdout.strip())
    return None
