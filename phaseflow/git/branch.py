"""Git branch operations."""

import re
from pathlib import Path

from phaseflow.git.runner import run_git, GitResult


def get_current_branch(worktree: Path) -> str | None:
    """Get the current branch name, or None if detached HEAD."""
    result = run_git(["branch", "--show-current"], worktree)
    if result.success:
        return result.stdout.strip() or None
    return None


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a local branch exists."""
    result = run_git(["show-ref", "--verify", f"refs/heads/{branch}"], repo)
    return result.success


def delete_branch(repo: Path, branch: str) -> GitResult:
    """Force-delete a local branch."""
    return run_git(["branch", "-D", branch], repo)


def get_merge_base(worktree: Path, ref1: str, ref2: str) -> str | None:
    result = run_git(["merge-base", ref1, ref2], worktree)
    if result.success:
        return result.stdout.strip() or None
    return None


def get_commit_count(worktree: Path, ref_range: str) -> int:
    """
    Get number of commits in a range.

    Args:
        worktree: Path to worktree
        ref_range: Git ref range (e.g., "abc123..origin/main")

    Returns:
        Number of commits, or 0 on error
    """
    result = run_git(["rev-list", "--count", ref_range], worktree)
    if result.success:
        try:
            return int(result.stdout.strip())
        except ValueError:
            pass
    return 0


def get_merged_branches(repo: Path, into: str) -> list[str]:
    """Branches (local and remote) already merged into a ref."""
    result = run_git(["branch", "-a", "--merged", into, "--format=%(refname:short)"], repo)
    if not result.success:
        return []
    return [re.sub(r'^(remotes/)?origin/', "", line.strip()) for line in result.stdout.splitlines() if line.strip()]


def log_mentions_issue(repo: Path, ref: str, issue: int, depth: int = 20) -> bool:
    """True if one of the last `depth` commits on ref mentions #issue."""
    result = run_git(["log", ref, "--oneline", f"-{depth}", "--grep", f"#{issue}\\b", "-E"], repo)
    return result.success and bool(result.stdout.strip())
