"""Git worktree operations."""

from dataclasses import dataclass
from pathlib import Path

from phaseflow.git.runner import run_git, GitResult


@dataclass
class WorktreeEntry:
    """One entry of `git worktree list --porcelain`."""
    path: Path
    head: str | None = None
    branch: str | None = None  # Short name, None when detached


def list_worktrees(repo: Path) -> list[WorktreeEntry]:
    """Parse `git worktree list --porcelain`; empty on failure."""
    result = run_git(["worktree", "list", "--porcelain"], repo)
    if not result.success:
        return []

    entries = []
    current: WorktreeEntry | None = None
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            current = WorktreeEntry(path=Path(line[len("worktree "):]))
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
    return entries


def add_worktree(repo: Path, path: Path, branch: str, base_ref: str) -> GitResult:
    """Create a worktree at path on a new branch starting at base_ref."""
    return run_git(["worktree", "add", str(path), "-b", branch, base_ref], repo, timeout=120)


def add_worktree_existing_branch(repo: Path, path: Path, branch: str) -> GitResult:
    """Create a worktree at path checking out an existing branch."""
    return run_git(["worktree", "add", str(path), branch], repo, timeout=120)


def remove_worktree(repo: Path, path: Path) -> GitResult:
    return run_git(["worktree", "remove", "--force", str(path)], repo, timeout=60)


def prune_worktrees(repo: Path) -> GitResult:
    return run_git(["worktree", "prune"], repo)
