"""Git operations for phaseflow.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: fetch(), rebase(), add_worktree(), commit()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_uncommitted_changes(), branch_exists(), is_conflict()
- Functions returning parsed values (str, int, list): Return None/empty/zero on failure.
  Examples: get_merge_base() -> None, get_commit_count() -> 0, list_worktrees() -> []
"""

from phaseflow.git.runner import run_git, GitResult
from phaseflow.git.status import (
    has_uncommitted_changes,
    has_unpushed_commits,
    get_repo_root,
)
from phaseflow.git.branch import (
    get_current_branch,
    branch_exists,
    delete_branch,
    get_merge_base,
    get_commit_count,
    get_merged_branches,
    log_mentions_issue,
)
from phaseflow.git.commit import (
    stage_all,
    commit,
)
from phaseflow.git.remote import (
    fetch,
    push_set_upstream,
    rebase,
    rebase_abort,
    is_conflict,
)
from phaseflow.git.worktree import (
    WorktreeEntry,
    list_worktrees,
    add_worktree,
    add_worktree_existing_branch,
    remove_worktree,
    prune_worktrees,
)

__all__ = [
    "run_git",
    "GitResult",
    # status
    "has_uncommitted_changes",
    "has_unpushed_commits",
    "get_repo_root",
    # branch
    "get_current_branch",
    "branch_exists",
    "delete_branch",
    "get_merge_base",
    "get_commit_count",
    "get_merged_branches",
    "log_mentions_issue",
    # commit
    "stage_all",
    "commit",
    # remote
    "fetch",
    "push_set_upstream",
    "rebase",
    "rebase_abort",
    "is_conflict",
    # worktree
    "WorktreeEntry",
    "list_worktrees",
    "add_worktree",
    "add_worktree_existing_branch",
    "remove_worktree",
    "prune_worktrees",
]
