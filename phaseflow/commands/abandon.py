"""
phaseflow abandon - Stop tracking work on an issue.

The record is kept (status abandoned) so later runs skip the issue. The
worktree is removed only when it holds no uncommitted or unpushed work,
unless --force.
"""

from phaseflow import git
from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR, EXIT_ISSUE_FAILED, EXIT_SUCCESS
from phaseflow.lib.store import IssueStore, StoreCorrupted
from phaseflow.runner.workspace import WorkspaceManager


def cmd_abandon(args, settings: Settings) -> int:
    store = IssueStore(settings.state_path, settings.store_lock_timeout)
    try:
        record = store.get_issue(args.issue)
    except StoreCorrupted as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    if record is None:
        print(f"ERROR: Issue #{args.issue} is not tracked")
        return EXIT_ISSUE_FAILED

    store.mark_abandoned(args.issue)
    print(f"Abandoned #{args.issue}")

    workspaces = WorkspaceManager(settings)
    entry = workspaces.find(args.issue)
    if entry is None:
        return EXIT_SUCCESS

    local_work = git.has_uncommitted_changes(entry.path) or git.has_unpushed_commits(entry.path)
    if local_work and not args.force:
        print(f"Worktree {entry.path} has local work; kept (use --force to remove)")
        return EXIT_SUCCESS

    if workspaces.release(args.issue, record.branch):
        print(f"Removed worktree {entry.path}")
    return EXIT_SUCCESS
