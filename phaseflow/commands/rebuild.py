"""
phaseflow rebuild - Reconstruct the state file from tracker phase markers.
"""

from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR, EXIT_SUCCESS
from phaseflow.lib.github import Tracker
from phaseflow.lib.store import IssueStore, StoreCorrupted


def cmd_rebuild(args, settings: Settings) -> int:
    """Rebuild the given issues (default: every issue the state file can still name)."""
    store = IssueStore(settings.state_path, settings.store_lock_timeout)
    numbers = list(args.issues or [])
    if not numbers:
        try:
            numbers = sorted(store.load())
        except StoreCorrupted as e:
            print(f"ERROR: {e}")
            print("  Name the issues to rebuild: phaseflow rebuild <issue...>")
            return EXIT_CONFIG_ERROR
    if not numbers:
        print("No issues to rebuild.")
        return EXIT_SUCCESS

    issues = store.rebuild_from_markers(Tracker(settings.repo_root), numbers, settings.max_iterations)
    for number, record in sorted(issues.items()):
        print(f"  #{number}: {record.status.value}")
    print(f"Rebuilt {len(issues)} issue(s) into {settings.state_path}")
    return EXIT_SUCCESS
