"""
phaseflow reset - Clear an issue's phase progress or quality loop counter.

`--loop` alone re-arms a blocked issue's quality loop. `--phases` limits the
reset to some phases. With neither, every phase goes back to pending and
the loop counter is cleared.
"""

from phaseflow.commands.run import parse_phase_list
from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR, EXIT_ISSUE_FAILED, EXIT_SUCCESS
from phaseflow.lib.store import IssueStore, StoreCorrupted


def cmd_reset(args, settings: Settings) -> int:
    store = IssueStore(settings.state_path, settings.store_lock_timeout)
    try:
        phases = parse_phase_list(args.phases) if args.phases else None
    except ValueError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    try:
        record = store.get_issue(args.issue)
    except StoreCorrupted as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    if record is None:
        print(f"ERROR: Issue #{args.issue} is not tracked")
        return EXIT_ISSUE_FAILED

    if args.loop or phases is None:
        record = store.reset_loop(args.issue)
        print(f"Quality loop counter for #{args.issue} reset to 0/{record.loop.max_iterations}")

    if phases is not None or not args.loop:
        record = store.reset_phases(args.issue, phases)
        names = ", ".join(p.value for p in phases) if phases else "all phases"
        print(f"Reset {names} for #{args.issue}")

    print(f"Status: {record.status.value}")
    return EXIT_SUCCESS
