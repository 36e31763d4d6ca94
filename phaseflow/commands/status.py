"""
phaseflow status - Show tracked issues, or one issue in detail.
"""

from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR, EXIT_ISSUE_FAILED, EXIT_SUCCESS
from phaseflow.lib.store import IssueStore, StoreCorrupted
from phaseflow.lib.types import IssueRecord, PHASE_ORDER, PhaseStatus

PHASE_SYMBOLS = {
    PhaseStatus.PENDING: ".",
    PhaseStatus.IN_PROGRESS: ">",
    PhaseStatus.COMPLETED: "x",
    PhaseStatus.FAILED: "!",
    PhaseStatus.SKIPPED: "-",
}


def phase_strip(record: IssueRecord) -> str:
    """One character per tracked phase, e.g. "plan:x implement:x review:!"."""
    parts = []
    for phase in PHASE_ORDER:
        rec = record.phase(phase)
        if rec is not None:
            parts.append(f"{phase.value}:{PHASE_SYMBOLS[rec.status]}")
    return " ".join(parts)


def print_detail(record: IssueRecord) -> None:
    print(f"Issue #{record.number}: {record.title}")
    print("=" * 60)
    print()
    print(f"Status:         {record.status.value}")
    print(f"Current phase:  {record.current_phase.value if record.current_phase else '-'}")
    print(f"Branch:         {record.branch or '-'}")
    print(f"Worktree:       {record.worktree or '-'}")
    print(f"PR:             {record.pr.url if record.pr else '-'}")
    if record.loop.enabled:
        print(f"Quality loop:   {record.loop.iteration}/{record.loop.max_iterations}")
    if record.ac:
        print(f"AC:             {record.ac.met} met, {record.ac.not_met} not met, "
              f"{record.ac.pending} pending, {record.ac.blocked} blocked")
    if record.session_id:
        print(f"Session:        {record.session_id}")
    print(f"Last activity:  {record.last_activity}")
    print()
    print("Phases:")
    for phase in PHASE_ORDER:
        rec = record.phase(phase)
        if rec is None:
            continue
        line = f"  [{PHASE_SYMBOLS[rec.status]}] {phase.value:<16} {rec.status.value}"
        if rec.iteration:
            line += f" (iteration {rec.iteration})"
        print(line)
        if rec.error:
            print(f"        {rec.error}")


def cmd_status(args, settings: Settings) -> int:
    """Show status of all tracked issues or a single one."""
    store = IssueStore(settings.state_path, settings.store_lock_timeout)
    try:
        if args.issue is not None:
            record = store.get_issue(args.issue)
            if record is None:
                print(f"ERROR: Issue #{args.issue} is not tracked")
                return EXIT_ISSUE_FAILED
            print_detail(record)
            return EXIT_SUCCESS
        records = store.all_issues()
    except StoreCorrupted as e:
        print(f"ERROR: {e}")
        print("  Run: phaseflow rebuild <issue...>")
        return EXIT_CONFIG_ERROR

    if not records:
        print("No tracked issues.")
        return EXIT_SUCCESS

    print(f"{'ISSUE':<8} {'STATUS':<24} {'LOOP':<6} PHASES")
    for record in records:
        loop = f"{record.loop.iteration}/{record.loop.max_iterations}" if record.loop.enabled else "-"
        print(f"#{record.number:<7} {record.status.value:<24} {loop:<6} {phase_strip(record)}")
    return EXIT_SUCCESS
