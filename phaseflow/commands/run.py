"""
phaseflow run - Drive issues through their phases.
"""

import logging
import threading

from phaseflow.lib.config import Settings
from phaseflow.lib.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    EXIT_LOCK_TIMEOUT,
)
from phaseflow.lib.events import Event, EventBroadcaster
from phaseflow.lib.github import GH_NOT_FOUND, Tracker, check_gh_available
from phaseflow.lib.phase_commands import load_phase_commands, missing_binaries
from phaseflow.lib.store import IssueStore
from phaseflow.lib.types import Phase, PHASE_ORDER, parse_phase
from phaseflow.runner.context import RunOptions
from phaseflow.runner.locking import LockTimeout
from phaseflow.runner.phase_runner import PhaseRunner
from phaseflow.runner.shutdown import ShutdownManager
from phaseflow.runner.workspace import WorkspaceManager
from phaseflow.workflow import engine
from phaseflow.workflow.pipeline import IssuePipeline
from phaseflow.workflow.scheduler import RunSummary, Scheduler, SchedulerOptionsError, resolve_mode

logger = logging.getLogger(__name__)


def parse_phase_list(value: str) -> list[Phase]:
    """Parse "plan,implement,review" (aliases allowed) into phases.

    Raises:
        ValueError: on an unknown phase name
    """
    phases = []
    for name in value.replace(" ", ",").split(","):
        if not name.strip():
            continue
        phase = parse_phase(name)
        if phase is None:
            valid = ", ".join(p.value for p in PHASE_ORDER)
            raise ValueError(f"Unknown phase '{name.strip()}' (valid: {valid})")
        phases.append(phase)
    return phases


def parse_batches(values: list[str] | None) -> list[list[int]] | None:
    """Each --batch value is a space or comma separated list of issue numbers."""
    if not values:
        return None
    batches = []
    for value in values:
        batch = [int(token.lstrip("#")) for token in value.replace(",", " ").split()]
        if batch:
            batches.append(batch)
    return batches or None


def build_options(args) -> RunOptions:
    """
    Translate parsed CLI arguments into RunOptions.

    Raises:
        SchedulerOptionsError: for incompatible flags
        ValueError: for unparsable phase names or batch members
    """
    return RunOptions(
        phases=parse_phase_list(args.phases) if args.phases else None,
        quality_loop=args.quality_loop,
        max_iterations=args.max_iterations,
        mode=resolve_mode(args.sequential, args.chain),
        batches=parse_batches(args.batch),
        base_branch=args.base,
        resume=args.resume,
        force=args.force,
        dry_run=args.dry_run,
        create_pr=not args.no_pr,
        rebase=not args.no_rebase,
        retry=not args.no_retry,
        review_gate=args.review_gate,
        timeout=args.timeout,
        max_workers=args.jobs,
    )


def build_scheduler(settings: Settings, options: RunOptions, shutdown: ShutdownManager,
                    broadcaster: EventBroadcaster | None = None) -> Scheduler:
    store = IssueStore(settings.state_path, settings.store_lock_timeout, broadcaster)
    tracker = Tracker(settings.repo_root)
    workspaces = WorkspaceManager(settings)
    runner = PhaseRunner(
        settings, store, tracker, load_phase_commands(settings.config_dir), workspaces,
        shutdown=shutdown, retry=options.retry, timeout=options.timeout,
    )
    pipeline = IssuePipeline(settings, store, tracker, runner, workspaces, shutdown)
    return Scheduler(settings, store, tracker, pipeline, workspaces, shutdown)


class ProgressPrinter:
    """Prints a line whenever an issue's status or current phase changes during a run."""

    def __init__(self, broadcaster: EventBroadcaster):
        self.subscription = broadcaster.subscribe({"issue_updated", "state_rebuilt"})
        self._last: dict[int, tuple[str, str | None]] = {}
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="phaseflow-progress", daemon=True)

    def handle(self, event: Event) -> None:
        if event.type == "state_rebuilt":
            rebuilt = ", ".join(f"#{n}" for n in event.payload["issues"])
            print(f"  state rebuilt from tracker markers: {rebuilt}")
            return
        number = event.payload["number"]
        current = (event.payload["status"], event.payload.get("currentPhase"))
        if self._last.get(number) == current:
            return
        self._last[number] = current
        status, phase = current
        print(f"  #{number}: {status}" + (f" ({phase})" if phase else ""))

    def _loop(self) -> None:
        while not self._stop.is_set():
            event = self.subscription.get(timeout=0.2)
            if event is not None:
                self.handle(event)

    def __enter__(self) -> "ProgressPrinter":
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        for event in self.subscription.drain():
            self.handle(event)
        self.subscription.close()


def print_plans(summary: RunSummary) -> None:
    print("Dry run: nothing will be executed")
    print()
    for number in summary.requested:
        if number in summary.skipped:
            print(f"  #{number}: skip ({summary.skipped[number].value})")
            continue
        plan = summary.plans[number]
        phases = " -> ".join(p.value for p in plan.phases) or "(nothing to run)"
        loop = "on" if plan.quality_loop else "off"
        print(f"  #{number} {plan.title}")
        print(f"      phases: {phases}   quality loop: {loop}")
        if plan.skipped:
            print(f"      already completed: {', '.join(p.value for p in plan.skipped)}")
        if plan.depends_on:
            print(f"      depends on: {', '.join(f'#{n}' for n in plan.depends_on)}")
        for reason in plan.reasons:
            print(f"      + {reason}")


def print_summary(summary: RunSummary) -> None:
    print()
    print("Run summary")
    print("=" * 60)
    for number in summary.reconciled:
        print(f"  #{number}: merged upstream")
    for number in summary.requested:
        status = summary.final_status(number)
        label = status.value if status else "not run"
        line = f"  #{number}: {label}"
        result = summary.results.get(number)
        if result is not None:
            if result.pr:
                line += f"  {result.pr.url}"
            if result.loop_iterations:
                line += f"  (quality loop x{result.loop_iterations})"
        print(line)
        if result is not None and result.failed is not None:
            print(f"ERROR: {result.failed.describe(number)}")
        elif result is not None and result.error:
            print(f"ERROR: #{number}: {result.error}")
    if summary.aborted:
        print("Run aborted by operator")


def cmd_run(args, settings: Settings) -> int:
    """Run one or more issues."""
    try:
        options = build_options(args)
    except (SchedulerOptionsError, ValueError) as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    if not options.dry_run:
        ok, error = check_gh_available(settings.repo_root)
        if not ok:
            if error.startswith(GH_NOT_FOUND):
                print(f"ERROR: {error}")
                return EXIT_CONFIG_ERROR
            # Resume starts fresh and reconcile assumes "not merged" without the tracker
            logger.warning(f"Tracker unavailable, continuing without it: {error.splitlines()[0]}")
        missing = missing_binaries(load_phase_commands(settings.config_dir), options.phases or list(PHASE_ORDER))
        for binary, phases in missing.items():
            logger.warning(f"'{binary}' not found on PATH (needed by {', '.join(phases)})")

    shutdown = ShutdownManager()
    broadcaster = EventBroadcaster()
    scheduler = build_scheduler(settings, options, shutdown, broadcaster)
    request = engine.RunRequest(issues=args.issues, **vars(options))

    try:
        with shutdown, ProgressPrinter(broadcaster):
            summary = engine.run(scheduler, request, use_prefect=not args.no_prefect)
    except SchedulerOptionsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return EXIT_LOCK_TIMEOUT
    except KeyboardInterrupt:
        print("ERROR: interrupted")
        return EXIT_INTERRUPTED
    finally:
        broadcaster.close()

    if options.dry_run:
        print_plans(summary)
    else:
        print_summary(summary)
    return summary.exit_code
