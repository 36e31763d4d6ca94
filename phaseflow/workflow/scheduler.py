"""
Multi-issue scheduler.

One run takes a list of issues through these steps:

    1. load the store (rebuild it from tracker markers if corrupt)
    2. reconcile: ready_for_merge issues whose PR merged become merged
    3. skip issues already in a terminal status (unless force)
    4. plan each remaining issue (dry-run stops here)
    5. execute in batches, each in parallel, sequential or chain mode

Parallel issues share nothing but the store, which serializes its own
writes. Sequential and chain runs are ordered by issue dependencies.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from phaseflow import git
from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_INTERRUPTED, EXIT_ISSUE_FAILED, EXIT_SUCCESS
from phaseflow.lib.dependencies import sort_by_dependencies
from phaseflow.lib.store import IssueStore, StoreCorrupted
from phaseflow.lib.types import FailureKind, IssueRecord, IssueStatus, SKIP_STATUSES, SUCCESS_STATUSES
from phaseflow.runner.context import ExecutionMode, IssuePlan, IssueResult, RunOptions
from phaseflow.runner.locking import LockTimeout
from phaseflow.runner.phase_runner import ABORT_ERROR
from phaseflow.runner.shutdown import ShutdownManager
from phaseflow.runner.workspace import WorkspaceManager
from phaseflow.workflow.pipeline import IssuePipeline

logger = logging.getLogger(__name__)


class SchedulerOptionsError(ValueError):
    """Incompatible run options."""
    pass


def resolve_mode(sequential: bool, chain: bool) -> ExecutionMode:
    if chain and not sequential:
        raise SchedulerOptionsError("--chain requires --sequential")
    if chain:
        return ExecutionMode.CHAIN
    return ExecutionMode.SEQUENTIAL if sequential else ExecutionMode.PARALLEL


def validate_options(options: RunOptions) -> None:
    """Raise SchedulerOptionsError for option combinations that make no sense."""
    if options.chain and options.batches:
        raise SchedulerOptionsError("--chain cannot be combined with --batch")
    if options.review_gate and not options.chain:
        raise SchedulerOptionsError("--review-gate requires --chain")


@dataclass
class RunSummary:
    requested: list[int]
    results: dict[int, IssueResult] = field(default_factory=dict)
    skipped: dict[int, IssueStatus] = field(default_factory=dict)  # Terminal before the run
    reconciled: list[int] = field(default_factory=list)
    plans: dict[int, IssuePlan] = field(default_factory=dict)
    dry_run: bool = False
    aborted: bool = False

    def final_status(self, issue: int) -> IssueStatus | None:
        if issue in self.results:
            return self.results[issue].status
        return self.skipped.get(issue)

    @property
    def exit_code(self) -> int:
        """Success only if every requested issue ended ready_for_merge or merged."""
        if self.dry_run:
            return EXIT_SUCCESS
        if self.aborted:
            return EXIT_INTERRUPTED
        for issue in self.requested:
            if self.final_status(issue) not in SUCCESS_STATUSES:
                return EXIT_ISSUE_FAILED
        return EXIT_SUCCESS


class Scheduler:
    """Runs many issues through their pipelines."""

    def __init__(
        self,
        settings: Settings,
        store: IssueStore,
        tracker,
        pipeline: IssuePipeline,
        workspaces: WorkspaceManager,
        shutdown: ShutdownManager | None = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.pipeline = pipeline
        self.workspaces = workspaces
        self.shutdown = shutdown

    # ------------------------------------------------------------------
    # Store loading and reconciliation
    # ------------------------------------------------------------------

    def load(self, issues: list[int]) -> dict[int, IssueRecord]:
        """Load the store, rebuilding it from tracker markers if it is unreadable."""
        try:
            return self.store.load()
        except StoreCorrupted as e:
            logger.error(f"{e}; rebuilding from tracker markers")
            return self.store.rebuild_from_markers(self.tracker, issues, self.settings.max_iterations)

    def reconcile(self, issues: list[int]) -> list[int]:
        """
        Mark issues merged when the tracker or git shows their work landed.

        Checks every tracked ready_for_merge issue, plus the requested
        issues that are not yet terminal. Lookup errors mean "not merged".
        """
        records = self.load(issues)
        merged = []
        for number, record in sorted(records.items()):
            if record.status in (IssueStatus.MERGED, IssueStatus.ABANDONED):
                continue
            ready = record.status == IssueStatus.READY_FOR_MERGE
            if not ready and number not in issues:
                continue
            if self._is_merged(record, ready):
                self.store.mark_merged(number)
                self.workspaces.release(number, record.branch)
                logger.info(f"#{number}: merged upstream; workspace released")
                merged.append(number)
        return merged

    def _is_merged(self, record: IssueRecord, ready: bool) -> bool:
        ref = record.pr.number if record.pr else record.branch
        if ref is not None:
            state, error = self.tracker.pr_state(ref)
            if state == "MERGED":
                return True
            if error:
                logger.debug(f"#{record.number}: PR state unavailable: {error}")

        # Git evidence only means something once the branch has reviewed work on it
        if not ready or not record.branch:
            return False
        repo = self.settings.repo_root
        if record.branch in git.get_merged_branches(repo, self.settings.remote_default):
            return True
        return git.log_mentions_issue(repo, self.settings.remote_default, record.number)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, issues: list[int], options: RunOptions, reconcile: bool = True) -> RunSummary:
        """
        Run the requested issues.

        Args:
            issues: Issue numbers, in the order given by the user
            options: Run options (validated here)
            reconcile: False when the caller already reconciled

        Raises:
            SchedulerOptionsError: for incompatible options
        """
        validate_options(options)
        issues = list(dict.fromkeys(issues))
        summary = RunSummary(requested=issues, dry_run=options.dry_run)

        if options.dry_run:
            records = self._peek(issues)
        else:
            if reconcile:
                summary.reconciled = self.reconcile(issues)
            records = self.load(issues)

        active = []
        for number in issues:
            record = records.get(number)
            if record is not None and record.status in SKIP_STATUSES and not options.force:
                logger.info(f"#{number}: already {record.status.value}, skipping (use --force to re-run)")
                summary.skipped[number] = record.status
            else:
                active.append(number)

        plans = {number: self.pipeline.plan(number, options) for number in active}
        if options.dry_run:
            summary.plans = plans
            return summary

        # Skipped issues still link a chain: their recorded branch parents the next issue
        links = {n: records[n].branch for n in summary.skipped if records[n].branch} if options.chain else {}

        for batch in self._batches(active, options):
            ok = self._run_batch([plans[n] for n in batch], options, summary, links)
            if summary.aborted:
                break
            if not ok and options.mode != ExecutionMode.PARALLEL:
                logger.error("Stopping: a batch did not complete")
                break
        return summary

    def _peek(self, issues: list[int]) -> dict[int, IssueRecord]:
        """Read-only load for dry runs; a corrupt store is reported but not rebuilt."""
        try:
            return self.store.load()
        except StoreCorrupted as e:
            logger.warning(f"{e}; dry run continues without local state")
            return {}

    def _batches(self, active: list[int], options: RunOptions) -> list[list[int]]:
        if not options.batches:
            return [active] if active else []
        wanted = set(active)
        batches = [[n for n in batch if n in wanted] for batch in options.batches]
        listed = {n for batch in options.batches for n in batch}
        leftover = [n for n in active if n not in listed]
        if leftover:
            batches.append(leftover)
        return [batch for batch in batches if batch]

    def _run_batch(self, plans: list[IssuePlan], options: RunOptions, summary: RunSummary,
                   links: dict[int, str]) -> bool:
        if options.mode == ExecutionMode.PARALLEL:
            return self._run_parallel(plans, options, summary)
        return self._run_sequential(plans, options, summary, links)

    def _run_parallel(self, plans: list[IssuePlan], options: RunOptions, summary: RunSummary) -> bool:
        workers = max(1, min(len(plans), options.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="phaseflow") as executor:
            futures = {
                plan.issue: executor.submit(self._execute, plan, options, options.base_branch, True)
                for plan in plans
            }
            for number, future in futures.items():
                summary.results[number] = future.result()
        summary.aborted = self._aborted()
        return all(summary.results[plan.issue].success for plan in plans)

    def _run_sequential(self, plans: list[IssuePlan], options: RunOptions, summary: RunSummary,
                        links: dict[int, str]) -> bool:
        by_number = {plan.issue: plan for plan in plans}
        chain = [n for n in summary.requested if n in by_number or n in links] if links else list(by_number)
        depends_on = {n: p.depends_on for n, p in by_number.items()}
        order = sort_by_dependencies(chain, depends_on)
        if options.chain:
            logger.info(f"Chain order: {' -> '.join(f'#{n}' for n in order)}")
        last = [n for n in order if n in by_number][-1]

        parent = options.base_branch
        for number in order:
            if number not in by_number:
                parent = links[number]
                logger.info(f"#{number}: already {summary.skipped[number].value}; chaining from {parent}")
                continue
            if self._aborted():
                summary.aborted = True
                return False

            base_ref = parent if options.chain else options.base_branch
            result = self._execute(by_number[number], options, base_ref, number == last)
            summary.results[number] = result
            if not result.success:
                if result.status == IssueStatus.WAITING_FOR_REVIEW_GATE:
                    logger.warning(f"Chain paused at #{number}; resume after review")
                else:
                    logger.error(f"Stopping after #{number} ({(result.status or IssueStatus.NOT_STARTED).value})")
                return False
            if options.chain:
                parent = result.branch
        return True

    def _execute(self, plan: IssuePlan, options: RunOptions, base_ref: str | None, is_last: bool) -> IssueResult:
        if self._aborted():
            return IssueResult(issue=plan.issue, error=ABORT_ERROR)
        try:
            return self.pipeline.execute(plan, options, base_ref=base_ref, is_last=is_last)
        except (StoreCorrupted, LockTimeout) as e:
            logger.error(f"#{plan.issue}: {e}")
            return IssueResult(issue=plan.issue, error=f"{e} [{FailureKind.STORE.value}]")

    def _aborted(self) -> bool:
        return self.shutdown is not None and self.shutdown.shutting_down
