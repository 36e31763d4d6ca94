"""
Per-issue pipeline: plan the phases, then drive them to an outcome.

    plan     fetch the issue, resolve phases from signals, drop phases the
             tracker already shows completed (resume). Writes nothing.
    execute  acquire the workspace, run the phases in order (a semantic
             review failure goes through the quality loop), then the
             chain checkpoint, the pre-merge rebase and the merge phase.
"""

import logging

from phaseflow import notifications
from phaseflow.lib.config import Settings
from phaseflow.lib.dependencies import parse_dependencies
from phaseflow.lib.markers import Resumer, filter_resumed_phases
from phaseflow.lib.signals import resolve_plan
from phaseflow.lib.store import IssueStore, StoreCorrupted
from phaseflow.lib.types import FailureKind, IssueStatus, Phase, PhaseStatus, REVIEW_PHASES
from phaseflow.runner.context import IssuePlan, IssueResult, RunOptions
from phaseflow.runner.phase_runner import ABORT_ERROR, PhaseRunner
from phaseflow.runner.shutdown import ShutdownManager
from phaseflow.runner.workspace import Workspace, WorkspaceError, WorkspaceManager
from phaseflow.workflow.quality_loop import QualityLoopController

logger = logging.getLogger(__name__)


class IssuePipeline:
    """Runs one issue through its planned phases."""

    def __init__(
        self,
        settings: Settings,
        store: IssueStore,
        tracker,
        runner: PhaseRunner,
        workspaces: WorkspaceManager,
        shutdown: ShutdownManager | None = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.runner = runner
        self.workspaces = workspaces
        self.shutdown = shutdown
        self.resumer = Resumer(tracker)
        self.loop = QualityLoopController(runner, store)

    def plan(self, issue: int, options: RunOptions) -> IssuePlan:
        info = self.tracker.issue(issue)
        if info.error:
            logger.warning(f"#{issue}: cannot read issue ({info.error}); planning from defaults")

        comments = self.tracker.comments(issue)
        if comments.error:
            logger.warning(f"#{issue}: cannot read comments ({comments.error}); no planning or resume data")

        resolved = resolve_plan(
            explicit_phases=options.phases,
            explicit_loop=options.quality_loop,
            labels=info.labels,
            comments=comments.comments,
            title=info.title,
            body=info.body,
        )
        phases = list(resolved.phases)
        if options.create_pr and (options.phases is None or Phase.MERGE in options.phases):
            phases.append(Phase.MERGE)

        skipped: list[Phase] = []
        if options.resume:
            done = self.resumer.detect(issue, comments) | self._locally_completed(issue)
            phases, skipped = filter_resumed_phases(phases, done)
            if skipped:
                logger.info(f"#{issue}: resuming, already completed: {', '.join(p.value for p in skipped)}")

        return IssuePlan(
            issue=issue,
            title=info.title,
            phases=phases,
            skipped=skipped,
            quality_loop=resolved.quality_loop,
            reasons=resolved.reasons,
            depends_on=parse_dependencies(info.body, info.labels),
        )

    def _locally_completed(self, issue: int) -> set[Phase]:
        try:
            record = self.store.get_issue(issue)
        except StoreCorrupted:
            return set()
        if record is None:
            return set()
        return {phase for phase, rec in record.phases.items() if rec.status == PhaseStatus.COMPLETED}

    def execute(self, plan: IssuePlan, options: RunOptions,
                base_ref: str | None = None, is_last: bool = True) -> IssueResult:
        """
        Run a planned issue to an outcome.

        Args:
            plan: Output of plan()
            options: Run options
            base_ref: Chain parent, or the explicit --base (None: the default branch)
            is_last: Whether this is the last issue of a chain; only the
                last one rebases onto the default branch
        """
        issue = plan.issue
        result = IssueResult(issue=issue)

        self.store.ensure_issue(issue, plan.title)
        self.store.set_loop(issue, plan.quality_loop, options.max_iterations or self.settings.max_iterations)
        for phase in plan.skipped:
            self.store.record_resumed(issue, phase)
        self.store.plan_phases(issue, plan.phases)

        if not plan.phases:
            logger.info(f"#{issue}: nothing left to run")
            return self._finish(result)

        try:
            workspace = self.workspaces.acquire(issue, plan.title, base_ref, chain=options.chain)
        except WorkspaceError as e:
            logger.error(f"#{issue}: {e}")
            result.error = f"{e} [{FailureKind.WORKSPACE.value}]"
            return self._finish(result)
        self.store.set_workspace(issue, workspace.path, workspace.branch)
        result.branch = workspace.branch

        work = [p for p in plan.phases if p != Phase.MERGE]
        if not self._run_work_phases(issue, work, workspace, options, result):
            return self._finish(result)

        if options.chain:
            label = "review passed" if any(p in REVIEW_PHASES for p in work) else "phases complete"
            self.workspaces.checkpoint(workspace, f"checkpoint(#{issue}): {label}")

        if options.rebase and (not options.chain or is_last):
            rebase = self.workspaces.pre_merge_rebase(workspace)
            if not rebase.success:
                logger.warning(f"#{issue}: pre-merge rebase skipped: {rebase.error}")

        if Phase.MERGE in plan.phases:
            if self._aborted():
                result.error = ABORT_ERROR
                return self._finish(result)
            outcome = self.runner.run_builtin_phase(
                issue, Phase.MERGE, workspace, lambda: self._publish(workspace, plan.title, result),
            )
            result.outcomes.append(outcome)
            if not outcome.success:
                result.failed = outcome

        return self._finish(result)

    def _run_work_phases(self, issue: int, phases: list[Phase], workspace: Workspace,
                         options: RunOptions, result: IssueResult) -> bool:
        """Run phases in order; False at the first failure that stays failed."""
        for phase in phases:
            if self._aborted():
                result.error = ABORT_ERROR
                return False

            outcome = self.runner.run_phase(issue, phase, workspace)
            result.outcomes.append(outcome)
            if outcome.success:
                continue

            if phase in REVIEW_PHASES and outcome.failure_kind == FailureKind.SEMANTIC:
                looped = self.loop.handle_failure(issue, outcome, workspace)
                result.loop_iterations = looped.iterations_run
                if looped.iterations_run:
                    result.outcomes.append(looped.outcome)
                if looped.passed:
                    continue
                outcome = looped.outcome
                if options.chain and options.review_gate:
                    self.store.set_gate_paused(issue)
                    logger.warning(f"#{issue}: review failed; chain paused at review gate")
                    if self.settings.notifications:
                        notifications.notify_review_gate(issue)

            result.failed = outcome
            return False
        return True

    def _publish(self, workspace: Workspace, title: str, result: IssueResult) -> tuple[bool, str | None]:
        pr, error = self.workspaces.publish(workspace, title, self.tracker)
        if pr is None:
            return False, error
        self.store.set_pr(workspace.issue, pr.number, pr.url)
        result.pr = pr
        logger.info(f"#{workspace.issue}: pull request {pr.url}")
        return True, None

    def _aborted(self) -> bool:
        return self.shutdown is not None and self.shutdown.shutting_down

    def _finish(self, result: IssueResult) -> IssueResult:
        record = self.store.get_issue(result.issue)
        if record is not None:
            result.status = record.status
            result.pr = result.pr or record.pr
            result.branch = result.branch or record.branch

        if self.settings.notifications:
            if result.status == IssueStatus.BLOCKED:
                reason = result.failed.error if result.failed and result.failed.error else "quality loop exhausted"
                notifications.notify_blocked(result.issue, reason)
            elif result.status == IssueStatus.READY_FOR_MERGE:
                notifications.notify_ready(result.issue, result.pr.url if result.pr else None)
            elif result.failed is not None and result.status != IssueStatus.WAITING_FOR_REVIEW_GATE:
                notifications.notify_failed(result.issue, result.failed.phase.value)
        return result
