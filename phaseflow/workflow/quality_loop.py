"""
Quality loop: bounded diagnose -> fix -> re-run after a failed review.

The iteration counter lives in the issue record (loop.iteration) so it
survives across runs. Once it reaches loop.max_iterations the issue is
blocked with the last review error preserved, and later runs do not retry
until the counter is reset (`phaseflow reset <n> --loop`).
"""

import logging
from dataclasses import dataclass

from phaseflow.lib.constants import ENV_FINDINGS
from phaseflow.lib.review import parse_findings
from phaseflow.lib.store import IssueStore
from phaseflow.lib.types import FailureKind, Phase
from phaseflow.runner.phase_runner import PhaseOutcome, PhaseRunner
from phaseflow.runner.workspace import Workspace

logger = logging.getLogger(__name__)

MAX_FINDINGS_ENV = 16_000


@dataclass
class LoopResult:
    passed: bool
    outcome: PhaseOutcome  # The last outcome of the review-type phase (or the failed fix)
    iterations_run: int  # Iterations performed by this call
    iteration: int  # Persisted counter after this call
    exhausted: bool


class QualityLoopController:
    """Retries a semantically failed review phase through the loop phase."""

    def __init__(self, runner: PhaseRunner, store: IssueStore):
        self.runner = runner
        self.store = store

    def handle_failure(self, issue: int, failed: PhaseOutcome, workspace: Workspace) -> LoopResult:
        """
        Run fix/re-run iterations until the phase passes or the cap is hit.

        Only semantic failures are looped; anything else is returned as-is.
        """
        record = self.store.get_issue(issue)
        loop = record.loop

        if failed.failure_kind != FailureKind.SEMANTIC or not loop.enabled:
            return LoopResult(passed=False, outcome=failed, iterations_run=0,
                              iteration=loop.iteration, exhausted=loop.exhausted)

        if loop.exhausted:
            logger.warning(
                f"#{issue}: quality loop already used {loop.iteration}/{loop.max_iterations} "
                f"iterations; reset it to retry"
            )
            return LoopResult(passed=False, outcome=failed, iterations_run=0,
                              iteration=loop.iteration, exhausted=True)

        last = failed
        iteration = loop.iteration
        runs = 0
        while iteration < loop.max_iterations:
            runs += 1
            logger.info(f"#{issue}: quality loop iteration {iteration + 1}/{loop.max_iterations}")

            findings = parse_findings(last.output) or (last.error or "")
            fix = self.runner.run_phase(
                issue, Phase.LOOP, workspace,
                extra_env={ENV_FINDINGS: findings[-MAX_FINDINGS_ENV:]},
                iteration=iteration + 1,
            )
            if not fix.success:
                iteration = self.store.increment_loop(issue).loop.iteration
                logger.error(f"#{issue}: quality loop fix step failed: {fix.error}")
                return LoopResult(passed=False, outcome=fix, iterations_run=runs,
                                  iteration=iteration, exhausted=iteration >= loop.max_iterations)

            rerun = self.runner.run_phase(issue, failed.phase, workspace)
            iteration = self.store.increment_loop(issue).loop.iteration

            if rerun.success:
                logger.info(f"#{issue}: {failed.phase.value} passed after {runs} loop iteration(s)")
                return LoopResult(passed=True, outcome=rerun, iterations_run=runs,
                                  iteration=iteration, exhausted=False)

            last = rerun
            if rerun.failure_kind != FailureKind.SEMANTIC:
                return LoopResult(passed=False, outcome=rerun, iterations_run=runs,
                                  iteration=iteration, exhausted=iteration >= loop.max_iterations)

        logger.error(
            f"#{issue}: {failed.phase.value} still failing after {iteration} quality loop "
            f"iterations; issue is blocked ({last.error})"
        )
        return LoopResult(passed=False, outcome=last, iterations_run=runs,
                          iteration=iteration, exhausted=True)
