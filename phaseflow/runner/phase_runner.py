"""
Phase execution for a single issue.

run_phase() sequences one phase: guard the workspace, record the start,
register an abort take-down, invoke the external phase command, classify the
outcome, record it and post a marker to the tracker. What the command does
is opaque; only its exit status, timing and (for review) verdict are read.

Failure classification:

    transient  the command could not be spawned, or exited nonzero within
               the cold-start window. Retried here (default 2 more times,
               the last one with accelerators disabled).
    semantic   a slow nonzero exit, a timeout, or an unfavorable review
               verdict. Never retried here; review failures go to the
               quality loop.
    workspace  the guard refused a protected branch.
"""

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from phaseflow.lib.config import Settings
from phaseflow.lib.constants import (
    ENV_ACCELERATORS,
    ENV_ISSUE,
    ENV_ORCHESTRATOR,
    ENV_PHASE,
    ENV_WORKTREE,
    ORCHESTRATOR_ID,
    SESSION_ID_PREFIX,
)
from phaseflow.lib.markers import format_marker_comment
from phaseflow.lib.phase_commands import PhaseCommandsConfig, get_phase_command
from phaseflow.lib.review import ReviewVerdict, is_favorable, parse_ac_summary, parse_verdict
from phaseflow.lib.store import IssueStore
from phaseflow.lib.types import FailureKind, Phase, PhaseStatus, REVIEW_PHASES, utc_now
from phaseflow.runner.shutdown import ShutdownManager
from phaseflow.runner.workspace import ProtectedBranchError, Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

ABORT_ERROR = "aborted by operator"
MAX_ERROR_TAIL = 500


@dataclass
class PhaseOutcome:
    phase: Phase
    status: PhaseStatus
    error: str | None = None
    failure_kind: FailureKind | None = None
    output: str = ""
    verdict: ReviewVerdict | None = None
    duration: float = 0.0
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.status == PhaseStatus.COMPLETED

    def describe(self, issue: int) -> str:
        """User-facing failure line naming the issue, phase and failure kind."""
        kind = f" [{self.failure_kind.value}]" if self.failure_kind else ""
        return f"#{issue} {self.phase.value}: {self.error or self.status.value}{kind}"


@dataclass
class _Attempt:
    returncode: int | None  # None when the command never ran
    output: str
    duration: float
    timed_out: bool = False
    error: str | None = None
    aborted: bool = False
    misconfigured: bool = False  # No usable command; retrying cannot help

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.aborted


def _tail(text: str, limit: int = MAX_ERROR_TAIL) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


class PhaseRunner:
    """Runs phases for issues, recording every outcome in the store and tracker."""

    def __init__(
        self,
        settings: Settings,
        store: IssueStore,
        tracker,
        commands: PhaseCommandsConfig,
        workspaces: WorkspaceManager,
        shutdown: ShutdownManager | None = None,
        retry: bool = True,
        timeout: int | None = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.commands = commands
        self.workspaces = workspaces
        self.shutdown = shutdown
        self.retry = retry
        self.timeout = timeout or settings.phase_timeout
        self.log_dir = settings.config_dir / "logs"

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run_phase(
        self,
        issue: int,
        phase: Phase,
        workspace: Workspace,
        extra_env: dict[str, str] | None = None,
        iteration: int | None = None,
    ) -> PhaseOutcome:
        """Run one external phase to an outcome. Never raises for phase failures."""
        guard_failure = self._guard(issue, phase, workspace)
        if guard_failure is not None:
            return guard_failure

        self.store.start_phase(issue, phase, iteration=iteration)
        logger.info(f"#{issue}: phase {phase.value} started")

        outcome = self._invoke_with_retry(issue, phase, workspace, extra_env or {})
        if outcome.error == ABORT_ERROR:
            # Usually already done by the take-down; no-op unless still in progress
            self.store.fail_in_progress(issue, phase, ABORT_ERROR)
            return outcome

        if outcome.success and phase in REVIEW_PHASES:
            outcome = self._apply_review(issue, outcome)

        self._record(issue, outcome)
        return outcome

    def run_builtin_phase(
        self,
        issue: int,
        phase: Phase,
        workspace: Workspace,
        action: Callable[[], tuple[bool, str | None]],
    ) -> PhaseOutcome:
        """Run an in-process phase (merge) with the same recording as external phases.

        action returns (success, error); failures are workspace-kind.
        """
        guard_failure = self._guard(issue, phase, workspace)
        if guard_failure is not None:
            return guard_failure

        self.store.start_phase(issue, phase)
        start = time.monotonic()
        ok, error = action()
        outcome = PhaseOutcome(
            phase=phase,
            status=PhaseStatus.COMPLETED if ok else PhaseStatus.FAILED,
            error=None if ok else error,
            failure_kind=None if ok else FailureKind.WORKSPACE,
            duration=time.monotonic() - start,
        )
        self._record(issue, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _guard(self, issue: int, phase: Phase, workspace: Workspace) -> PhaseOutcome | None:
        try:
            self.workspaces.guard(workspace)
        except ProtectedBranchError as e:
            logger.error(f"#{issue}: {e}")
            return PhaseOutcome(
                phase=phase,
                status=PhaseStatus.FAILED,
                error=str(e),
                failure_kind=FailureKind.WORKSPACE,
                attempts=0,
            )
        return None

    def _invoke_with_retry(self, issue: int, phase: Phase, workspace: Workspace,
                           extra_env: dict[str, str]) -> PhaseOutcome:
        max_attempts = 1 + (self.settings.cold_start_retries if self.retry else 0)
        first_failure: _Attempt | None = None
        attempt: _Attempt | None = None
        total = 0.0

        for number in range(1, max_attempts + 1):
            accelerators = not (self.retry and number == max_attempts and number > 1)
            attempt = self._invoke(issue, phase, workspace, extra_env, accelerators)
            total += attempt.duration

            if attempt.aborted:
                return PhaseOutcome(phase=phase, status=PhaseStatus.FAILED, error=ABORT_ERROR,
                                    failure_kind=FailureKind.TRANSIENT, output=attempt.output,
                                    duration=total, attempts=number)
            if attempt.ok:
                self._capture_session(issue, attempt.output)
                return PhaseOutcome(phase=phase, status=PhaseStatus.COMPLETED, output=attempt.output,
                                    duration=total, attempts=number)

            if not self._is_transient(attempt):
                return PhaseOutcome(phase=phase, status=PhaseStatus.FAILED, error=self._error_text(attempt),
                                    failure_kind=FailureKind.SEMANTIC, output=attempt.output,
                                    duration=total, attempts=number)

            first_failure = first_failure or attempt
            if number < max_attempts:
                next_mode = "without accelerators" if number + 1 == max_attempts else "again"
                logger.warning(
                    f"#{issue}: phase {phase.value} failed after {attempt.duration:.1f}s "
                    f"(likely cold start), retrying {next_mode}"
                )

        return PhaseOutcome(phase=phase, status=PhaseStatus.FAILED, error=self._error_text(first_failure),
                            failure_kind=FailureKind.TRANSIENT, output=attempt.output,
                            duration=total, attempts=max_attempts)

    def _is_transient(self, attempt: _Attempt) -> bool:
        if attempt.timed_out or attempt.misconfigured:
            return False
        if attempt.returncode is None:
            return True
        return attempt.duration < self.settings.cold_start_window

    def _error_text(self, attempt: _Attempt) -> str:
        if attempt.error:
            return attempt.error
        if attempt.timed_out:
            return f"timed out after {self.timeout}s"
        tail = _tail(attempt.output)
        return f"exited {attempt.returncode}" + (f": {tail}" if tail else "")

    def _phase_env(self, issue: int, phase: Phase, workspace: Workspace, extra_env: dict[str, str],
                   accelerators: bool) -> dict[str, str]:
        env = os.environ.copy()
        env.update({
            ENV_ISSUE: str(issue),
            ENV_WORKTREE: str(workspace.path),
            ENV_PHASE: phase.value,
            ENV_ORCHESTRATOR: ORCHESTRATOR_ID,
            ENV_ACCELERATORS: "1" if accelerators else "0",
        })
        env.update(extra_env)
        return env

    def _invoke(self, issue: int, phase: Phase, workspace: Workspace, extra_env: dict[str, str],
                accelerators: bool) -> _Attempt:
        """One run of the phase command, with an abort take-down registered around it."""
        try:
            command = get_phase_command(
                self.commands,
                phase,
                {"issue": str(issue), "worktree": str(workspace.path), "phase": phase.value},
                accelerators=self.settings.accelerator_args if accelerators else "",
            )
        except ValueError as e:
            return _Attempt(returncode=None, output="", duration=0.0, error=str(e), misconfigured=True)

        if self.shutdown is not None and self.shutdown.shutting_down:
            return _Attempt(returncode=None, output="", duration=0.0, aborted=True)

        process_box: dict[str, subprocess.Popen] = {}
        aborted = threading.Event()

        def takedown() -> None:
            aborted.set()
            self.store.fail_in_progress(issue, phase, ABORT_ERROR)
            proc = process_box.get("proc")
            if proc is not None and proc.poll() is None:
                proc.terminate()

        handle = self.shutdown.register(f"fail #{issue} {phase.value}", takedown) if self.shutdown else None
        start = time.monotonic()
        try:
            logger.debug(f"#{issue}: running {command.cmd}")
            try:
                proc = subprocess.Popen(
                    command.cmd,
                    cwd=str(workspace.path),
                    env=self._phase_env(issue, phase, workspace, extra_env, accelerators),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                )
            except OSError as e:
                return _Attempt(returncode=None, output="", duration=time.monotonic() - start,
                                error=f"failed to start {command.cmd[0]}: {e}")
            process_box["proc"] = proc

            try:
                output, _ = proc.communicate(timeout=self.timeout)
                attempt = _Attempt(returncode=proc.returncode, output=output or "",
                                   duration=time.monotonic() - start)
            except subprocess.TimeoutExpired:
                proc.kill()
                output, _ = proc.communicate()
                attempt = _Attempt(returncode=proc.returncode, output=output or "",
                                   duration=time.monotonic() - start, timed_out=True)
        finally:
            if handle is not None:
                self.shutdown.unregister(handle)

        attempt.aborted = aborted.is_set()
        self._write_log(issue, phase, command.cmd, attempt)
        return attempt

    def _capture_session(self, issue: int, output: str) -> None:
        for line in reversed(output.splitlines()):
            if line.startswith(SESSION_ID_PREFIX):
                session_id = line[len(SESSION_ID_PREFIX):].strip()
                if session_id:
                    self.store.set_session(issue, session_id)
                return

    def _apply_review(self, issue: int, outcome: PhaseOutcome) -> PhaseOutcome:
        """Turn an unfavorable verdict into a semantic failure and record AC counts."""
        ac = parse_ac_summary(outcome.output)
        if ac is not None:
            self.store.set_ac(issue, ac)

        outcome.verdict = parse_verdict(outcome.output)
        if not is_favorable(outcome.verdict):
            outcome.status = PhaseStatus.FAILED
            outcome.error = f"review verdict {outcome.verdict.value}"
            outcome.failure_kind = FailureKind.SEMANTIC
        return outcome

    def _record(self, issue: int, outcome: PhaseOutcome) -> None:
        self.store.finish_phase(issue, outcome.phase, outcome.status, error=outcome.error)
        if outcome.success:
            logger.info(f"#{issue}: phase {outcome.phase.value} completed ({outcome.duration:.1f}s)")
        else:
            logger.error(outcome.describe(issue))

        body = format_marker_comment(issue, outcome.phase, outcome.status, outcome.error)
        ok, error = self.tracker.comment(issue, body)
        if not ok:
            logger.warning(f"#{issue}: could not post {outcome.phase.value} marker: {error}")

    def _write_log(self, issue: int, phase: Phase, cmd: list[str], attempt: _Attempt) -> Path | None:
        log_path = self.log_dir / str(issue) / f"{phase.value}-{utc_now().replace(':', '')}.log"
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(
                f"# {' '.join(cmd)}\n# exit={attempt.returncode} duration={attempt.duration:.1f}s"
                f"{' timed_out' if attempt.timed_out else ''}\n\n{attempt.output}"
            )
        except OSError as e:
            logger.debug(f"Could not write phase log {log_path}: {e}")
            return None
        return log_path
