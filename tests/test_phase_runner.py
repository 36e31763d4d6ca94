"""Tests for phaseflow.runner.phase_runner module."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from phaseflow.lib.config import Settings
from phaseflow.lib.constants import ENV_ACCELERATORS, ENV_ISSUE, ENV_ORCHESTRATOR
from phaseflow.lib.phase_commands import PhaseCommandsConfig
from phaseflow.lib.review import ReviewVerdict
from phaseflow.lib.store import IssueStore
from phaseflow.lib.types import FailureKind, Phase, PhaseStatus
from phaseflow.runner.phase_runner import ABORT_ERROR, PhaseRunner
from phaseflow.runner.shutdown import ShutdownManager
from phaseflow.runner.workspace import ProtectedBranchError, Workspace

POPEN = "phaseflow.runner.phase_runner.subprocess.Popen"


def proc(returncode=0, output=""):
    p = MagicMock(returncode=returncode)
    p.communicate.return_value = (output, None)
    p.poll.return_value = returncode
    return p


@pytest.fixture
def settings(tmp_path):
    return Settings(repo_root=tmp_path, accelerator_args="--mcp-config mcp.json")


@pytest.fixture
def store(settings):
    s = IssueStore(settings.state_path)
    s.ensure_issue(7, "Add export")
    return s


@pytest.fixture
def tracker():
    t = MagicMock()
    t.comment.return_value = (True, None)
    return t


@pytest.fixture
def workspace(tmp_path):
    return Workspace(issue=7, path=tmp_path, branch="feature/7-add-export", base_ref="origin/main")


def make_runner(settings, store, tracker, **kwargs):
    return PhaseRunner(settings, store, tracker, PhaseCommandsConfig(), MagicMock(), **kwargs)


class TestSuccess:
    """A zero exit completes the phase."""

    @patch(POPEN)
    def test_completed_and_recorded(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0, "done\n")
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)

        assert outcome.success
        assert outcome.attempts == 1
        assert store.get_issue(7).phases[Phase.IMPLEMENT].status == PhaseStatus.COMPLETED
        body = tracker.comment.call_args[0][1]
        assert '"phase":"implement"' in body
        assert '"status":"completed"' in body

    @patch(POPEN)
    def test_environment_and_cwd(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0)
        make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)

        kwargs = mock_popen.call_args.kwargs
        assert kwargs["cwd"] == str(workspace.path)
        assert kwargs["env"][ENV_ISSUE] == "7"
        assert kwargs["env"][ENV_ORCHESTRATOR] == "phaseflow-run"
        assert kwargs["env"][ENV_ACCELERATORS] == "1"
        assert "--mcp-config" in mock_popen.call_args[0][0]

    @patch(POPEN)
    def test_session_id_captured(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0, "work\nPHASEFLOW_SESSION_ID=abc-123\n")
        make_runner(settings, store, tracker).run_phase(7, Phase.PLAN, workspace)
        assert store.get_issue(7).session_id == "abc-123"

    @patch(POPEN)
    def test_log_written(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0, "hello from phase")
        make_runner(settings, store, tracker).run_phase(7, Phase.PLAN, workspace)
        logs = list((settings.config_dir / "logs" / "7").glob("plan-*.log"))
        assert len(logs) == 1
        assert "hello from phase" in logs[0].read_text()

    @patch(POPEN)
    def test_marker_post_failure_is_not_fatal(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0)
        tracker.comment.return_value = (False, "HTTP 502")
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.PLAN, workspace)
        assert outcome.success


class TestRetry:
    """Fast failures retry, the last time without accelerators."""

    @patch(POPEN)
    def test_transient_then_success(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.side_effect = [proc(1, "cold start"), proc(0)]
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)
        assert outcome.success
        assert outcome.attempts == 2

    @patch(POPEN)
    def test_last_attempt_drops_accelerators(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.side_effect = [proc(1), proc(1), proc(0)]
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)

        assert outcome.success
        assert outcome.attempts == 3
        envs = [c.kwargs["env"][ENV_ACCELERATORS] for c in mock_popen.call_args_list]
        assert envs == ["1", "1", "0"]
        assert "--mcp-config" not in mock_popen.call_args_list[-1][0][0]

    @patch(POPEN)
    def test_exhausted_transient(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.side_effect = [proc(1, "first"), proc(1, "second"), proc(1, "third")]
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)

        assert outcome.status == PhaseStatus.FAILED
        assert outcome.failure_kind == FailureKind.TRANSIENT
        assert outcome.attempts == 3
        assert "first" in outcome.error
        assert store.get_issue(7).phases[Phase.IMPLEMENT].status == PhaseStatus.FAILED

    @patch(POPEN)
    def test_spawn_failure_is_transient(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.side_effect = [FileNotFoundError("claude"), proc(0)]
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.IMPLEMENT, workspace)
        assert outcome.success
        assert outcome.attempts == 2

    @patch(POPEN)
    def test_no_retry(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(1)
        outcome = make_runner(settings, store, tracker, retry=False).run_phase(7, Phase.IMPLEMENT, workspace)
        assert outcome.attempts == 1
        assert mock_popen.call_count == 1


class TestSemanticFailures:
    """Slow failures, timeouts and verdicts are never retried."""

    @patch(POPEN)
    def test_slow_failure(self, mock_popen, settings, store, tracker, workspace):
        settings.cold_start_window = 0
        mock_popen.return_value = proc(2, "tests failed")
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.VERIFY, workspace)

        assert outcome.failure_kind == FailureKind.SEMANTIC
        assert mock_popen.call_count == 1
        assert outcome.error == "exited 2: tests failed"

    @patch(POPEN)
    def test_timeout(self, mock_popen, settings, store, tracker, workspace):
        p = proc(-9, "")
        p.communicate.side_effect = [subprocess.TimeoutExpired(cmd="claude", timeout=5), ("partial", None)]
        mock_popen.return_value = p
        outcome = make_runner(settings, store, tracker, timeout=5).run_phase(7, Phase.IMPLEMENT, workspace)

        p.kill.assert_called_once()
        assert outcome.failure_kind == FailureKind.SEMANTIC
        assert outcome.error == "timed out after 5s"

    @patch(POPEN)
    def test_unfavorable_review(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0, "AC-1: MET\nAC-2: NOT MET\n\nVerdict: AC_NOT_MET\n")
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.REVIEW, workspace)

        assert outcome.status == PhaseStatus.FAILED
        assert outcome.failure_kind == FailureKind.SEMANTIC
        assert outcome.verdict == ReviewVerdict.AC_NOT_MET
        assert mock_popen.call_count == 1
        record = store.get_issue(7)
        assert record.phases[Phase.REVIEW].error == "review verdict AC_NOT_MET"
        assert record.ac.met == 1
        assert record.ac.not_met == 1

    @patch(POPEN)
    def test_favorable_review(self, mock_popen, settings, store, tracker, workspace):
        mock_popen.return_value = proc(0, "Verdict: READY_FOR_MERGE")
        outcome = make_runner(settings, store, tracker).run_phase(7, Phase.REVIEW, workspace)
        assert outcome.success
        assert outcome.verdict == ReviewVerdict.READY_FOR_MERGE

    @patch(POPEN)
    def test_unconfigured_phase(self, mock_popen, settings, store, tracker, workspace):
        runner = PhaseRunner(settings, store, tracker, PhaseCommandsConfig(phases={}), MagicMock())
        outcome = runner.run_phase(7, Phase.PLAN, workspace)
        assert outcome.failure_kind == FailureKind.SEMANTIC
        assert "No command configured" in outcome.error
        mock_popen.assert_not_called()


class TestGuardAndAbort:

    @patch(POPEN)
    def test_protected_branch(self, mock_popen, settings, store, tracker, workspace):
        runner = make_runner(settings, store, tracker)
        runner.workspaces.guard.side_effect = ProtectedBranchError(workspace.path, "main")
        outcome = runner.run_phase(7, Phase.IMPLEMENT, workspace)

        assert outcome.failure_kind == FailureKind.WORKSPACE
        mock_popen.assert_not_called()
        assert Phase.IMPLEMENT not in store.get_issue(7).phases

    @patch(POPEN)
    def test_abort_fails_running_phase(self, mock_popen, settings, store, tracker, workspace):
        shutdown = ShutdownManager()
        p = proc(-15, "")

        def communicate(timeout=None):
            shutdown.shutdown()
            return ("", None)

        p.communicate.side_effect = communicate
        p.poll.return_value = None
        mock_popen.return_value = p

        outcome = make_runner(settings, store, tracker, shutdown=shutdown).run_phase(7, Phase.IMPLEMENT, workspace)

        assert outcome.error == ABORT_ERROR
        assert mock_popen.call_count == 1
        p.terminate.assert_called_once()
        record = store.get_issue(7)
        assert record.phases[Phase.IMPLEMENT].status == PhaseStatus.FAILED
        assert record.phases[Phase.IMPLEMENT].error == ABORT_ERROR

    @patch(POPEN)
    def test_no_spawn_while_shutting_down(self, mock_popen, settings, store, tracker, workspace):
        shutdown = ShutdownManager()
        shutdown.shutdown()
        outcome = make_runner(settings, store, tracker, shutdown=shutdown).run_phase(7, Phase.PLAN, workspace)
        assert outcome.error == ABORT_ERROR
        mock_popen.assert_not_called()


class TestBuiltinPhase:

    def test_success(self, settings, store, tracker, workspace):
        outcome = make_runner(settings, store, tracker).run_builtin_phase(
            7, Phase.MERGE, workspace, lambda: (True, None),
        )
        assert outcome.success
        assert store.get_issue(7).phases[Phase.MERGE].status == PhaseStatus.COMPLETED

    def test_failure_is_workspace_kind(self, settings, store, tracker, workspace):
        outcome = make_runner(settings, store, tracker).run_builtin_phase(
            7, Phase.MERGE, workspace, lambda: (False, "push failed: rejected"),
        )
        assert outcome.failure_kind == FailureKind.WORKSPACE
        assert outcome.describe(7) == "#7 merge: push failed: rejected [workspace]"
