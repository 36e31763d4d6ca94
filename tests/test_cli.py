"""Tests for the phaseflow CLI and its commands."""

from unittest.mock import MagicMock, patch

import pytest

from phaseflow.cli import build_parser, issue_number
from phaseflow.commands.abandon import cmd_abandon
from phaseflow.commands.rebuild import cmd_rebuild
from phaseflow.commands.reset import cmd_reset
from phaseflow.commands.run import ProgressPrinter, build_options, cmd_run, parse_batches, parse_phase_list
from phaseflow.commands.status import cmd_status, phase_strip
from phaseflow.lib.config import Settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR, EXIT_ISSUE_FAILED, EXIT_SUCCESS
from phaseflow.lib.events import EventBroadcaster
from phaseflow.lib.github import CommentsResult, IssueInfo
from phaseflow.lib.store import IssueStore
from phaseflow.lib.types import IssueStatus, Phase, PhaseStatus
from phaseflow.runner.context import ExecutionMode
from phaseflow.workflow.scheduler import RunSummary, SchedulerOptionsError


@pytest.fixture
def settings(tmp_path):
    return Settings(repo_root=tmp_path, notifications=False)


@pytest.fixture
def store(settings):
    return IssueStore(settings.state_path)


def parse(*argv):
    return build_parser().parse_args(list(argv))


def blocked_issue(store, number=4):
    store.ensure_issue(number, "Refactor billing")
    store.set_loop(number, True, 1)
    store.start_phase(number, Phase.REVIEW)
    store.finish_phase(number, Phase.REVIEW, PhaseStatus.FAILED, error="review verdict AC_NOT_MET")
    store.increment_loop(number)


class TestParser:
    """Argument parsing."""

    def test_issue_number(self):
        assert issue_number("#12") == 12
        with pytest.raises(Exception):
            issue_number("abc")
        with pytest.raises(Exception):
            issue_number("0")

    def test_run_defaults(self):
        args = parse("run", "1", "2")
        options = build_options(args)
        assert args.issues == [1, 2]
        assert options.mode == ExecutionMode.PARALLEL
        assert options.quality_loop is None
        assert options.create_pr and options.rebase and options.retry

    def test_run_flags(self):
        args = parse("run", "3", "--phases", "implement,review", "--no-quality-loop",
                     "--sequential", "--chain", "--review-gate", "--base", "develop", "--no-pr")
        options = build_options(args)
        assert options.phases == [Phase.IMPLEMENT, Phase.REVIEW]
        assert options.quality_loop is False
        assert options.chain
        assert options.review_gate
        assert options.base_branch == "develop"
        assert options.create_pr is False

    def test_quality_loop_flags_exclusive(self):
        with pytest.raises(SystemExit):
            parse("run", "1", "-q", "--no-quality-loop")

    def test_chain_without_sequential(self):
        with pytest.raises(SchedulerOptionsError):
            build_options(parse("run", "1", "--chain"))

    def test_parse_phase_list(self):
        assert parse_phase_list("plan, exec,qa") == [Phase.PLAN, Phase.IMPLEMENT, Phase.REVIEW]
        with pytest.raises(ValueError, match="Unknown phase 'deploy'"):
            parse_phase_list("implement,deploy")

    def test_parse_batches(self):
        assert parse_batches(["1,2", "#3 4"]) == [[1, 2], [3, 4]]
        assert parse_batches(None) is None


class TestRunCommand:

    def test_bad_phase_is_config_error(self, settings, capsys):
        assert cmd_run(parse("run", "1", "--phases", "deploy"), settings) == EXIT_CONFIG_ERROR
        assert "ERROR: Unknown phase" in capsys.readouterr().out

    @patch("phaseflow.commands.run.check_gh_available")
    def test_gh_missing(self, mock_check, settings, capsys):
        mock_check.return_value = (False, "GitHub CLI (gh) not found")
        assert cmd_run(parse("run", "1"), settings) == EXIT_CONFIG_ERROR
        assert "gh" in capsys.readouterr().out

    @patch("phaseflow.commands.run.engine")
    @patch("phaseflow.commands.run.build_scheduler")
    @patch("phaseflow.commands.run.check_gh_available")
    def test_unreachable_tracker_continues(self, mock_check, mock_build, mock_engine, settings):
        mock_check.return_value = (False, "GitHub CLI not authenticated or unreachable (network)\n  Run: gh auth login")
        mock_engine.run.return_value = RunSummary(requested=[1], skipped={1: IssueStatus.MERGED})

        assert cmd_run(parse("run", "1", "--no-prefect"), settings) == EXIT_SUCCESS
        mock_engine.run.assert_called_once()
        assert isinstance(mock_build.call_args.args[3], EventBroadcaster)

    @patch("phaseflow.commands.run.Tracker")
    def test_dry_run_prints_plan(self, mock_tracker_cls, settings, capsys):
        tracker = MagicMock()
        tracker.issue.return_value = IssueInfo(number=5, title="Add dashboard widget", body="", labels=["bug"])
        tracker.comments.return_value = CommentsResult([])
        mock_tracker_cls.return_value = tracker

        code = cmd_run(parse("run", "5", "--dry-run", "--no-prefect"), settings)

        out = capsys.readouterr().out
        assert code == EXIT_SUCCESS
        assert "Dry run" in out
        assert "implement -> verify -> review -> merge" in out
        assert not settings.state_path.exists()


class TestProgressPrinter:
    """Store updates printed as they happen."""

    def test_prints_changes_only(self, tmp_path, capsys):
        broadcaster = EventBroadcaster()
        store = IssueStore(tmp_path / "state.json", broadcaster=broadcaster)
        with ProgressPrinter(broadcaster):
            store.ensure_issue(3, "x")
            store.set_pr(3, 9, "https://example.test/pr/9")
            store.start_phase(3, Phase.IMPLEMENT)
        out = capsys.readouterr().out.splitlines()
        assert out == ["  #3: not_started", "  #3: in_progress (implement)"]
        assert broadcaster.subscriber_count == 0

    def test_rebuild_reported(self, capsys):
        broadcaster = EventBroadcaster()
        printer = ProgressPrinter(broadcaster)
        printer.handle(broadcaster.publish("state_rebuilt", {"issues": [1, 2]}))
        assert "rebuilt from tracker markers: #1, #2" in capsys.readouterr().out


class TestStatusCommand:

    def test_empty(self, settings, capsys):
        assert cmd_status(parse("status"), settings) == EXIT_SUCCESS
        assert "No tracked issues" in capsys.readouterr().out

    def test_table(self, settings, store, capsys):
        blocked_issue(store)
        assert cmd_status(parse("status"), settings) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "#4" in out
        assert "blocked" in out
        assert "1/1" in out

    def test_detail(self, settings, store, capsys):
        blocked_issue(store)
        assert cmd_status(parse("status", "4"), settings) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "Issue #4: Refactor billing" in out
        assert "review verdict AC_NOT_MET" in out

    def test_untracked(self, settings, capsys):
        assert cmd_status(parse("status", "9"), settings) == EXIT_ISSUE_FAILED

    def test_corrupt_store(self, settings, capsys):
        settings.state_path.parent.mkdir(parents=True)
        settings.state_path.write_text("nope")
        assert cmd_status(parse("status"), settings) == EXIT_CONFIG_ERROR
        assert "phaseflow rebuild" in capsys.readouterr().out

    def test_phase_strip(self, store):
        blocked_issue(store)
        assert phase_strip(store.get_issue(4)) == "review:!"


class TestResetCommand:

    def test_loop_reset_unblocks(self, settings, store, capsys):
        blocked_issue(store)
        assert cmd_reset(parse("reset", "4", "--loop"), settings) == EXIT_SUCCESS
        record = store.get_issue(4)
        assert record.loop.iteration == 0
        assert record.phases[Phase.REVIEW].status == PhaseStatus.FAILED
        assert record.status == IssueStatus.IN_PROGRESS

    def test_phase_reset(self, settings, store):
        blocked_issue(store)
        assert cmd_reset(parse("reset", "4", "--phases", "review"), settings) == EXIT_SUCCESS
        record = store.get_issue(4)
        assert record.phases[Phase.REVIEW].status == PhaseStatus.PENDING
        assert record.loop.iteration == 1

    def test_full_reset(self, settings, store):
        blocked_issue(store)
        cmd_reset(parse("reset", "4"), settings)
        record = store.get_issue(4)
        assert record.loop.iteration == 0
        assert record.status == IssueStatus.NOT_STARTED

    def test_untracked(self, settings):
        assert cmd_reset(parse("reset", "9"), settings) == EXIT_ISSUE_FAILED


class TestAbandonCommand:

    @patch("phaseflow.commands.abandon.WorkspaceManager")
    def test_abandon_without_worktree(self, mock_manager, settings, store):
        store.ensure_issue(6, "x")
        mock_manager.return_value.find.return_value = None
        assert cmd_abandon(parse("abandon", "6"), settings) == EXIT_SUCCESS
        assert store.get_issue(6).status == IssueStatus.ABANDONED

    @patch("phaseflow.commands.abandon.git")
    @patch("phaseflow.commands.abandon.WorkspaceManager")
    def test_local_work_kept(self, mock_manager, mock_git, settings, store, tmp_path, capsys):
        store.ensure_issue(6, "x")
        mock_manager.return_value.find.return_value = MagicMock(path=tmp_path)
        mock_git.has_uncommitted_changes.return_value = True
        assert cmd_abandon(parse("abandon", "6"), settings) == EXIT_SUCCESS
        mock_manager.return_value.release.assert_not_called()
        assert "kept" in capsys.readouterr().out

    @patch("phaseflow.commands.abandon.git")
    @patch("phaseflow.commands.abandon.WorkspaceManager")
    def test_force_removes(self, mock_manager, mock_git, settings, store, tmp_path):
        store.ensure_issue(6, "x")
        mock_manager.return_value.find.return_value = MagicMock(path=tmp_path)
        mock_git.has_uncommitted_changes.return_value = True
        cmd_abandon(parse("abandon", "6", "--force"), settings)
        mock_manager.return_value.release.assert_called_once()


class TestRebuildCommand:

    def test_corrupt_without_issues(self, settings, capsys):
        settings.state_path.parent.mkdir(parents=True)
        settings.state_path.write_text("nope")
        assert cmd_rebuild(parse("rebuild"), settings) == EXIT_CONFIG_ERROR

    @patch("phaseflow.commands.rebuild.Tracker")
    def test_named_issues(self, mock_tracker_cls, settings, capsys):
        tracker = MagicMock()
        tracker.issue.return_value = IssueInfo(number=2, title="Two", body="", labels=[])
        tracker.comments.return_value = CommentsResult([])
        mock_tracker_cls.return_value = tracker
        settings.state_path.parent.mkdir(parents=True)
        settings.state_path.write_text("nope")

        assert cmd_rebuild(parse("rebuild", "2"), settings) == EXIT_SUCCESS
        assert "Rebuilt 1 issue(s)" in capsys.readouterr().out
