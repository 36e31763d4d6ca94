"""Tests for phaseflow.git helpers."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

from phaseflow.git import (
    get_merged_branches,
    has_unpushed_commits,
    is_conflict,
    list_worktrees,
    log_mentions_issue,
    run_git,
)
from phaseflow.git.runner import GitResult

REPO = Path("/repo")


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestRunGit:
    """run_git never raises."""

    @patch("phaseflow.git.runner.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = completed(stdout="main\n")
        result = run_git(["branch", "--show-current"], REPO)
        assert result.success
        assert mock_run.call_args[0][0] == ["git", "-C", "/repo", "branch", "--show-current"]

    @patch("phaseflow.git.runner.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["fetch"], REPO)
        assert result.timed_out
        assert not result.success

    @patch("phaseflow.git.runner.subprocess.run")
    def test_missing_git(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        result = run_git(["status"], REPO)
        assert result.returncode == -1
        assert "Failed to run git" in result.stderr


class TestWorktreeList:

    @patch("phaseflow.git.worktree.run_git")
    def test_parses_porcelain(self, mock_git):
        mock_git.return_value = GitResult(0, (
            "worktree /repo\nHEAD aaa\nbranch refs/heads/main\n\n"
            "worktree /wt/feature/3-x\nHEAD bbb\nbranch refs/heads/feature/3-x\n\n"
            "worktree /wt/detached\nHEAD ccc\ndetached\n"
        ), "")
        entries = list_worktrees(REPO)
        assert [e.branch for e in entries] == ["main", "feature/3-x", None]
        assert entries[1].path == Path("/wt/feature/3-x")

    @patch("phaseflow.git.worktree.run_git")
    def test_failure_is_empty(self, mock_git):
        mock_git.return_value = GitResult(128, "", "not a git repository")
        assert list_worktrees(REPO) == []


class TestBranches:

    @patch("phaseflow.git.branch.run_git")
    def test_merged_branches(self, mock_git):
        mock_git.return_value = GitResult(0, "main\norigin/feature/3-x\n", "")
        assert get_merged_branches(REPO, "origin/main") == ["main", "feature/3-x"]

    @patch("phaseflow.git.branch.run_git")
    def test_log_mentions_issue(self, mock_git):
        mock_git.return_value = GitResult(0, "abc123 Add export (#12)\n", "")
        assert log_mentions_issue(REPO, "origin/main", 12)
        assert "#12\\b" in mock_git.call_args[0][0]

        mock_git.return_value = GitResult(0, "", "")
        assert not log_mentions_issue(REPO, "origin/main", 12)


class TestStatus:

    @patch("phaseflow.git.status.run_git")
    def test_unpushed_with_upstream(self, mock_git):
        mock_git.return_value = GitResult(0, "abc123 wip\n", "")
        assert has_unpushed_commits(REPO)

    @patch("phaseflow.git.status.run_git")
    def test_never_pushed_branch(self, mock_git):
        mock_git.side_effect = [
            GitResult(128, "", "no upstream configured"),
            GitResult(0, "abc123 local only\n", ""),
        ]
        assert has_unpushed_commits(REPO)

    @patch("phaseflow.git.status.run_git")
    def test_clean(self, mock_git):
        mock_git.side_effect = [GitResult(128, "", "no upstream"), GitResult(0, "", "")]
        assert not has_unpushed_commits(REPO)


class TestConflict:

    def test_conflict_detected(self):
        assert is_conflict(GitResult(1, "", "CONFLICT (content): Merge conflict in app.py"))
        assert is_conflict(GitResult(1, "error: could not apply abc123", ""))

    def test_other_failure(self):
        assert not is_conflict(GitResult(1, "", "fatal: invalid upstream 'origin/nope'"))
