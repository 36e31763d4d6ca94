"""Tests for phaseflow.lib.github module."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

from phaseflow.lib.github import (
    Tracker,
    check_gh_available,
    create_pr,
    find_pr_for_branch,
    get_issue,
    get_issue_comments,
    get_pr_state,
)

REPO = Path("/repo")


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestGetIssue:
    """Issue lookup degrades to a placeholder."""

    @patch("phaseflow.lib.github.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps({
            "title": "Add export",
            "body": "Depends on #3",
            "labels": [{"name": "bug"}, {"name": "ui"}],
        }))
        info = get_issue(REPO, 12)
        assert info.title == "Add export"
        assert info.labels == ["bug", "ui"]
        assert info.error is None

    @patch("phaseflow.lib.github.subprocess.run")
    def test_failure_placeholder_title(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="HTTP 404: Not Found")
        info = get_issue(REPO, 12)
        assert info.title == "Issue #12"
        assert info.error == "HTTP 404: Not Found"

    @patch("phaseflow.lib.github.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=30)
        assert get_issue(REPO, 12).error == "GitHub API timeout"

    @patch("phaseflow.lib.github.subprocess.run")
    def test_gh_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        assert "not found" in get_issue(REPO, 12).error


class TestComments:

    @patch("phaseflow.lib.github.subprocess.run")
    def test_bodies(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps(["first", "", "second"]))
        assert get_issue_comments(REPO, 5).comments == ["first", "second"]

    @patch("phaseflow.lib.github.subprocess.run")
    def test_error(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="HTTP 502")
        result = get_issue_comments(REPO, 5)
        assert result.comments == []
        assert result.error == "HTTP 502"


class TestPullRequests:

    @patch("phaseflow.lib.github.subprocess.run")
    def test_create_pr_parses_number(self, mock_run):
        mock_run.return_value = completed(stdout="https://github.com/o/r/pull/41\n")
        ok, url, number = create_pr(REPO, "feature/12-x", "main", "Add export", "Closes #12")
        assert ok
        assert url == "https://github.com/o/r/pull/41"
        assert number == 41
        args = mock_run.call_args[0][0]
        assert args[:2] == ["gh", "pr"]
        assert "--head" in args and "feature/12-x" in args

    @patch("phaseflow.lib.github.subprocess.run")
    def test_create_pr_failure(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="already exists")
        ok, message, number = create_pr(REPO, "b", "main", "t", "b")
        assert not ok
        assert "already exists" in message
        assert number is None

    @patch("phaseflow.lib.github.subprocess.run")
    def test_find_pr(self, mock_run):
        mock_run.return_value = completed(stdout='{"number": 7, "url": "https://github.com/o/r/pull/7"}')
        assert find_pr_for_branch(REPO, "feature/1-x").number == 7

        mock_run.return_value = completed(returncode=1, stderr="no pull requests found")
        assert find_pr_for_branch(REPO, "feature/1-x") is None

    @patch("phaseflow.lib.github.subprocess.run")
    def test_pr_state(self, mock_run):
        mock_run.return_value = completed(stdout="merged\n")
        assert get_pr_state(REPO, 7) == ("MERGED", None)


class TestAvailability:

    @patch("phaseflow.lib.github.subprocess.run")
    def test_not_authenticated(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="You are not logged in")
        ok, message = check_gh_available(REPO)
        assert not ok
        assert "gh auth login" in message

    @patch("phaseflow.lib.github.subprocess.run")
    def test_not_installed(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        ok, message = check_gh_available(REPO)
        assert not ok
        assert "cli.github.com" in message


class TestTracker:

    @patch("phaseflow.lib.github.subprocess.run")
    def test_runs_in_repo(self, mock_run):
        mock_run.return_value = completed(stdout="[]")
        Tracker(REPO).comments(3)
        assert mock_run.call_args.kwargs["cwd"] == "/repo"
