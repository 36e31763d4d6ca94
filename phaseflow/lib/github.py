"""
GitHub integration via the gh CLI.

The tracker is an external collaborator: every call returns an error value
instead of raising, and callers degrade to their conservative default
(resumption starts fresh, reconciliation assumes "not merged").
"""

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import NamedTuple

from phaseflow.lib.types import PRRef

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30
GH_NOT_FOUND = "GitHub CLI (gh) not found"

PR_URL_PATTERN = re.compile(r'/pull/(\d+)')


class GhResult(NamedTuple):
    ok: bool
    stdout: str
    error: str | None = None


def _run_gh(args: list[str], repo_path: Path, timeout: int = GH_TIMEOUT_SECONDS) -> GhResult:
    """Run a gh command in repo_path, mapping every failure to an error string."""
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            cwd=str(repo_path),
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return GhResult(False, "", "GitHub API timeout")
    except FileNotFoundError:
        return GhResult(False, "", GH_NOT_FOUND)
    except (subprocess.SubprocessError, OSError) as e:
        return GhResult(False, "", str(e))

    if result.returncode != 0:
        return GhResult(False, result.stdout, result.stderr.strip() or f"gh exited {result.returncode}")
    return GhResult(True, result.stdout)


class IssueInfo(NamedTuple):
    """Tracker view of one issue."""
    number: int
    title: str
    body: str
    labels: list[str]
    error: str | None = None


def get_issue(repo_path: Path, number: int) -> IssueInfo:
    """Fetch title, body and labels. On failure, title falls back to "Issue #N"."""
    fallback = IssueInfo(number=number, title=f"Issue #{number}", body="", labels=[])
    result = _run_gh(["issue", "view", str(number), "--json", "title,body,labels"], repo_path)
    if not result.ok:
        return fallback._replace(error=result.error)

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        return fallback._replace(error="Invalid JSON from gh")

    labels = [label["name"] if isinstance(label, dict) else str(label) for label in data.get("labels") or []]
    return IssueInfo(
        number=number,
        title=data.get("title") or fallback.title,
        body=data.get("body") or "",
        labels=labels,
    )


class CommentsResult(NamedTuple):
    comments: list[str]
    error: str | None = None


def get_issue_comments(repo_path: Path, number: int) -> CommentsResult:
    """Comment bodies of an issue, oldest first."""
    result = _run_gh(
        ["issue", "view", str(number), "--json", "comments", "--jq", "[.comments[].body]"],
        repo_path,
    )
    if not result.ok:
        return CommentsResult([], result.error)
    try:
        bodies = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return CommentsResult([], "Invalid JSON from gh")
    return CommentsResult([str(b) for b in bodies if b])


def post_comment(repo_path: Path, number: int, body: str) -> tuple[bool, str | None]:
    """
    Append a comment to an issue thread.

    Returns: (success, error)
    """
    result = _run_gh(["issue", "comment", str(number), "--body", body], repo_path)
    return result.ok, result.error


def find_pr_for_branch(repo_path: Path, branch: str) -> PRRef | None:
    """An existing PR whose head is branch, or None."""
    result = _run_gh(["pr", "view", branch, "--json", "number,url"], repo_path)
    if not result.ok:
        return None
    try:
        data = json.loads(result.stdout)
        return PRRef(number=int(data["number"]), url=data["url"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


def create_pr(
    repo_path: Path,
    branch: str,
    base_branch: str,
    title: str,
    body: str,
) -> tuple[bool, str, int | None]:
    """
    Create a GitHub PR for a branch that is already pushed.

    Returns: (success, url_or_error, pr_number)
    """
    result = _run_gh(
        ["pr", "create", "--base", base_branch, "--head", branch, "--title", title, "--body", body],
        repo_path,
    )
    if not result.ok:
        return False, f"Failed to create PR: {result.error}", None

    pr_url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
    match = PR_URL_PATTERN.search(pr_url)
    return True, pr_url, int(match.group(1)) if match else None


def get_pr_state(repo_path: Path, pr: int | str) -> tuple[str | None, str | None]:
    """
    State of a PR by number or head branch ("OPEN", "CLOSED", "MERGED").

    Returns: (state, error)
    """
    result = _run_gh(["pr", "view", str(pr), "--json", "state", "-q", ".state"], repo_path)
    if not result.ok:
        return None, result.error
    return result.stdout.strip().upper() or None, None


def check_gh_available(repo_path: Path) -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    result = _run_gh(["auth", "status"], repo_path, timeout=10)
    if not result.ok:
        if result.error == GH_NOT_FOUND:
            return False, f"{GH_NOT_FOUND}\n  Install: https://cli.github.com/"
        return False, f"GitHub CLI not authenticated or unreachable ({result.error})\n  Run: gh auth login"
    return True, ""


class Tracker:
    """The issue tracker bound to one repository.

    Groups the module-level gh helpers so the store, the detector and the
    pipeline can share one collaborator (and tests can swap it out).
    """

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path

    def issue(self, number: int) -> IssueInfo:
        return get_issue(self.repo_path, number)

    def comments(self, number: int) -> CommentsResult:
        return get_issue_comments(self.repo_path, number)

    def comment(self, number: int, body: str) -> tuple[bool, str | None]:
        return post_comment(self.repo_path, number, body)

    def find_pr(self, branch: str) -> PRRef | None:
        return find_pr_for_branch(self.repo_path, branch)

    def create_pr(self, branch: str, base_branch: str, title: str, body: str) -> tuple[bool, str, int | None]:
        return create_pr(self.repo_path, branch, base_branch, title, body)

    def pr_state(self, pr: int | str) -> tuple[str | None, str | None]:
        return get_pr_state(self.repo_path, pr)
