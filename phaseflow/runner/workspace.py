"""
Workspace lifecycle: one git worktree and branch per issue.

    acquire           create, or reuse after a freshness check
    guard             refuse to mutate a protected branch
    pre_merge_rebase  rebase onto the remote default branch, aborting on conflict
    publish           push and open (or find) the pull request
    release           remove the worktree and its branch after merge

Local work always wins over staleness: a workspace with uncommitted or
unpushed changes is never destroyed, however far behind it is.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from phaseflow import git
from phaseflow.lib.config import Settings
from phaseflow.lib.types import PRRef

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "feature"
MAX_SLUG_LENGTH = 50


class WorkspaceError(Exception):
    """A workspace could not be created or updated."""
    pass


class ProtectedBranchError(WorkspaceError):
    """A phase would mutate a protected branch directly."""

    def __init__(self, path: Path, branch: str):
        self.path = path
        self.branch = branch
        super().__init__(f"Refusing to run in {path}: '{branch}' is a protected branch")


class WorkspaceState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"  # Behind the default branch, kept because it holds local work
    DIRTY = "dirty"  # Uncommitted or unpushed changes
    DESTROYED = "destroyed"


@dataclass
class Freshness:
    behind: int
    uncommitted: bool
    unpushed: bool

    @property
    def has_local_work(self) -> bool:
        return self.uncommitted or self.unpushed


@dataclass
class Workspace:
    issue: int
    path: Path
    branch: str
    base_ref: str
    state: WorkspaceState = WorkspaceState.FRESH
    created: bool = False  # False when an existing worktree was reused


@dataclass
class RebaseResult:
    performed: bool
    success: bool
    error: str | None = None


def slugify(title: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', "-", title.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-")


def branch_name(issue: int, title: str) -> str:
    slug = slugify(title)
    return f"{BRANCH_PREFIX}/{issue}-{slug}" if slug else f"{BRANCH_PREFIX}/{issue}"


def issue_branch_prefix(issue: int) -> str:
    return f"{BRANCH_PREFIX}/{issue}-"


class WorkspaceManager:
    """Creates, checks and destroys per-issue worktrees of one repository."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.repo = settings.repo_root

    def worktree_path(self, branch: str) -> Path:
        return self.settings.worktrees_dir / branch

    def find(self, issue: int) -> git.WorktreeEntry | None:
        """The existing worktree for an issue, matched by branch name."""
        prefix = issue_branch_prefix(issue)
        for entry in git.list_worktrees(self.repo):
            if entry.branch and (entry.branch.startswith(prefix) or entry.branch == f"{BRANCH_PREFIX}/{issue}"):
                return entry
        return None

    def evaluate_freshness(self, path: Path) -> Freshness:
        """Commits behind the remote default branch, plus local-work flags."""
        remote_default = self.settings.remote_default
        fetch = git.fetch(path, self.settings.remote, self.settings.default_branch)
        if not fetch.success:
            logger.warning(f"Fetch failed in {path}: {fetch.stderr.strip()}; using cached refs")

        behind = 0
        merge_base = git.get_merge_base(path, "HEAD", remote_default)
        if merge_base:
            behind = git.get_commit_count(path, f"{merge_base}..{remote_default}")

        return Freshness(
            behind=behind,
            uncommitted=git.has_uncommitted_changes(path),
            unpushed=git.has_unpushed_commits(path),
        )

    def acquire(self, issue: int, title: str, base_ref: str | None = None, chain: bool = False) -> Workspace:
        """
        Return a usable workspace for an issue.

        Args:
            issue: Issue number
            title: Issue title (used for the branch name of a new workspace)
            base_ref: Branch a new worktree starts from (the chain parent or an
                explicit --base); None means the remote default branch.
            chain: base_ref is the previous chain link. A reused worktree is
                rebased onto it instead of being recreated when stale.

        Raises:
            WorkspaceError: if a new worktree cannot be created
        """
        existing = self.find(issue)
        if existing is not None and existing.path.exists():
            workspace = self._reuse(issue, existing, base_ref, chain)
            if workspace is not None:
                return workspace
        return self._create(issue, title, base_ref)

    def _reuse(self, issue: int, entry: git.WorktreeEntry, base_ref: str | None, chain: bool) -> Workspace | None:
        """Keep an existing worktree, or destroy it and return None when stale and clean."""
        freshness = self.evaluate_freshness(entry.path)
        stale = freshness.behind > self.settings.stale_threshold

        if stale and not freshness.has_local_work and not chain:
            logger.info(
                f"#{issue}: worktree is {freshness.behind} commits behind "
                f"{self.settings.remote_default}; recreating"
            )
            self._destroy(entry.path, entry.branch)
            return None

        if freshness.has_local_work:
            state = WorkspaceState.DIRTY
            if stale:
                logger.warning(
                    f"#{issue}: worktree is {freshness.behind} commits behind but has "
                    f"uncommitted or unpushed work; keeping it"
                )
        else:
            state = WorkspaceState.STALE if stale else WorkspaceState.FRESH

        workspace = Workspace(
            issue=issue,
            path=entry.path,
            branch=entry.branch,
            base_ref=base_ref or self.settings.remote_default,
            state=state,
            created=False,
        )

        if chain and base_ref is not None:
            self._rebase_onto_parent(workspace, base_ref)

        logger.info(f"#{issue}: reusing worktree {entry.path} ({state.value})")
        return workspace

    def _rebase_onto_parent(self, workspace: Workspace, base_ref: str) -> None:
        """Chain mode: keep a reused worktree on top of the previous issue's branch."""
        if git.has_uncommitted_changes(workspace.path):
            logger.warning(f"#{workspace.issue}: uncommitted changes, not rebasing onto {base_ref}")
            return
        result = git.rebase(workspace.path, base_ref)
        if result.success:
            return
        if git.is_conflict(result):
            git.rebase_abort(workspace.path)
            logger.warning(
                f"#{workspace.issue}: rebase onto {base_ref} hit conflicts; aborted, "
                f"branch left as it was"
            )
        else:
            logger.warning(f"#{workspace.issue}: rebase onto {base_ref} failed: {result.stderr.strip()}")

    def _create(self, issue: int, title: str, base_ref: str | None) -> Workspace:
        branch = branch_name(issue, title)
        path = self.worktree_path(branch)
        path.parent.mkdir(parents=True, exist_ok=True)

        if base_ref is None:
            fetch = git.fetch(self.repo, self.settings.remote, self.settings.default_branch)
            if not fetch.success:
                logger.warning(f"Fetch failed: {fetch.stderr.strip()}; branching from cached refs")
        base = base_ref or self.settings.remote_default

        if git.branch_exists(self.repo, branch):
            result = git.add_worktree_existing_branch(self.repo, path, branch)
        else:
            result = git.add_worktree(self.repo, path, branch, base)
        if not result.success:
            raise WorkspaceError(f"Failed to create worktree for #{issue}: {result.stderr.strip()}")

        logger.info(f"#{issue}: created worktree {path} on {branch} from {base}")
        return Workspace(issue=issue, path=path, branch=branch, base_ref=base, created=True)

    def _destroy(self, path: Path, branch: str | None) -> None:
        result = git.remove_worktree(self.repo, path)
        if not result.success:
            logger.warning(f"Failed to remove worktree {path}: {result.stderr.strip()}")
        if branch and git.branch_exists(self.repo, branch):
            git.delete_branch(self.repo, branch)

    def guard(self, workspace: Workspace) -> None:
        """Raise ProtectedBranchError if the workspace is on a protected branch."""
        current = git.get_current_branch(workspace.path)
        if current is None:
            return
        if current in self.settings.protected_branches:
            raise ProtectedBranchError(workspace.path, current)

    def pre_merge_rebase(self, workspace: Workspace) -> RebaseResult:
        """
        Rebase the issue branch onto the freshly fetched default branch.

        Conflicts abort the rebase and leave the branch in its pre-rebase
        state; the caller only gets a warning-level result.
        """
        fetch = git.fetch(workspace.path, self.settings.remote, self.settings.default_branch)
        if not fetch.success:
            return RebaseResult(performed=False, success=False, error=f"fetch failed: {fetch.stderr.strip()}")

        if git.has_uncommitted_changes(workspace.path):
            return RebaseResult(performed=False, success=False, error="uncommitted changes in worktree")

        result = git.rebase(workspace.path, self.settings.remote_default)
        if result.success:
            logger.info(f"#{workspace.issue}: rebased onto {self.settings.remote_default}")
            return RebaseResult(performed=True, success=True)

        if git.is_conflict(result):
            git.rebase_abort(workspace.path)
            error = f"conflicts rebasing onto {self.settings.remote_default}; rebase aborted"
        else:
            error = result.stderr.strip() or "rebase failed"
        logger.warning(f"#{workspace.issue}: {error}")
        return RebaseResult(performed=True, success=False, error=error)

    def checkpoint(self, workspace: Workspace, message: str) -> bool:
        """Commit everything in the worktree (chain mode recovery point)."""
        if not git.has_uncommitted_changes(workspace.path):
            return False
        git.stage_all(workspace.path)
        result = git.commit(workspace.path, message)
        if not result.success:
            logger.warning(f"#{workspace.issue}: checkpoint commit failed: {result.stderr.strip()}")
            return False
        logger.info(f"#{workspace.issue}: {message}")
        return True

    def publish(self, workspace: Workspace, title: str, tracker) -> tuple[PRRef | None, str | None]:
        """
        Push the branch and return its PR, creating one if none exists.

        Returns: (pr, error)
        """
        push = git.push_set_upstream(workspace.path, self.settings.remote, workspace.branch)
        if not push.success:
            return None, f"push failed: {push.stderr.strip()}"

        existing = tracker.find_pr(workspace.branch)
        if existing is not None:
            return existing, None

        body = f"Closes #{workspace.issue}\n\nOpened by phaseflow after review passed."
        ok, url_or_error, number = tracker.create_pr(
            workspace.branch, self.settings.default_branch, f"feat(#{workspace.issue}): {title}", body,
        )
        if not ok:
            return None, url_or_error
        if number is None:
            return None, f"could not parse PR number from '{url_or_error}'"
        return PRRef(number=number, url=url_or_error), None

    def release(self, issue: int, branch: str | None = None) -> bool:
        """Remove an issue's worktree and branch; a branch already gone is fine."""
        entry = self.find(issue)
        if entry is not None:
            result = git.remove_worktree(self.repo, entry.path)
            if not result.success:
                logger.warning(f"#{issue}: failed to remove worktree {entry.path}: {result.stderr.strip()}")
                return False
            branch = branch or entry.branch
        git.prune_worktrees(self.repo)

        if branch and git.branch_exists(self.repo, branch):
            result = git.delete_branch(self.repo, branch)
            if not result.success:
                logger.warning(f"#{issue}: failed to delete branch {branch}: {result.stderr.strip()}")
        return True
