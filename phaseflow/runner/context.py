"""
Run options and per-issue results shared by the pipeline and scheduler.
"""

from dataclasses import dataclass, field
from enum import Enum

from phaseflow.lib.types import IssueStatus, Phase, PRRef, SUCCESS_STATUSES
from phaseflow.runner.phase_runner import PhaseOutcome


class ExecutionMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    CHAIN = "chain"


@dataclass
class RunOptions:
    """Options for one `phaseflow run` invocation."""
    phases: list[Phase] | None = None  # Explicit phase subset; None means resolve from signals
    quality_loop: bool | None = None  # None means resolve from labels/planning/content
    max_iterations: int | None = None
    mode: ExecutionMode = ExecutionMode.PARALLEL
    batches: list[list[int]] | None = None
    base_branch: str | None = None  # New worktrees start here; in a chain, the first link's parent
    resume: bool = False
    force: bool = False
    dry_run: bool = False
    create_pr: bool = True
    rebase: bool = True
    retry: bool = True
    review_gate: bool = False
    timeout: int | None = None
    max_workers: int = 4

    @property
    def chain(self) -> bool:
        return self.mode == ExecutionMode.CHAIN


@dataclass
class IssuePlan:
    """What a pipeline would do for one issue; also the dry-run output."""
    issue: int
    title: str
    phases: list[Phase]  # Phases that will run, merge included
    skipped: list[Phase] = field(default_factory=list)  # Already completed (resume)
    quality_loop: bool = False
    reasons: list[str] = field(default_factory=list)
    depends_on: list[int] = field(default_factory=list)


@dataclass
class IssueResult:
    issue: int
    status: IssueStatus | None = None
    outcomes: list[PhaseOutcome] = field(default_factory=list)
    failed: PhaseOutcome | None = None
    branch: str | None = None
    pr: PRRef | None = None
    loop_iterations: int = 0
    error: str | None = None  # Failures outside any phase (workspace, tracker)

    @property
    def success(self) -> bool:
        return self.status in SUCCESS_STATUSES
