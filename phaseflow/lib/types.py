"""
Shared data types for phaseflow.

Phase names and statuses are closed enumerations; consumers match on them
exhaustively instead of passing raw strings around. Records serialize to the
camelCase layout of the state document (see schemas/state.schema.json).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Phase(str, Enum):
    """Pipeline phases, in canonical execution order."""
    PLAN = "plan"
    SECURITY_REVIEW = "security-review"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    REVIEW = "review"
    MERGE = "merge"
    LOOP = "loop"  # Fix step of the quality loop, never part of a plan


PHASE_ORDER = [
    Phase.PLAN,
    Phase.SECURITY_REVIEW,
    Phase.IMPLEMENT,
    Phase.VERIFY,
    Phase.REVIEW,
    Phase.MERGE,
]

DEFAULT_PHASES = [Phase.PLAN, Phase.IMPLEMENT, Phase.REVIEW, Phase.MERGE]

# Phases whose semantic failure is handed to the quality loop
REVIEW_PHASES = frozenset({Phase.REVIEW})

# Phases executed in-process rather than through an external command
BUILTIN_PHASES = frozenset({Phase.MERGE})


def parse_phase(name: str) -> Phase | None:
    """Map a phase name (or a legacy alias) to a Phase, or None if unknown."""
    name = name.strip().lower()
    alias = PHASE_ALIASES.get(name, name)
    try:
        return Phase(alias)
    except ValueError:
        return None


# Names used by planning comments written for older pipelines
PHASE_ALIASES = {
    "spec": "plan",
    "exec": "implement",
    "test": "verify",
    "testgen": "verify",
    "qa": "review",
    "pr": "merge",
}


def sort_phases(phases) -> list[Phase]:
    """Return phases de-duplicated and in canonical order."""
    unique = set(phases)
    return [p for p in PHASE_ORDER if p in unique]


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_PHASE_STATUSES = frozenset({
    PhaseStatus.COMPLETED,
    PhaseStatus.FAILED,
    PhaseStatus.SKIPPED,
})


class IssueStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_REVIEW_GATE = "waiting_for_review_gate"
    READY_FOR_MERGE = "ready_for_merge"
    BLOCKED = "blocked"
    MERGED = "merged"
    ABANDONED = "abandoned"


# Statuses the scheduler skips unless forced
SKIP_STATUSES = frozenset({
    IssueStatus.READY_FOR_MERGE,
    IssueStatus.MERGED,
    IssueStatus.ABANDONED,
})

# Statuses that count as a successful end of a run
SUCCESS_STATUSES = frozenset({
    IssueStatus.READY_FOR_MERGE,
    IssueStatus.MERGED,
})


class FailureKind(str, Enum):
    """Which bucket a failure falls in, for user-facing reporting."""
    TRANSIENT = "transient"  # Invocation mechanism failed; retried automatically
    SEMANTIC = "semantic"  # Phase reported failure; needs the quality loop or a human
    WORKSPACE = "workspace"  # Conflict or protected branch; never auto-resolved
    STORE = "store"  # State document unreadable; rebuilt from markers
    TRACKER = "tracker"  # Tracker unreachable; degraded to the safe default


@dataclass
class PhaseRecord:
    """Progress of one phase for one issue."""
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    iteration: int | None = None  # Only meaningful for the loop phase

    def to_dict(self) -> dict:
        data = {"status": self.status.value}
        if self.started_at:
            data["startedAt"] = self.started_at
        if self.completed_at:
            data["completedAt"] = self.completed_at
        if self.error:
            data["error"] = self.error
        if self.iteration is not None:
            data["iteration"] = self.iteration
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseRecord":
        return cls(
            status=PhaseStatus(data["status"]),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            error=data.get("error"),
            iteration=data.get("iteration"),
        )


@dataclass
class PRRef:
    number: int
    url: str


@dataclass
class ACSummary:
    """Acceptance-criteria counts. Individual items are not tracked here."""
    met: int = 0
    not_met: int = 0
    pending: int = 0
    blocked: int = 0

    def to_dict(self) -> dict:
        return {"met": self.met, "notMet": self.not_met, "pending": self.pending, "blocked": self.blocked}

    @classmethod
    def from_dict(cls, data: dict) -> "ACSummary":
        return cls(
            met=data.get("met", 0),
            not_met=data.get("notMet", 0),
            pending=data.get("pending", 0),
            blocked=data.get("blocked", 0),
        )


@dataclass
class LoopState:
    enabled: bool = False
    iteration: int = 0
    max_iterations: int = 3

    @property
    def exhausted(self) -> bool:
        return self.iteration >= self.max_iterations


@dataclass
class IssueRecord:
    """Persisted record of one tracked issue."""
    number: int
    title: str
    status: IssueStatus = IssueStatus.NOT_STARTED
    current_phase: Phase | None = None
    phases: dict[Phase, PhaseRecord] = field(default_factory=dict)
    pr: PRRef | None = None
    worktree: str | None = None
    branch: str | None = None
    ac: ACSummary | None = None
    loop: LoopState = field(default_factory=LoopState)
    session_id: str | None = None
    created_at: str = field(default_factory=utc_now)
    last_activity: str = field(default_factory=utc_now)
    merged_at: str | None = None
    abandoned_at: str | None = None
    gate_paused: bool = False

    def phase(self, phase: Phase) -> PhaseRecord | None:
        return self.phases.get(phase)

    def to_dict(self) -> dict:
        data = {
            "number": self.number,
            "title": self.title,
            "status": self.status.value,
            "phases": {p.value: rec.to_dict() for p, rec in self.phases.items()},
            "loop": {
                "enabled": self.loop.enabled,
                "iteration": self.loop.iteration,
                "maxIterations": self.loop.max_iterations,
            },
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "gatePaused": self.gate_paused,
        }
        if self.current_phase:
            data["currentPhase"] = self.current_phase.value
        if self.pr:
            data["pr"] = {"number": self.pr.number, "url": self.pr.url}
        if self.worktree:
            data["worktree"] = self.worktree
        if self.branch:
            data["branch"] = self.branch
        if self.ac:
            data["acceptanceCriteria"] = self.ac.to_dict()
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.merged_at:
            data["mergedAt"] = self.merged_at
        if self.abandoned_at:
            data["abandonedAt"] = self.abandoned_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IssueRecord":
        loop = data.get("loop") or {}
        pr = data.get("pr")
        ac = data.get("acceptanceCriteria")
        current = data.get("currentPhase")
        return cls(
            number=data["number"],
            title=data.get("title", ""),
            status=IssueStatus(data.get("status", IssueStatus.NOT_STARTED.value)),
            current_phase=Phase(current) if current else None,
            phases={Phase(name): PhaseRecord.from_dict(rec) for name, rec in data.get("phases", {}).items()},
            pr=PRRef(number=pr["number"], url=pr["url"]) if pr else None,
            worktree=data.get("worktree"),
            branch=data.get("branch"),
            ac=ACSummary.from_dict(ac) if ac else None,
            loop=LoopState(
                enabled=loop.get("enabled", False),
                iteration=loop.get("iteration", 0),
                max_iterations=loop.get("maxIterations", 3),
            ),
            session_id=data.get("sessionId"),
            created_at=data.get("createdAt") or utc_now(),
            last_activity=data.get("lastActivity") or utc_now(),
            merged_at=data.get("mergedAt"),
            abandoned_at=data.get("abandonedAt"),
            gate_paused=data.get("gatePaused", False),
        )


@dataclass
class PhaseMarker:
    """A phase outcome as posted to (and read back from) the tracker thread."""
    phase: Phase
    status: PhaseStatus
    timestamp: str
    error: str | None = None

    def to_dict(self) -> dict:
        data = {"phase": self.phase.value, "status": self.status.value, "timestamp": self.timestamp}
        if self.error:
            data["error"] = self.error
        return data
