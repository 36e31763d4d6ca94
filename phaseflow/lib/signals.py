"""
Phase selection from issue signals.

Sources, highest priority first:

    FLAG      explicit --phases / --quality-loop on the command line
    LABEL     tracker labels (bug, docs, ui, security, complex, ...)
    PLANNING  a prior planning comment with a "## Recommended Workflow" block
    TITLE     keyword analysis of the issue title
    BODY      keyword analysis of the issue body

An explicit phase list is used as-is. Otherwise a bug or docs label sets the
base list (no plan phase) even over a planning recommendation; without one the
recommendation sets it, falling back to the label defaults. Labels add the
phases they imply, and title/body analysis may only add phases on top.

The quality loop flag is decided by the highest source that states it
explicitly: FLAG, then LABEL ("complex" enables, "no-loop" disables), then
PLANNING ("**Quality Loop:** enabled|disabled"). Title and body keywords can
only enable it, and only when no higher source spoke.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum

from phaseflow.lib.types import Phase, parse_phase, sort_phases

logger = logging.getLogger(__name__)


class SignalSource(IntEnum):
    BODY = 1
    TITLE = 2
    PLANNING = 3
    LABEL = 4
    FLAG = 5


UI_LABELS = ["ui", "frontend", "admin", "web", "browser"]
BUG_LABELS = ["bug", "fix", "hotfix", "patch"]
DOCS_LABELS = ["docs", "documentation", "readme"]
COMPLEX_LABELS = ["complex", "refactor", "breaking", "major"]
SECURITY_LABELS = ["security", "auth", "authentication", "permissions", "admin"]
NO_LOOP_LABELS = ["no-loop", "no-quality-loop"]

STANDARD_PHASES = [Phase.PLAN, Phase.IMPLEMENT, Phase.REVIEW]
SIMPLE_PHASES = [Phase.IMPLEMENT, Phase.REVIEW]

# Marker for signals that enable the quality loop rather than add a phase
LOOP = "quality-loop"


@dataclass
class ContentSignal:
    """A phase (or quality-loop) suggestion derived from issue text."""
    phase: Phase | str  # Phase, or LOOP
    source: SignalSource
    pattern: str
    reason: str


# (pattern, phase, reason)
TITLE_PATTERNS = [
    (r'\bextract\b', Phase.VERIFY, "Component extraction typically requires UI testing"),
    (r'\bcomponent\b', Phase.VERIFY, "Component work typically requires UI testing"),
    (r'\brefactor.*ui\b', Phase.VERIFY, "UI refactoring requires browser testing"),
    (r'\bui\s*(refactor|change|update)\b', Phase.VERIFY, "UI changes require browser testing"),
    (r'\bfrontend\b', Phase.VERIFY, "Frontend work typically requires UI testing"),
    (r'\bdashboard\b', Phase.VERIFY, "Dashboard changes require browser testing"),
    (r'\badmin\s*(page|panel|ui)\b', Phase.VERIFY, "Admin UI changes require browser testing"),
    (r'\bauth(entication|orization)?\b', Phase.SECURITY_REVIEW, "Authentication changes require security review"),
    (r'\bpermissions?\b', Phase.SECURITY_REVIEW, "Permission changes require security review"),
    (r'\bsecurity\b', Phase.SECURITY_REVIEW, "Security-related changes require security review"),
    (r'\broles?\s*(based|access|control)\b', Phase.SECURITY_REVIEW, "Role-based access changes require security review"),
    (r'\baccess\s*control\b', Phase.SECURITY_REVIEW, "Access control changes require security review"),
    (r'\btokens?\b', Phase.SECURITY_REVIEW, "Token handling may require security review"),
    (r'\bpasswords?\b', Phase.SECURITY_REVIEW, "Password handling requires security review"),
    (r'\bcredentials?\b', Phase.SECURITY_REVIEW, "Credential handling requires security review"),
    (r'\brefactor\b', LOOP, "Refactoring benefits from quality loop iterations"),
    (r'\bmigrat(e|ion)\b', LOOP, "Migrations are complex and benefit from quality loop"),
    (r'\brestructur(e|ing)\b', LOOP, "Restructuring benefits from quality loop iterations"),
    (r'\bbreaking\s*change\b', LOOP, "Breaking changes require careful quality validation"),
]

BODY_PATTERNS = [
    (r'\.tsx\b', Phase.VERIFY, "References TSX files"),
    (r'\.jsx\b', Phase.VERIFY, "References JSX files"),
    (r'\bcomponents?/', Phase.VERIFY, "References component directories"),
    (r'\bpages?/', Phase.VERIFY, "References page directories"),
    (r'\bscripts/', Phase.IMPLEMENT, "References script files"),
    (r'\bbin/', Phase.IMPLEMENT, "References CLI entry points"),
    (r'\bcli\b', Phase.IMPLEMENT, "Mentions CLI work"),
    (r'\bauth/', Phase.SECURITY_REVIEW, "References auth directories"),
    (r'\bmiddleware\.ts\b', Phase.SECURITY_REVIEW, "References middleware"),
    (r'\brls\s*(polic|rule)', Phase.SECURITY_REVIEW, "References row-level security"),
    (r'\bserver[-_]?action', Phase.SECURITY_REVIEW, "References server actions"),
    (r'\bbreaking\s*change\b', LOOP, "Mentions breaking changes"),
    (r'\bmajor\s*(refactor|change|update)\b', LOOP, "Mentions major changes"),
    (r'\bcomplex\b', LOOP, "Describes complex work"),
]

RECOMMENDED_WORKFLOW_PATTERN = re.compile(
    r'## Recommended Workflow[\s\S]*?\*\*Phases:\*\*\s*([^\n]+)', re.IGNORECASE
)
QUALITY_LOOP_PATTERN = re.compile(
    r'\*\*Quality Loop:\*\*\s*(enabled|disabled|true|false|yes|no)', re.IGNORECASE
)
PHASE_SEPARATOR = re.compile(r'\s*(?:→|->|,)\s*')


def _matches_any(labels: list[str], keywords: list[str]) -> bool:
    return any(keyword in label for label in labels for keyword in keywords)


@dataclass
class LabelPlan:
    phases: list[Phase]
    simple: bool  # bug/docs labels: the label list replaces any recommendation
    added: list[Phase]  # Phases the labels imply on top of any base list
    loop: bool | None  # None when no label speaks about the loop


def detect_phases_from_labels(labels: list[str]) -> LabelPlan:
    """Derive a default phase list and loop directive from labels."""
    lower = [label.lower() for label in labels]

    simple = _matches_any(lower, BUG_LABELS) or _matches_any(lower, DOCS_LABELS)
    if simple:
        phases = list(SIMPLE_PHASES)
    else:
        phases = list(STANDARD_PHASES)

    added = []
    if _matches_any(lower, UI_LABELS):
        added.append(Phase.VERIFY)
    if _matches_any(lower, SECURITY_LABELS) and Phase.PLAN in phases:
        added.append(Phase.SECURITY_REVIEW)

    # Disable directives are exact so "no-loop" does not also read as "loop"
    if any(label in NO_LOOP_LABELS for label in lower):
        loop = False
    elif _matches_any(lower, COMPLEX_LABELS):
        loop = True
    else:
        loop = None

    return LabelPlan(phases=sort_phases(phases + added), simple=simple, added=added, loop=loop)


@dataclass
class Recommendation:
    phases: list[Phase]
    loop: bool | None


def parse_recommended_workflow(text: str) -> Recommendation | None:
    """Parse a "## Recommended Workflow" block from a planning comment.

    Looks for:
        ## Recommended Workflow
        **Phases:** implement → review
        **Quality Loop:** enabled

    Returns None when there is no block or it names no known phase.
    """
    match = RECOMMENDED_WORKFLOW_PATTERN.search(text)
    if not match:
        return None

    phases = []
    for name in PHASE_SEPARATOR.split(match.group(1).strip()):
        if not name:
            continue
        phase = parse_phase(name.strip("`* "))
        if phase is not None and phase != Phase.LOOP:
            phases.append(phase)
    if not phases:
        return None

    loop_match = QUALITY_LOOP_PATTERN.search(text)
    loop = None
    if loop_match:
        loop = loop_match.group(1).lower() in ("enabled", "true", "yes")

    return Recommendation(phases=sort_phases(phases), loop=loop)


def find_recommendation(comments: list[str]) -> Recommendation | None:
    """The most recent planning recommendation in a comment thread."""
    for body in reversed(comments):
        recommendation = parse_recommended_workflow(body)
        if recommendation:
            return recommendation
    return None


def _analyze(text: str, patterns, source: SignalSource) -> list[ContentSignal]:
    signals = []
    seen = set()
    for pattern, phase, reason in patterns:
        if phase in seen:
            continue
        if re.search(pattern, text, re.IGNORECASE):
            seen.add(phase)
            signals.append(ContentSignal(phase=phase, source=source, pattern=pattern, reason=reason))
    return signals


def analyze_title(title: str) -> list[ContentSignal]:
    return _analyze(title or "", TITLE_PATTERNS, SignalSource.TITLE)


def analyze_body(body: str) -> list[ContentSignal]:
    return _analyze(body or "", BODY_PATTERNS, SignalSource.BODY)


@dataclass
class PhasePlan:
    """Resolved phases and quality-loop setting for one issue."""
    phases: list[Phase]
    quality_loop: bool
    phase_source: SignalSource
    loop_source: SignalSource | None
    reasons: list[str] = field(default_factory=list)


def resolve_plan(
    explicit_phases: list[Phase] | None = None,
    explicit_loop: bool | None = None,
    labels: list[str] | None = None,
    comments: list[str] | None = None,
    title: str = "",
    body: str = "",
) -> PhasePlan:
    """Combine all signal sources into a phase plan (merge and loop excluded)."""
    label_plan = detect_phases_from_labels(labels or [])
    recommendation = find_recommendation(comments or [])
    content = analyze_title(title) + analyze_body(body)
    reasons: list[str] = []

    if explicit_phases:
        phases = sort_phases(p for p in explicit_phases if p not in (Phase.MERGE, Phase.LOOP))
        phase_source = SignalSource.FLAG
    else:
        if label_plan.simple:
            phases = list(label_plan.phases)
            phase_source = SignalSource.LABEL
            if recommendation:
                reasons.append("label overrides planning recommendation")
        elif recommendation:
            phases = list(recommendation.phases)
            phase_source = SignalSource.PLANNING
            for phase in label_plan.added:
                if phase not in phases:
                    phases.append(phase)
                    reasons.append(f"label adds {phase.value}")
        else:
            phases = list(label_plan.phases)
            phase_source = SignalSource.LABEL
        for signal in content:
            if isinstance(signal.phase, Phase) and signal.phase not in phases:
                phases.append(signal.phase)
                reasons.append(f"{signal.source.name.lower()}: {signal.reason}")
        phases = sort_phases(p for p in phases if p not in (Phase.MERGE, Phase.LOOP))

    loop_directives = [
        (SignalSource.FLAG, explicit_loop),
        (SignalSource.LABEL, label_plan.loop),
        (SignalSource.PLANNING, recommendation.loop if recommendation else None),
    ]
    quality_loop = False
    loop_source = None
    for source, value in loop_directives:
        if value is not None:
            quality_loop = value
            loop_source = source
            break
    else:
        for signal in content:
            if signal.phase == LOOP:
                quality_loop = True
                loop_source = signal.source
                reasons.append(f"{signal.source.name.lower()}: {signal.reason}")
                break

    logger.debug(
        f"Resolved phases {[p.value for p in phases]} from {phase_source.name}, "
        f"quality loop={quality_loop} from {loop_source.name if loop_source else 'default'}"
    )
    return PhasePlan(
        phases=phases,
        quality_loop=quality_loop,
        phase_source=phase_source,
        loop_source=loop_source,
        reasons=reasons,
    )
