"""
Phase markers embedded in tracker comments.

A marker is an HTML comment carrying a small JSON payload:

    <!-- PHASEFLOW_PHASE: {"phase":"implement","status":"completed","timestamp":"..."} -->

Comments are multi-author free text, so parsing is a set of pure functions
(text in, ordered markers out). Code regions are stripped first so that a
marker quoted inside a fenced example is never mistaken for a live one.
"""

import json
import logging
import re

from phaseflow.lib.constants import MARKER_PREFIX
from phaseflow.lib.types import Phase, PhaseMarker, PhaseStatus, parse_phase, utc_now
from phaseflow.lib.validate import is_valid

logger = logging.getLogger(__name__)

FENCED_BLOCK_PATTERN = re.compile(r'`{3,}[\s\S]*?`{3,}|~{3,}[\s\S]*?~{3,}')
INLINE_CODE_PATTERN = re.compile(r'`[^`\n]+`')
MARKER_PATTERN = re.compile(r'<!-- ' + MARKER_PREFIX + r': (\{[^}]+\}) -->')

# Error text is truncated so a marker stays a one-line comment
MAX_MARKER_ERROR = 200


def strip_code_regions(text: str) -> str:
    """Remove fenced blocks first, then inline code spans."""
    text = FENCED_BLOCK_PATTERN.sub("", text)
    return INLINE_CODE_PATTERN.sub("", text)


def parse_markers(text: str) -> list[PhaseMarker]:
    """Extract live markers from one comment body, in order of appearance.

    Malformed JSON, unknown phase names and invalid statuses are skipped.
    """
    markers = []
    for match in MARKER_PATTERN.finditer(strip_code_regions(text)):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue

        phase = parse_phase(str(payload.get("phase", "")))
        if phase is None:
            continue
        payload["phase"] = phase.value
        if not is_valid(payload, "marker"):
            continue

        markers.append(PhaseMarker(
            phase=phase,
            status=PhaseStatus(payload["status"]),
            timestamp=payload["timestamp"],
            error=payload.get("error"),
        ))
    return markers


def parse_comment_markers(comments: list[str]) -> list[PhaseMarker]:
    """Markers across a whole thread, comments in chronological order."""
    markers = []
    for body in comments:
        markers.extend(parse_markers(body))
    return markers


def latest_statuses(comments: list[str]) -> dict[Phase, PhaseMarker]:
    """Most recent marker per phase.

    Later timestamps win; on equal timestamps the later marker in the thread
    wins.
    """
    latest: dict[Phase, PhaseMarker] = {}
    for marker in parse_comment_markers(comments):
        current = latest.get(marker.phase)
        if current is None or marker.timestamp >= current.timestamp:
            latest[marker.phase] = marker
    return latest


def completed_phases(comments: list[str]) -> set[Phase]:
    """Phases whose latest marker says completed."""
    return {
        phase for phase, marker in latest_statuses(comments).items()
        if marker.status == PhaseStatus.COMPLETED
    }


def filter_resumed_phases(phases: list[Phase], completed: set[Phase]) -> tuple[list[Phase], list[Phase]]:
    """Split a plan into (phases still to run, phases skipped as already done)."""
    remaining = [p for p in phases if p not in completed]
    skipped = [p for p in phases if p in completed]
    return remaining, skipped


def format_marker(phase: Phase, status: PhaseStatus, error: str | None = None,
                  timestamp: str | None = None) -> str:
    """Render the HTML comment for a marker."""
    marker = PhaseMarker(phase=phase, status=status, timestamp=timestamp or utc_now())
    if error:
        # Braces would end the payload early for MARKER_PATTERN
        cleaned = error.replace("{", "(").replace("}", ")").replace("-->", "->").strip()
        marker.error = cleaned[:MAX_MARKER_ERROR]
    return f"<!-- {MARKER_PREFIX}: {json.dumps(marker.to_dict(), separators=(',', ':'))} -->"


STATUS_HEADLINES = {
    PhaseStatus.COMPLETED: "completed",
    PhaseStatus.FAILED: "failed",
    PhaseStatus.SKIPPED: "skipped",
    PhaseStatus.IN_PROGRESS: "started",
    PhaseStatus.PENDING: "pending",
}


def format_marker_comment(issue: int, phase: Phase, status: PhaseStatus,
                          error: str | None = None) -> str:
    """Full comment body: a human-readable line followed by the marker."""
    line = f"**phaseflow**: phase `{phase.value}` {STATUS_HEADLINES[status]} for #{issue}"
    if error:
        line += f"\n\n> {error.splitlines()[0][:MAX_MARKER_ERROR]}"
    return f"{line}\n\n{format_marker(phase, status, error)}"


class Resumer:
    """Completed phases for an issue, read from its tracker thread."""

    def __init__(self, tracker):
        self.tracker = tracker

    def detect(self, issue: int, comments=None) -> set[Phase]:
        """
        Phases whose latest marker says completed.

        comments is a CommentsResult already fetched by the caller; when
        omitted the thread is fetched here. An unreachable tracker yields an
        empty set so the run starts fresh.
        """
        if comments is None:
            comments = self.tracker.comments(issue)
        if comments.error:
            logger.warning(f"#{issue}: tracker unreachable ({comments.error}); starting fresh")
            return set()
        return completed_phases(comments.comments)
