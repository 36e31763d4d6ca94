"""
Review output utilities.

Extracts the coarse verdict, acceptance-criteria counts and the findings
section from a review phase's output. The review text itself is opaque; only
these three things are read from it.
"""

import logging
import re
from enum import Enum

from phaseflow.lib.types import ACSummary

logger = logging.getLogger(__name__)


class ReviewVerdict(str, Enum):
    READY_FOR_MERGE = "READY_FOR_MERGE"
    AC_MET_BUT_NOT_A_PLUS = "AC_MET_BUT_NOT_A_PLUS"
    AC_NOT_MET = "AC_NOT_MET"
    NEEDS_VERIFICATION = "NEEDS_VERIFICATION"


FAVORABLE_VERDICTS = frozenset({
    ReviewVerdict.READY_FOR_MERGE,
    ReviewVerdict.NEEDS_VERIFICATION,
})

VERDICT_PATTERN = re.compile(
    r'\b(READY_FOR_MERGE|AC_MET_BUT_NOT_A_PLUS|AC_NOT_MET|NEEDS_VERIFICATION)\b'
)

# "AC-1: MET", "- [x] AC-2 ... NOT_MET", "AC-3 | PENDING"
AC_LINE_PATTERN = re.compile(
    r'\bAC-\d+\b[^\n]*?\b(NOT[_ ]MET|MET|PENDING|BLOCKED)\b', re.IGNORECASE
)

FINDINGS_HEADING = re.compile(
    r'^#{1,4}\s*(Findings|Issues Found|Required Fixes|Blocking Issues)\b.*$',
    re.IGNORECASE | re.MULTILINE,
)
NEXT_HEADING = re.compile(r'^#{1,4}\s', re.MULTILINE)

MAX_FINDINGS_LINES = 40


def parse_verdict(output: str) -> ReviewVerdict | None:
    """The last verdict keyword in the output, or None if there is none."""
    matches = VERDICT_PATTERN.findall(output or "")
    if not matches:
        return None
    return ReviewVerdict(matches[-1])


def is_favorable(verdict: ReviewVerdict | None) -> bool:
    """A missing verdict is favorable; the exit code already decided the outcome."""
    return verdict is None or verdict in FAVORABLE_VERDICTS


def parse_ac_summary(output: str) -> ACSummary | None:
    """Count AC lines by status. None when the output lists no AC items."""
    ac = ACSummary()
    found = False
    for match in AC_LINE_PATTERN.finditer(output or ""):
        status = match.group(1).upper().replace(" ", "_")
        found = True
        if status == "MET":
            ac.met += 1
        elif status == "NOT_MET":
            ac.not_met += 1
        elif status == "PENDING":
            ac.pending += 1
        else:
            ac.blocked += 1
    return ac if found else None


def parse_findings(output: str) -> str:
    """
    The findings section of a failed review, for the fix step.

    Falls back to the tail of the output when there is no findings heading.
    """
    output = output or ""
    match = FINDINGS_HEADING.search(output)
    if match:
        rest = output[match.end():]
        next_heading = NEXT_HEADING.search(rest)
        section = rest[:next_heading.start()] if next_heading else rest
        return f"{match.group(0).strip()}\n{section.strip()}".strip()

    lines = [line for line in output.strip().splitlines() if line.strip()]
    return "\n".join(lines[-MAX_FINDINGS_LINES:])
