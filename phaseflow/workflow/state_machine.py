"""Issue status derivation.

IssueStatus is never set directly. It is recomputed from the record on every
store write, so it can never drift from the phase records it summarizes:

    abandoned               abandoned_at is set
    merged                  external merge confirmed (merged_at)
    waiting_for_review_gate chain paused at the review gate
    blocked                 review failed and the quality loop is off or exhausted
    ready_for_merge         every planned phase completed, review favorable
    in_progress             any phase has left pending
    not_started             otherwise
"""

import logging

from phaseflow.lib.types import (
    IssueRecord,
    IssueStatus,
    Phase,
    PhaseStatus,
    REVIEW_PHASES,
)

logger = logging.getLogger(__name__)


def is_review_blocked(record: IssueRecord) -> bool:
    """Review failed and no automatic retry is left."""
    for phase in REVIEW_PHASES:
        rec = record.phase(phase)
        if rec and rec.status == PhaseStatus.FAILED:
            return not record.loop.enabled or record.loop.exhausted
    return False


def is_ready_for_merge(record: IssueRecord) -> bool:
    planned = {
        phase: rec for phase, rec in record.phases.items()
        if phase != Phase.LOOP and rec.status != PhaseStatus.SKIPPED
    }
    if not planned:
        return False
    return all(rec.status == PhaseStatus.COMPLETED for rec in planned.values())


def derive_status(record: IssueRecord) -> IssueStatus:
    """Compute the issue status from its record."""
    if record.abandoned_at:
        return IssueStatus.ABANDONED
    if record.merged_at:
        return IssueStatus.MERGED
    if record.gate_paused:
        return IssueStatus.WAITING_FOR_REVIEW_GATE
    if is_review_blocked(record):
        return IssueStatus.BLOCKED
    if is_ready_for_merge(record):
        return IssueStatus.READY_FOR_MERGE
    if any(rec.status != PhaseStatus.PENDING for rec in record.phases.values()):
        return IssueStatus.IN_PROGRESS
    return IssueStatus.NOT_STARTED


def refresh_status(record: IssueRecord) -> IssueRecord:
    """Recompute record.status in place, logging changes."""
    new_status = derive_status(record)
    if new_status != record.status:
        logger.info(f"#{record.number}: {record.status.value} -> {new_status.value}")
        record.status = new_status
    return record
