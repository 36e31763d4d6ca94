"""Tests for issue status derivation."""

from phaseflow.lib.types import IssueRecord, IssueStatus, Phase, PhaseRecord, PhaseStatus
from phaseflow.workflow.state_machine import derive_status, refresh_status


def make_record(loop_enabled=False, iteration=0, max_iterations=3, **statuses) -> IssueRecord:
    """Build a record from keyword phase statuses, e.g. plan="completed"."""
    record = IssueRecord(number=7, title="Add export")
    for name, status in statuses.items():
        record.phases[Phase(name.replace("_", "-"))] = PhaseRecord(status=PhaseStatus(status))
    record.loop.enabled = loop_enabled
    record.loop.iteration = iteration
    record.loop.max_iterations = max_iterations
    return record


class TestDeriveStatus:
    """Status is a function of the record."""

    def test_no_phases_is_not_started(self):
        assert derive_status(IssueRecord(number=1, title="x")) == IssueStatus.NOT_STARTED

    def test_all_pending_is_not_started(self):
        record = make_record(plan="pending", implement="pending")
        assert derive_status(record) == IssueStatus.NOT_STARTED

    def test_any_progress_is_in_progress(self):
        record = make_record(plan="completed", implement="in_progress", review="pending")
        assert derive_status(record) == IssueStatus.IN_PROGRESS

    def test_all_completed_is_ready(self):
        record = make_record(plan="completed", implement="completed", review="completed")
        assert derive_status(record) == IssueStatus.READY_FOR_MERGE

    def test_skipped_phases_do_not_block_ready(self):
        record = make_record(plan="skipped", implement="completed", review="completed")
        assert derive_status(record) == IssueStatus.READY_FOR_MERGE

    def test_pending_merge_is_not_ready(self):
        record = make_record(implement="completed", review="completed", merge="pending")
        assert derive_status(record) == IssueStatus.IN_PROGRESS

    def test_loop_record_ignored_for_ready(self):
        record = make_record(implement="completed", review="completed", loop="failed", loop_enabled=True)
        assert derive_status(record) == IssueStatus.READY_FOR_MERGE

    def test_failed_review_without_loop_is_blocked(self):
        record = make_record(implement="completed", review="failed")
        assert derive_status(record) == IssueStatus.BLOCKED

    def test_failed_review_with_loop_remaining_is_in_progress(self):
        record = make_record(implement="completed", review="failed", loop_enabled=True, iteration=1)
        assert derive_status(record) == IssueStatus.IN_PROGRESS

    def test_failed_review_with_exhausted_loop_is_blocked(self):
        record = make_record(implement="completed", review="failed", loop_enabled=True, iteration=3)
        assert derive_status(record) == IssueStatus.BLOCKED

    def test_failed_implement_is_in_progress(self):
        """Only review failures block; other failures are retried by the next run."""
        record = make_record(plan="completed", implement="failed")
        assert derive_status(record) == IssueStatus.IN_PROGRESS

    def test_gate_pause_wins_over_blocked(self):
        record = make_record(implement="completed", review="failed")
        record.gate_paused = True
        assert derive_status(record) == IssueStatus.WAITING_FOR_REVIEW_GATE

    def test_merged_wins(self):
        record = make_record(implement="completed", review="failed")
        record.merged_at = "2026-01-01T00:00:00.000Z"
        assert derive_status(record) == IssueStatus.MERGED

    def test_abandoned_wins_over_merged(self):
        record = make_record(implement="completed")
        record.merged_at = "2026-01-01T00:00:00.000Z"
        record.abandoned_at = "2026-01-02T00:00:00.000Z"
        assert derive_status(record) == IssueStatus.ABANDONED


class TestRefreshStatus:

    def test_updates_in_place(self):
        record = make_record(implement="completed", review="completed")
        assert record.status == IssueStatus.NOT_STARTED
        assert refresh_status(record) is record
        assert record.status == IssueStatus.READY_FOR_MERGE
