"""
Issue Store: the single JSON document recording per-issue progress.

Layout (validated against schemas/state.schema.json):

    {"version": 1, "lastUpdated": "...", "issues": {"<n>": IssueRecord}}

Every mutation is a read-modify-write performed under two locks (a
threading lock for the pipelines inside this process and an flock for other
processes), re-reading the document inside the lock and replacing it with an
atomic rename. Two pipelines finishing a phase at the same instant therefore
both land in the final document.

Dashboards and editor panels only ever read this file.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from phaseflow.lib.constants import STATE_VERSION
from phaseflow.lib.events import EventBroadcaster
from phaseflow.lib.markers import latest_statuses, parse_comment_markers
from phaseflow.lib.types import (
    ACSummary,
    IssueRecord,
    Phase,
    PhaseRecord,
    PhaseStatus,
    PRRef,
    REVIEW_PHASES,
    utc_now,
)
from phaseflow.lib.validate import ValidationError, validate, validate_before_write
from phaseflow.runner.locking import state_lock
from phaseflow.workflow.fsm import apply_transition
from phaseflow.workflow.state_machine import refresh_status

logger = logging.getLogger(__name__)


class StoreCorrupted(Exception):
    """The state document exists but cannot be read or fails validation."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"State file {path} is unreadable: {reason}")


def empty_document() -> dict:
    return {"version": STATE_VERSION, "lastUpdated": utc_now(), "issues": {}}


class IssueStore:
    """Durable record of every tracked issue."""

    def __init__(self, path: Path, lock_timeout: float = 30, broadcaster: EventBroadcaster | None = None):
        self.path = path
        self.lock_timeout = lock_timeout
        self.broadcaster = broadcaster
        self._thread_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _read_document(self) -> dict:
        if not self.path.exists():
            return empty_document()
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise StoreCorrupted(self.path, f"invalid JSON: {e}") from None
        except OSError as e:
            raise StoreCorrupted(self.path, str(e)) from None
        try:
            validate(data, "state")
        except ValidationError as e:
            raise StoreCorrupted(self.path, str(e)) from None
        return data

    def _write_document(self, doc: dict) -> None:
        doc["lastUpdated"] = utc_now()
        validate_before_write(doc, "state", self.path)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            tmp_path.write_text(json.dumps(doc, indent=2) + "\n")
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def _write_issues(self, issues: dict[int, IssueRecord]) -> None:
        doc = empty_document()
        doc["issues"] = {str(n): record.to_dict() for n, record in sorted(issues.items())}
        self._write_document(doc)

    @contextmanager
    def _transaction(self) -> Iterator[dict[int, IssueRecord]]:
        """Locked read-modify-write of the whole document."""
        with self._thread_lock, state_lock(self.path, self.lock_timeout):
            doc = self._read_document()
            issues = {int(key): IssueRecord.from_dict(value) for key, value in doc["issues"].items()}
            yield issues
            doc["issues"] = {str(n): record.to_dict() for n, record in sorted(issues.items())}
            self._write_document(doc)

    def _publish(self, event_type: str, payload: dict) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event_type, payload)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self) -> dict[int, IssueRecord]:
        """All records. Raises StoreCorrupted if the document is unreadable."""
        doc = self._read_document()
        return {int(key): IssueRecord.from_dict(value) for key, value in doc["issues"].items()}

    def get_issue(self, number: int) -> IssueRecord | None:
        return self.load().get(number)

    def all_issues(self) -> list[IssueRecord]:
        return [record for _, record in sorted(self.load().items())]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update(self, number: int, fn: Callable[[IssueRecord], None], title: str | None = None) -> IssueRecord:
        """
        Apply fn to one record inside a locked transaction.

        The record is created when missing if title is given; otherwise a
        missing record raises KeyError. Status is re-derived afterwards.
        """
        with self._transaction() as issues:
            record = issues.get(number)
            if record is None:
                if title is None:
                    raise KeyError(f"Issue #{number} is not tracked")
                record = IssueRecord(number=number, title=title)
                issues[number] = record
            fn(record)
            record.last_activity = utc_now()
            refresh_status(record)

        self._publish("issue_updated", {"number": number, "status": record.status.value,
                                        "currentPhase": record.current_phase.value if record.current_phase else None})
        return record

    def save(self, issues: dict[int, IssueRecord]) -> None:
        """Replace the whole document with the given records."""
        for record in issues.values():
            refresh_status(record)
        with self._thread_lock, state_lock(self.path, self.lock_timeout):
            self._write_issues(issues)
        for number, record in sorted(issues.items()):
            self._publish("issue_updated", {"number": number, "status": record.status.value,
                                            "currentPhase": record.current_phase.value if record.current_phase else None})

    def ensure_issue(self, number: int, title: str) -> IssueRecord:
        """Create the record if needed, keeping an existing title unless it was a placeholder."""
        def apply(record: IssueRecord) -> None:
            if title and (not record.title or record.title.startswith("Issue #")):
                record.title = title
        return self.update(number, apply, title=title)

    def plan_phases(self, number: int, phases: list[Phase]) -> IssueRecord:
        """Add pending records for planned phases that have none yet."""
        def apply(record: IssueRecord) -> None:
            for phase in phases:
                record.phases.setdefault(phase, PhaseRecord())
        return self.update(number, apply)

    def start_phase(self, number: int, phase: Phase, iteration: int | None = None) -> IssueRecord:
        """Move a phase to in_progress, resetting a previous outcome first."""
        def apply(record: IssueRecord) -> None:
            rec = record.phases.setdefault(phase, PhaseRecord())
            if rec.status != PhaseStatus.PENDING:
                apply_transition(rec, "reset", phase)
            kwargs = {"iteration": iteration} if iteration is not None else {}
            apply_transition(rec, "start", phase, **kwargs)
            record.current_phase = phase
            record.gate_paused = False
        return self.update(number, apply)

    def finish_phase(self, number: int, phase: Phase, status: PhaseStatus, error: str | None = None) -> IssueRecord:
        """Record the outcome of an in-progress phase."""
        triggers = {
            PhaseStatus.COMPLETED: "complete",
            PhaseStatus.FAILED: "fail",
            PhaseStatus.SKIPPED: "skip",
        }
        if status not in triggers:
            raise ValueError(f"Not a terminal phase status: {status.value}")

        def apply(record: IssueRecord) -> None:
            rec = record.phases.setdefault(phase, PhaseRecord())
            apply_transition(rec, triggers[status], phase, error=error)
        return self.update(number, apply)

    def record_resumed(self, number: int, phase: Phase, timestamp: str | None = None) -> IssueRecord:
        """Mark a phase completed because the tracker says it already ran."""
        def apply(record: IssueRecord) -> None:
            rec = record.phases.setdefault(phase, PhaseRecord())
            if rec.status == PhaseStatus.COMPLETED:
                return
            if rec.status != PhaseStatus.PENDING:
                apply_transition(rec, "reset", phase)
            apply_transition(rec, "start", phase, timestamp=timestamp)
            apply_transition(rec, "complete", phase, timestamp=timestamp)
        return self.update(number, apply)

    def fail_in_progress(self, number: int, phase: Phase, error: str) -> IssueRecord | None:
        """Abort take-down: fail the phase only if it is still in progress."""
        def apply(record: IssueRecord) -> None:
            rec = record.phases.get(phase)
            if rec is not None and rec.status == PhaseStatus.IN_PROGRESS:
                apply_transition(rec, "fail", phase, error=error)
        try:
            return self.update(number, apply)
        except KeyError:
            return None

    def set_workspace(self, number: int, worktree: Path | str, branch: str) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.worktree = str(worktree)
            record.branch = branch
        return self.update(number, apply)

    def set_pr(self, number: int, pr_number: int, url: str) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.pr = PRRef(number=pr_number, url=url)
        return self.update(number, apply)

    def set_ac(self, number: int, ac: ACSummary) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.ac = ac
        return self.update(number, apply)

    def set_session(self, number: int, session_id: str) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.session_id = session_id
        return self.update(number, apply)

    def set_loop(self, number: int, enabled: bool, max_iterations: int) -> IssueRecord:
        """Configure the quality loop without touching the iteration counter."""
        def apply(record: IssueRecord) -> None:
            record.loop.enabled = enabled
            record.loop.max_iterations = max_iterations
        return self.update(number, apply)

    def increment_loop(self, number: int) -> IssueRecord:
        """Advance the quality loop counter, never past the maximum."""
        def apply(record: IssueRecord) -> None:
            record.loop.iteration = min(record.loop.iteration + 1, record.loop.max_iterations)
        return self.update(number, apply)

    def reset_loop(self, number: int) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.loop.iteration = 0
        return self.update(number, apply)

    def reset_phases(self, number: int, phases: list[Phase] | None = None) -> IssueRecord:
        """Explicitly reset phases (all when None) back to pending."""
        def apply(record: IssueRecord) -> None:
            for phase, rec in record.phases.items():
                if phases is not None and phase not in phases:
                    continue
                if rec.status != PhaseStatus.PENDING:
                    apply_transition(rec, "reset", phase)
            record.current_phase = None
            record.gate_paused = False
        return self.update(number, apply)

    def mark_merged(self, number: int) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.merged_at = record.merged_at or utc_now()
        return self.update(number, apply)

    def mark_abandoned(self, number: int) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.abandoned_at = record.abandoned_at or utc_now()
        return self.update(number, apply)

    def set_gate_paused(self, number: int, paused: bool = True) -> IssueRecord:
        def apply(record: IssueRecord) -> None:
            record.gate_paused = paused
        return self.update(number, apply)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def rebuild_from_markers(self, tracker, numbers: list[int], max_iterations: int = 3) -> dict[int, IssueRecord]:
        """
        Reconstruct issue records from tracker markers.

        A corrupt document is moved aside (state.json.corrupt-<timestamp>)
        rather than deleted. In a readable document only the named issues
        are replaced. Issues whose tracker thread cannot be read are
        recorded with no phase progress.
        """
        with self._thread_lock, state_lock(self.path, self.lock_timeout):
            issues: dict[int, IssueRecord] = {}
            try:
                doc = self._read_document()
                issues = {int(key): IssueRecord.from_dict(value) for key, value in doc["issues"].items()}
            except StoreCorrupted:
                backup = self.path.with_name(f"{self.path.name}.corrupt-{utc_now().replace(':', '')}")
                os.replace(self.path, backup)
                logger.warning(f"Moved unreadable state file to {backup}")

            rebuilt = set(numbers)
            for number in sorted(rebuilt):
                issues[number] = self._record_from_markers(tracker, number, max_iterations)

            self._write_issues(issues)

        self._publish("state_rebuilt", {"issues": sorted(rebuilt)})
        return {n: issues[n] for n in sorted(rebuilt)}

    def _record_from_markers(self, tracker, number: int, max_iterations: int) -> IssueRecord:
        info = tracker.issue(number)
        record = IssueRecord(number=number, title=info.title)
        record.loop.max_iterations = max_iterations

        result = tracker.comments(number)
        if result.error:
            logger.warning(f"#{number}: cannot read tracker comments ({result.error}); rebuilt with no progress")
            return refresh_status(record)

        for phase, marker in latest_statuses(result.comments).items():
            rec = PhaseRecord()
            if marker.status == PhaseStatus.COMPLETED:
                apply_transition(rec, "start", phase, timestamp=marker.timestamp)
                apply_transition(rec, "complete", phase, timestamp=marker.timestamp)
            elif marker.status == PhaseStatus.FAILED:
                apply_transition(rec, "start", phase, timestamp=marker.timestamp)
                apply_transition(rec, "fail", phase, timestamp=marker.timestamp, error=marker.error)
            elif marker.status == PhaseStatus.SKIPPED:
                apply_transition(rec, "start", phase, timestamp=marker.timestamp)
                apply_transition(rec, "skip", phase, timestamp=marker.timestamp)
            # pending / in_progress markers leave the phase pending so it re-runs
            record.phases[phase] = rec

        # Without a review marker the plan is unknown; keep partial progress from reading as ready
        if record.phases and not any(phase in record.phases for phase in REVIEW_PHASES):
            record.phases[Phase.REVIEW] = PhaseRecord()

        loop_runs = sum(
            1 for m in parse_comment_markers(result.comments)
            if m.phase == Phase.LOOP and m.status in (PhaseStatus.COMPLETED, PhaseStatus.FAILED)
        )
        if loop_runs:
            record.loop.enabled = True
            record.loop.iteration = min(loop_runs, max_iterations)

        return refresh_status(record)
