"""Phase record state machine using the transitions library.

Every change to a PhaseRecord's status goes through PhaseFSM, which enforces

    pending -> in_progress -> {completed, failed, skipped}

and an explicit `reset` back to pending. Timestamps are maintained by the
state callbacks so that terminal records always carry both timestamps and an
in-progress record never carries a completion time.

Usage:
    from phaseflow.workflow.fsm import PhaseFSM

    fsm = PhaseFSM(record, phase=Phase.REVIEW)
    fsm.start()
    fsm.fail(error="AC_NOT_MET")
"""

import logging

from transitions import Machine, MachineError

from phaseflow.lib.types import Phase, PhaseRecord, PhaseStatus, utc_now

logger = logging.getLogger(__name__)


STATES = [status.value for status in PhaseStatus]

TRANSITIONS = [
    {"trigger": "start", "source": "pending", "dest": "in_progress"},
    {"trigger": "complete", "source": "in_progress", "dest": "completed"},
    {"trigger": "fail", "source": "in_progress", "dest": "failed"},
    {"trigger": "skip", "source": "in_progress", "dest": "skipped"},

    # Explicit reset, e.g. before re-running a failed phase or via `phaseflow reset`
    {"trigger": "reset", "source": ["in_progress", "completed", "failed", "skipped"], "dest": "pending"},
]

TRIGGERS = sorted({t["trigger"] for t in TRANSITIONS})


class InvalidTransition(Exception):
    """Raised when a phase record is asked to make an illegal transition."""

    def __init__(self, phase: Phase | None, from_state: str, trigger: str):
        self.phase = phase
        self.from_state = from_state
        self.trigger = trigger
        name = phase.value if phase else "phase"
        super().__init__(f"Cannot {trigger} {name}: status is {from_state}")


class PhaseFSM:
    """State machine bound to one PhaseRecord.

    The record is updated in place; `record` always reflects the machine.
    """

    def __init__(self, record: PhaseRecord, phase: Phase | None = None):
        self.record = record
        self.phase = phase

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=record.status.value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def trigger_event(self, trigger: str, **kwargs) -> PhaseRecord:
        """Fire a trigger by name, raising InvalidTransition if it is not allowed."""
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown trigger: {trigger}")
        from_state = self.state
        try:
            self.trigger(trigger, **kwargs)
        except MachineError:
            raise InvalidTransition(self.phase, from_state, trigger) from None
        return self.record

    def on_state_change(self, event) -> None:
        now = event.kwargs.get("timestamp") or utc_now()
        record = self.record
        status = PhaseStatus(self.state)
        record.status = status

        if status == PhaseStatus.PENDING:
            record.started_at = None
            record.completed_at = None
            record.error = None
        elif status == PhaseStatus.IN_PROGRESS:
            record.started_at = now
            record.completed_at = None
            record.error = None
        else:
            if record.started_at is None:
                record.started_at = now
            record.completed_at = now
            record.error = event.kwargs.get("error") if status == PhaseStatus.FAILED else None

        if "iteration" in event.kwargs:
            record.iteration = event.kwargs["iteration"]

        name = self.phase.value if self.phase else "phase"
        logger.debug(f"[FSM] {name}: {event.transition.source} -> {event.transition.dest} ({event.event.name})")


def apply_transition(record: PhaseRecord, trigger: str, phase: Phase | None = None, **kwargs) -> PhaseRecord:
    """Apply one trigger to a record in place and return it."""
    return PhaseFSM(record, phase).trigger_event(trigger, **kwargs)
