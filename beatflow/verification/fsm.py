"""Typed verification state and its transition machine.

Labels stay the storage format; VerificationState is the parsed view so
callers never re-parse label strings, and VerificationMachine (transitions
library) rejects moves the gate does not allow:

    idle ──enter──► verification ──approve──► idle
                        │  ▲
                     reject │ enter
                        ▼  │
                       retry

A verifier may clear its own labels before reporting. Approve from idle is
then a no-op; reject from retry only bumps the attempt counter.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from transitions import Machine, MachineError

from beatflow.verification import gate
from beatflow.verification.gate import LabelMutation

logger = logging.getLogger(__name__)


class VerificationStage(Enum):
    IDLE = "idle"
    VERIFICATION = "verification"
    RETRY = "retry"


class InvalidVerificationTransition(Exception):
    """Raised when a verification trigger is not allowed in the current stage."""

    def __init__(self, stage: str, trigger: str, task_id: str = ""):
        self.stage = stage
        self.trigger = trigger
        self.task_id = task_id
        super().__init__(
            f"Cannot {trigger} from {stage}" + (f" (task {task_id})" if task_id else "")
        )


@dataclass(frozen=True)
class VerificationState:
    """Parsed verification labels."""
    stage: VerificationStage = VerificationStage.IDLE
    lock_held: bool = False
    attempt: int = 0
    commit: str | None = None

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> "VerificationState":
        labels = list(labels)
        lock_held = gate.has_transition_lock(labels)
        if lock_held or gate.is_in_verification(labels):
            stage = VerificationStage.VERIFICATION
        elif gate.is_in_retry(labels):
            stage = VerificationStage.RETRY
        else:
            stage = VerificationStage.IDLE
        return cls(
            stage=stage,
            lock_held=lock_held,
            attempt=gate.extract_attempt_number(labels),
            commit=gate.extract_commit_label(labels),
        )

    def to_labels(self) -> list[str]:
        """Canonical bookkeeping labels for this state."""
        labels = []
        if self.lock_held:
            labels.append(gate.LABEL_TRANSITION_VERIFICATION)
        if self.stage is VerificationStage.VERIFICATION:
            labels.append(gate.LABEL_STAGE_VERIFICATION)
        elif self.stage is VerificationStage.RETRY:
            labels.append(gate.LABEL_STAGE_RETRY)
        if self.attempt > 0:
            labels.append(gate.build_attempt_label(self.attempt))
        if self.commit:
            labels.append(gate.build_commit_label(self.commit))
        return labels


STATES = [stage.value for stage in VerificationStage]

TRANSITIONS = [
    {"trigger": "enter", "source": "idle", "dest": "verification"},
    {"trigger": "enter", "source": "retry", "dest": "verification"},
    # Re-entry is idempotent
    {"trigger": "enter", "source": "verification", "dest": None},
    {"trigger": "approve", "source": "verification", "dest": "idle"},
    {"trigger": "reject", "source": "verification", "dest": "retry"},
    # Late verdicts
    {"trigger": "approve", "source": "idle", "dest": None},
    {"trigger": "reject", "source": "idle", "dest": "retry"},
    {"trigger": "reject", "source": "retry", "dest": None},
]

_COMPUTE = {
    "enter": gate.compute_entry_labels,
    "approve": gate.compute_pass_labels,
    "reject": gate.compute_retry_labels,
}


class VerificationMachine:
    """Verification state machine over a task's label list.

    Each trigger returns the LabelMutation to persist and updates the
    in-memory label list to match.
    """

    def __init__(self, labels: Iterable[str], task_id: str = ""):
        self.task_id = task_id
        self.labels = list(labels)
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=VerificationState.from_labels(self.labels).stage.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def current(self) -> VerificationState:
        return VerificationState.from_labels(self.labels)

    def on_state_change(self, event) -> None:
        logger.info(
            f"[verification] {self.task_id}: {event.transition.source} -> "
            f"{event.transition.dest} ({event.event.name})"
        )

    def _fire(self, trigger: str) -> LabelMutation:
        if trigger not in self.machine.get_triggers(self.state):
            raise InvalidVerificationTransition(self.state, trigger, self.task_id)
        if trigger == "reject" and self.state == VerificationStage.RETRY.value:
            mutation = gate.bump_attempt_labels(self.labels)
        else:
            mutation = _COMPUTE[trigger](self.labels)
        try:
            self.trigger(trigger)
        except MachineError:
            raise InvalidVerificationTransition(self.state, trigger, self.task_id) from None
        self.labels = gate.apply_mutation(self.labels, mutation)
        return mutation

    def begin(self) -> LabelMutation:
        """Enter (or re-enter) verification."""
        return self._fire("enter")

    def succeed(self) -> LabelMutation:
        return self._fire("approve")

    def fail(self) -> LabelMutation:
        return self._fire("reject")
