"""Descriptor-driven workflow state machine using the transitions library.

Each {from, to} edge of a WorkflowDescriptor becomes a trigger named
``to_<dest>``; a "*" source is passed straight through to transitions as
its wildcard. Descriptors without explicit transitions allow any move
between their known states.

Usage:
    from beatflow.workflow.fsm import WorkflowMachine

    machine = WorkflowMachine(descriptor, task.state)
    machine.advance("implementation")
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from beatflow.workflow.model import WorkflowDescriptor, normalize_state

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a state change is not allowed by the workflow."""

    def __init__(self, from_state: str, to_state: str, workflow_id: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.workflow_id = workflow_id
        super().__init__(
            f"Invalid transition: {from_state} -> {to_state}"
            + (f" (workflow {workflow_id})" if workflow_id else "")
        )


def trigger_name(dest: str) -> str:
    return f"to_{dest}"


def _build_transitions(descriptor: WorkflowDescriptor, states: list[str]) -> list[dict]:
    if descriptor.transitions is None:
        return [
            {"trigger": trigger_name(dest), "source": "*", "dest": dest}
            for dest in states
        ]
    known = set(states)
    return [
        {"trigger": trigger_name(t.dest), "source": t.source, "dest": t.dest}
        for t in descriptor.transitions
        if t.dest in known and (t.source == "*" or t.source in known)
    ]


class WorkflowMachine:
    """State machine for one task's position in a workflow.

    Wraps the transitions library:
    - States are the descriptor's full state vocabulary
    - Moving to the current state is a no-op
    - Logs all transitions
    """

    def __init__(
        self,
        descriptor: WorkflowDescriptor,
        state: str | None = None,
        task_id: str = "",
        on_transition: Callable[[str, str], None] | None = None,
    ):
        self.descriptor = descriptor
        self.task_id = task_id
        self.on_transition = on_transition

        states = descriptor.all_states()
        initial = normalize_state(state) or descriptor.initial_state
        if initial not in states:
            logger.warning(
                f"[workflow] {task_id}: Unknown state '{state}' for {descriptor.id}, "
                f"using '{descriptor.initial_state}'"
            )
            initial = descriptor.initial_state

        self.machine = Machine(
            model=self,
            states=states,
            transitions=_build_transitions(descriptor, states),
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        logger.info(f"[workflow] {self.task_id}: {from_state} -> {to_state}")
        if self.on_transition:
            self.on_transition(from_state, to_state)

    def can_advance(self, to_state: str) -> bool:
        target = normalize_state(to_state)
        if target is None:
            return False
        if target == self.state:
            return True
        return trigger_name(target) in self.machine.get_triggers(self.state)

    def advance(self, to_state: str) -> str:
        """Move to `to_state`, returning the new state.

        Raises:
            InvalidTransition: If the workflow has no such edge
        """
        target = normalize_state(to_state) or ""
        if target == self.state:
            return self.state
        if not self.can_advance(target):
            raise InvalidTransition(self.state, to_state, self.descriptor.id)
        try:
            self.trigger(trigger_name(target))
        except MachineError:
            raise InvalidTransition(self.state, to_state, self.descriptor.id) from None
        return self.state

    def next_states(self) -> list[str]:
        """States reachable in one move from the current state."""
        names = []
        for trigger in self.machine.get_triggers(self.state):
            dest = trigger[len("to_"):]
            if dest != self.state and dest not in names:
                names.append(dest)
        return names


def can_transition(descriptor: WorkflowDescriptor, from_state: str, to_state: str) -> bool:
    """True if the workflow allows moving from `from_state` to `to_state`."""
    source = normalize_state(from_state)
    if source is None or source not in descriptor.all_states():
        return False
    return WorkflowMachine(descriptor, source).can_advance(to_state)


def next_states(descriptor: WorkflowDescriptor, state: str) -> list[str]:
    source = normalize_state(state)
    if source is None or source not in descriptor.all_states():
        return []
    return WorkflowMachine(descriptor, source).next_states()
