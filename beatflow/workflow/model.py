"""Workflow step/phase model.

A workflow is an ordered list of steps. Every step exists in two phases:

- queued: the step awaits pickup, state name is ``ready_for_<step>``
- active: the step is being worked, state name is exactly ``<step>``

Terminal names ("shipped", "abandoned", "closed") and the reserved hold
state "deferred" belong to no step.

Usage:
    from beatflow.workflow.model import resolve_step, builtin_descriptor

    resolved = resolve_step("ready_for_implementation")
    runtime = derive_workflow_runtime_state(builtin_descriptor("semiauto"), task.state)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from beatflow.lib import validate
from beatflow.lib.types import CLOSED_STATES

logger = logging.getLogger(__name__)

QUEUED_PREFIX = "ready_for_"
DEFERRED_STATE = "deferred"

WORKFLOW_STEPS = (
    "planning",
    "plan_review",
    "implementation",
    "implementation_review",
    "shipment",
    "shipment_review",
)

DEFAULT_TERMINAL_STATES = ("shipped", "abandoned")

WF_STATE_LABEL_PREFIX = "wf:state:"
WF_PROFILE_LABEL_PREFIX = "wf:profile:"

DEFAULT_PROFILE_ID = "autopilot"

# Older tracker data still carries these profile ids
LEGACY_PROFILE_IDS = {
    "beads-coarse": "autopilot",
    "beads-coarse-human-gated": "semiauto",
    "knots-granular": "autopilot",
    "knots-granular-autonomous": "autopilot",
    "knots-coarse": "semiauto",
    "knots-coarse-human-gated": "semiauto",
}

LEGACY_IN_PROGRESS_STATES = frozenset({"in_progress", "implementing", "working"})
LEGACY_RETAKE_STATES = frozenset({"retake", "retry", "rejected", "refining", "rework"})
LEGACY_TERMINAL_STATES = frozenset({"closed", "done", "approved"})


class StepPhase(Enum):
    """Phase of a workflow step."""
    QUEUED = "queued"
    ACTIVE = "active"


@dataclass(frozen=True)
class ResolvedStep:
    step: str
    phase: StepPhase


@dataclass(frozen=True)
class WorkflowTransition:
    """Allowed edge between two state names. `source` may be "*"."""
    source: str
    dest: str


@dataclass(frozen=True)
class WorkflowDescriptor:
    """Immutable description of one workflow.

    `states` holds step names without the ready_for_ prefix. `transitions`
    is None for an unrestricted workflow.
    """
    id: str
    states: tuple[str, ...]
    terminal_states: tuple[str, ...] = DEFAULT_TERMINAL_STATES
    transitions: tuple[WorkflowTransition, ...] | None = None
    owners: Mapping[str, str] = field(default_factory=dict)
    label: str = ""
    description: str = ""
    initial_state: str = ""
    retake_state: str = ""

    def __post_init__(self):
        # Frozen dataclass: derived defaults go through object.__setattr__
        if not self.label:
            object.__setattr__(self, "label", f"Workflow ({self.id})")
        if not self.initial_state and self.states:
            object.__setattr__(self, "initial_state", f"{QUEUED_PREFIX}{self.states[0]}")
        if not self.retake_state:
            retake = (
                f"{QUEUED_PREFIX}implementation"
                if "implementation" in self.states
                else self.initial_state
            )
            object.__setattr__(self, "retake_state", retake)

    @property
    def mode(self) -> str:
        if any(kind == "human" for kind in self.owners.values()):
            return "coarse_human_gated"
        return "granular_autonomous"

    def owner_for(self, step: str) -> str:
        """Owner kind for a step; steps without an entry are agent-owned."""
        return self.owners.get(step, "agent")

    def queue_states(self) -> list[str]:
        return [f"{QUEUED_PREFIX}{step}" for step in self.states]

    def all_states(self) -> list[str]:
        """Every state name a task in this workflow can hold."""
        names: list[str] = []
        for step in self.states:
            names.append(f"{QUEUED_PREFIX}{step}")
            names.append(step)
        for name in (*self.terminal_states, DEFERRED_STATE):
            if name not in names:
                names.append(name)
        return names


@dataclass(frozen=True)
class WorkflowRuntimeState:
    """Flags derived from a task's state under a given workflow."""
    state: str
    is_agent_claimable: bool
    requires_human_action: bool
    next_action_owner_kind: str  # "agent" | "human" | "none"
    next_action_state: str | None = None


def normalize_state(value: Any) -> str | None:
    """Lowercase and trim a state name; None for empty or non-string input."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def resolve_step(state_name: Any, steps: Iterable[str] | None = None) -> ResolvedStep | None:
    """Resolve a state name to its (step, phase) pair.

    Args:
        state_name: State to resolve
        steps: Recognised step names (defaults to the built-in steps)

    Returns:
        ResolvedStep, or None for terminal, deferred, unknown or malformed names
    """
    if not isinstance(state_name, str) or not state_name:
        return None
    recognised = WORKFLOW_STEPS if steps is None else tuple(steps)

    if state_name.startswith(QUEUED_PREFIX):
        step = state_name[len(QUEUED_PREFIX):]
        if step in recognised:
            return ResolvedStep(step=step, phase=StepPhase.QUEUED)
        return None

    if state_name in recognised:
        return ResolvedStep(step=state_name, phase=StepPhase.ACTIVE)
    return None


def rollback_active_phase(state_name: str, steps: Iterable[str] | None = None) -> str:
    """Map an active state back to its queued counterpart.

    Any other state is returned unchanged.
    """
    resolved = resolve_step(state_name, steps)
    if resolved is None or resolved.phase is not StepPhase.ACTIVE:
        return state_name
    return f"{QUEUED_PREFIX}{resolved.step}"


def derive_workflow_runtime_state(
    descriptor: WorkflowDescriptor,
    state_name: Any,
) -> WorkflowRuntimeState:
    """Derive claimability and human-action flags for a state."""
    state = normalize_state(state_name) or ""
    resolved = resolve_step(state, descriptor.states)

    if resolved is None or resolved.phase is not StepPhase.QUEUED:
        return WorkflowRuntimeState(
            state=state,
            is_agent_claimable=False,
            requires_human_action=False,
            next_action_owner_kind="none",
        )

    owner = descriptor.owner_for(resolved.step)
    return WorkflowRuntimeState(
        state=state,
        is_agent_claimable=owner == "agent",
        requires_human_action=owner == "human",
        next_action_owner_kind=owner,
        next_action_state=resolved.step,
    )


# --- Tracker status compatibility ---

def compat_status(state_name: Any) -> str:
    """Map a workflow state to the coarse status a CLI tracker understands."""
    state = normalize_state(state_name)
    if not state:
        return "open"
    if state == DEFERRED_STATE:
        return "deferred"
    if state in ("blocked", "rejected"):
        return "blocked"
    if state in DEFAULT_TERMINAL_STATES or state in LEGACY_TERMINAL_STATES:
        return "closed"
    if state.startswith(QUEUED_PREFIX):
        return "open"
    if state in WORKFLOW_STEPS or state in LEGACY_IN_PROGRESS_STATES:
        return "in_progress"
    return "open"


def _terminal_state(descriptor: WorkflowDescriptor) -> str:
    if "shipped" in descriptor.terminal_states:
        return "shipped"
    if descriptor.terminal_states:
        return descriptor.terminal_states[0]
    return "closed"


def status_to_workflow_state(status: str, descriptor: WorkflowDescriptor) -> str:
    """Map a coarse tracker status onto the descriptor's state names."""
    if status == "closed":
        return _terminal_state(descriptor)
    if status == "deferred":
        return DEFERRED_STATE
    if status == "blocked":
        return descriptor.retake_state
    if status == "in_progress":
        return descriptor.states[0] if descriptor.states else "in_progress"
    return descriptor.initial_state


def normalize_state_for_workflow(state_name: Any, descriptor: WorkflowDescriptor) -> str:
    """Fit an arbitrary (possibly legacy) state name into the descriptor."""
    state = normalize_state(state_name)
    if not state:
        return descriptor.initial_state
    if state in descriptor.all_states():
        return state
    if state in ("open", "idea", "work_item"):
        return descriptor.initial_state
    if state in LEGACY_IN_PROGRESS_STATES:
        return status_to_workflow_state("in_progress", descriptor)
    if state in ("verification", "ready_for_review", "reviewing"):
        if "implementation_review" in descriptor.states:
            return f"{QUEUED_PREFIX}implementation_review"
        return status_to_workflow_state("in_progress", descriptor)
    if state in LEGACY_RETAKE_STATES:
        return descriptor.retake_state
    if state in LEGACY_TERMINAL_STATES:
        return _terminal_state(descriptor)
    return descriptor.initial_state


# --- Workflow labels ---

def extract_workflow_state_label(labels: Iterable[str]) -> str | None:
    for label in labels:
        if label.startswith(WF_STATE_LABEL_PREFIX):
            value = normalize_state(label[len(WF_STATE_LABEL_PREFIX):])
            if value:
                return value
    return None


def extract_workflow_profile_label(labels: Iterable[str]) -> str | None:
    for label in labels:
        if label.startswith(WF_PROFILE_LABEL_PREFIX):
            value = normalize_profile_id(label[len(WF_PROFILE_LABEL_PREFIX):])
            if value:
                return value
    return None


def with_workflow_state_label(labels: Iterable[str], state: str) -> list[str]:
    """Replace any wf:state: label with one for `state`."""
    kept = [label for label in labels if not label.startswith(WF_STATE_LABEL_PREFIX)]
    normalized = normalize_state(state)
    if normalized:
        kept.append(f"{WF_STATE_LABEL_PREFIX}{normalized}")
    return list(dict.fromkeys(kept))


def with_workflow_profile_label(labels: Iterable[str], profile_id: str) -> list[str]:
    kept = [label for label in labels if not label.startswith(WF_PROFILE_LABEL_PREFIX)]
    normalized = normalize_profile_id(profile_id)
    if normalized:
        kept.append(f"{WF_PROFILE_LABEL_PREFIX}{normalized}")
    return list(dict.fromkeys(kept))


def normalize_profile_id(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return LEGACY_PROFILE_IDS.get(normalized, normalized)


def derive_profile_id(labels: Iterable[str], metadata: Mapping[str, Any] | None = None) -> str:
    """Profile from metadata, then a wf:profile: label, else the default."""
    if metadata:
        for key in ("profileId", "profile_id", "workflowProfileId"):
            from_metadata = normalize_profile_id(metadata.get(key))
            if from_metadata:
                return from_metadata
    return extract_workflow_profile_label(labels) or DEFAULT_PROFILE_ID


def derive_workflow_state(
    status: str | None,
    labels: Iterable[str],
    descriptor: WorkflowDescriptor | None = None,
) -> str:
    """Derive a task's workflow state from tracker status and labels.

    An explicit wf:state: label wins; verification/retry stage labels come
    next; the coarse status is the fallback.
    """
    labels = list(labels)
    descriptor = descriptor or builtin_descriptor(DEFAULT_PROFILE_ID)

    explicit = extract_workflow_state_label(labels)
    if explicit:
        return normalize_state_for_workflow(explicit, descriptor)
    if "stage:verification" in labels:
        return normalize_state_for_workflow("ready_for_implementation_review", descriptor)
    if "stage:retry" in labels:
        return normalize_state_for_workflow(descriptor.retake_state, descriptor)
    if status:
        return status_to_workflow_state(status, descriptor)
    return descriptor.initial_state


# --- Built-in profiles ---

_AGENT_OWNERS = {step: "agent" for step in WORKFLOW_STEPS}
_SEMIAUTO_OWNERS = {**_AGENT_OWNERS, "plan_review": "human", "implementation_review": "human"}

# (id, description, skip planning, owners)
_BUILTIN_PROFILES = [
    ("autopilot", "Agent-owned full flow with remote main output", False, _AGENT_OWNERS),
    ("autopilot_with_pr", "Agent-owned full flow with PR output", False, _AGENT_OWNERS),
    ("semiauto", "Human-gated plan and implementation reviews", False, _SEMIAUTO_OWNERS),
    ("autopilot_no_planning", "Agent-owned flow starting at implementation", True, _AGENT_OWNERS),
    ("autopilot_with_pr_no_planning", "Agent-owned flow with PR output and no planning", True, _AGENT_OWNERS),
    ("semiauto_no_planning", "Human-gated implementation review with skipped planning", True, _SEMIAUTO_OWNERS),
]

_CANONICAL_TRANSITIONS = [
    ("ready_for_planning", "planning"),
    ("planning", "ready_for_plan_review"),
    ("ready_for_plan_review", "plan_review"),
    ("plan_review", "ready_for_implementation"),
    ("plan_review", "ready_for_planning"),
    ("ready_for_implementation", "implementation"),
    ("implementation", "ready_for_implementation_review"),
    ("ready_for_implementation_review", "implementation_review"),
    ("implementation_review", "ready_for_shipment"),
    ("implementation_review", "ready_for_implementation"),
    ("ready_for_shipment", "shipment"),
    ("shipment", "ready_for_shipment_review"),
    ("ready_for_shipment_review", "shipment_review"),
    ("shipment_review", "shipped"),
    ("shipment_review", "ready_for_implementation"),
    ("shipment_review", "ready_for_shipment"),
    ("*", "deferred"),
    ("*", "abandoned"),
]


def _builtin(profile_id: str, description: str, skip_planning: bool, owners: dict) -> WorkflowDescriptor:
    steps = tuple(
        s for s in WORKFLOW_STEPS
        if not (skip_planning and s in ("planning", "plan_review"))
    )
    known = {f"{QUEUED_PREFIX}{s}" for s in steps} | set(steps) | set(DEFAULT_TERMINAL_STATES) | {DEFERRED_STATE}
    transitions = tuple(
        WorkflowTransition(source, dest)
        for source, dest in _CANONICAL_TRANSITIONS
        if (source == "*" or source in known) and dest in known
    )
    return WorkflowDescriptor(
        id=profile_id,
        states=steps,
        terminal_states=DEFAULT_TERMINAL_STATES,
        transitions=transitions,
        owners={s: owners[s] for s in steps},
        description=description,
    )


BUILTIN_WORKFLOWS = tuple(_builtin(*profile) for profile in _BUILTIN_PROFILES)
BUILTIN_WORKFLOWS_BY_ID = {wf.id: wf for wf in BUILTIN_WORKFLOWS}


def builtin_workflow_descriptors() -> list[WorkflowDescriptor]:
    return list(BUILTIN_WORKFLOWS)


def builtin_descriptor(profile_id: str | None = None) -> WorkflowDescriptor:
    """Built-in descriptor by id; unknown ids fall back to the default profile."""
    normalized = normalize_profile_id(profile_id) or DEFAULT_PROFILE_ID
    descriptor = BUILTIN_WORKFLOWS_BY_ID.get(normalized)
    if descriptor is None:
        logger.warning(f"[workflow] Unknown profile '{profile_id}', using '{DEFAULT_PROFILE_ID}'")
        descriptor = BUILTIN_WORKFLOWS_BY_ID[DEFAULT_PROFILE_ID]
    return descriptor


def descriptor_from_dict(data: Mapping[str, Any]) -> WorkflowDescriptor:
    """Build a descriptor from a validated workflow file entry."""
    transitions = data.get("transitions")
    return WorkflowDescriptor(
        id=data["id"],
        states=tuple(data["states"]),
        terminal_states=tuple(data.get("terminal_states", DEFAULT_TERMINAL_STATES)),
        transitions=(
            tuple(WorkflowTransition(t["from"], t["to"]) for t in transitions)
            if transitions is not None else None
        ),
        owners=dict(data.get("owners", {})),
        label=data.get("label", ""),
        description=data.get("description", ""),
        initial_state=data.get("initial_state", ""),
        retake_state=data.get("retake_state", ""),
    )


def load_workflow_descriptors(path: Path) -> list[WorkflowDescriptor]:
    """Load extra workflow descriptors from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        validate.ValidationError: If the file doesn't match workflow.schema.json
    """
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise validate.ValidationError("workflow", f"Invalid YAML in {path}: {e}") from None

    validate.validate(data, "workflow")
    descriptors = [descriptor_from_dict(entry) for entry in data["workflows"]]
    logger.debug(f"[workflow] Loaded {len(descriptors)} workflow(s) from {path}")
    return descriptors


def workflow_catalog(extra: Iterable[WorkflowDescriptor] = ()) -> dict[str, WorkflowDescriptor]:
    """Built-in descriptors overlaid with configured ones, keyed by id."""
    catalog = dict(BUILTIN_WORKFLOWS_BY_ID)
    for descriptor in extra:
        catalog[descriptor.id] = descriptor
    return catalog


def closed_states(descriptors: Iterable[WorkflowDescriptor]) -> frozenset[str]:
    """Every state name that counts as closed across the given workflows."""
    names = set(CLOSED_STATES)
    for descriptor in descriptors:
        names.update(descriptor.terminal_states)
    return frozenset(names)
