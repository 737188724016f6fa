"""Verification gate label contract.

Verification sub-state lives entirely in task labels so it composes with
any workflow:

    transition:verification  a verification transition is in flight
    stage:verification       awaiting or undergoing verification
    stage:retry              rejected, queued for rework
    attempt:<N>              verification attempts so far (absent = 0)
    commit:<sha>             revision under verification

The compute_* functions are pure and idempotent: applying a mutation and
recomputing on the result yields an empty mutation.
"""

from dataclasses import dataclass, field
from typing import Iterable

from beatflow.lib.types import Task

LABEL_TRANSITION_VERIFICATION = "transition:verification"
LABEL_STAGE_VERIFICATION = "stage:verification"
LABEL_STAGE_RETRY = "stage:retry"

LABEL_PREFIX_COMMIT = "commit:"
LABEL_PREFIX_ATTEMPT = "attempt:"

# Bookkeeping namespaces hidden from user-facing label listings
INTERNAL_LABEL_PREFIXES = ("stage:", "transition:", "attempt:", "commit:", "wf:", "wave:")

# Actions that produce code and so trigger verification afterwards.
# "breakdown" only creates child tasks and "direct" only plans.
VERIFICATION_ELIGIBLE_ACTIONS = frozenset({"take", "scene"})

VERIFICATION_OUTCOMES = ("pass", "fail-requirements", "fail-bugs")


@dataclass(frozen=True)
class LabelMutation:
    """Labels to add and remove, in application order."""
    add: tuple[str, ...] = field(default_factory=tuple)
    remove: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.add and not self.remove


def _labels(source: Task | Iterable[str]) -> list[str]:
    if isinstance(source, Task):
        return list(source.labels or [])
    return list(source or [])


def apply_mutation(labels: Iterable[str], mutation: LabelMutation) -> list[str]:
    """Apply a mutation to a label list, keeping order and dropping duplicates."""
    removed = set(mutation.remove)
    result = [label for label in labels if label not in removed]
    for label in mutation.add:
        if label not in result:
            result.append(label)
    return result


# --- Markers ---

def extract_commit_label(labels: Iterable[str]) -> str | None:
    """First non-empty commit sha, or None."""
    for label in labels:
        if label.startswith(LABEL_PREFIX_COMMIT):
            sha = label[len(LABEL_PREFIX_COMMIT):].strip()
            if sha:
                return sha
    return None


def build_commit_label(sha: str) -> str:
    return f"{LABEL_PREFIX_COMMIT}{sha}"


def extract_attempt_number(labels: Iterable[str]) -> int:
    """Attempt count from the first well-formed attempt: label.

    Missing, non-numeric and negative values count as absent.
    """
    for label in labels:
        if not label.startswith(LABEL_PREFIX_ATTEMPT):
            continue
        try:
            number = int(label[len(LABEL_PREFIX_ATTEMPT):].strip())
        except ValueError:
            continue
        if number >= 0:
            return number
    return 0


def build_attempt_label(attempt: int) -> str:
    return f"{LABEL_PREFIX_ATTEMPT}{attempt}"


def is_internal_label(label: str) -> bool:
    return label.startswith(INTERNAL_LABEL_PREFIXES)


def user_facing_labels(labels: Iterable[str]) -> list[str]:
    return [label for label in labels if not is_internal_label(label)]


# --- Predicates ---

def has_transition_lock(source: Task | Iterable[str]) -> bool:
    return LABEL_TRANSITION_VERIFICATION in _labels(source)


def is_in_verification(source: Task | Iterable[str]) -> bool:
    return LABEL_STAGE_VERIFICATION in _labels(source)


def is_in_retry(source: Task | Iterable[str]) -> bool:
    return LABEL_STAGE_RETRY in _labels(source)


def is_verification_eligible_action(action: str) -> bool:
    return action in VERIFICATION_ELIGIBLE_ACTIONS


# --- Transforms ---

def compute_entry_labels(current: Iterable[str]) -> LabelMutation:
    """Enter verification.

    Empty when the transition label is already present. Clears stage:retry;
    attempt and commit markers are left alone.
    """
    labels = set(current)
    if LABEL_TRANSITION_VERIFICATION in labels:
        return LabelMutation()

    add = [LABEL_TRANSITION_VERIFICATION]
    if LABEL_STAGE_VERIFICATION not in labels:
        add.append(LABEL_STAGE_VERIFICATION)
    remove = [LABEL_STAGE_RETRY] if LABEL_STAGE_RETRY in labels else []
    return LabelMutation(add=tuple(add), remove=tuple(remove))


def compute_pass_labels(current: Iterable[str]) -> LabelMutation:
    """Leave verification after a pass. Tolerates either label missing."""
    labels = set(current)
    remove = [
        label for label in (LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION)
        if label in labels
    ]
    return LabelMutation(remove=tuple(remove))


def compute_retry_labels(current: Iterable[str]) -> LabelMutation:
    """Reject into retry with an incremented attempt counter.

    A label set that is already in retry with no verification labels has
    had this mutation applied, so the result is empty.
    """
    ordered = list(current)
    labels = set(ordered)
    already_applied = (
        LABEL_STAGE_RETRY in labels
        and LABEL_TRANSITION_VERIFICATION not in labels
        and LABEL_STAGE_VERIFICATION not in labels
    )
    if already_applied:
        return LabelMutation()

    remove = [
        label for label in (LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION)
        if label in labels
    ]
    for label in ordered:
        if label.startswith((LABEL_PREFIX_COMMIT, LABEL_PREFIX_ATTEMPT)) and label not in remove:
            remove.append(label)

    attempt = extract_attempt_number(ordered) + 1
    add = [LABEL_STAGE_RETRY, build_attempt_label(attempt)]
    return LabelMutation(add=tuple(add), remove=tuple(remove))


def bump_attempt_labels(current: Iterable[str]) -> LabelMutation:
    """Count one more failed attempt on a task already sitting in retry.

    Drops commit and attempt markers the same way a full retry does.
    """
    ordered = list(current)
    remove = [label for label in ordered if label.startswith((LABEL_PREFIX_COMMIT, LABEL_PREFIX_ATTEMPT))]
    add = [build_attempt_label(extract_attempt_number(ordered) + 1)]
    if LABEL_STAGE_RETRY not in ordered:
        add.insert(0, LABEL_STAGE_RETRY)
    return LabelMutation(add=tuple(add), remove=tuple(remove))
