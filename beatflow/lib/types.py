"""
Shared data types for beatflow.

Task records and the request/response shapes passed through the backend
port. Kept here to avoid circular imports between backends and engines.
"""

from dataclasses import dataclass, field
from typing import Any

# States that count as "no more work" for hierarchy operations
CLOSED_STATES = frozenset({"closed", "shipped", "abandoned"})

VALID_TYPES = frozenset({
    "bug",
    "feature",
    "task",
    "epic",
    "chore",
    "merge-request",
    "molecule",
    "gate",
})

DEFAULT_PRIORITY = 2


def normalize_type(value: Any) -> str:
    """Unknown or missing task types collapse to "task"."""
    if isinstance(value, str) and value in VALID_TYPES:
        return value
    return "task"


def normalize_priority(value: Any) -> int:
    """Priorities outside 0..4 fall back to the default."""
    if isinstance(value, bool) or not isinstance(value, int):
        return DEFAULT_PRIORITY
    if 0 <= value <= 4:
        return value
    return DEFAULT_PRIORITY


@dataclass
class Task:
    """A unit of tracked work (bead/beat/knot depending on the tracker)."""
    id: str
    title: str
    state: str = "open"
    description: str | None = None
    notes: str | None = None
    acceptance: str | None = None
    type: str = "task"
    priority: int = DEFAULT_PRIORITY
    labels: list[str] = field(default_factory=list)
    parent: str | None = None
    assignee: str | None = None
    owner: str | None = None
    created: str | None = None
    updated: str | None = None
    closed: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_closed(self) -> bool:
        return self.state in CLOSED_STATES


@dataclass
class TaskFilters:
    """Optional list filters; None means "don't filter on this field"."""
    type: str | None = None
    state: str | None = None
    priority: int | None = None
    assignee: str | None = None
    label: str | None = None
    parent: str | None = None

    def matches(self, task: Task) -> bool:
        if self.type and task.type != self.type:
            return False
        if self.state and task.state != self.state:
            return False
        if self.priority is not None and task.priority != self.priority:
            return False
        if self.assignee and task.assignee != self.assignee:
            return False
        if self.label and self.label not in task.labels:
            return False
        if self.parent and task.parent != self.parent:
            return False
        return True


@dataclass
class QueryOptions:
    limit: int | None = None
    sort: str | None = None  # e.g. "priority", "created"


@dataclass
class TaskCreate:
    """Fields accepted when creating a task."""
    title: str
    description: str | None = None
    type: str = "task"
    priority: int = DEFAULT_PRIORITY
    labels: list[str] = field(default_factory=list)
    parent: str | None = None
    assignee: str | None = None
    acceptance: str | None = None
    notes: str | None = None
    state: str | None = None  # None -> workflow initial state


@dataclass
class TaskUpdate:
    """Partial update. None leaves a field untouched."""
    title: str | None = None
    description: str | None = None
    type: str | None = None
    state: str | None = None
    priority: int | None = None
    parent: str | None = None
    assignee: str | None = None
    acceptance: str | None = None
    notes: str | None = None
    add_labels: list[str] = field(default_factory=list)
    remove_labels: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        scalars = (
            self.title, self.description, self.type, self.state, self.priority,
            self.parent, self.assignee, self.acceptance, self.notes,
        )
        return all(v is None for v in scalars) and not self.add_labels and not self.remove_labels


@dataclass
class TaskDependency:
    """A blocking edge as seen from one task.

    `id` is the task on the other end of the edge; source blocks target.
    """
    id: str
    type: str
    source: str
    target: str


@dataclass
class TakePromptOptions:
    is_parent: bool = False
    child_ids: list[str] = field(default_factory=list)


@dataclass
class TakePromptResult:
    prompt: str
    claimed_id: str


@dataclass
class PollPromptOptions:
    agent_name: str | None = None


@dataclass
class PollPromptResult:
    prompt: str
    claimed_id: str
