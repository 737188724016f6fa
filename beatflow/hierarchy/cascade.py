"""
Cascade close: close a parent and its open descendants, leaf-first.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendPort, BackendResult
from beatflow.hierarchy.tree import build_children_index
from beatflow.lib.types import CLOSED_STATES, Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CascadeDescendant:
    """What a confirmation prompt shows for one descendant."""
    id: str
    title: str
    state: str


@dataclass
class CascadeOutcome:
    closed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def collect_open_descendants(
    root_id: str, children: dict[str, list[Task]], closed_states: Iterable[str] = CLOSED_STATES
) -> list[Task]:
    """Open descendants of root_id in post-order (deepest first).

    Closed tasks are walked through but not collected, so an open grandchild
    under a closed child is still found.
    """
    closed_states = frozenset(closed_states)
    result: list[Task] = []
    visited = {root_id}
    # (task, expanded) pairs; a task is emitted the second time it is popped
    stack: list[tuple[Task, bool]] = [
        (child, False) for child in reversed(children.get(root_id, []))
    ]
    while stack:
        task, expanded = stack.pop()
        if expanded:
            if task.state not in closed_states:
                result.append(task)
            continue
        if task.id in visited:
            continue
        visited.add(task.id)
        stack.append((task, True))
        for child in reversed(children.get(task.id, [])):
            if child.id not in visited:
                stack.append((child, False))
    return result


class CascadeCloser:
    def __init__(self, backend: BackendPort, closed_states: Iterable[str] = CLOSED_STATES):
        self.backend = backend
        self.closed_states = frozenset(closed_states)

    async def get_open_descendants(
        self, task_id: str, repo_path: str | None = None
    ) -> BackendResult:
        """Preview the close order. Performs no writes."""
        listing = await self.backend.list(None, repo_path)
        if not listing.ok:
            return BackendResult.from_error(listing.error, "Failed to list tasks")

        children = build_children_index(listing.data or [])
        descendants = [
            CascadeDescendant(id=task.id, title=task.title, state=task.state)
            for task in collect_open_descendants(task_id, children, self.closed_states)
        ]
        return BackendResult.success(descendants)

    async def _close_one(self, task_id: str, reason: str | None, repo_path: str | None) -> str | None:
        """Close one task. Returns an error string, or None on success."""
        try:
            result = await self.backend.close(task_id, reason, repo_path)
        except Exception as e:
            logger.exception(f"[cascade] {task_id}: close raised")
            return f"{task_id}: {e}"
        if not result.ok:
            return f"{task_id}: {result.error_message or ErrorCode.INTERNAL.value}"
        return None

    async def cascade_close(
        self, task_id: str, reason: str | None = None, repo_path: str | None = None
    ) -> BackendResult:
        """
        Close every open descendant leaf-first, then the task itself.

        A failed close is recorded and the walk continues. The root is always
        attempted last. Only a failed listing makes the result a failure.
        """
        preview = await self.get_open_descendants(task_id, repo_path)
        if not preview.ok:
            return preview

        outcome = CascadeOutcome()
        for descendant in [*preview.data, CascadeDescendant(id=task_id, title="", state="")]:
            error = await self._close_one(descendant.id, reason, repo_path)
            if error:
                logger.warning(f"[cascade] Failed to close {error}")
                outcome.errors.append(error)
            else:
                outcome.closed.append(descendant.id)

        logger.info(
            f"[cascade] {task_id}: closed {len(outcome.closed)}, {len(outcome.errors)} error(s)"
        )
        return BackendResult.success(outcome)
