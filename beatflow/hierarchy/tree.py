"""
Parent/child index over a flat task list.

The data does not guarantee a forest: a task may name itself or a
descendant as its parent. Every walk here carries its own visited set.
"""

from typing import Iterable

from beatflow.lib.types import Task


def index_by_id(tasks: Iterable[Task]) -> dict[str, Task]:
    """Map id -> task. Later duplicates win."""
    return {task.id: task for task in tasks}


def build_children_index(tasks: Iterable[Task]) -> dict[str, list[Task]]:
    """Map parent id -> immediate children, in input order."""
    children: dict[str, list[Task]] = {}
    for task in tasks:
        if task.parent:
            children.setdefault(task.parent, []).append(task)
    return children


def get_ancestors(task_id: str, by_id: dict[str, Task]) -> list[str]:
    """Ancestor ids from nearest to farthest. Stops on a repeat."""
    ancestors: list[str] = []
    visited = {task_id}
    current = by_id.get(task_id)
    while current is not None and current.parent and current.parent not in visited:
        visited.add(current.parent)
        ancestors.append(current.parent)
        current = by_id.get(current.parent)
    return ancestors


def filter_by_visible_ancestor_chain(tasks: list[Task]) -> list[Task]:
    """Keep tasks whose whole parent chain is present in the same list.

    Keeps a ready child from surfacing at top level when an intermediate
    ancestor was filtered out. Tasks on a parent cycle are dropped.
    """
    by_id = index_by_id(tasks)
    visible: dict[str, bool] = {}

    for task in tasks:
        if task.id in visible:
            continue
        chain: list[str] = []
        on_chain: set[str] = set()
        current: Task | None = task
        result = True
        while current is not None:
            if current.id in visible:
                result = visible[current.id]
                break
            if current.id in on_chain:
                result = False
                break
            chain.append(current.id)
            on_chain.add(current.id)
            if not current.parent:
                result = True
                break
            current = by_id.get(current.parent)
            if current is None:
                result = False
        for task_id in chain:
            visible[task_id] = result

    return [task for task in tasks if visible.get(task.id, False)]
