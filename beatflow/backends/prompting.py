"""Take/poll prompt text shared by the tracker adapters."""

from typing import Callable, Iterable

from beatflow.lib.types import TakePromptOptions, Task
from beatflow.workflow import model


def build_take_prompt_text(
    task_id: str,
    show_command: Callable[[str], str],
    options: TakePromptOptions | None = None,
) -> str:
    """Point an agent at a task (or a parent and its open children)."""
    if options and options.is_parent and options.child_ids:
        lines = [
            f"Parent task ID: {task_id}",
            f"Use `{show_command(task_id)}` and `{show_command('<child-id>')}` "
            "to inspect full details before starting.",
            "",
            "Open child task IDs:",
            *(f"- {child_id}" for child_id in options.child_ids),
        ]
        return "\n".join(lines)

    return "\n".join([
        f"Task ID: {task_id}",
        f"Use `{show_command(task_id)}` to inspect full details before starting.",
    ])


def select_poll_candidate(tasks: Iterable[Task]) -> Task | None:
    """Highest-priority, oldest task an agent may claim right now."""
    claimable = []
    for task in tasks:
        descriptor = model.builtin_descriptor(model.derive_profile_id(task.labels, task.metadata))
        if model.derive_workflow_runtime_state(descriptor, task.state).is_agent_claimable:
            claimable.append(task)
    if not claimable:
        return None
    return min(claimable, key=lambda t: (t.priority, t.created or "", t.id))
