"""
Translation between tracker JSON records and Task.

bd's `--json` output and .beads/issues.jsonl share one snake_case record
shape (issue_type, created_at, acceptance_criteria, ...). Workflow state is
carried in a wf:state: label and mirrored into the coarse `status` field.
"""

from typing import Any

from beatflow.lib.types import Task, normalize_priority, normalize_type
from beatflow.workflow import model

VALID_STATUSES = frozenset({"open", "in_progress", "blocked", "deferred", "closed"})


def infer_parent(task_id: str, explicit: Any = None) -> str | None:
    """Explicit parent, else the id prefix before the last "." (bd child ids)."""
    if isinstance(explicit, str) and explicit:
        return explicit
    head, dot, _ = task_id.rpartition(".")
    return head if dot and head else None


def task_from_record(raw: dict[str, Any]) -> Task:
    labels = [label for label in (raw.get("labels") or []) if isinstance(label, str) and label.strip()]
    status = raw.get("status") if raw.get("status") in VALID_STATUSES else "open"
    metadata = dict(raw.get("metadata") or {})
    if raw.get("close_reason"):
        metadata["close_reason"] = raw["close_reason"]

    descriptor = model.builtin_descriptor(model.derive_profile_id(labels, metadata))
    state = model.derive_workflow_state(status, labels, descriptor)

    return Task(
        id=raw["id"],
        title=raw.get("title") or "",
        state=state,
        description=raw.get("description"),
        notes=raw.get("notes"),
        acceptance=raw.get("acceptance_criteria", raw.get("acceptance")),
        type=normalize_type(raw.get("issue_type", raw.get("type"))),
        priority=normalize_priority(raw.get("priority", 2)),
        labels=labels,
        parent=infer_parent(raw["id"], raw.get("parent")),
        assignee=raw.get("assignee"),
        owner=raw.get("owner"),
        created=raw.get("created_at", raw.get("created")),
        updated=raw.get("updated_at", raw.get("updated")),
        closed=raw.get("closed_at", raw.get("closed")),
        metadata=metadata,
    )


def task_to_record(task: Task) -> dict[str, Any]:
    profile_id = model.derive_profile_id(task.labels, task.metadata)
    state = task.state or model.builtin_descriptor(profile_id).initial_state
    labels = model.with_workflow_profile_label(
        model.with_workflow_state_label(task.labels, state),
        profile_id,
    )
    raw: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "status": model.compat_status(state),
        "priority": task.priority,
        "issue_type": task.type,
        "labels": labels,
        "created_at": task.created,
        "updated_at": task.updated,
    }
    optional = {
        "description": task.description,
        "notes": task.notes,
        "acceptance_criteria": task.acceptance,
        "assignee": task.assignee,
        "owner": task.owner,
        "parent": task.parent,
        "closed_at": task.closed,
    }
    raw.update({key: value for key, value in optional.items() if value is not None})
    if task.metadata:
        raw["metadata"] = dict(task.metadata)
        if task.metadata.get("close_reason"):
            raw["close_reason"] = task.metadata["close_reason"]
    return raw


def matches_expression(task: Task, expression: str) -> bool:
    """Evaluate a `field:value field:value ...` query; all terms must match.

    Unknown fields and malformed terms are ignored.
    """
    for term in expression.split():
        field_name, sep, value = term.partition(":")
        if not sep or not field_name or not value:
            continue
        if field_name == "state" and task.state != value:
            return False
        if field_name == "status" and model.compat_status(task.state) != value:
            return False
        if field_name == "type" and task.type != value:
            return False
        if field_name == "priority" and str(task.priority) != value:
            return False
        if field_name == "assignee" and task.assignee != value:
            return False
        if field_name == "owner" and task.owner != value:
            return False
        if field_name == "label" and value not in task.labels:
            return False
        if field_name == "parent" and task.parent != value:
            return False
        if field_name == "id" and task.id != value:
            return False
    return True


def matches_text(task: Task, query: str) -> bool:
    lower = query.lower()
    return any(
        lower in (text or "").lower()
        for text in (task.id, task.title, task.description, task.notes)
    )
