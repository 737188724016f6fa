"""knots CLI adapter.

knots stores workflow state natively and models hierarchy and blocking as
edges (`parent_of`, `blocked_by`). Tags play the role of labels.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable

from beatflow.backends.capabilities import KNOTS_CAPABILITIES, Capabilities
from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendResult
from beatflow.backends.prompting import build_take_prompt_text, select_poll_candidate
from beatflow.backends.records import matches_expression, matches_text
from beatflow.backends.runner import CommandResult, run_command
from beatflow.lib.types import (
    PollPromptOptions,
    PollPromptResult,
    QueryOptions,
    TakePromptOptions,
    TakePromptResult,
    Task,
    TaskCreate,
    TaskDependency,
    TaskFilters,
    TaskUpdate,
    normalize_priority,
    normalize_type,
)
from beatflow.workflow import model

logger = logging.getLogger(__name__)

Runner = Callable[..., Awaitable[CommandResult]]

KNOTS_TIMEOUT = 5
EDGE_PARENT = "parent_of"
EDGE_BLOCKED_BY = "blocked_by"

# knots reports some error classes with its own wording
_KNOTS_ERROR_RULES = [
    (("not found", "no such", "local cache"), ErrorCode.NOT_FOUND),
    (("already exists", "duplicate"), ErrorCode.ALREADY_EXISTS),
    (("invalid", "unsupported", "requires at least one field change", "priority must be"),
     ErrorCode.INVALID_INPUT),
    (("timed out", "timeout"), ErrorCode.TIMEOUT),
    (("lock", "busy"), ErrorCode.LOCKED),
    (("permission denied", "unauthorized"), ErrorCode.PERMISSION_DENIED),
    (("unavailable",), ErrorCode.UNAVAILABLE),
    (("rate limit",), ErrorCode.RATE_LIMITED),
]


def classify_knots_error(message: str) -> ErrorCode:
    lower = message.lower()
    for patterns, code in _KNOTS_ERROR_RULES:
        if any(p in lower for p in patterns):
            return code
    return ErrorCode.INTERNAL


def show_command(task_id: str) -> str:
    return f"kno show {json.dumps(task_id)}"


def _failure(result: CommandResult, fallback: str) -> BackendResult:
    message = result.stderr or fallback
    if result.timed_out:
        return BackendResult.failure(ErrorCode.TIMEOUT, message)
    return BackendResult.failure(classify_knots_error(message), message)


def _stringify_notes(raw: Any) -> str | None:
    if not isinstance(raw, list):
        return None
    parts = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        content = str(entry.get("content") or "").strip()
        if not content:
            continue
        username = entry.get("username") or "unknown"
        stamp = entry.get("datetime")
        prefix = f"[{stamp}] {username}" if stamp else username
        parts.append(f"{prefix}: {content}")
    return "\n\n".join(parts) or None


def task_from_knot(knot: dict[str, Any], edges: list[dict[str, Any]]) -> Task:
    descriptor = model.builtin_descriptor(knot.get("profile_id"))
    state = model.normalize_state_for_workflow(knot.get("state"), descriptor)
    parent = next(
        (e["src"] for e in edges if e.get("kind") == EDGE_PARENT and e.get("dst") == knot["id"]),
        None,
    )
    description = knot.get("description")
    if not isinstance(description, str):
        description = knot.get("body") if isinstance(knot.get("body"), str) else None
    return Task(
        id=knot["id"],
        title=knot.get("title") or "",
        state=state,
        description=description,
        notes=_stringify_notes(knot.get("notes")),
        type=normalize_type((knot.get("type") or "").lower()),
        priority=normalize_priority(knot.get("priority")),
        labels=[t for t in (knot.get("tags") or []) if isinstance(t, str) and t.strip()],
        parent=parent,
        created=knot.get("created_at") or knot.get("updated_at"),
        updated=knot.get("updated_at"),
        closed=knot.get("updated_at") if state in descriptor.terminal_states else None,
        metadata={"knots_state": knot.get("state"), "knots_workflow_etag": knot.get("workflow_etag")},
    )


class KnotsCliBackend:
    """Backend backed by the `knots` command line tool."""

    capabilities: Capabilities = KNOTS_CAPABILITIES

    def __init__(
        self,
        binary: str = "knots",
        db_path: str | None = None,
        timeout: float = KNOTS_TIMEOUT,
        run: Runner = run_command,
        default_repo: str | None = None,
    ):
        self.binary = binary
        self.db_path = db_path
        self.timeout = timeout
        self._run = run
        self.default_repo = default_repo

    def _repo(self, repo_path: str | None) -> str:
        return os.path.abspath(repo_path or self.default_repo or os.getcwd())

    async def _exec(self, args: list[str], repo_path: str | None) -> CommandResult:
        repo = self._repo(repo_path)
        db = self.db_path or os.path.join(repo, ".knots", "cache", "state.sqlite")
        cmd = [self.binary, "--repo-root", repo, "--db", db, *args]
        return await self._run(cmd, cwd=repo, timeout=self.timeout)

    async def _exec_json(self, args: list[str], repo_path: str | None, what: str) -> BackendResult:
        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, f"knots {what} failed")
        try:
            return BackendResult.success(json.loads(result.stdout or "null"))
        except ValueError:
            return BackendResult.failure(ErrorCode.INTERNAL, f"Failed to parse knots {what} output")

    async def _exec_ok(self, args: list[str], repo_path: str | None, what: str) -> BackendResult:
        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, f"knots {what} failed")
        return BackendResult.success()

    async def _edges(self, task_id: str, repo_path: str | None, direction: str = "both") -> BackendResult:
        result = await self._exec_json(
            ["edge", "list", task_id, "--direction", direction, "--json"], repo_path, "edge list"
        )
        if result.ok and result.data is None:
            return BackendResult.success([])
        return result

    async def _load_all(self, repo_path: str | None) -> BackendResult:
        """All knots with their edges: (tasks, edges_by_id)."""
        listing = await self._exec_json(["ls", "--json"], repo_path, "ls")
        if not listing.ok:
            return listing
        records = listing.data or []
        edge_results = await asyncio.gather(*(self._edges(r["id"], repo_path) for r in records))

        edges_by_id: dict[str, list] = {}
        for record, edges in zip(records, edge_results):
            if not edges.ok:
                return edges
            edges_by_id[record["id"]] = edges.data
        tasks = [task_from_knot(r, edges_by_id[r["id"]]) for r in records]
        return BackendResult.success((tasks, edges_by_id))

    # --- Reads ---

    async def list(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        loaded = await self._load_all(repo_path)
        if not loaded.ok:
            return loaded
        tasks, _ = loaded.data
        return BackendResult.success([t for t in tasks if filters is None or filters.matches(t)])

    async def list_ready(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        loaded = await self._load_all(repo_path)
        if not loaded.ok:
            return loaded
        tasks, edges_by_id = loaded.data
        ready = []
        for task in tasks:
            blocked = any(
                e.get("kind") == EDGE_BLOCKED_BY and e.get("src") == task.id
                for e in edges_by_id.get(task.id, [])
            )
            if model.compat_status(task.state) == "open" and not blocked:
                if filters is None or filters.matches(task):
                    ready.append(task)
        return BackendResult.success(ready)

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult:
        listing = await self.list(filters, repo_path)
        if not listing.ok:
            return listing
        return BackendResult.success([t for t in listing.data if matches_text(t, query)])

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        listing = await self.list(repo_path=repo_path)
        if not listing.ok:
            return listing
        matches = [t for t in listing.data if matches_expression(t, expression)]
        if options and options.limit:
            matches = matches[:options.limit]
        return BackendResult.success(matches)

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        shown = await self._exec_json(["show", task_id, "--json"], repo_path, "show")
        if not shown.ok:
            return shown
        if not shown.data:
            return BackendResult.failure(ErrorCode.NOT_FOUND, f"Task {task_id} not found")
        edges = await self._edges(task_id, repo_path)
        if not edges.ok:
            return edges
        return BackendResult.success(task_from_knot(shown.data, edges.data))

    # --- Writes ---

    def _patch_args(
        self,
        title: str | None = None,
        description: str | None = None,
        priority: int | None = None,
        state: str | None = None,
        type_: str | None = None,
        add_tags: list[str] = (),
        remove_tags: list[str] = (),
        note: str | None = None,
    ) -> list[str]:
        args: list[str] = []
        if title is not None:
            args += ["--title", title]
        if description is not None:
            args += ["--description", description]
        if priority is not None:
            args += ["--priority", str(priority)]
        if state is not None:
            args += ["--status", model.normalize_state(state) or state]
        if type_ is not None:
            args += ["--type", type_]
        for tag in add_tags:
            if tag.strip():
                args += ["--add-tag", tag]
        for tag in remove_tags:
            if tag.strip():
                args += ["--remove-tag", tag]
        if note:
            args += ["--add-note", note]
        return args

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult:
        descriptor = model.builtin_descriptor(model.derive_profile_id(fields.labels))
        args = ["new"]
        if fields.description:
            args += ["--body", fields.description]
        args += ["--state", fields.state or descriptor.initial_state, "--", fields.title]

        created = await self._exec_json(args, repo_path, "new")
        if not created.ok:
            return created
        try:
            task_id = created.data["id"]
        except (KeyError, TypeError):
            return BackendResult.failure(ErrorCode.INTERNAL, "knots new returned no id")

        patch = self._patch_args(
            priority=fields.priority,
            type_=fields.type,
            add_tags=fields.labels,
            note=fields.notes,
        )
        if patch:
            result = await self._exec_ok(["update", task_id, *patch], repo_path, "update")
            if not result.ok:
                return result
        if fields.acceptance:
            note = f"Acceptance Criteria:\n{fields.acceptance}"
            result = await self._exec_ok(["update", task_id, "--add-note", note], repo_path, "update")
            if not result.ok:
                return result
        if fields.parent:
            result = await self._exec_ok(["edge", "add", fields.parent, EDGE_PARENT, task_id], repo_path, "edge add")
            if not result.ok:
                return result
        return BackendResult.success(task_id)

    async def update(self, task_id: str, fields: TaskUpdate, repo_path: str | None = None) -> BackendResult:
        patch = self._patch_args(
            title=fields.title,
            description=fields.description,
            priority=fields.priority,
            state=fields.state,
            type_=fields.type,
            add_tags=fields.add_labels,
            remove_tags=fields.remove_labels,
            note=fields.notes,
        )
        if patch:
            result = await self._exec_ok(["update", task_id, *patch], repo_path, "update")
            if not result.ok:
                return result

        if fields.acceptance is not None:
            note = f"Acceptance Criteria:\n{fields.acceptance}"
            result = await self._exec_ok(["update", task_id, "--add-note", note], repo_path, "update")
            if not result.ok:
                return result

        if fields.parent is not None:
            incoming = await self._edges(task_id, repo_path, direction="incoming")
            if not incoming.ok:
                return incoming
            existing = [
                e["src"] for e in incoming.data
                if e.get("kind") == EDGE_PARENT and e.get("dst") == task_id
            ]
            next_parent = fields.parent.strip()
            for parent_id in existing:
                if parent_id == next_parent:
                    continue
                result = await self._exec_ok(
                    ["edge", "remove", parent_id, EDGE_PARENT, task_id], repo_path, "edge remove"
                )
                if not result.ok:
                    return result
            if next_parent and next_parent not in existing:
                result = await self._exec_ok(
                    ["edge", "add", next_parent, EDGE_PARENT, task_id], repo_path, "edge add"
                )
                if not result.ok:
                    return result

        return BackendResult.success()

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        return BackendResult.failure(ErrorCode.UNSUPPORTED, "knots backend does not support deleting tasks")

    async def close(self, task_id: str, reason: str | None = None, repo_path: str | None = None) -> BackendResult:
        args = ["update", task_id, "--status", "shipped", "--force"]
        if reason:
            args += ["--add-note", f"Close reason: {reason}"]
        return await self._exec_ok(args, repo_path, "update")

    # --- Dependencies ---

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult:
        edges = await self._edges(task_id, repo_path)
        if not edges.ok:
            return edges
        deps = []
        for edge in edges.data:
            if edge.get("kind") != EDGE_BLOCKED_BY:
                continue
            if dep_type and dep_type != "blocks":
                continue
            # "A blocked_by B" means B blocks A
            blocker, blocked = edge["dst"], edge["src"]
            other = blocker if blocked == task_id else blocked
            deps.append(TaskDependency(id=other, type="blocks", source=blocker, target=blocked))
        return BackendResult.success(deps)

    async def add_dependency(self, blocker_id: str, blocked_id: str, repo_path: str | None = None) -> BackendResult:
        return await self._exec_ok(["edge", "add", blocked_id, EDGE_BLOCKED_BY, blocker_id], repo_path, "edge add")

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult:
        return await self._exec_ok(
            ["edge", "remove", blocked_id, EDGE_BLOCKED_BY, blocker_id], repo_path, "edge remove"
        )

    # --- Workflows and prompts ---

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult:
        return BackendResult.success(model.builtin_workflow_descriptors())

    async def build_take_prompt(
        self, task_id: str, options: TakePromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        prompt = build_take_prompt_text(task_id, show_command, options)
        return BackendResult.success(TakePromptResult(prompt=prompt, claimed_id=task_id))

    async def build_poll_prompt(
        self, options: PollPromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        ready = await self.list_ready(repo_path=repo_path)
        if not ready.ok:
            return ready
        candidate = select_poll_candidate(ready.data)
        if candidate is None:
            return BackendResult.failure(ErrorCode.NOT_FOUND, "No claimable tasks")
        prompt = build_take_prompt_text(candidate.id, show_command)
        return BackendResult.success(PollPromptResult(prompt=prompt, claimed_id=candidate.id))
