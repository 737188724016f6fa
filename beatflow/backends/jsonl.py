"""File-backed adapter over .beads/issues.jsonl.

Reads and writes the JSONL file directly, bypassing the bd CLI. Each repo
is loaded lazily into memory on first access and flushed to disk after
every mutation. Dependencies live in memory only.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from beatflow.backends.capabilities import JSONL_CAPABILITIES, Capabilities
from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendResult
from beatflow.backends.prompting import build_take_prompt_text, select_poll_candidate
from beatflow.backends.records import matches_expression, matches_text, task_from_record, task_to_record
from beatflow.lib import validate
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
)
from beatflow.verification.gate import LabelMutation, apply_mutation
from beatflow.workflow import model

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def resolve_jsonl_path(repo_path: str) -> Path:
    return Path(repo_path) / ".beads" / "issues.jsonl"


def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if number == 0:
            return "".join(reversed(digits))


def generate_id() -> str:
    rand = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"beads-{_base36(int(time.time() * 1000))}-{rand}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_jsonl_file(path: Path) -> list[dict]:
    """Parse records, skipping blank, malformed, and schema-invalid lines."""
    if not path.exists():
        return []
    records = []
    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            logger.warning(f"[jsonl] {path}:{lineno}: Skipping malformed line")
            continue
        try:
            validate.validate(record, "task")
        except validate.ValidationError as e:
            logger.warning(f"[jsonl] {path}:{lineno}: Skipping invalid record: {e}")
            continue
        records.append(record)
    return records


def write_jsonl_file(path: Path, records: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "".join(json.dumps(record) + "\n" for record in records)
    tmp = path.with_suffix(".jsonl.tmp")
    tmp.write_text(body)
    os.replace(tmp, path)


@dataclass
class _RepoCache:
    tasks: dict[str, Task] = field(default_factory=dict)
    deps: list[tuple[str, str]] = field(default_factory=list)  # (blocker, blocked)


class JsonlBackend:
    """Backend that owns the .beads/issues.jsonl file itself."""

    capabilities: Capabilities = JSONL_CAPABILITIES

    def __init__(self, default_repo: str | None = None):
        self.default_repo = default_repo
        self._cache: dict[str, _RepoCache] = {}

    def _repo(self, repo_path: str | None) -> str:
        return os.path.abspath(repo_path or self.default_repo or os.getcwd())

    def _load(self, repo_path: str | None) -> tuple[str, _RepoCache]:
        repo = self._repo(repo_path)
        entry = self._cache.get(repo)
        if entry is None:
            entry = _RepoCache()
            for record in read_jsonl_file(resolve_jsonl_path(repo)):
                task = task_from_record(record)
                entry.tasks[task.id] = task
            self._cache[repo] = entry
            logger.debug(f"[jsonl] Loaded {len(entry.tasks)} task(s) from {repo}")
        return repo, entry

    def _commit(
        self, repo: str, tasks: dict[str, Task], deps: list[tuple[str, str]] | None = None
    ) -> BackendResult:
        """Write `tasks` to disk, then make them the cached view.

        A failed write leaves the cache as it was.
        """
        path = resolve_jsonl_path(repo)
        try:
            write_jsonl_file(path, [task_to_record(t) for t in tasks.values()])
        except OSError as e:
            logger.error(f"[jsonl] Failed to write {path}: {e}")
            return BackendResult.failure(ErrorCode.INTERNAL, f"Failed to write {path}: {e}")
        entry = self._cache[repo]
        entry.tasks = tasks
        if deps is not None:
            entry.deps = deps
        return BackendResult.success()

    @staticmethod
    def _copy(task: Task) -> Task:
        return replace(task, labels=list(task.labels), metadata=dict(task.metadata))

    def reset(self) -> None:
        """Drop cached state so the next call re-reads from disk."""
        self._cache.clear()

    @staticmethod
    def _not_found(task_id: str) -> BackendResult:
        return BackendResult.failure(ErrorCode.NOT_FOUND, f"Task {task_id} not found")

    # --- Reads ---

    async def list(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        _, entry = self._load(repo_path)
        tasks = [t for t in entry.tasks.values() if filters is None or filters.matches(t)]
        return BackendResult.success(tasks)

    async def list_ready(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        _, entry = self._load(repo_path)
        blocked = {
            blocked_id for blocker_id, blocked_id in entry.deps
            if blocker_id in entry.tasks and not entry.tasks[blocker_id].is_closed
        }
        ready = [
            t for t in entry.tasks.values()
            if model.compat_status(t.state) == "open"
            and t.id not in blocked
            and (filters is None or filters.matches(t))
        ]
        return BackendResult.success(ready)

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult:
        listing = await self.list(filters, repo_path)
        return BackendResult.success([t for t in listing.data if matches_text(t, query)])

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        _, entry = self._load(repo_path)
        matches = [t for t in entry.tasks.values() if matches_expression(t, expression)]
        if options and options.sort == "priority":
            matches.sort(key=lambda t: (t.priority, t.created or ""))
        elif options and options.sort == "created":
            matches.sort(key=lambda t: t.created or "")
        if options and options.limit:
            matches = matches[:options.limit]
        return BackendResult.success(matches)

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        _, entry = self._load(repo_path)
        task = entry.tasks.get(task_id)
        if task is None:
            return self._not_found(task_id)
        return BackendResult.success(task)

    # --- Writes ---

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult:
        repo, entry = self._load(repo_path)
        task_id = generate_id()
        while task_id in entry.tasks:
            task_id = generate_id()
        descriptor = model.builtin_descriptor(model.derive_profile_id(fields.labels))
        now = _now()
        task = Task(
            id=task_id,
            title=fields.title,
            state=fields.state or descriptor.initial_state,
            description=fields.description,
            notes=fields.notes,
            acceptance=fields.acceptance,
            type=fields.type,
            priority=fields.priority,
            labels=list(dict.fromkeys(fields.labels)),
            parent=fields.parent,
            assignee=fields.assignee,
            created=now,
            updated=now,
        )
        result = self._commit(repo, {**entry.tasks, task_id: task})
        return BackendResult.success(task_id) if result.ok else result

    async def update(self, task_id: str, fields: TaskUpdate, repo_path: str | None = None) -> BackendResult:
        repo, entry = self._load(repo_path)
        if task_id not in entry.tasks:
            return self._not_found(task_id)

        task = self._copy(entry.tasks[task_id])
        for name in ("title", "description", "type", "state", "priority", "parent",
                     "assignee", "acceptance", "notes"):
            value = getattr(fields, name)
            if value is not None:
                setattr(task, name, value)
        if fields.add_labels or fields.remove_labels:
            task.labels = apply_mutation(
                task.labels,
                LabelMutation(add=tuple(fields.add_labels), remove=tuple(fields.remove_labels)),
            )
        task.updated = _now()
        return self._commit(repo, {**entry.tasks, task_id: task})

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        repo, entry = self._load(repo_path)
        if task_id not in entry.tasks:
            return self._not_found(task_id)
        tasks = {i: t for i, t in entry.tasks.items() if i != task_id}
        return self._commit(repo, tasks, deps=[d for d in entry.deps if task_id not in d])

    async def close(self, task_id: str, reason: str | None = None, repo_path: str | None = None) -> BackendResult:
        repo, entry = self._load(repo_path)
        if task_id not in entry.tasks:
            return self._not_found(task_id)
        task = self._copy(entry.tasks[task_id])
        descriptor = model.builtin_descriptor(model.derive_profile_id(task.labels, task.metadata))
        now = _now()
        task.state = model.status_to_workflow_state("closed", descriptor)
        task.closed = now
        task.updated = now
        if reason:
            task.metadata["close_reason"] = reason
        return self._commit(repo, {**entry.tasks, task_id: task})

    # --- Dependencies ---

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult:
        _, entry = self._load(repo_path)
        if task_id not in entry.tasks:
            return self._not_found(task_id)
        if dep_type and dep_type != "blocks":
            return BackendResult.success([])
        deps = [
            TaskDependency(
                id=blocked if blocker == task_id else blocker,
                type="blocks",
                source=blocker,
                target=blocked,
            )
            for blocker, blocked in entry.deps
            if task_id in (blocker, blocked)
        ]
        return BackendResult.success(deps)

    async def add_dependency(self, blocker_id: str, blocked_id: str, repo_path: str | None = None) -> BackendResult:
        _, entry = self._load(repo_path)
        for task_id in (blocker_id, blocked_id):
            if task_id not in entry.tasks:
                return self._not_found(task_id)
        if (blocker_id, blocked_id) in entry.deps:
            return BackendResult.failure(
                ErrorCode.ALREADY_EXISTS, f"Dependency {blocker_id} -> {blocked_id} already exists"
            )
        entry.deps.append((blocker_id, blocked_id))
        return BackendResult.success()

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult:
        _, entry = self._load(repo_path)
        if (blocker_id, blocked_id) not in entry.deps:
            return BackendResult.failure(
                ErrorCode.NOT_FOUND, f"Dependency {blocker_id} -> {blocked_id} not found"
            )
        entry.deps.remove((blocker_id, blocked_id))
        return BackendResult.success()

    # --- Workflows and prompts ---

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult:
        return BackendResult.success(model.builtin_workflow_descriptors())

    async def build_take_prompt(
        self, task_id: str, options: TakePromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        prompt = build_take_prompt_text(task_id, lambda i: f"bd show {json.dumps(i)}", options)
        return BackendResult.success(TakePromptResult(prompt=prompt, claimed_id=task_id))

    async def build_poll_prompt(
        self, options: PollPromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        ready = await self.list_ready(repo_path=repo_path)
        candidate = select_poll_candidate(ready.data)
        if candidate is None:
            return BackendResult.failure(ErrorCode.NOT_FOUND, "No claimable tasks")
        prompt = build_take_prompt_text(candidate.id, lambda i: f"bd show {json.dumps(i)}")
        return BackendResult.success(PollPromptResult(prompt=prompt, claimed_id=candidate.id))
