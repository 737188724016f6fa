"""bd CLI adapter.

Delegates every operation to the `bd` binary and converts its output
(JSON on stdout, plain-text errors on stderr) into BackendResults.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from beatflow.backends.capabilities import FULL_CAPABILITIES, Capabilities
from beatflow.backends.errors import ErrorCode, classify_error_message
from beatflow.backends.port import BackendResult
from beatflow.backends.prompting import build_take_prompt_text, select_poll_candidate
from beatflow.backends.records import task_from_record
from beatflow.backends.runner import DEFAULT_TIMEOUT, CommandResult, run_command
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
from beatflow.verification.gate import apply_mutation, LabelMutation
from beatflow.workflow import model

logger = logging.getLogger(__name__)

Runner = Callable[..., Awaitable[CommandResult]]


def show_command(task_id: str) -> str:
    return f"bd show {json.dumps(task_id)}"


def _failure(result: CommandResult, fallback: str) -> BackendResult:
    message = result.stderr or fallback
    if result.timed_out:
        return BackendResult.failure(ErrorCode.TIMEOUT, message)
    return BackendResult.failure(classify_error_message(message), message)


def _filter_args(filters: TaskFilters | None) -> list[str]:
    if filters is None:
        return []
    args: list[str] = []
    if filters.type:
        args += ["--type", filters.type]
    if filters.state:
        args += ["--status", model.compat_status(filters.state)]
    if filters.priority is not None:
        args += ["--priority", str(filters.priority)]
    if filters.assignee:
        args += ["--assignee", filters.assignee]
    if filters.label:
        args += ["--label", filters.label]
    if filters.parent:
        args += ["--parent", filters.parent]
    return args


class BdCliBackend:
    """Backend backed by the `bd` command line tool."""

    capabilities: Capabilities = FULL_CAPABILITIES

    def __init__(
        self,
        binary: str = "bd",
        db_path: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        run: Runner = run_command,
    ):
        self.binary = binary
        self.db_path = db_path
        self.timeout = timeout
        self._run = run

    async def _exec(self, args: list[str], repo_path: str | None) -> CommandResult:
        cmd = [self.binary]
        if self.db_path:
            cmd += ["--db", self.db_path]
        return await self._run(cmd + args, cwd=repo_path, timeout=self.timeout)

    async def _exec_tasks(self, args: list[str], repo_path: str | None, what: str) -> BackendResult:
        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, f"bd {what} failed")
        try:
            items = json.loads(result.stdout or "[]")
            return BackendResult.success([task_from_record(item) for item in items])
        except (ValueError, KeyError, TypeError) as e:
            return BackendResult.failure(ErrorCode.INTERNAL, f"Failed to parse bd {what} output: {e}")

    # --- Reads ---

    async def list(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return await self._exec_tasks(["list", "--json", "--limit", "0", *_filter_args(filters)], repo_path, "list")

    async def list_ready(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return await self._exec_tasks(["ready", "--json", "--limit", "0", *_filter_args(filters)], repo_path, "ready")

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return await self._exec_tasks(["search", query, "--json", *_filter_args(filters)], repo_path, "search")

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        args = ["query", expression, "--json"]
        if options and options.limit:
            args += ["--limit", str(options.limit)]
        if options and options.sort:
            args += ["--sort", options.sort]
        return await self._exec_tasks(args, repo_path, "query")

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        result = await self._exec(["show", task_id, "--json"], repo_path)
        if not result.success:
            return _failure(result, f"bd show {task_id} failed")
        try:
            data = json.loads(result.stdout)
            # `bd show --json` wraps the record in a list
            if isinstance(data, list):
                if not data:
                    return BackendResult.failure(ErrorCode.NOT_FOUND, f"Task {task_id} not found")
                data = data[0]
            return BackendResult.success(task_from_record(data))
        except (ValueError, KeyError, TypeError) as e:
            return BackendResult.failure(ErrorCode.INTERNAL, f"Failed to parse bd show output: {e}")

    # --- Writes ---

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult:
        labels = list(fields.labels)
        if fields.state:
            labels = model.with_workflow_state_label(labels, fields.state)
        args = ["create", "--json", "--title", fields.title, "--type", fields.type,
                "--priority", str(fields.priority)]
        optional = {
            "--description": fields.description,
            "--parent": fields.parent,
            "--assignee": fields.assignee,
            "--acceptance": fields.acceptance,
            "--notes": fields.notes,
        }
        for flag, value in optional.items():
            if value:
                args += [flag, value]
        if labels:
            args += ["--labels", ",".join(labels)]

        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, "bd create failed")
        try:
            return BackendResult.success(json.loads(result.stdout)["id"])
        except (ValueError, KeyError, TypeError) as e:
            return BackendResult.failure(ErrorCode.INTERNAL, f"Failed to parse bd create output: {e}")

    async def update(self, task_id: str, fields: TaskUpdate, repo_path: str | None = None) -> BackendResult:
        args = ["update", task_id]
        scalars = {
            "--title": fields.title,
            "--description": fields.description,
            "--type": fields.type,
            "--parent": fields.parent,
            "--assignee": fields.assignee,
            "--acceptance": fields.acceptance,
            "--notes": fields.notes,
        }
        for flag, value in scalars.items():
            if value is not None:
                args += [flag, value]
        if fields.priority is not None:
            args += ["--priority", str(fields.priority)]

        if fields.state is not None or fields.add_labels or fields.remove_labels:
            # Labels are replaced wholesale, so start from the current set
            current = await self.get(task_id, repo_path)
            if not current.ok:
                return current
            labels = apply_mutation(
                current.data.labels,
                LabelMutation(add=tuple(fields.add_labels), remove=tuple(fields.remove_labels)),
            )
            if fields.state is not None:
                labels = model.with_workflow_state_label(labels, fields.state)
                args += ["--status", model.compat_status(fields.state)]
            args += ["--set-labels", ",".join(labels)]

        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, f"bd update {task_id} failed")
        return BackendResult.success()

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        result = await self._exec(["delete", task_id, "--force"], repo_path)
        if not result.success:
            return _failure(result, f"bd delete {task_id} failed")
        return BackendResult.success()

    async def close(self, task_id: str, reason: str | None = None, repo_path: str | None = None) -> BackendResult:
        args = ["close", task_id]
        if reason:
            args += ["--reason", reason]
        result = await self._exec(args, repo_path)
        if not result.success:
            return _failure(result, f"bd close {task_id} failed")
        return BackendResult.success()

    # --- Dependencies ---

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult:
        result = await self._exec(["dep", "list", task_id, "--json"], repo_path)
        if not result.success:
            return _failure(result, "bd dep list failed")
        try:
            raw: list[dict[str, Any]] = json.loads(result.stdout or "[]")
        except ValueError:
            return BackendResult.failure(ErrorCode.INTERNAL, "Failed to parse bd dep list output")

        deps = []
        for item in raw:
            kind = item.get("dependency_type") or item.get("type") or "blocks"
            if dep_type and kind != dep_type:
                continue
            deps.append(TaskDependency(
                id=item.get("id", ""),
                type=kind,
                source=item.get("source") or item.get("id", ""),
                target=item.get("target") or task_id,
            ))
        return BackendResult.success(deps)

    async def add_dependency(self, blocker_id: str, blocked_id: str, repo_path: str | None = None) -> BackendResult:
        result = await self._exec(["dep", blocker_id, "--blocks", blocked_id], repo_path)
        if not result.success:
            return _failure(result, "bd dep add failed")
        return BackendResult.success()

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult:
        result = await self._exec(["dep", "remove", blocked_id, blocker_id], repo_path)
        if not result.success:
            return _failure(result, "bd dep remove failed")
        return BackendResult.success()

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
        candidate: Task | None = select_poll_candidate(ready.data)
        if candidate is None:
            return BackendResult.failure(ErrorCode.NOT_FOUND, "No claimable tasks")
        prompt = build_take_prompt_text(candidate.id, show_command)
        return BackendResult.success(PollPromptResult(prompt=prompt, claimed_id=candidate.id))
