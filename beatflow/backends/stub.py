"""Read-only stub backend.

Used when no tracker is configured and in tests. Reads succeed with empty
data; writes fail with UNAVAILABLE.
"""

from __future__ import annotations

from beatflow.backends.capabilities import STUB_CAPABILITIES, Capabilities
from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendResult
from beatflow.lib.types import (
    PollPromptOptions,
    QueryOptions,
    TakePromptOptions,
    TaskCreate,
    TaskFilters,
    TaskUpdate,
)
from beatflow.workflow import model


def _unsupported(operation: str) -> BackendResult:
    return BackendResult.failure(
        ErrorCode.UNAVAILABLE, f"Stub backend does not support {operation}", retryable=False
    )


class StubBackend:
    capabilities: Capabilities = STUB_CAPABILITIES

    async def list(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return BackendResult.success([])

    async def list_ready(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return BackendResult.success([])

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return BackendResult.success([])

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return BackendResult.success([])

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        return BackendResult.failure(ErrorCode.NOT_FOUND, f"Task {task_id} not found (stub)")

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult:
        return _unsupported("create")

    async def update(self, task_id: str, fields: TaskUpdate, repo_path: str | None = None) -> BackendResult:
        return _unsupported("update")

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        return _unsupported("delete")

    async def close(self, task_id: str, reason: str | None = None, repo_path: str | None = None) -> BackendResult:
        return _unsupported("close")

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult:
        return BackendResult.success([])

    async def add_dependency(self, blocker_id: str, blocked_id: str, repo_path: str | None = None) -> BackendResult:
        return _unsupported("add_dependency")

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult:
        return _unsupported("remove_dependency")

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult:
        return BackendResult.success(model.builtin_workflow_descriptors())

    async def build_take_prompt(
        self, task_id: str, options: TakePromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return _unsupported("build_take_prompt")

    async def build_poll_prompt(
        self, options: PollPromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return BackendResult.failure(ErrorCode.NOT_FOUND, "No claimable tasks (stub)")
