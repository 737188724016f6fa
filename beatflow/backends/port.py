"""
Backend port: the contract every task tracker adapter implements.

All methods are coroutines returning a BackendResult. Expected failures
(missing task, unsupported operation, tracker errors) come back as
BackendResult.failure(...), never as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from beatflow.backends.capabilities import Capabilities
from beatflow.backends.errors import ErrorCode, is_retryable_by_default
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
from beatflow.workflow.model import WorkflowDescriptor

T = TypeVar("T")


@dataclass(frozen=True)
class BackendError:
    """Structured backend failure."""
    code: ErrorCode
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass(frozen=True)
class BackendResult(Generic[T]):
    """Success with data, or failure with an error."""
    ok: bool
    data: T | None = None
    error: BackendError | None = None

    @classmethod
    def success(cls, data: Any = None) -> "BackendResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: ErrorCode, message: str, retryable: bool | None = None) -> "BackendResult":
        if retryable is None:
            retryable = is_retryable_by_default(code)
        return cls(ok=False, error=BackendError(code=code, message=message, retryable=retryable))

    @classmethod
    def from_error(cls, error: BackendError | None, fallback: str = "Unknown backend error") -> "BackendResult":
        """Propagate another result's error (or INTERNAL if it had none)."""
        if error is None:
            return cls.failure(ErrorCode.INTERNAL, fallback)
        return cls(ok=False, error=error)

    @property
    def error_message(self) -> str:
        return self.error.message if self.error else ""


class BackendPort(Protocol):
    """Tracker operations. repo_path=None means the backend's default repository."""

    capabilities: Capabilities

    async def list(
        self, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult[list[Task]]: ...

    async def list_ready(
        self, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult[list[Task]]: ...

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult[list[Task]]: ...

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult[list[Task]]: ...

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult[Task]: ...

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult[str]: ...

    async def update(
        self, task_id: str, fields: TaskUpdate, repo_path: str | None = None
    ) -> BackendResult[None]: ...

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult[None]: ...

    async def close(
        self, task_id: str, reason: str | None = None, repo_path: str | None = None
    ) -> BackendResult[None]: ...

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult[list[TaskDependency]]: ...

    async def add_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult[None]: ...

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult[None]: ...

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult[list[WorkflowDescriptor]]: ...

    async def build_take_prompt(
        self, task_id: str, options: TakePromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult[TakePromptResult]: ...

    async def build_poll_prompt(
        self, options: PollPromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult[PollPromptResult]: ...
