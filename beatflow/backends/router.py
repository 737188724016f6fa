"""
Backend routing.

BackendRouter picks a concrete backend per repository from its tracker
marker (.knots/ or .beads/), caches the decision per path, and delegates
every port operation unchanged. create_backend() and get_backend() build
backends from configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from beatflow.backends.bd_cli import BdCliBackend
from beatflow.backends.capabilities import (
    FULL_CAPABILITIES,
    JSONL_CAPABILITIES,
    KNOTS_CAPABILITIES,
    STUB_CAPABILITIES,
    Capabilities,
)
from beatflow.backends.detection import TRACKER_BEADS, TRACKER_KNOTS, detect_tracker
from beatflow.backends.jsonl import JsonlBackend
from beatflow.backends.knots_cli import KnotsCliBackend
from beatflow.backends.port import BackendPort, BackendResult
from beatflow.backends.stub import StubBackend
from beatflow.lib.config import BeatflowConfig, load_config
from beatflow.lib.types import (
    PollPromptOptions,
    QueryOptions,
    TakePromptOptions,
    TaskCreate,
    TaskFilters,
    TaskUpdate,
)

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    CLI = "cli"
    KNOTS = "knots"
    JSONL = "jsonl"
    STUB = "stub"


@dataclass(frozen=True)
class BackendEntry:
    port: BackendPort
    capabilities: Capabilities


KIND_CAPABILITIES = {
    BackendKind.CLI: FULL_CAPABILITIES,
    BackendKind.KNOTS: KNOTS_CAPABILITIES,
    BackendKind.JSONL: JSONL_CAPABILITIES,
    BackendKind.STUB: STUB_CAPABILITIES,
}

_TRACKER_KINDS = {
    TRACKER_KNOTS: BackendKind.KNOTS,
    TRACKER_BEADS: BackendKind.CLI,
}


def build_concrete_backend(kind: BackendKind, config: BeatflowConfig | None = None) -> BackendPort:
    """Instantiate one concrete adapter from configuration."""
    config = config or BeatflowConfig()
    if kind is BackendKind.CLI:
        return BdCliBackend(binary=config.bd_bin, db_path=config.bd_db, timeout=config.command_timeout)
    if kind is BackendKind.KNOTS:
        return KnotsCliBackend(binary=config.knots_bin, db_path=config.knots_db_path)
    if kind is BackendKind.JSONL:
        return JsonlBackend()
    return StubBackend()


class BackendRouter:
    """Routes each call to the backend that owns the target repository."""

    capabilities: Capabilities = FULL_CAPABILITIES

    def __init__(
        self,
        fallback: BackendKind = BackendKind.CLI,
        factory: Callable[[BackendKind], BackendPort] | None = None,
        config: BeatflowConfig | None = None,
    ):
        self.fallback = BackendKind(fallback)
        self._config = config
        self._factory = factory or (lambda kind: build_concrete_backend(kind, self._config))
        self._instances: dict[BackendKind, BackendEntry] = {}
        self._repo_cache: dict[str, BackendKind] = {}

    def resolve_kind(self, repo_path: str | None = None) -> BackendKind:
        """Backend kind for a repository. Cached per path; no path means the fallback."""
        if not repo_path:
            return self.fallback
        key = os.path.abspath(repo_path)
        cached = self._repo_cache.get(key)
        if cached is not None:
            return cached

        tracker = detect_tracker(key)
        kind = _TRACKER_KINDS.get(tracker, self.fallback)
        self._repo_cache[key] = kind
        logger.debug(f"[router] {key} -> {kind.value} (tracker={tracker})")
        return kind

    def _entry(self, kind: BackendKind) -> BackendEntry:
        entry = self._instances.get(kind)
        if entry is None:
            entry = BackendEntry(port=self._factory(kind), capabilities=KIND_CAPABILITIES[kind])
            self._instances[kind] = entry
        return entry

    def _backend(self, repo_path: str | None) -> BackendPort:
        return self._entry(self.resolve_kind(repo_path)).port

    def capabilities_for_repo(self, repo_path: str | None = None) -> Capabilities:
        """Capabilities of the backend serving repo_path, without tracker I/O."""
        return KIND_CAPABILITIES[self.resolve_kind(repo_path)]

    def clear_repo_cache(self, repo_path: str | None = None) -> None:
        if repo_path is None:
            self._repo_cache.clear()
        else:
            self._repo_cache.pop(os.path.abspath(repo_path), None)

    # --- Delegation ---

    async def list(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).list(filters, repo_path)

    async def list_ready(self, filters: TaskFilters | None = None, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).list_ready(filters, repo_path)

    async def search(
        self, query: str, filters: TaskFilters | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).search(query, filters, repo_path)

    async def query(
        self, expression: str, options: QueryOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).query(expression, options, repo_path)

    async def get(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).get(task_id, repo_path)

    async def create(self, fields: TaskCreate, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).create(fields, repo_path)

    async def update(self, task_id: str, fields: TaskUpdate, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).update(task_id, fields, repo_path)

    async def delete(self, task_id: str, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).delete(task_id, repo_path)

    async def close(self, task_id: str, reason: str | None = None, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).close(task_id, reason, repo_path)

    async def list_dependencies(
        self, task_id: str, repo_path: str | None = None, dep_type: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).list_dependencies(task_id, repo_path, dep_type)

    async def add_dependency(self, blocker_id: str, blocked_id: str, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).add_dependency(blocker_id, blocked_id, repo_path)

    async def remove_dependency(
        self, blocker_id: str, blocked_id: str, repo_path: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).remove_dependency(blocker_id, blocked_id, repo_path)

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult:
        return await self._backend(repo_path).list_workflows(repo_path)

    async def build_take_prompt(
        self, task_id: str, options: TakePromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).build_take_prompt(task_id, options, repo_path)

    async def build_poll_prompt(
        self, options: PollPromptOptions | None = None, repo_path: str | None = None
    ) -> BackendResult:
        return await self._backend(repo_path).build_poll_prompt(options, repo_path)


# --- Factory and process singleton ---

def create_backend(kind: str = "auto", config: BeatflowConfig | None = None) -> BackendPort:
    """
    Build a backend.

    Args:
        kind: "auto" for a marker-routing BackendRouter, or a concrete kind
        config: Binaries, timeouts and the router fallback

    Raises:
        ValueError: If kind is not a known backend kind
    """
    config = config or BeatflowConfig()
    if kind == "auto":
        return BackendRouter(fallback=BackendKind(config.fallback_backend), config=config)
    return build_concrete_backend(BackendKind(kind), config)


_backend: BackendPort | None = None


def get_backend(config: BeatflowConfig | None = None) -> BackendPort:
    """Process-wide backend. BEATFLOW_BACKEND (via config) picks the kind."""
    global _backend
    if _backend is None:
        config = config or load_config()
        _backend = create_backend(config.backend, config)
        logger.debug(f"[router] Using backend: {config.backend}")
    return _backend


def reset_backend() -> None:
    global _backend
    _backend = None
