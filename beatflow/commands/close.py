"""
beatflow descendants / beatflow close / beatflow regroom - hierarchy operations.
"""

import asyncio
from typing import Iterable

from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendPort
from beatflow.hierarchy.cascade import CascadeCloser
from beatflow.hierarchy.regroom import AncestorRegroomer
from beatflow.lib.types import CLOSED_STATES


async def _descendants(backend: BackendPort, task_id: str, repo_path: str, closed_states: Iterable[str]) -> int:
    result = await CascadeCloser(backend, closed_states).get_open_descendants(task_id, repo_path)
    if not result.ok:
        print(f"ERROR: {result.error_message}")
        return 1
    if not result.data:
        print(f"No open descendants under {task_id}")
        return 0
    print(f"Open descendants of {task_id} (close order):")
    for desc in result.data:
        print(f"  {desc.id}  [{desc.state}]  {desc.title}")
    return 0


def cmd_descendants(args, backend: BackendPort, closed_states: Iterable[str] = CLOSED_STATES) -> int:
    return asyncio.run(_descendants(backend, args.id, args.repo, closed_states))


async def _regroom_after_close(
    backend: BackendPort, task_id: str, repo_path: str, closed_states: Iterable[str]
) -> None:
    closed = await AncestorRegroomer(backend, closed_states).regroom_ancestors(task_id, repo_path)
    for ancestor_id in closed:
        print(f"Auto-closed {ancestor_id} (all children closed)")


async def _close(backend: BackendPort, args, closed_states: Iterable[str]) -> int:
    task_id = args.id

    if not args.cascade:
        result = await backend.close(task_id, args.reason, args.repo)
        if not result.ok:
            print(f"ERROR: {result.error_message}")
            return 2 if result.error and result.error.code is ErrorCode.NOT_FOUND else 1
        print(f"Closed {task_id}")
        await _regroom_after_close(backend, task_id, args.repo, closed_states)
        return 0

    closer = CascadeCloser(backend, closed_states)
    preview = await closer.get_open_descendants(task_id, args.repo)
    if not preview.ok:
        print(f"ERROR: {preview.error_message}")
        return 1

    if preview.data and not args.yes:
        print(f"Closing {task_id} will also close {len(preview.data)} open descendant(s):")
        for desc in preview.data:
            print(f"  {desc.id}  [{desc.state}]  {desc.title}")
        print("\nRe-run with --yes to confirm")
        return 2

    result = await closer.cascade_close(task_id, args.reason, args.repo)
    if not result.ok:
        print(f"ERROR: {result.error_message}")
        return 1

    outcome = result.data
    for closed_id in outcome.closed:
        print(f"Closed {closed_id}")
    for error in outcome.errors:
        print(f"ERROR: {error}")
    if task_id in outcome.closed:
        await _regroom_after_close(backend, task_id, args.repo, closed_states)
    return 1 if outcome.errors else 0


def cmd_close(args, backend: BackendPort, closed_states: Iterable[str] = CLOSED_STATES) -> int:
    """Close a task, optionally with all of its open descendants."""
    return asyncio.run(_close(backend, args, closed_states))


def cmd_regroom(args, backend: BackendPort, closed_states: Iterable[str] = CLOSED_STATES) -> int:
    """Auto-close ancestors of a task whose children are all closed."""
    closed = asyncio.run(AncestorRegroomer(backend, closed_states).regroom_ancestors(args.id, args.repo))
    if not closed:
        print("Nothing to regroom")
    for ancestor_id in closed:
        print(f"Auto-closed {ancestor_id}")
    return 0
