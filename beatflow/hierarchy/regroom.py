"""
Regroom: auto-close ancestors whose children are all closed.

Best effort. Walks upward from a task that just changed and stops at the
first ancestor that still has open work. Never raises.
"""

import logging
from typing import Iterable

from beatflow.backends.port import BackendPort
from beatflow.hierarchy.tree import build_children_index, get_ancestors, index_by_id
from beatflow.lib.types import CLOSED_STATES

logger = logging.getLogger(__name__)


class AncestorRegroomer:
    def __init__(self, backend: BackendPort, closed_states: Iterable[str] = CLOSED_STATES):
        self.backend = backend
        self.closed_states = frozenset(closed_states)

    async def regroom_ancestors(self, task_id: str, repo_path: str | None = None) -> list[str]:
        """Close satisfied ancestors bottom-up. Returns the ids it closed."""
        closed_now: list[str] = []
        try:
            listing = await self.backend.list(None, repo_path)
            if not listing.ok:
                logger.warning(f"[regroom] {task_id}: Failed to list tasks: {listing.error_message}")
                return closed_now

            by_id = index_by_id(listing.data or [])
            children = build_children_index(by_id.values())
            # In-memory view of what is closed, updated as ancestors close
            closed_ids = {t.id for t in by_id.values() if t.state in self.closed_states}

            for ancestor_id in get_ancestors(task_id, by_id):
                kids = children.get(ancestor_id)
                if not kids:
                    continue
                if not all(kid.id in closed_ids for kid in kids):
                    break

                logger.info(f"[regroom] Auto-closing {ancestor_id}: all {len(kids)} children closed")
                result = await self.backend.close(ancestor_id, None, repo_path)
                if not result.ok:
                    logger.error(f"[regroom] Failed to close {ancestor_id}: {result.error_message}")
                    break
                closed_ids.add(ancestor_id)
                closed_now.append(ancestor_id)
        except Exception:
            logger.exception(f"[regroom] Error during regroom_ancestors({task_id})")
        return closed_now
