"""Single-flight verification locks.

Advisory, in-process locks keyed by task id. acquire() never blocks:
False means another verification for that task is already running and the
caller should skip. Nothing here survives a restart or spans processes.
"""

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 600  # seconds


class VerificationLockManager:
    """Per-task lock set.

    A lock held longer than `timeout` seconds counts as stale and may be
    re-acquired. Pass timeout=None to disable expiry.
    """

    def __init__(
        self,
        timeout: float | None = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self._clock = clock
        self._held: dict[str, float] = {}

    def _is_stale(self, started_at: float) -> bool:
        if self.timeout is None:
            return False
        return self._clock() - started_at >= self.timeout

    def acquire(self, task_id: str) -> bool:
        """Mark task_id held. Returns False if it is already held."""
        started_at = self._held.get(task_id)
        if started_at is not None:
            if not self._is_stale(started_at):
                return False
            logger.warning(f"[verification] {task_id}: Reclaiming stale lock")
        self._held[task_id] = self._clock()
        return True

    def release(self, task_id: str) -> None:
        self._held.pop(task_id, None)

    def is_held(self, task_id: str) -> bool:
        started_at = self._held.get(task_id)
        if started_at is None:
            return False
        if self._is_stale(started_at):
            del self._held[task_id]
            return False
        return True

    def held_ids(self) -> list[str]:
        return [task_id for task_id in list(self._held) if self.is_held(task_id)]

    def clear(self) -> None:
        self._held.clear()


_default_manager = VerificationLockManager()


def default_lock_manager() -> VerificationLockManager:
    return _default_manager


def acquire_verification_lock(task_id: str) -> bool:
    return _default_manager.acquire(task_id)


def release_verification_lock(task_id: str) -> None:
    _default_manager.release(task_id)


def has_verification_lock(task_id: str) -> bool:
    return _default_manager.is_held(task_id)
