"""
Verification orchestrator.

Drives a task through the verification gate after an agent finishes a
code-producing action:

    acquire lock -> enter verification -> ensure commit label
        -> run verifier -> pass (close + regroom) | fail (notes + retry)
        -> release lock

The verifier itself and the retry session launcher are injected; this
module never spawns processes.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from beatflow.backends.detection import TRACKER_KNOTS, detect_tracker
from beatflow.backends.port import BackendPort
from beatflow.hierarchy.regroom import AncestorRegroomer
from beatflow.lib.config import BeatflowConfig
from beatflow.lib.types import Task, TaskUpdate
from beatflow.verification import gate, prompts
from beatflow.verification.fsm import VerificationMachine
from beatflow.verification.gate import LabelMutation
from beatflow.verification.locking import VerificationLockManager, default_lock_manager
from beatflow.workflow import model

logger = logging.getLogger(__name__)

MAX_EVENT_LOG = 500
MAX_VERIFIER_OUTPUT_CHARS = 2000
MAX_COMMIT_REMEDIATION_ATTEMPTS = 1
COMMIT_RECHECK_DELAY = 3.0  # seconds
PASS_CLOSE_REASON = "Auto-verification passed"


class VerificationFailed(Exception):
    """The workflow cannot continue for this task; it goes to retry."""


@dataclass(frozen=True)
class VerificationEvent:
    type: str
    task_id: str
    timestamp: str
    detail: str | None = None


@dataclass
class VerifierRun:
    """What the verifier produced: its exit code and collected text output."""
    exit_code: int
    output: str


class VerifierRunner(Protocol):
    async def __call__(self, task: Task, prompt: str, repo_path: str | None) -> VerifierRun: ...


# (task_id, action, repo_path, attempt)
RetryLauncher = Callable[[str, str, str | None, int], Awaitable[None]]


@dataclass
class VerificationSettings:
    enabled: bool = True
    max_retries: int = 3

    @classmethod
    def from_config(cls, config: BeatflowConfig) -> "VerificationSettings":
        return cls(enabled=config.verification_enabled, max_retries=config.verification_max_retries)


def _mutation_update(mutation: LabelMutation, **fields) -> TaskUpdate:
    return TaskUpdate(add_labels=list(mutation.add), remove_labels=list(mutation.remove), **fields)


def format_verifier_notes(
    existing: str | None, outcome: str, output: str, attempt: int, now: datetime | None = None
) -> str:
    """Append a failed-attempt section (with truncated verifier output) to task notes."""
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M")
    if len(output) > MAX_VERIFIER_OUTPUT_CHARS:
        output = output[:MAX_VERIFIER_OUTPUT_CHARS] + "\n...(truncated)"
    section = "\n".join([
        "",
        "---",
        f"**Verification attempt {attempt} failed ({timestamp})**, reason: {outcome}",
        "",
        output,
    ])
    return (existing or "") + section


class VerificationOrchestrator:
    """Runs the verification workflow for tasks on one backend."""

    def __init__(
        self,
        backend: BackendPort,
        runner: VerifierRunner,
        locks: VerificationLockManager | None = None,
        settings: VerificationSettings | None = None,
        regroomer: AncestorRegroomer | None = None,
        retry_launcher: RetryLauncher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.runner = runner
        self.locks = locks or default_lock_manager()
        self.settings = settings or VerificationSettings()
        self.regroomer = regroomer or AncestorRegroomer(backend)
        self.retry_launcher = retry_launcher
        self._sleep = sleep
        self._events: deque[VerificationEvent] = deque(maxlen=MAX_EVENT_LOG)

    @classmethod
    def from_config(
        cls, backend: BackendPort, runner: VerifierRunner, config: BeatflowConfig, **kwargs
    ) -> "VerificationOrchestrator":
        """Orchestrator with settings, lock expiry and closed states taken from config."""
        kwargs.setdefault("settings", VerificationSettings.from_config(config))
        kwargs.setdefault("locks", VerificationLockManager(timeout=config.verification_lock_timeout))
        if "regroomer" not in kwargs:
            extra = model.load_workflow_descriptors(config.workflows_file) if config.workflows_file else []
            closed = model.closed_states(model.workflow_catalog(extra).values())
            kwargs["regroomer"] = AncestorRegroomer(backend, closed)
        return cls(backend, runner, **kwargs)

    # --- Event log ---

    def _log_event(self, event_type: str, task_id: str, detail: str | None = None) -> None:
        self._events.append(VerificationEvent(
            type=event_type,
            task_id=task_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            detail=detail,
        ))
        logger.info(f"[verification] {event_type} task={task_id}" + (f" {detail}" if detail else ""))

    def get_events(self, limit: int = 50) -> list[VerificationEvent]:
        """Most recent lifecycle events, oldest first."""
        return list(self._events)[-limit:]

    # --- Entry point ---

    async def on_agent_complete(
        self, task_ids: list[str], action: str, repo_path: str | None, exit_code: int
    ) -> None:
        """Hook for agent completion. Only successful, code-producing actions are verified."""
        if exit_code != 0:
            return
        if not gate.is_verification_eligible_action(action):
            return
        if not self.settings.enabled:
            return
        await asyncio.gather(
            *(self.run(task_id, action, repo_path) for task_id in task_ids),
            return_exceptions=True,
        )

    async def run(self, task_id: str, action: str = "take", repo_path: str | None = None) -> str | None:
        """
        Verify one task.

        Returns:
            The outcome ("pass", "fail-requirements", "fail-bugs"), or None when
            deduplicated or when the workflow errored into retry.
        """
        if not self.locks.acquire(task_id):
            logger.info(f"[verification] Deduped: {task_id} already has active verification")
            self._log_event("deduped", task_id)
            return None

        try:
            await self._enter(task_id, repo_path)

            commit_sha = await self._ensure_commit_label(task_id, repo_path)
            if not commit_sha:
                self._log_event("remediation-failed", task_id)
                await self._transition_to_retry(task_id, repo_path)
                return None

            outcome, output = await self._launch_verifier(task_id, repo_path, commit_sha)
            await self._apply_outcome(task_id, action, repo_path, outcome, output)
            return outcome
        except Exception as e:
            logger.exception(f"[verification] {task_id}: Workflow failed")
            self._log_event("remediation-failed", task_id, str(e))
            try:
                await self._transition_to_retry(task_id, repo_path)
            except Exception:
                logger.exception(f"[verification] {task_id}: Failed to move to retry")
            return None
        finally:
            self.locks.release(task_id)

    # --- Steps ---

    async def _load(self, task_id: str, repo_path: str | None) -> Task:
        result = await self.backend.get(task_id, repo_path)
        if not result.ok or result.data is None:
            raise VerificationFailed(f"Failed to load task {task_id}: {result.error_message}")
        return result.data

    async def _update(self, task_id: str, fields: TaskUpdate, repo_path: str | None) -> None:
        if fields.is_empty():
            return
        result = await self.backend.update(task_id, fields, repo_path)
        if not result.ok:
            raise VerificationFailed(f"Failed to update task {task_id}: {result.error_message}")

    async def _enter(self, task_id: str, repo_path: str | None) -> None:
        self._log_event("queued", task_id)
        task = await self._load(task_id, repo_path)
        if gate.has_transition_lock(task):
            return

        mutation = VerificationMachine(task.labels, task_id).begin()
        fields = _mutation_update(mutation)
        # Verification happens while the step is active
        resolved = model.resolve_step(task.state)
        if resolved is not None and resolved.phase is model.StepPhase.QUEUED:
            fields.state = resolved.step
        await self._update(task_id, fields, repo_path)

    async def _ensure_commit_label(self, task_id: str, repo_path: str | None) -> str | None:
        task = await self._load(task_id, repo_path)
        sha = gate.extract_commit_label(task.labels)
        if sha:
            return sha

        self._log_event("missing-commit", task_id)
        # The producing agent may still be labelling the task
        for _ in range(MAX_COMMIT_REMEDIATION_ATTEMPTS):
            await self._sleep(COMMIT_RECHECK_DELAY)
            refreshed = await self.backend.get(task_id, repo_path)
            if not refreshed.ok or refreshed.data is None:
                continue
            sha = gate.extract_commit_label(refreshed.data.labels)
            if sha:
                return sha
        return None

    async def _launch_verifier(self, task_id: str, repo_path: str | None, commit_sha: str) -> tuple[str, str]:
        self._log_event("verifier-started", task_id, f"commit={commit_sha}")
        task = await self._load(task_id, repo_path)

        tracker = detect_tracker(repo_path) if repo_path else None
        prompt = prompts.build_verifier_prompt(prompts.VerifierPromptContext(
            task_id=task_id,
            title=task.title,
            commit_sha=commit_sha,
            description=task.description,
            acceptance=task.acceptance,
            notes=task.notes,
            tracker_type=prompts.TRACKER_KNOTS if tracker == TRACKER_KNOTS else prompts.TRACKER_BEADS,
        ))

        run = await self.runner(task, prompt, repo_path)
        outcome = prompts.parse_verifier_result(run.output)
        if outcome:
            self._log_event("verifier-completed", task_id, f"outcome={outcome}")
            return outcome, run.output
        if run.exit_code == 0:
            self._log_event("verifier-completed", task_id, "outcome=pass (implicit)")
            return "pass", run.output
        raise VerificationFailed(f"Verifier exited with code {run.exit_code}, no result marker found")

    async def _apply_outcome(
        self, task_id: str, action: str, repo_path: str | None, outcome: str, output: str
    ) -> None:
        task = await self._load(task_id, repo_path)
        machine = VerificationMachine(task.labels, task_id)

        if outcome == "pass":
            await self._update(task_id, _mutation_update(machine.succeed()), repo_path)
            result = await self.backend.close(task_id, PASS_CLOSE_REASON, repo_path)
            if not result.ok:
                raise VerificationFailed(f"Failed to close task {task_id}: {result.error_message}")
            self._log_event("closed", task_id)
            await self.regroomer.regroom_ancestors(task_id, repo_path)
            return

        self._log_event("retry", task_id, f"reason={outcome}")
        attempt = gate.extract_attempt_number(task.labels) + 1
        notes = format_verifier_notes(task.notes, outcome, output, attempt)
        await self._update(task_id, TaskUpdate(notes=notes), repo_path)
        self._log_event("notes-updated", task_id, f"attempt={attempt}")

        fields = _mutation_update(machine.fail(), state=model.rollback_active_phase(task.state))
        await self._update(task_id, fields, repo_path)
        await self._maybe_auto_retry(task_id, action, repo_path, attempt)

    async def _transition_to_retry(self, task_id: str, repo_path: str | None) -> None:
        result = await self.backend.get(task_id, repo_path)
        if not result.ok or result.data is None:
            return
        task = result.data
        mutation = gate.compute_retry_labels(task.labels)
        fields = _mutation_update(mutation, state=model.rollback_active_phase(task.state))
        await self._update(task_id, fields, repo_path)

    async def _maybe_auto_retry(self, task_id: str, action: str, repo_path: str | None, attempt: int) -> None:
        if self.retry_launcher is None:
            return
        max_retries = self.settings.max_retries
        if max_retries <= 0 or attempt > max_retries:
            logger.info(
                f"[verification] Skipping auto-retry for {task_id}: "
                f"attempt {attempt} exceeds max_retries {max_retries}"
            )
            return
        try:
            await self.retry_launcher(task_id, action, repo_path, attempt)
            self._log_event("retry-session-started", task_id, f"attempt={attempt} action={action}")
        except Exception as e:
            logger.error(f"[verification] Failed to auto-retry {task_id}: {e}")
