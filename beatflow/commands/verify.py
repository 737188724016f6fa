"""
beatflow verify-prompt / beatflow verdict - verifier prompt protocol.
"""

import asyncio
import sys

from beatflow.backends.detection import TRACKER_KNOTS, detect_tracker
from beatflow.backends.errors import ErrorCode
from beatflow.backends.port import BackendPort
from beatflow.verification import gate, prompts


async def _verify_prompt(backend: BackendPort, args) -> int:
    result = await backend.get(args.id, args.repo)
    if not result.ok:
        print(f"ERROR: {result.error_message}")
        return 2 if result.error.code is ErrorCode.NOT_FOUND else 1
    task = result.data

    commit_sha = args.commit or gate.extract_commit_label(task.labels)
    if not commit_sha:
        print(f"ERROR: Task {task.id} has no commit: label. Use --commit to name one.")
        return 2

    tracker = detect_tracker(args.repo) if args.repo else None
    print(prompts.build_verifier_prompt(prompts.VerifierPromptContext(
        task_id=task.id,
        title=task.title,
        commit_sha=commit_sha,
        description=task.description,
        acceptance=task.acceptance,
        notes=task.notes,
        tracker_type=prompts.TRACKER_KNOTS if tracker == TRACKER_KNOTS else prompts.TRACKER_BEADS,
    )))
    return 0


def cmd_verify_prompt(args, backend: BackendPort) -> int:
    """Print the verifier prompt for a task."""
    return asyncio.run(_verify_prompt(backend, args))


def cmd_verdict(args) -> int:
    """Parse verifier output from stdin. Exit 0 on pass, 1 on fail or no marker."""
    output = sys.stdin.read()
    outcome = prompts.parse_verifier_result(output)
    if outcome is None:
        print("inconclusive")
        return 1
    print(outcome)
    summary = prompts.parse_rejection_summary(output)
    if summary and outcome != "pass":
        print(f"Summary: {summary}")
    return 0 if outcome == "pass" else 1
