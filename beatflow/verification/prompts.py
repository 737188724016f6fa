"""
Verifier prompt/response protocol.

Builds the instruction block handed to a verification agent and parses
the VERIFICATION_RESULT / REJECTION_SUMMARY markers out of its output.
"""

import json
import re
from dataclasses import dataclass

from beatflow.verification.gate import VERIFICATION_OUTCOMES

RESULT_RE = re.compile(r'VERIFICATION_RESULT:(' + '|'.join(VERIFICATION_OUTCOMES) + ')')
REJECTION_RE = re.compile(r'^\s*REJECTION_SUMMARY:\s*(.+?)\s*$', re.MULTILINE)

TRACKER_BEADS = "beads"
TRACKER_KNOTS = "knots"


@dataclass
class VerifierPromptContext:
    """Everything the verifier needs to know about the task under review."""
    task_id: str
    title: str
    commit_sha: str
    description: str | None = None
    acceptance: str | None = None
    notes: str | None = None
    tracker_type: str = TRACKER_BEADS


def _quote(value: str) -> str:
    return json.dumps(value)


def build_verification_retry_commands(task_id: str, tracker_type: str, no_daemon: bool = False) -> list[str]:
    """Tracker commands the verifier runs to reject a task.

    knots drives state through its own workflow, so it gets none.
    """
    if tracker_type == TRACKER_KNOTS:
        return []
    flag = " --no-daemon" if no_daemon else ""
    return [
        f"bd label remove {_quote(task_id)} stage:verification{flag}",
        f"bd label remove {_quote(task_id)} transition:verification{flag}",
        f"bd label add {_quote(task_id)} stage:retry{flag}",
    ]


def build_verification_pass_commands(task_id: str, tracker_type: str, no_daemon: bool = False) -> list[str]:
    """Tracker commands the verifier runs to accept and close a task."""
    if tracker_type == TRACKER_KNOTS:
        return []
    flag = " --no-daemon" if no_daemon else ""
    return [
        f"bd label remove {_quote(task_id)} stage:verification{flag}",
        f"bd label remove {_quote(task_id)} transition:verification{flag}",
        f"bd close {_quote(task_id)}",
    ]


def build_verifier_prompt(ctx: VerifierPromptContext) -> str:
    """Render the verifier instructions for one task and commit."""
    retry_commands = build_verification_retry_commands(ctx.task_id, ctx.tracker_type, no_daemon=True)
    pass_commands = build_verification_pass_commands(ctx.task_id, ctx.tracker_type, no_daemon=True)

    lines = [
        f"Task {ctx.task_id} has just been queued for verification. "
        "You are going to verify it with the following steps:",
        "",
        "## Reference",
        f"- Task ID: {ctx.task_id}",
        f"- Title: {ctx.title}",
        f"- Commit: {ctx.commit_sha}",
    ]

    if ctx.description:
        lines += ["", "## Description", ctx.description]
    if ctx.acceptance:
        lines += ["", "## Acceptance Criteria", ctx.acceptance]
    if ctx.notes:
        lines += ["", "## Notes", ctx.notes]

    lines += [
        "",
        "## Verification Steps",
        "",
        f"1. Use commit {ctx.commit_sha} as a basis for reference.",
        "2. Check: Does the code on main satisfy the requirements of the task?",
        "   - If NO: run the following tracker commands and stop:",
        *(f"     {command}" for command in retry_commands),
        "     Then output a brief rejection summary (2-4 sentences) explaining what is wrong "
        "and what needs to change, prefixed with REJECTION_SUMMARY:",
        "     Then output: VERIFICATION_RESULT:fail-requirements",
        "3. Check: Does the commit introduce bugs that require correction?",
        "   - If YES: run the same tracker commands as step 2 and stop.",
        "     Then output a brief rejection summary explaining the bugs found, "
        "prefixed with REJECTION_SUMMARY:",
        "     Then output: VERIFICATION_RESULT:fail-bugs",
        "4. If both checks pass (code satisfies requirements, no bugs):",
        *(f"     {command}" for command in pass_commands),
        "     Then output: VERIFICATION_RESULT:pass",
        "",
        "IMPORTANT: On failure, you MUST output a REJECTION_SUMMARY line followed by a "
        "VERIFICATION_RESULT line.",
        "Use the format: REJECTION_SUMMARY: <2-4 sentence explanation of what failed and what to fix>",
        "Then: VERIFICATION_RESULT:<pass|fail-requirements|fail-bugs>",
        "On pass, output only: VERIFICATION_RESULT:pass",
    ]
    return "\n".join(lines)


def parse_verifier_result(output: str | None) -> str | None:
    """First VERIFICATION_RESULT outcome in the output, or None if absent."""
    if not isinstance(output, str):
        return None
    match = RESULT_RE.search(output)
    return match.group(1) if match else None


def parse_rejection_summary(output: str | None) -> str | None:
    if not isinstance(output, str):
        return None
    match = REJECTION_RE.search(output)
    return match.group(1) if match else None
