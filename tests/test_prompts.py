"""Tests for beatflow.verification.prompts and beatflow.backends.prompting."""

import pytest

from beatflow.backends.prompting import build_take_prompt_text, select_poll_candidate
from beatflow.lib.types import TakePromptOptions, Task
from beatflow.verification.prompts import (
    TRACKER_KNOTS,
    VerifierPromptContext,
    build_verification_pass_commands,
    build_verification_retry_commands,
    build_verifier_prompt,
    parse_rejection_summary,
    parse_verifier_result,
)


class TestBuildVerifierPrompt:
    """Tests for the verifier instruction block."""

    def test_reference_section(self):
        prompt = build_verifier_prompt(VerifierPromptContext(task_id="t-1", title="Fix login", commit_sha="abc123"))
        assert prompt.startswith("Task t-1 has just been queued for verification.")
        assert "- Title: Fix login" in prompt
        assert "- Commit: abc123" in prompt
        assert "VERIFICATION_RESULT:<pass|fail-requirements|fail-bugs>" in prompt
        assert "REJECTION_SUMMARY:" in prompt

    def test_optional_sections(self):
        bare = build_verifier_prompt(VerifierPromptContext(task_id="t", title="T", commit_sha="c"))
        assert "## Description" not in bare
        assert "## Acceptance Criteria" not in bare

        full = build_verifier_prompt(VerifierPromptContext(
            task_id="t", title="T", commit_sha="c",
            description="Do X", acceptance="X works", notes="see log",
        ))
        assert "## Description\nDo X" in full
        assert "## Acceptance Criteria\nX works" in full
        assert "## Notes\nsee log" in full

    def test_beads_commands(self):
        prompt = build_verifier_prompt(VerifierPromptContext(task_id="t-1", title="T", commit_sha="c"))
        assert 'bd label add "t-1" stage:retry --no-daemon' in prompt
        assert 'bd close "t-1"' in prompt

    def test_knots_has_no_tracker_commands(self):
        assert build_verification_retry_commands("t", TRACKER_KNOTS) == []
        assert build_verification_pass_commands("t", TRACKER_KNOTS) == []
        prompt = build_verifier_prompt(
            VerifierPromptContext(task_id="t-1", title="T", commit_sha="c", tracker_type=TRACKER_KNOTS)
        )
        assert "bd " not in prompt


class TestParseVerifierResult:
    """Tests for VERIFICATION_RESULT / REJECTION_SUMMARY parsing."""

    @pytest.mark.parametrize("outcome", ["pass", "fail-requirements", "fail-bugs"])
    def test_outcomes(self, outcome):
        assert parse_verifier_result(f"checking...\nVERIFICATION_RESULT:{outcome}\n") == outcome

    def test_first_marker_wins(self):
        text = "VERIFICATION_RESULT:fail-bugs\nVERIFICATION_RESULT:pass"
        assert parse_verifier_result(text) == "fail-bugs"

    @pytest.mark.parametrize("text", ["", "all good", "VERIFICATION_RESULT:maybe", None])
    def test_absent(self, text):
        assert parse_verifier_result(text) is None

    def test_rejection_summary(self):
        text = "REJECTION_SUMMARY: Login still fails on empty password.\nVERIFICATION_RESULT:fail-bugs"
        assert parse_rejection_summary(text) == "Login still fails on empty password."
        assert parse_rejection_summary("VERIFICATION_RESULT:pass") is None


class TestTakeAndPollPrompts:
    """Tests for take/poll prompt helpers shared by adapters."""

    def test_take_prompt_single(self):
        text = build_take_prompt_text("t-1", lambda i: f"bd show {i}")
        assert "Task ID: t-1" in text
        assert "`bd show t-1`" in text

    def test_take_prompt_parent(self):
        text = build_take_prompt_text(
            "p", lambda i: f"bd show {i}", TakePromptOptions(is_parent=True, child_ids=["p.1", "p.2"])
        )
        assert "Parent task ID: p" in text
        assert "- p.1" in text
        assert "- p.2" in text

    def test_poll_picks_priority_then_oldest(self):
        tasks = [
            Task(id="low", title="", state="ready_for_implementation", priority=3, created="2024-01-01"),
            Task(id="new", title="", state="ready_for_implementation", priority=1, created="2024-03-01"),
            Task(id="old", title="", state="ready_for_implementation", priority=1, created="2024-02-01"),
            Task(id="active", title="", state="implementation", priority=0),
        ]
        assert select_poll_candidate(tasks).id == "old"

    def test_poll_skips_human_steps(self):
        tasks = [Task(id="h", title="", state="ready_for_plan_review", labels=["wf:profile:semiauto"])]
        assert select_poll_candidate(tasks) is None
