"""Tests for beatflow.verification.gate and locking modules."""

import pytest

from beatflow.lib.types import Task
from beatflow.verification.gate import (
    LABEL_STAGE_RETRY,
    LABEL_STAGE_VERIFICATION,
    LABEL_TRANSITION_VERIFICATION,
    LabelMutation,
    apply_mutation,
    build_attempt_label,
    build_commit_label,
    compute_entry_labels,
    compute_pass_labels,
    compute_retry_labels,
    extract_attempt_number,
    extract_commit_label,
    has_transition_lock,
    is_in_retry,
    is_in_verification,
    is_verification_eligible_action,
    user_facing_labels,
)
from beatflow.verification.locking import (
    VerificationLockManager,
    acquire_verification_lock,
    default_lock_manager,
    has_verification_lock,
    release_verification_lock,
)

LABEL_SETS = [
    [],
    ["frontend"],
    [LABEL_STAGE_RETRY, "attempt:1"],
    [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "commit:abc123"],
    [LABEL_STAGE_VERIFICATION],
    [LABEL_TRANSITION_VERIFICATION],
    [LABEL_STAGE_RETRY, LABEL_STAGE_VERIFICATION, "attempt:2", "commit:abc"],
]


class TestEntryLabels:
    """Tests for compute_entry_labels."""

    def test_fresh_task(self):
        mutation = compute_entry_labels(["frontend"])
        assert set(mutation.add) == {LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION}
        assert mutation.remove == ()

    def test_clears_retry(self):
        mutation = compute_entry_labels([LABEL_STAGE_RETRY, "attempt:1", "commit:abc"])
        assert mutation.remove == (LABEL_STAGE_RETRY,)
        assert "attempt:1" not in mutation.remove
        assert "commit:abc" not in mutation.remove

    def test_already_in_transition_is_noop(self):
        assert compute_entry_labels([LABEL_TRANSITION_VERIFICATION]).is_empty

    @pytest.mark.parametrize("labels", LABEL_SETS)
    def test_idempotent(self, labels):
        applied = apply_mutation(labels, compute_entry_labels(labels))
        assert compute_entry_labels(applied).is_empty


class TestPassLabels:
    """Tests for compute_pass_labels."""

    def test_removes_both(self):
        mutation = compute_pass_labels([LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "x"])
        assert set(mutation.remove) == {LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION}
        assert mutation.add == ()

    def test_tolerates_partial_state(self):
        assert compute_pass_labels([LABEL_STAGE_VERIFICATION]).remove == (LABEL_STAGE_VERIFICATION,)

    @pytest.mark.parametrize("labels", LABEL_SETS)
    def test_idempotent(self, labels):
        applied = apply_mutation(labels, compute_pass_labels(labels))
        assert compute_pass_labels(applied).is_empty


class TestRetryLabels:
    """Tests for compute_retry_labels."""

    def test_increments_attempt(self):
        mutation = compute_retry_labels([LABEL_STAGE_VERIFICATION, "attempt:2"])
        assert "attempt:3" in mutation.add
        assert "attempt:2" in mutation.remove

    def test_first_retry_is_attempt_one(self):
        mutation = compute_retry_labels([LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION])
        assert set(mutation.add) == {LABEL_STAGE_RETRY, "attempt:1"}

    def test_removes_verification_and_commit(self):
        labels = [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "commit:abc", "commit:def"]
        mutation = compute_retry_labels(labels)
        assert set(mutation.remove) == set(labels)

    @pytest.mark.parametrize("labels", LABEL_SETS)
    def test_idempotent(self, labels):
        applied = apply_mutation(labels, compute_retry_labels(labels))
        assert compute_retry_labels(applied).is_empty


class TestMarkers:
    """Tests for attempt/commit extraction and building."""

    def test_attempt_absent(self):
        assert extract_attempt_number([]) == 0

    @pytest.mark.parametrize("label", ["attempt:abc", "attempt:", "attempt:-3", "attempt:1.5"])
    def test_attempt_malformed(self, label):
        assert extract_attempt_number([label]) == 0

    def test_attempt_round_trip(self):
        assert extract_attempt_number([build_attempt_label(4)]) == 4

    def test_commit(self):
        assert extract_commit_label(["x", build_commit_label("deadbeef")]) == "deadbeef"
        assert extract_commit_label(["commit:"]) is None
        assert extract_commit_label([]) is None

    def test_user_facing_labels(self):
        labels = ["frontend", LABEL_STAGE_RETRY, "attempt:1", "commit:a", "wf:state:planning", "wave:x"]
        assert user_facing_labels(labels) == ["frontend"]


class TestPredicates:
    def test_accept_task_or_labels(self):
        task = Task(id="t1", title="T", labels=[LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION])
        assert has_transition_lock(task)
        assert is_in_verification(task)
        assert not is_in_retry(task)
        assert is_in_retry([LABEL_STAGE_RETRY])

    def test_eligible_actions(self):
        assert is_verification_eligible_action("take")
        assert is_verification_eligible_action("scene")
        assert not is_verification_eligible_action("breakdown")
        assert not is_verification_eligible_action("direct")

    def test_apply_mutation_keeps_order(self):
        result = apply_mutation(["a", "b", "c"], LabelMutation(add=("d", "a"), remove=("b",)))
        assert result == ["a", "c", "d"]


class TestLockManager:
    """Tests for the single-flight verification lock."""

    def test_acquire_once_until_released(self):
        locks = VerificationLockManager()
        assert locks.acquire("t1")
        assert not locks.acquire("t1")
        assert locks.is_held("t1")
        locks.release("t1")
        assert not locks.is_held("t1")
        assert locks.acquire("t1")

    def test_independent_ids(self):
        locks = VerificationLockManager()
        assert locks.acquire("t1")
        assert locks.acquire("t2")
        assert sorted(locks.held_ids()) == ["t1", "t2"]

    def test_release_unheld_is_harmless(self):
        VerificationLockManager().release("never")

    def test_stale_lock_reclaimed(self, caplog):
        now = [100.0]
        locks = VerificationLockManager(timeout=10, clock=lambda: now[0])
        assert locks.acquire("t1")
        now[0] = 105.0
        assert not locks.acquire("t1")
        now[0] = 111.0
        assert locks.acquire("t1")
        assert "Reclaiming stale lock" in caplog.text

    def test_no_timeout_never_expires(self):
        now = [0.0]
        locks = VerificationLockManager(timeout=None, clock=lambda: now[0])
        locks.acquire("t1")
        now[0] = 1e9
        assert locks.is_held("t1")

    def test_module_level_helpers(self):
        default_lock_manager().clear()
        try:
            assert acquire_verification_lock("mod-1")
            assert has_verification_lock("mod-1")
            assert not acquire_verification_lock("mod-1")
            release_verification_lock("mod-1")
            assert not has_verification_lock("mod-1")
        finally:
            default_lock_manager().clear()
