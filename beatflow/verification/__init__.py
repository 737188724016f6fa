"""Verification gate: label transforms, lock, verifier prompt protocol."""

from beatflow.verification.gate import (
    LabelMutation,
    apply_mutation,
    compute_entry_labels,
    compute_pass_labels,
    compute_retry_labels,
    extract_attempt_number,
    extract_commit_label,
    build_attempt_label,
    build_commit_label,
    has_transition_lock,
    is_in_verification,
    is_in_retry,
)
from beatflow.verification.locking import (
    VerificationLockManager,
    acquire_verification_lock,
    release_verification_lock,
    has_verification_lock,
)
from beatflow.verification.prompts import (
    VerifierPromptContext,
    build_verifier_prompt,
    parse_verifier_result,
)
from beatflow.verification.fsm import VerificationMachine, VerificationStage, VerificationState

__all__ = [
    "LabelMutation",
    "apply_mutation",
    "compute_entry_labels",
    "compute_pass_labels",
    "compute_retry_labels",
    "extract_attempt_number",
    "extract_commit_label",
    "build_attempt_label",
    "build_commit_label",
    "has_transition_lock",
    "is_in_verification",
    "is_in_retry",
    "VerificationLockManager",
    "acquire_verification_lock",
    "release_verification_lock",
    "has_verification_lock",
    "VerifierPromptContext",
    "build_verifier_prompt",
    "parse_verifier_result",
    "VerificationMachine",
    "VerificationStage",
    "VerificationState",
]
