"""
Backend error taxonomy.

Structured error codes, default retryability, and classification of raw
tracker CLI stderr into codes.
"""

from enum import Enum


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INVALID_INPUT = "INVALID_INPUT"
    LOCKED = "LOCKED"
    TIMEOUT = "TIMEOUT"
    UNAVAILABLE = "UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INTERNAL = "INTERNAL"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    UNSUPPORTED = "UNSUPPORTED"


# Transient infrastructure failures that usually clear on their own
TRANSIENT_CODES = frozenset({
    ErrorCode.LOCKED,
    ErrorCode.TIMEOUT,
    ErrorCode.UNAVAILABLE,
    ErrorCode.RATE_LIMITED,
})

# (substrings, code), first match wins
CLASSIFICATION_RULES = [
    (("not found", "no such", "does not exist"), ErrorCode.NOT_FOUND),
    (("already exists", "duplicate"), ErrorCode.ALREADY_EXISTS),
    (("lock",), ErrorCode.LOCKED),
    (("timed out", "timeout"), ErrorCode.TIMEOUT),
    (("permission denied", "unauthorized", "eacces"), ErrorCode.PERMISSION_DENIED),
    (("busy", "unavailable", "unable to open"), ErrorCode.UNAVAILABLE),
]


def is_retryable_by_default(code: ErrorCode) -> bool:
    return code in TRANSIENT_CODES


def classify_error_message(raw: str) -> ErrorCode:
    """Map raw tracker output to an error code. Unmatched text is INTERNAL."""
    lower = (raw or "").lower()
    for patterns, code in CLASSIFICATION_RULES:
        if any(p in lower for p in patterns):
            return code
    return ErrorCode.INTERNAL
