"""Task tracker backends: the port, concrete adapters and the router."""

from beatflow.backends.capabilities import (
    CapabilityError,
    Capabilities,
    FULL_CAPABILITIES,
    READ_ONLY_CAPABILITIES,
    STUB_CAPABILITIES,
    JSONL_CAPABILITIES,
    KNOTS_CAPABILITIES,
    has_capability,
    assert_capability,
)
from beatflow.backends.errors import ErrorCode, classify_error_message
from beatflow.backends.port import BackendError, BackendPort, BackendResult
from beatflow.backends.router import (
    BackendKind,
    BackendRouter,
    create_backend,
    get_backend,
    reset_backend,
)

__all__ = [
    "CapabilityError",
    "Capabilities",
    "FULL_CAPABILITIES",
    "READ_ONLY_CAPABILITIES",
    "STUB_CAPABILITIES",
    "JSONL_CAPABILITIES",
    "KNOTS_CAPABILITIES",
    "has_capability",
    "assert_capability",
    "ErrorCode",
    "classify_error_message",
    "BackendError",
    "BackendPort",
    "BackendResult",
    "BackendKind",
    "BackendRouter",
    "create_backend",
    "get_backend",
    "reset_backend",
]
