"""
Backend capability flags.

Declares what each backend supports so callers can degrade gracefully
instead of discovering a missing feature through a failed call.
"""

from dataclasses import dataclass, fields, replace


class CapabilityError(Exception):
    """Raised when an operation needs a capability the backend lacks."""

    def __init__(self, capability: str, operation: str = ""):
        self.capability = capability
        self.operation = operation
        super().__init__(
            f"Backend does not support {capability}" + (f" (needed for {operation})" if operation else "")
        )


@dataclass(frozen=True)
class Capabilities:
    # Core CRUD
    can_create: bool = True
    can_update: bool = True
    can_delete: bool = True
    can_close: bool = True
    # Queries
    can_search: bool = True
    can_query: bool = True
    can_list_ready: bool = True
    can_manage_dependencies: bool = True
    can_manage_labels: bool = True
    can_sync: bool = True
    # 0 = unlimited
    max_concurrency: int = 0


FULL_CAPABILITIES = Capabilities()

READ_ONLY_CAPABILITIES = replace(
    FULL_CAPABILITIES,
    can_create=False,
    can_update=False,
    can_delete=False,
    can_close=False,
    can_manage_dependencies=False,
    can_manage_labels=False,
    can_sync=False,
)

STUB_CAPABILITIES = READ_ONLY_CAPABILITIES

# JSONL file store: single writer, nothing to sync
JSONL_CAPABILITIES = replace(FULL_CAPABILITIES, can_sync=False, max_concurrency=1)

KNOTS_CAPABILITIES = replace(FULL_CAPABILITIES, can_delete=False, max_concurrency=1)

CAPABILITY_NAMES = tuple(f.name for f in fields(Capabilities))


def has_capability(capabilities: Capabilities, name: str) -> bool:
    """Check one flag by name. max_concurrency counts as present when > 0."""
    if name not in CAPABILITY_NAMES:
        return False
    value = getattr(capabilities, name)
    if isinstance(value, bool):
        return value
    return value > 0


def assert_capability(capabilities: Capabilities, name: str, operation: str = "") -> None:
    """
    Raises:
        CapabilityError: If the capability is missing
    """
    if not has_capability(capabilities, name):
        raise CapabilityError(name, operation)
