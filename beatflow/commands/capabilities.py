"""
beatflow capabilities - show which backend serves a repo and what it supports.
"""

from beatflow.backends.capabilities import CAPABILITY_NAMES
from beatflow.backends.router import BackendRouter


def cmd_capabilities(args, backend) -> int:
    if isinstance(backend, BackendRouter):
        kind = backend.resolve_kind(args.repo).value
        capabilities = backend.capabilities_for_repo(args.repo)
    else:
        kind = type(backend).__name__
        capabilities = backend.capabilities

    print(f"Repo:    {args.repo}")
    print(f"Backend: {kind}")
    for name in CAPABILITY_NAMES:
        value = getattr(capabilities, name)
        if isinstance(value, bool):
            print(f"  {name:<24} {'yes' if value else 'no'}")
        else:
            print(f"  {name:<24} {value or 'unlimited'}")
    return 0
