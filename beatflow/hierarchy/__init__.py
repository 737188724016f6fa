"""Task hierarchy operations: cascade close and ancestor regroom."""

from beatflow.hierarchy.tree import (
    build_children_index,
    get_ancestors,
    filter_by_visible_ancestor_chain,
)
from beatflow.hierarchy.cascade import CascadeCloser, CascadeDescendant, CascadeOutcome
from beatflow.hierarchy.regroom import AncestorRegroomer

__all__ = [
    "build_children_index",
    "get_ancestors",
    "filter_by_visible_ancestor_chain",
    "CascadeCloser",
    "CascadeDescendant",
    "CascadeOutcome",
    "AncestorRegroomer",
]
