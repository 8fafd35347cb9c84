"""Pydantic records for trees, nodes and mutation results."""

from codetree.models.tree import (
    MutationResult,
    Node,
    NodeStatus,
    NodeView,
    ShareRole,
    Tree,
    new_id,
    utcnow,
)

__all__ = [
    "MutationResult",
    "Node",
    "NodeStatus",
    "NodeView",
    "ShareRole",
    "Tree",
    "new_id",
    "utcnow",
]
