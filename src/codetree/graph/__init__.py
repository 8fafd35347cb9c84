"""Structural consistency engine for multi-parent lineage trees."""

from codetree.graph.algorithms import (
    ancestors_of,
    downward_closure,
    find_cycle,
    is_descendant,
    iter_descendants,
)
from codetree.graph.errors import (
    AlreadyLinkedError,
    CircularReferenceError,
    CrossTreeViolationError,
    ErrorCode,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    NotLinkedError,
    PermissionDeniedError,
    TreeCorruptionError,
    TreeEngineError,
)
from codetree.graph.generations import recompute
from codetree.graph.mutations import (
    TreeState,
    attach_new_node,
    delete_node,
    link_parent,
    move_node,
    unlink_node,
    unlink_parent,
    update_node_attributes,
)
from codetree.graph.parents import ParentLink, ParentLinks
from codetree.graph.sqlite_store import SqliteTreeStore
from codetree.graph.store import DictTreeStore, TreeStore
from codetree.graph.structure import TreeStructure
from codetree.graph.validation import ValidationReport, run_all_checks, verify_state

__all__ = [
    "AlreadyLinkedError",
    "CircularReferenceError",
    "CrossTreeViolationError",
    "DictTreeStore",
    "ErrorCode",
    "InternalError",
    "InvalidArgumentError",
    "NotFoundError",
    "NotLinkedError",
    "ParentLink",
    "ParentLinks",
    "PermissionDeniedError",
    "SqliteTreeStore",
    "TreeCorruptionError",
    "TreeEngineError",
    "TreeState",
    "TreeStore",
    "TreeStructure",
    "ValidationReport",
    "ancestors_of",
    "attach_new_node",
    "delete_node",
    "downward_closure",
    "find_cycle",
    "is_descendant",
    "iter_descendants",
    "link_parent",
    "move_node",
    "recompute",
    "run_all_checks",
    "unlink_node",
    "unlink_parent",
    "update_node_attributes",
    "verify_state",
]
