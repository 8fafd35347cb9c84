"""Structural error taxonomy for tree mutations.

Every failure a structural operation can report maps to exactly one
error type here. Each type carries a machine-readable :class:`ErrorCode`
so transport layers can translate failures without string matching.

Precondition errors are raised before any change is made. ``InternalError``
(and its corruption subtype) signal that the surrounding unit of work must
be rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from difflib import get_close_matches
from enum import StrEnum
from typing import ClassVar


class ErrorCode(StrEnum):
    """Machine-readable failure categories."""

    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"
    CROSS_TREE = "cross_tree"
    CIRCULAR_REFERENCE = "circular_reference"
    ALREADY_LINKED = "already_linked"
    NOT_LINKED = "not_linked"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL = "internal"


class TreeEngineError(Exception):
    """Base class for all structural failures."""

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL

    def to_dict(self) -> dict[str, str]:
        """Serialize as a ``{"code", "message"}`` pair for transport layers."""
        return {"code": self.code.value, "message": str(self)}


@dataclass
class NotFoundError(TreeEngineError):
    """Raised when a tree, node or parent id does not resolve.

    Attributes:
        kind: What was looked up: ``"tree"``, ``"node"`` or ``"parent"``.
        target_id: The id that did not resolve.
        available: Known ids of the same kind, used for suggestions.
    """

    code: ClassVar[ErrorCode] = ErrorCode.NOT_FOUND

    kind: str
    target_id: str
    available: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        msg = f"{self._label()} '{self.target_id}' not found"
        suggestions = self.suggestions()
        if suggestions:
            msg += f" (did you mean: {', '.join(suggestions)})"
        super().__init__(msg)

    def _label(self) -> str:
        labels = {"tree": "Tree", "node": "Node", "parent": "Parent node"}
        return labels.get(self.kind, self.kind.capitalize())

    def suggestions(self) -> list[str]:
        """Find similar ids that might be typos."""
        return get_close_matches(self.target_id, self.available, n=3, cutoff=0.6)


@dataclass
class InvalidArgumentError(TreeEngineError):
    """Raised for a missing required id or field, or a self-parent request."""

    code: ClassVar[ErrorCode] = ErrorCode.INVALID_ARGUMENT

    reason: str
    argument: str = ""

    def __post_init__(self) -> None:
        msg = self.reason
        if self.argument:
            msg = f"{self.argument}: {msg}"
        super().__init__(msg)


@dataclass
class CrossTreeViolationError(TreeEngineError):
    """Raised when a parent belongs to a different tree than the node."""

    code: ClassVar[ErrorCode] = ErrorCode.CROSS_TREE

    node_id: str
    parent_id: str
    node_tree_id: str
    parent_tree_id: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Parent '{self.parent_id}' belongs to tree '{self.parent_tree_id}', "
            f"not '{self.node_tree_id}' (node '{self.node_id}')"
        )


@dataclass
class CircularReferenceError(TreeEngineError):
    """Raised when the proposed parent is already a descendant of the node."""

    code: ClassVar[ErrorCode] = ErrorCode.CIRCULAR_REFERENCE

    node_id: str
    parent_id: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Cannot attach '{self.node_id}' under '{self.parent_id}': "
            f"'{self.parent_id}' is a descendant of '{self.node_id}'"
        )


@dataclass
class AlreadyLinkedError(TreeEngineError):
    """Raised when an edge or parent link already exists.

    ``parent_id`` is None when the duplicate is a root entry.
    """

    code: ClassVar[ErrorCode] = ErrorCode.ALREADY_LINKED

    node_id: str
    parent_id: str | None = None

    def __post_init__(self) -> None:
        if self.parent_id is None:
            msg = f"Node '{self.node_id}' is already a root"
        else:
            msg = f"Node '{self.node_id}' is already a child of '{self.parent_id}'"
        super().__init__(msg)


@dataclass
class NotLinkedError(TreeEngineError):
    """Raised when removing an edge or parent link that does not exist.

    ``parent_id`` is None when the missing entry is a root entry.
    """

    code: ClassVar[ErrorCode] = ErrorCode.NOT_LINKED

    node_id: str
    parent_id: str | None = None

    def __post_init__(self) -> None:
        if self.parent_id is None:
            msg = f"Node '{self.node_id}' is not a root"
        else:
            msg = f"'{self.parent_id}' is not a parent of '{self.node_id}'"
        super().__init__(msg)


@dataclass
class PermissionDeniedError(TreeEngineError):
    """Raised when the authorizer refuses a principal."""

    code: ClassVar[ErrorCode] = ErrorCode.PERMISSION_DENIED

    tree_id: str
    principal: str
    action: str = "edit"

    def __post_init__(self) -> None:
        super().__init__(
            f"Principal '{self.principal}' may not {self.action} tree '{self.tree_id}'"
        )


@dataclass
class InternalError(TreeEngineError):
    """Raised when persistence or a generation cascade fails.

    The surrounding unit of work is rolled back. Callers must not retry
    without re-validating.
    """

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL

    reason: str
    operation: str = ""

    def __post_init__(self) -> None:
        msg = self.reason
        if self.operation:
            msg = f"{self.operation} failed: {msg}"
        super().__init__(msg)


class TreeCorruptionError(InternalError):
    """Raised when post-mutation invariant checks detect a broken tree.

    Indicates a code bug or damaged stored data, never bad user input.
    """

    def __init__(self, violations: list[str], tree_id: str = "") -> None:
        self.violations = violations
        self.tree_id = tree_id
        InternalError.__init__(
            self,
            reason=f"{len(violations)} invariant violation(s) in tree '{tree_id or 'unknown'}'",
            operation="invariant check",
        )

    def __str__(self) -> str:
        lines = [f"Tree corruption detected in '{self.tree_id or 'unknown'}':"]
        for v in self.violations[:5]:
            lines.append(f"  - {v}")
        if len(self.violations) > 5:
            lines.append(f"  - ... and {len(self.violations) - 5} more")
        return "\n".join(lines)
