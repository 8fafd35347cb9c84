"""Tree and node records.

These are the rows the persistence layer stores. The structural fields of
:class:`Node` (``generation`` and ``parent_id``) are owned by the mutation
engine; everything else is passthrough payload the engine never reads.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


def new_id() -> str:
    """Generate an opaque record id."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class NodeStatus(StrEnum):
    """Membership status of the person a node represents."""

    STUDYING = "studying"
    GRADUATED = "graduated"
    RETIRED = "retired"


class ShareRole(StrEnum):
    """Role a user holds on a tree shared with them."""

    VIEWER = "viewer"
    EDITOR = "editor"
    OWNER = "owner"

    @property
    def can_edit(self) -> bool:
        return self in (ShareRole.EDITOR, ShareRole.OWNER)


class Tree(BaseModel):
    """A labeled lineage tree owned by the principal that created it."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    faculty: str = ""
    department: str = ""
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Node(BaseModel):
    """A person placed at an integer generation within one tree.

    Attributes:
        generation: Depth level; 1 for roots, otherwise primary parent + 1.
        parent_id: Primary parent reference; None means root.
    """

    id: str = Field(default_factory=new_id)
    tree_id: str
    nickname: str = Field(min_length=1)
    first_name: str = ""
    last_name: str = ""
    student_id: str = ""
    photo_url: str = ""
    status: NodeStatus = NodeStatus.STUDYING
    generation: int = Field(default=1, ge=1)
    parent_id: str | None = None
    position_x: float = 0.0
    position_y: float = 0.0
    contact: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return f"{self.nickname} ({full})" if full else self.nickname


class NodeView(BaseModel):
    """A node together with all of its parents, primary first."""

    node: Node
    parent_ids: list[str] = Field(default_factory=list)


class MutationResult(NodeView):
    """Outcome of one structural operation.

    Attributes:
        node: The node the operation targeted, as committed.
        parent_ids: All parents of the node after the operation, primary first.
        regenerated: Ids whose generation was recomputed by the cascade.
        deleted: Ids removed by a cascading delete.
    """

    regenerated: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
