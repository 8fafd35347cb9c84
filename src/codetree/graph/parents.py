"""Multi-parent relation for one tree.

A node may have several parents (DAG fan-in), but only one of them, the
*primary* parent, defines its generation. This module owns the
``(node, parent)`` pair set and the rule that keeps the primary reference
consistent with it:

- the primary parent is always one of the linked parents, or the node has
  no links and no primary;
- when the primary link is removed, the oldest remaining link (lowest
  ``seq``) becomes primary.

``seq`` is a per-tree monotonically increasing counter, so re-derivation is
reproducible regardless of wall-clock resolution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from codetree.graph.errors import AlreadyLinkedError, InvalidArgumentError, NotLinkedError
from codetree.models import utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclass(frozen=True)
class ParentLink:
    """One ``(node, parent)`` pair with its link order."""

    node_id: str
    parent_id: str
    seq: int
    linked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "parent_id": self.parent_id,
            "seq": self.seq,
            "linked_at": self.linked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParentLink:
        linked_at = data.get("linked_at")
        return cls(
            node_id=data["node_id"],
            parent_id=data["parent_id"],
            seq=int(data["seq"]),
            linked_at=datetime.fromisoformat(linked_at) if linked_at else utcnow(),
        )


class ParentLinks:
    """The parent relation of one tree, ordered by link age."""

    def __init__(self, links: Iterable[ParentLink] = (), next_seq: int = 0) -> None:
        self._by_node: dict[str, list[ParentLink]] = {}
        highest = -1
        for link in sorted(links, key=lambda lk: lk.seq):
            self._by_node.setdefault(link.node_id, []).append(link)
            highest = max(highest, link.seq)
        self._next_seq = max(next_seq, highest + 1)

    @property
    def next_seq(self) -> int:
        return self._next_seq

    def parents_of(self, node_id: str) -> list[str]:
        """Return parent ids of *node_id*, oldest link first."""
        return [link.parent_id for link in self._by_node.get(node_id, [])]

    def has_link(self, node_id: str, parent_id: str) -> bool:
        return parent_id in self.parents_of(node_id)

    def oldest_parent(self, node_id: str) -> str | None:
        links = self._by_node.get(node_id)
        return links[0].parent_id if links else None

    def add_parent(
        self, node_id: str, parent_id: str, linked_at: datetime | None = None
    ) -> ParentLink:
        """Record *parent_id* as a parent of *node_id*.

        Raises:
            InvalidArgumentError: If the pair is a self-link.
            AlreadyLinkedError: If the pair already exists.
        """
        if node_id == parent_id:
            raise InvalidArgumentError("a node cannot be its own parent", argument=node_id)
        if self.has_link(node_id, parent_id):
            raise AlreadyLinkedError(node_id, parent_id)
        link = ParentLink(node_id, parent_id, self._next_seq, linked_at or utcnow())
        self._next_seq += 1
        self._by_node.setdefault(node_id, []).append(link)
        return link

    def remove_parent(self, node_id: str, parent_id: str, primary_id: str | None) -> str | None:
        """Remove one pair and return the primary parent that should follow.

        Args:
            node_id: Child node.
            parent_id: Parent to unlink.
            primary_id: The node's primary parent before removal.

        Returns:
            *primary_id* unchanged when a non-primary link was removed;
            otherwise the oldest remaining parent, or None if none remain.

        Raises:
            NotLinkedError: If the pair does not exist.
        """
        links = self._by_node.get(node_id, [])
        for i, link in enumerate(links):
            if link.parent_id == parent_id:
                links.pop(i)
                break
        else:
            raise NotLinkedError(node_id, parent_id)
        if not links:
            self._by_node.pop(node_id, None)

        if parent_id != primary_id:
            return primary_id
        return self.oldest_parent(node_id)

    def clear(self, node_id: str) -> list[str]:
        """Drop every parent link of *node_id*; return the removed parent ids."""
        return [link.parent_id for link in self._by_node.pop(node_id, [])]

    def remove_node(self, node_id: str) -> int:
        """Drop all pairs where *node_id* is the child or the parent."""
        removed = len(self.clear(node_id))
        for child_id in list(self._by_node):
            links = self._by_node[child_id]
            kept = [link for link in links if link.parent_id != node_id]
            removed += len(links) - len(kept)
            if kept:
                self._by_node[child_id] = kept
            else:
                del self._by_node[child_id]
        return removed

    def links(self) -> list[ParentLink]:
        """Return every pair, oldest first."""
        return sorted(
            (link for links in self._by_node.values() for link in links),
            key=lambda lk: lk.seq,
        )

    def node_ids(self) -> set[str]:
        return set(self._by_node)

    def __len__(self) -> int:
        return sum(len(links) for links in self._by_node.values())

    # -- Serialization ---------------------------------------------------------

    def to_list(self) -> list[dict[str, Any]]:
        return [link.to_dict() for link in self.links()]

    @classmethod
    def from_list(cls, data: Iterable[dict[str, Any]], next_seq: int = 0) -> ParentLinks:
        return cls((ParentLink.from_dict(item) for item in data), next_seq=next_seq)


def primary_violations(
    node_id: str, primary_id: str | None, links: ParentLinks
) -> list[str]:
    """Check the primary-parent rule for one node.

    Returns:
        Human-readable violation messages (empty if consistent).
    """
    parents = links.parents_of(node_id)
    if primary_id is None and parents:
        return [f"Node '{node_id}' has parents {parents} but no primary parent"]
    if primary_id is not None and primary_id not in parents:
        return [f"Node '{node_id}' primary parent '{primary_id}' is not among its links"]
    return []
