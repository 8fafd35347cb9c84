"""Per-tree adjacency structure.

A :class:`TreeStructure` holds the ordered root ids of one tree and, for
every node that has at least one child, an ordered list of child ids plus
an ``order`` sequence number recording when that entry was created.

It is pure data: edges are id pairs, nodes live elsewhere. No business
rules beyond edge bookkeeping are enforced here. Duplicate and missing
edges are reported as errors rather than ignored.

Serialized form::

    {
        "roots": ["a", "b"],
        "edges": {"a": {"children": ["c"], "order": 0}},
        "next_order": 1,
    }
"""

from __future__ import annotations

import copy
from typing import Any

from codetree.graph.errors import AlreadyLinkedError, InvalidArgumentError, NotLinkedError


class TreeStructure:
    """Ordered roots plus ordered child lists for one tree.

    ``parent`` arguments accept None to mean the root list, so the same
    calls attach and detach roots and children.
    """

    def __init__(
        self,
        roots: list[str] | None = None,
        edges: dict[str, dict[str, Any]] | None = None,
        next_order: int = 0,
    ) -> None:
        self._roots: list[str] = list(roots or [])
        self._edges: dict[str, dict[str, Any]] = {
            parent_id: {"children": list(entry["children"]), "order": int(entry["order"])}
            for parent_id, entry in (edges or {}).items()
        }
        self._next_order = max(
            next_order, max((e["order"] for e in self._edges.values()), default=-1) + 1
        )
        self._parents: dict[str, list[str]] = {}
        for parent_id in self._ordered_parent_ids():
            for child_id in self._edges[parent_id]["children"]:
                self._parents.setdefault(child_id, []).append(parent_id)

    # -- Queries ---------------------------------------------------------------

    def roots(self) -> list[str]:
        """Return root ids in display order."""
        return list(self._roots)

    def children_of(self, node_id: str) -> list[str]:
        """Return child ids of *node_id* in display order (empty if none)."""
        entry = self._edges.get(node_id)
        return list(entry["children"]) if entry else []

    def parents_of(self, node_id: str) -> list[str]:
        """Return every parent of *node_id*, ordered by parent entry creation."""
        return list(self._parents.get(node_id, []))

    def order_of(self, node_id: str) -> int | None:
        """Return the order index of *node_id*'s child entry, or None."""
        entry = self._edges.get(node_id)
        return entry["order"] if entry else None

    def has_edge(self, parent_id: str | None, child_id: str) -> bool:
        """Whether *child_id* sits directly under *parent_id* (None = roots)."""
        if parent_id is None:
            return child_id in self._roots
        entry = self._edges.get(parent_id)
        return entry is not None and child_id in entry["children"]

    def is_root(self, node_id: str) -> bool:
        return node_id in self._roots

    def contains(self, node_id: str) -> bool:
        """Whether *node_id* appears anywhere in the structure."""
        return node_id in self._roots or node_id in self._parents or node_id in self._edges

    def node_ids(self) -> set[str]:
        """Return every id referenced by the structure."""
        ids = set(self._roots) | set(self._edges) | set(self._parents)
        return ids

    def edge_count(self) -> int:
        """Number of parent->child edges (root entries excluded)."""
        return sum(len(entry["children"]) for entry in self._edges.values())

    # -- Mutations -------------------------------------------------------------

    def add_edge(self, parent_id: str | None, child_id: str, position: int | None = None) -> None:
        """Place *child_id* under *parent_id* (None = root list).

        Args:
            parent_id: Parent id, or None to add a root.
            child_id: Child id.
            position: Insert index; None appends at the end.

        Raises:
            InvalidArgumentError: If *parent_id* equals *child_id*.
            AlreadyLinkedError: If the edge already exists.
        """
        if parent_id == child_id:
            raise InvalidArgumentError("a node cannot be its own parent", argument=child_id)
        if self.has_edge(parent_id, child_id):
            raise AlreadyLinkedError(child_id, parent_id)

        if parent_id is None:
            _insert(self._roots, child_id, position)
            return

        entry = self._edges.get(parent_id)
        if entry is None:
            entry = {"children": [], "order": self._next_order}
            self._next_order += 1
            self._edges[parent_id] = entry
        _insert(entry["children"], child_id, position)
        self._index_parent(child_id, parent_id)

    def remove_edge(self, parent_id: str | None, child_id: str) -> None:
        """Remove the edge *parent_id* -> *child_id* (None = root entry).

        Parent entries left without children are dropped.

        Raises:
            NotLinkedError: If the edge does not exist.
        """
        if not self.has_edge(parent_id, child_id):
            raise NotLinkedError(child_id, parent_id)

        if parent_id is None:
            self._roots.remove(child_id)
            return

        entry = self._edges[parent_id]
        entry["children"].remove(child_id)
        if not entry["children"]:
            del self._edges[parent_id]
        parents = self._parents[child_id]
        parents.remove(parent_id)
        if not parents:
            del self._parents[child_id]

    def move(
        self,
        child_id: str,
        old_parent_id: str | None,
        new_parent_id: str | None,
        position: int | None = None,
    ) -> None:
        """Move *child_id* from one parent (or the roots) to another.

        Both edges are checked before anything changes, so a failed move
        leaves the structure untouched.

        Raises:
            InvalidArgumentError: If *new_parent_id* equals *child_id*.
            NotLinkedError: If the old edge does not exist.
            AlreadyLinkedError: If the new edge already exists.
        """
        if new_parent_id == child_id:
            raise InvalidArgumentError("a node cannot be its own parent", argument=child_id)
        if not self.has_edge(old_parent_id, child_id):
            raise NotLinkedError(child_id, old_parent_id)
        if self.has_edge(new_parent_id, child_id):
            raise AlreadyLinkedError(child_id, new_parent_id)
        self.remove_edge(old_parent_id, child_id)
        self.add_edge(new_parent_id, child_id, position)

    def remove_node(self, node_id: str) -> int:
        """Drop *node_id* and every edge touching it.

        Returns:
            Number of entries removed (root entry, incoming and outgoing edges).
        """
        removed = 0
        if node_id in self._roots:
            self._roots.remove(node_id)
            removed += 1
        for parent_id in self.parents_of(node_id):
            self.remove_edge(parent_id, node_id)
            removed += 1
        for child_id in self.children_of(node_id):
            self.remove_edge(node_id, child_id)
            removed += 1
        return removed

    def _index_parent(self, child_id: str, parent_id: str) -> None:
        parents = self._parents.setdefault(child_id, [])
        parents.append(parent_id)
        order = {pid: self._edges[pid]["order"] for pid in parents}
        parents.sort(key=order.__getitem__)

    def _ordered_parent_ids(self) -> list[str]:
        return sorted(self._edges, key=lambda pid: self._edges[pid]["order"])

    # -- Serialization ---------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (deep copy)."""
        return {
            "roots": list(self._roots),
            "edges": copy.deepcopy(self._edges),
            "next_order": self._next_order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TreeStructure:
        """Build from a serialized dict. None or ``{}`` yields an empty structure."""
        data = data or {}
        return cls(
            roots=data.get("roots") or [],
            edges=data.get("edges") or {},
            next_order=int(data.get("next_order", 0)),
        )

    @classmethod
    def empty(cls) -> TreeStructure:
        return cls()

    def copy(self) -> TreeStructure:
        return TreeStructure.from_dict(self.to_dict())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TreeStructure):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"TreeStructure(roots={len(self._roots)}, edges={self.edge_count()})"


def _insert(items: list[str], item: str, position: int | None) -> None:
    if position is None or position >= len(items):
        items.append(item)
    else:
        items.insert(max(position, 0), item)
