"""Structural mutation protocol.

Each transition below works on a :class:`TreeState`, the in-memory view of
one tree loaded once per unit of work. Every transition follows the same
shape:

1. Validate all preconditions against the current state and raise the first
   violated one as a typed error. Nothing has changed at this point.
2. Apply the edge change to the structure and the parent relation.
3. Cascade generations from the mutated node.

A failure in step 2 or 3 raises ``InternalError``; the caller owns the
unit of work and discards the state, so no partial change is ever saved.

Transitions:
    attach_new_node   Root/Attached creation, optional extra parents
    move_node         Attached(P) -> Attached(P')
    unlink_node       Attached(P) -> Root (drops every parent link)
    link_parent       gain an additional parent without losing the first
    unlink_parent     drop one (node, parent) pair, re-deriving the primary
    delete_node       remove the node and its full downward closure
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from codetree.graph.algorithms import downward_closure, is_descendant
from codetree.graph.errors import (
    AlreadyLinkedError,
    CircularReferenceError,
    CrossTreeViolationError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    NotLinkedError,
    TreeEngineError,
)
from codetree.graph.generations import recompute
from codetree.graph.parents import ParentLinks
from codetree.graph.structure import TreeStructure
from codetree.models import MutationResult, Node, utcnow
from codetree.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from codetree.models import Tree

log = get_logger(__name__)

# Fields update_node_attributes may change; structure is never edited this way.
EDITABLE_FIELDS = frozenset(
    {
        "nickname",
        "first_name",
        "last_name",
        "student_id",
        "photo_url",
        "status",
        "position_x",
        "position_y",
        "contact",
    }
)


@dataclass
class TreeState:
    """Working copy of one tree for the duration of a unit of work.

    Attributes:
        tree: The owning tree record.
        structure: Ordered roots and child lists.
        nodes: Every node of the tree, by id.
        links: The multi-parent relation.
        locate: Returns the tree id of any node id in any tree, or None.
            Used to tell "parent in another tree" from "no such parent".
        dirty: Ids whose records changed and must be saved.
        deleted: Ids removed and must be deleted from storage.
    """

    tree: Tree
    structure: TreeStructure
    nodes: dict[str, Node]
    links: ParentLinks
    locate: Callable[[str], str | None] | None = None
    dirty: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)

    @property
    def tree_id(self) -> str:
        return self.tree.id

    def get_node(self, node_id: str, *, kind: str = "node") -> Node:
        """Return a node of this tree.

        Raises:
            NotFoundError: If *node_id* is not a node of this tree.
        """
        node = self.nodes.get(node_id)
        if node is None:
            raise NotFoundError(kind, node_id, available=sorted(self.nodes))
        return node

    def resolve_parent(self, node_id: str, parent_id: str) -> Node:
        """Resolve *parent_id* as a prospective parent of *node_id*.

        Raises:
            CrossTreeViolationError: If the parent lives in another tree.
            NotFoundError: If the parent does not exist anywhere.
        """
        parent = self.nodes.get(parent_id)
        if parent is not None:
            return parent
        other_tree = self.locate(parent_id) if self.locate else None
        if other_tree is not None and other_tree != self.tree_id:
            raise CrossTreeViolationError(node_id, parent_id, self.tree_id, other_tree)
        raise NotFoundError("parent", parent_id, available=sorted(self.nodes))

    def parent_ids(self, node_id: str) -> list[str]:
        """Return all parents of *node_id*, primary first, then oldest link first."""
        node = self.nodes.get(node_id)
        parents = self.links.parents_of(node_id)
        if node is not None and node.parent_id in parents:
            parents.remove(node.parent_id)
            parents.insert(0, node.parent_id)
        return parents

    def touch(self, node_ids: list[str]) -> None:
        now = utcnow()
        for node_id in node_ids:
            self.nodes[node_id].updated_at = now
            self.dirty.add(node_id)

    def result(self, node: Node, **extra: Any) -> MutationResult:
        return MutationResult(node=node, parent_ids=self.parent_ids(node.id), **extra)


def _require(value: str | None, argument: str) -> str:
    if not value:
        raise InvalidArgumentError("is required", argument=argument)
    return value


def _reject_self_parent(node_id: str, parent_id: str) -> None:
    if node_id == parent_id:
        raise InvalidArgumentError("a node cannot be its own parent", argument=node_id)


def _reject_cycle(state: TreeState, node_id: str, parent_id: str) -> None:
    if is_descendant(state.structure, node_id, parent_id):
        raise CircularReferenceError(node_id, parent_id)


def _cascade(state: TreeState, node_id: str, generation: int) -> list[str]:
    try:
        changed = recompute(state.structure, state.nodes, node_id, generation)
    except TreeEngineError:
        raise
    except Exception as e:
        raise InternalError(str(e), operation="generation cascade") from e
    state.touch(changed)
    return changed


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def attach_new_node(state: TreeState, node: Node, parent_ids: list[str]) -> MutationResult:
    """Create *node* as a root or under one or more parents.

    The first parent is primary and defines the generation; the others are
    linked in order without affecting it. The node goes at the end of its
    parent's child list (or the root list).

    Raises:
        InvalidArgumentError: Foreign tree id, reused node id, or self-parent.
        AlreadyLinkedError: The same parent is listed twice.
        NotFoundError: A parent does not exist.
        CrossTreeViolationError: A parent belongs to another tree.
    """
    if node.tree_id != state.tree_id:
        raise InvalidArgumentError(
            f"node belongs to tree '{node.tree_id}', not '{state.tree_id}'", argument="tree_id"
        )
    if (
        node.id in state.nodes
        or state.structure.contains(node.id)
        or (state.locate is not None and state.locate(node.id) is not None)
    ):
        raise InvalidArgumentError(f"node id '{node.id}' already exists", argument="id")

    seen: set[str] = set()
    parents: list[Node] = []
    for parent_id in parent_ids:
        _require(parent_id, "parent_ids")
        _reject_self_parent(node.id, parent_id)
        if parent_id in seen:
            raise AlreadyLinkedError(node.id, parent_id)
        seen.add(parent_id)
        parents.append(state.resolve_parent(node.id, parent_id))

    state.nodes[node.id] = node
    if parents:
        primary = parents[0]
        node.parent_id = primary.id
        node.generation = primary.generation + 1
        state.structure.add_edge(primary.id, node.id)
        state.links.add_parent(node.id, primary.id)
        for extra in parents[1:]:
            state.structure.add_edge(extra.id, node.id)
            state.links.add_parent(node.id, extra.id)
    else:
        node.parent_id = None
        node.generation = 1
        state.structure.add_edge(None, node.id)
    state.dirty.add(node.id)

    log.debug(
        "node_attached",
        tree_id=state.tree_id,
        node_id=node.id,
        parents=[p.id for p in parents],
        generation=node.generation,
    )
    return state.result(node, regenerated=[node.id])


def move_node(state: TreeState, node_id: str, new_parent_id: str) -> MutationResult:
    """Re-home *node_id* under *new_parent_id* as its primary parent.

    The old primary edge is removed; secondary parents are kept. If the
    target is already a secondary parent, that link is promoted.

    Raises:
        InvalidArgumentError: Missing ids or self-parent.
        NotFoundError: Node or new parent does not exist.
        CrossTreeViolationError: New parent belongs to another tree.
        AlreadyLinkedError: New parent is already the primary parent.
        CircularReferenceError: New parent is a descendant of the node.
    """
    _require(node_id, "node_id")
    _require(new_parent_id, "new_parent_id")
    _reject_self_parent(node_id, new_parent_id)
    node = state.get_node(node_id)
    new_parent = state.resolve_parent(node_id, new_parent_id)
    if node.parent_id == new_parent_id:
        raise AlreadyLinkedError(node_id, new_parent_id)
    _reject_cycle(state, node_id, new_parent_id)

    old_parent_id = node.parent_id
    state.structure.remove_edge(old_parent_id, node_id)
    if old_parent_id is not None:
        state.links.remove_parent(node_id, old_parent_id, old_parent_id)
    if not state.links.has_link(node_id, new_parent_id):
        state.structure.add_edge(new_parent_id, node_id)
        state.links.add_parent(node_id, new_parent_id)
    node.parent_id = new_parent_id

    changed = _cascade(state, node_id, new_parent.generation + 1)
    log.debug(
        "node_moved",
        tree_id=state.tree_id,
        node_id=node_id,
        old_parent=old_parent_id,
        new_parent=new_parent_id,
        regenerated=len(changed),
    )
    return state.result(node, regenerated=changed)


def unlink_node(state: TreeState, node_id: str) -> MutationResult:
    """Detach *node_id* from every parent and make it a root at generation 1.

    Raises:
        InvalidArgumentError: Missing id, or the node is already a root.
        NotFoundError: Node does not exist.
    """
    _require(node_id, "node_id")
    node = state.get_node(node_id)
    if node.parent_id is None:
        raise InvalidArgumentError("node is already a root", argument=node_id)

    for parent_id in state.structure.parents_of(node_id):
        state.structure.remove_edge(parent_id, node_id)
    dropped = state.links.clear(node_id)
    state.structure.add_edge(None, node_id)
    node.parent_id = None

    changed = _cascade(state, node_id, 1)
    log.debug(
        "node_unlinked",
        tree_id=state.tree_id,
        node_id=node_id,
        dropped_parents=dropped,
        regenerated=len(changed),
    )
    return state.result(node, regenerated=changed)


def link_parent(state: TreeState, node_id: str, parent_id: str) -> MutationResult:
    """Add *parent_id* as another parent of *node_id*.

    A root gains *parent_id* as its primary parent and is renumbered; a node
    that already has a primary keeps its generation.

    Raises:
        InvalidArgumentError: Missing ids or self-parent.
        NotFoundError: Node or parent does not exist.
        CrossTreeViolationError: Parent belongs to another tree.
        CircularReferenceError: Parent is a descendant of the node.
        AlreadyLinkedError: Parent is already linked.
    """
    _require(node_id, "node_id")
    _require(parent_id, "parent_id")
    _reject_self_parent(node_id, parent_id)
    node = state.get_node(node_id)
    parent = state.resolve_parent(node_id, parent_id)
    _reject_cycle(state, node_id, parent_id)
    if state.links.has_link(node_id, parent_id):
        raise AlreadyLinkedError(node_id, parent_id)

    changed: list[str] = []
    if node.parent_id is None:
        state.structure.remove_edge(None, node_id)
        state.structure.add_edge(parent_id, node_id)
        state.links.add_parent(node_id, parent_id)
        node.parent_id = parent_id
        changed = _cascade(state, node_id, parent.generation + 1)
    else:
        state.structure.add_edge(parent_id, node_id)
        state.links.add_parent(node_id, parent_id)
        state.touch([node_id])

    log.debug(
        "parent_linked",
        tree_id=state.tree_id,
        node_id=node_id,
        parent_id=parent_id,
        primary=node.parent_id == parent_id,
    )
    return state.result(node, regenerated=changed)


def unlink_parent(state: TreeState, node_id: str, parent_id: str) -> MutationResult:
    """Remove the single ``(node_id, parent_id)`` pair.

    If it was the primary link, the oldest remaining link becomes primary and
    generations are recomputed from it; with no links left the node becomes a
    root at generation 1.

    Raises:
        InvalidArgumentError: Missing ids.
        NotFoundError: Node does not exist.
        NotLinkedError: *parent_id* is not a parent of the node.
    """
    _require(node_id, "node_id")
    _require(parent_id, "parent_id")
    node = state.get_node(node_id)
    if not state.links.has_link(node_id, parent_id):
        raise NotLinkedError(node_id, parent_id)

    old_primary = node.parent_id
    new_primary = state.links.remove_parent(node_id, parent_id, old_primary)
    state.structure.remove_edge(parent_id, node_id)

    changed: list[str] = []
    if new_primary != old_primary:
        node.parent_id = new_primary
        if new_primary is None:
            state.structure.add_edge(None, node_id)
            changed = _cascade(state, node_id, 1)
        else:
            changed = _cascade(state, node_id, state.get_node(new_primary).generation + 1)
    else:
        state.touch([node_id])

    log.debug(
        "parent_unlinked",
        tree_id=state.tree_id,
        node_id=node_id,
        parent_id=parent_id,
        new_primary=new_primary,
        regenerated=len(changed),
    )
    return state.result(node, regenerated=changed)


def delete_node(state: TreeState, node_id: str) -> MutationResult:
    """Delete *node_id* together with its full downward closure.

    Descendants are deleted even when they have other parents outside the
    closure; every edge and link touching a removed node goes with it.

    Raises:
        InvalidArgumentError: Missing id.
        NotFoundError: Node does not exist.
    """
    _require(node_id, "node_id")
    node = state.get_node(node_id)
    parent_ids = state.parent_ids(node_id)
    closure = downward_closure(state.structure, node_id)

    for victim in closure:
        if victim not in state.nodes:
            raise InternalError(
                f"descendant '{victim}' of '{node_id}' has no record", operation="delete"
            )
        state.structure.remove_node(victim)
        state.links.remove_node(victim)
        del state.nodes[victim]
        state.dirty.discard(victim)
        state.deleted.add(victim)

    log.debug("node_deleted", tree_id=state.tree_id, node_id=node_id, closure=len(closure))
    return MutationResult(node=node, parent_ids=parent_ids, deleted=closure)


def update_node_attributes(
    state: TreeState, node_id: str, attributes: dict[str, Any]
) -> MutationResult:
    """Replace passthrough attributes of a node. Structure is never touched.

    Raises:
        InvalidArgumentError: Unknown or structural field, or empty nickname.
        NotFoundError: Node does not exist.
    """
    _require(node_id, "node_id")
    node = state.get_node(node_id)
    unknown = sorted(set(attributes) - EDITABLE_FIELDS)
    if unknown:
        raise InvalidArgumentError(
            f"cannot update field(s) {', '.join(unknown)}", argument="attributes"
        )
    if "nickname" in attributes and not attributes["nickname"]:
        raise InvalidArgumentError("is required", argument="nickname")

    try:
        validated = Node.model_validate({**node.model_dump(), **attributes})
    except ValueError as e:
        raise InvalidArgumentError(str(e), argument="attributes") from e
    for key in attributes:
        setattr(node, key, getattr(validated, key))
    state.touch([node_id])
    return state.result(node)
