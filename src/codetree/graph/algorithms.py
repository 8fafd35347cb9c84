"""Read-only traversals over a tree structure.

Pure functions that never modify the structure. ``is_descendant`` is the
guard every structural mutation consults before adding an edge; the
closure helpers drive cascading delete and invariant checks.

All traversals follow child edges and keep a visited set, so diamond
fan-in is visited once and damaged data containing a cycle cannot loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from codetree.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from codetree.graph.structure import TreeStructure

log = get_logger(__name__)


def iter_descendants(structure: TreeStructure, node_id: str) -> Iterator[str]:
    """Yield every node reachable from *node_id* via one or more child edges.

    Depth-first, pre-order, children in display order. *node_id* itself is
    only yielded if the structure is cyclic and leads back to it.
    """
    visited: set[str] = set()
    stack = list(reversed(structure.children_of(node_id)))
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        yield current
        stack.extend(reversed(structure.children_of(current)))


def is_descendant(structure: TreeStructure, ancestor_id: str, candidate_id: str) -> bool:
    """Whether *candidate_id* is reachable from *ancestor_id* in at least one hop.

    A node is not its own descendant unless the structure already contains a
    cycle. Immediate children count.

    Args:
        structure: Structure as it is *before* the proposed edge is added.
        ancestor_id: The node being moved or linked.
        candidate_id: The proposed new parent.

    Returns:
        True if attaching *ancestor_id* under *candidate_id* would close a cycle.
    """
    return any(node == candidate_id for node in iter_descendants(structure, ancestor_id))


def downward_closure(structure: TreeStructure, node_id: str) -> list[str]:
    """Return *node_id* followed by all of its descendants, pre-order."""
    closure = [node_id]
    closure.extend(n for n in iter_descendants(structure, node_id) if n != node_id)
    return closure


def ancestors_of(structure: TreeStructure, node_id: str) -> set[str]:
    """Return every node from which *node_id* is reachable (all parent paths)."""
    seen: set[str] = set()
    stack = structure.parents_of(node_id)
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(structure.parents_of(current))
    return seen


def find_cycle(structure: TreeStructure) -> list[str] | None:
    """Find one cycle in the structure, if any.

    Uses iterative three-colour DFS from every referenced node.

    Returns:
        The cycle as a list of ids where the last id links back to the
        first, or None if the structure is acyclic.
    """
    white, grey, black = 0, 1, 2
    colour: dict[str, int] = dict.fromkeys(structure.node_ids(), white)

    for start in sorted(colour):
        if colour[start] != white:
            continue
        path: list[str] = []
        stack: list[tuple[str, Iterator[str]]] = [(start, iter(structure.children_of(start)))]
        colour[start] = grey
        path.append(start)
        while stack:
            current, children = stack[-1]
            child = next(children, None)
            if child is None:
                colour[current] = black
                path.pop()
                stack.pop()
                continue
            state = colour.get(child, white)
            if state == grey:
                cycle = path[path.index(child) :]
                log.warning("cycle_found", cycle=cycle)
                return cycle
            if state == white:
                colour[child] = grey
                path.append(child)
                stack.append((child, iter(structure.children_of(child))))
    return None
