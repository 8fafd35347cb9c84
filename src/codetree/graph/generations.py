"""Generation cascade.

A node's generation is 1 when it has no primary parent, otherwise its
primary parent's generation plus one. After any structural change the
mutated node gets its new value and every descendant that hangs off it
through a *primary* edge is renumbered, depth-first and pre-order.

Children reached through a secondary edge keep their generation: it is
defined by a different primary chain. Each node is visited at most once
per pass, so diamond fan-in never receives two competing depths.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from codetree.graph.errors import InternalError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from codetree.graph.structure import TreeStructure
    from codetree.models import Node


def recompute(
    structure: TreeStructure,
    nodes: Mapping[str, Node],
    node_id: str,
    generation: int,
) -> list[str]:
    """Set *node_id* to *generation* and cascade to its primary descendants.

    Args:
        structure: Structure after the edge change has been applied.
        nodes: Every node of the tree, by id. Updated in place.
        node_id: Node whose parentage changed.
        generation: Its new generation.

    Returns:
        Ids that were renumbered, in visit order.

    Raises:
        InternalError: If a node on the cascade path cannot be resolved or
            the generation would fall below 1. The caller must roll back.
    """
    if generation < 1:
        raise InternalError(
            f"generation {generation} for '{node_id}' is below 1", operation="generation cascade"
        )

    visited: list[str] = []
    seen: set[str] = set()
    stack: list[tuple[str, int]] = [(node_id, generation)]
    while stack:
        current, gen = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        node = nodes.get(current)
        if node is None:
            raise InternalError(
                f"node '{current}' is in the structure but has no record",
                operation="generation cascade",
            )
        node.generation = gen
        visited.append(current)

        for child_id in reversed(structure.children_of(current)):
            child = nodes.get(child_id)
            if child is None:
                raise InternalError(
                    f"child '{child_id}' of '{current}' has no record",
                    operation="generation cascade",
                )
            if child.parent_id == current:
                stack.append((child_id, gen + 1))
    return visited


def expected_generation(node: Node, nodes: Mapping[str, Node]) -> int | None:
    """Return the generation *node* should have, or None if its primary is missing."""
    if node.parent_id is None:
        return 1
    parent = nodes.get(node.parent_id)
    if parent is None:
        return None
    return parent.generation + 1
