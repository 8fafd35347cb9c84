"""Tests for the generation cascade."""

from __future__ import annotations

import pytest

from codetree.graph.errors import InternalError
from codetree.graph.generations import expected_generation, recompute
from codetree.graph.structure import TreeStructure
from codetree.models import Node


def _node(node_id: str, parent_id: str | None = None, generation: int = 1) -> Node:
    return Node(
        id=node_id, tree_id="t", nickname=node_id, parent_id=parent_id, generation=generation
    )


class TestRecompute:
    def test_cascades_along_primary_edges(self) -> None:
        s = TreeStructure.empty()
        s.add_edge(None, "a")
        s.add_edge("a", "b")
        s.add_edge("b", "c")
        nodes = {"a": _node("a"), "b": _node("b", "a", 2), "c": _node("c", "b", 3)}

        changed = recompute(s, nodes, "a", 4)

        assert changed == ["a", "b", "c"]
        assert [nodes[n].generation for n in "abc"] == [4, 5, 6]

    def test_secondary_children_keep_their_generation(self) -> None:
        """A child whose primary parent is elsewhere is not renumbered."""
        s = TreeStructure.empty()
        for root in ("a", "p"):
            s.add_edge(None, root)
        s.add_edge("p", "x")
        s.add_edge("a", "x")
        nodes = {"a": _node("a"), "p": _node("p"), "x": _node("x", "p", 2)}

        changed = recompute(s, nodes, "a", 7)

        assert changed == ["a"]
        assert nodes["x"].generation == 2

    def test_diamond_visits_each_node_once(self) -> None:
        s = TreeStructure.empty()
        s.add_edge(None, "a")
        s.add_edge("a", "b")
        s.add_edge("a", "c")
        s.add_edge("b", "d")
        s.add_edge("c", "d")
        nodes = {
            "a": _node("a"),
            "b": _node("b", "a", 2),
            "c": _node("c", "a", 2),
            "d": _node("d", "b", 3),
        }

        changed = recompute(s, nodes, "a", 2)

        assert sorted(changed) == ["a", "b", "c", "d"]
        assert len(changed) == 4
        assert nodes["d"].generation == 4

    def test_generation_below_one_rejected(self) -> None:
        with pytest.raises(InternalError):
            recompute(TreeStructure.empty(), {"a": _node("a")}, "a", 0)

    def test_missing_record_is_internal_error(self) -> None:
        s = TreeStructure.empty()
        s.add_edge("a", "ghost")
        with pytest.raises(InternalError, match="ghost"):
            recompute(s, {"a": _node("a")}, "a", 1)


class TestExpectedGeneration:
    def test_root_is_one(self) -> None:
        assert expected_generation(_node("a"), {}) == 1

    def test_child_is_parent_plus_one(self) -> None:
        nodes = {"a": _node("a", generation=3)}
        assert expected_generation(_node("b", "a"), nodes) == 4

    def test_missing_primary(self) -> None:
        assert expected_generation(_node("b", "a"), {}) is None
