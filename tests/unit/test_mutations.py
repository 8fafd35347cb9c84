"""Tests for the structural mutation protocol.

Each transition is exercised on an in-memory TreeState. Rejected requests
must leave the state exactly as it was; accepted ones must leave every
invariant intact.
"""

from __future__ import annotations

from typing import Any

import pytest

from codetree.graph.errors import (
    AlreadyLinkedError,
    CircularReferenceError,
    CrossTreeViolationError,
    InvalidArgumentError,
    NotFoundError,
    NotLinkedError,
)
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
from codetree.graph.validation import run_all_checks
from codetree.models import Node, NodeStatus


def _snapshot(state: TreeState) -> dict[str, Any]:
    return {
        "structure": state.structure.to_dict(),
        "links": [(lk.node_id, lk.parent_id, lk.seq) for lk in state.links.links()],
        "nodes": {nid: (n.parent_id, n.generation) for nid, n in state.nodes.items()},
    }


def _gen(state: TreeState, node_id: str) -> int:
    return state.nodes[node_id].generation


def _assert_consistent(state: TreeState) -> None:
    report = run_all_checks(state)
    assert not report.has_failures, report.violations


@pytest.fixture
def chain(state: TreeState, add_node) -> TreeState:
    """Roots a and z; a -> b -> c and z -> y."""
    add_node("a")
    add_node("b", "a")
    add_node("c", "b")
    add_node("z")
    add_node("y", "z")
    return state


class TestAttachNewNode:
    def test_root(self, state: TreeState, add_node) -> None:
        node = add_node("a")
        assert node.generation == 1
        assert node.parent_id is None
        assert state.structure.roots() == ["a"]

    def test_child_generation_is_parent_plus_one(self, chain: TreeState) -> None:
        assert [_gen(chain, n) for n in "abc"] == [1, 2, 3]
        assert chain.nodes["c"].parent_id == "b"

    def test_first_parent_is_primary(self, chain: TreeState, add_node) -> None:
        """Extra parents are linked but the first defines the generation."""
        add_node("x", "z", "c")
        assert chain.nodes["x"].parent_id == "z"
        assert _gen(chain, "x") == 2
        assert chain.parent_ids("x") == ["z", "c"]
        assert chain.structure.has_edge("c", "x")
        _assert_consistent(chain)

    def test_appends_to_child_list(self, chain: TreeState, add_node) -> None:
        add_node("d", "a")
        assert chain.structure.children_of("a") == ["b", "d"]

    def test_duplicate_parent_rejected(self, chain: TreeState) -> None:
        before = _snapshot(chain)
        node = Node(id="x", tree_id="t1", nickname="x")
        with pytest.raises(AlreadyLinkedError):
            attach_new_node(chain, node, ["a", "a"])
        assert _snapshot(chain) == before

    def test_missing_parent(self, chain: TreeState) -> None:
        before = _snapshot(chain)
        node = Node(id="x", tree_id="t1", nickname="x")
        with pytest.raises(NotFoundError) as exc_info:
            attach_new_node(chain, node, ["a", "ghost"])
        assert exc_info.value.kind == "parent"
        assert _snapshot(chain) == before

    def test_parent_in_other_tree(self, chain: TreeState) -> None:
        chain.locate = lambda node_id: "t2" if node_id == "foreign" else None
        node = Node(id="x", tree_id="t1", nickname="x")
        with pytest.raises(CrossTreeViolationError) as exc_info:
            attach_new_node(chain, node, ["foreign"])
        assert exc_info.value.parent_tree_id == "t2"
        assert "x" not in chain.nodes

    def test_node_for_other_tree_rejected(self, state: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            attach_new_node(state, Node(id="x", tree_id="t2", nickname="x"), [])

    def test_reused_id_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            attach_new_node(chain, Node(id="a", tree_id="t1", nickname="a"), [])


class TestMoveNode:
    def test_move_cascades_to_descendants(self, chain: TreeState) -> None:
        result = move_node(chain, "b", "y")

        assert chain.nodes["b"].parent_id == "y"
        assert _gen(chain, "b") == 3
        assert _gen(chain, "c") == 4
        assert result.regenerated == ["b", "c"]
        assert chain.structure.children_of("a") == []
        assert chain.structure.children_of("y") == ["b"]
        _assert_consistent(chain)

    def test_move_into_own_subtree_rejected(self, chain: TreeState) -> None:
        before = _snapshot(chain)
        with pytest.raises(CircularReferenceError):
            move_node(chain, "a", "c")
        assert _snapshot(chain) == before

    def test_move_under_self_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            move_node(chain, "b", "b")

    def test_move_to_current_primary_rejected(self, chain: TreeState) -> None:
        with pytest.raises(AlreadyLinkedError):
            move_node(chain, "b", "a")

    def test_move_to_secondary_parent_promotes_it(self, chain: TreeState, add_node) -> None:
        add_node("x", "a", "z")
        move_node(chain, "x", "z")
        assert chain.nodes["x"].parent_id == "z"
        assert chain.parent_ids("x") == ["z"]
        assert not chain.structure.has_edge("a", "x")
        assert _gen(chain, "x") == 2
        _assert_consistent(chain)

    def test_move_keeps_secondary_parents(self, chain: TreeState, add_node) -> None:
        add_node("x", "a", "y")
        move_node(chain, "x", "c")
        assert chain.parent_ids("x") == ["c", "y"]
        assert _gen(chain, "x") == 4
        _assert_consistent(chain)

    def test_move_root(self, chain: TreeState) -> None:
        move_node(chain, "z", "c")
        assert not chain.structure.is_root("z")
        assert _gen(chain, "z") == 4
        assert _gen(chain, "y") == 5
        _assert_consistent(chain)

    def test_missing_node(self, chain: TreeState) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            move_node(chain, "ghost", "a")
        assert exc_info.value.kind == "node"

    def test_missing_ids(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            move_node(chain, "", "a")
        with pytest.raises(InvalidArgumentError):
            move_node(chain, "b", "")


class TestUnlinkNode:
    def test_becomes_root_at_generation_one(self, chain: TreeState) -> None:
        result = unlink_node(chain, "b")
        assert chain.nodes["b"].parent_id is None
        assert chain.structure.roots() == ["a", "z", "b"]
        assert _gen(chain, "b") == 1
        assert _gen(chain, "c") == 2
        assert result.parent_ids == []
        _assert_consistent(chain)

    def test_drops_every_parent(self, chain: TreeState, add_node) -> None:
        add_node("x", "a", "y")
        unlink_node(chain, "x")
        assert chain.parent_ids("x") == []
        assert not chain.structure.has_edge("y", "x")
        _assert_consistent(chain)

    def test_unlink_root_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError, match="already a root"):
            unlink_node(chain, "a")


class TestLinkParent:
    def test_secondary_link_keeps_generation(self, chain: TreeState) -> None:
        result = link_parent(chain, "y", "c")
        assert chain.nodes["y"].parent_id == "z"
        assert _gen(chain, "y") == 2
        assert result.parent_ids == ["z", "c"]
        assert result.regenerated == []
        _assert_consistent(chain)

    def test_root_gains_primary(self, chain: TreeState) -> None:
        result = link_parent(chain, "z", "c")
        assert chain.nodes["z"].parent_id == "c"
        assert not chain.structure.is_root("z")
        assert _gen(chain, "z") == 4
        assert _gen(chain, "y") == 5
        assert result.regenerated == ["z", "y"]
        _assert_consistent(chain)

    def test_cycle_rejected(self, chain: TreeState) -> None:
        before = _snapshot(chain)
        with pytest.raises(CircularReferenceError):
            link_parent(chain, "a", "c")
        assert _snapshot(chain) == before

    def test_already_linked(self, chain: TreeState) -> None:
        with pytest.raises(AlreadyLinkedError):
            link_parent(chain, "c", "b")

    def test_self_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            link_parent(chain, "c", "c")

    def test_cross_tree(self, chain: TreeState) -> None:
        chain.locate = lambda node_id: "t9"
        with pytest.raises(CrossTreeViolationError):
            link_parent(chain, "c", "elsewhere")


class TestUnlinkParent:
    def test_remove_secondary(self, chain: TreeState, add_node) -> None:
        add_node("x", "a", "y")
        result = unlink_parent(chain, "x", "y")
        assert chain.nodes["x"].parent_id == "a"
        assert _gen(chain, "x") == 2
        assert result.parent_ids == ["a"]
        _assert_consistent(chain)

    def test_remove_primary_promotes_oldest_and_renumbers(self, state: TreeState, add_node) -> None:
        """X under A (gen 2) then B (gen 5): dropping A moves X to 6 and its child to 7."""
        add_node("r1")
        add_node("A", "r1")
        add_node("r2")
        add_node("p", "r2")
        add_node("q", "p")
        add_node("s", "q")
        add_node("B", "s")
        add_node("X", "A", "B")
        add_node("Y", "X")
        assert (_gen(state, "A"), _gen(state, "B")) == (2, 5)
        assert (_gen(state, "X"), _gen(state, "Y")) == (3, 4)

        result = unlink_parent(state, "X", "A")

        assert state.nodes["X"].parent_id == "B"
        assert _gen(state, "X") == 6
        assert _gen(state, "Y") == 7
        assert result.regenerated == ["X", "Y"]
        _assert_consistent(state)

    def test_remove_last_parent_makes_root(self, chain: TreeState) -> None:
        unlink_parent(chain, "b", "a")
        assert chain.structure.is_root("b")
        assert _gen(chain, "b") == 1
        assert _gen(chain, "c") == 2
        _assert_consistent(chain)

    def test_not_linked(self, chain: TreeState) -> None:
        before = _snapshot(chain)
        with pytest.raises(NotLinkedError):
            unlink_parent(chain, "c", "a")
        assert _snapshot(chain) == before


class TestDeleteNode:
    def test_deletes_full_downward_closure(self, chain: TreeState, add_node) -> None:
        add_node("x", "c", "y")
        result = delete_node(chain, "b")

        assert result.deleted == ["b", "c", "x"]
        assert set(chain.nodes) == {"a", "z", "y"}
        assert chain.deleted == {"b", "c", "x"}
        assert chain.structure.children_of("y") == []
        assert chain.links.parents_of("x") == []
        _assert_consistent(chain)

    def test_delete_root(self, chain: TreeState) -> None:
        delete_node(chain, "z")
        assert chain.structure.roots() == ["a"]
        assert "y" not in chain.nodes

    def test_delete_missing(self, chain: TreeState) -> None:
        with pytest.raises(NotFoundError):
            delete_node(chain, "ghost")


class TestUpdateNodeAttributes:
    def test_updates_passthrough_fields(self, chain: TreeState) -> None:
        result = update_node_attributes(
            chain, "b", {"nickname": "Bee", "status": "graduated", "contact": {"email": "b@x"}}
        )
        assert result.node.nickname == "Bee"
        assert result.node.status == NodeStatus.GRADUATED
        assert "b" in chain.dirty

    def test_structural_fields_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError, match="generation"):
            update_node_attributes(chain, "b", {"generation": 9})
        with pytest.raises(InvalidArgumentError, match="parent_id"):
            update_node_attributes(chain, "b", {"parent_id": "z"})

    def test_empty_nickname_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            update_node_attributes(chain, "b", {"nickname": ""})

    def test_bad_status_rejected(self, chain: TreeState) -> None:
        with pytest.raises(InvalidArgumentError):
            update_node_attributes(chain, "b", {"status": "expelled"})


class TestInvariantsAcrossSequences:
    def test_mixed_operations_stay_consistent(self, chain: TreeState, add_node) -> None:
        add_node("x", "c", "y")
        add_node("w", "x")
        link_parent(chain, "w", "a")
        move_node(chain, "x", "z")
        unlink_parent(chain, "w", "x")
        unlink_node(chain, "c")
        link_parent(chain, "c", "w")
        delete_node(chain, "y")
        _assert_consistent(chain)
        for node in chain.nodes.values():
            assert node.generation >= 1
