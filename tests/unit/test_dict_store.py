"""Tests for DictTreeStore, the in-memory storage backend."""

from __future__ import annotations

import threading

import pytest

from codetree.graph.store import DictTreeStore
from codetree.models import Node, Tree


def _seed(store: DictTreeStore) -> None:
    store.save_tree(Tree(id="t1", name="Lineage", created_by="alice"))
    store.save_node(Node(id="a", tree_id="t1", nickname="a"))


class TestIsolation:
    def test_other_threads_do_not_see_staged_writes(self) -> None:
        """Writes inside a unit of work are invisible until commit."""
        store = DictTreeStore()
        _seed(store)
        seen: dict[str, object] = {}

        def reader() -> None:
            seen["b"] = store.load_node("b")
            seen["a"] = store.load_node("a")

        with store.unit_of_work("t1"):
            store.save_node(Node(id="b", tree_id="t1", nickname="b"))
            store.delete_node("a")
            thread = threading.Thread(target=reader)
            thread.start()
            thread.join()

        assert seen["b"] is None
        assert seen["a"] is not None
        assert store.load_node("b") is not None
        assert store.load_node("a") is None

    def test_returned_records_are_copies(self) -> None:
        store = DictTreeStore()
        _seed(store)
        node = store.load_node("a")
        assert node is not None
        node.nickname = "changed"
        assert store.load_node("a").nickname == "a"


class TestMutationLog:
    def test_records_only_committed_mutations(self) -> None:
        store = DictTreeStore()
        _seed(store)
        with store.unit_of_work("t1"):
            store.record_mutation("create_node", "t1", "b", "alice", {"parent_ids": []})
        with pytest.raises(ValueError), store.unit_of_work("t1"):
            store.record_mutation("delete_node", "t1", "a", "alice")
            raise ValueError("abort")

        mutations = store.mutations()
        assert [m["operation"] for m in mutations] == ["create_node"]
        assert mutations[0]["principal"] == "alice"
        assert mutations[0]["delta"] == {"parent_ids": []}
