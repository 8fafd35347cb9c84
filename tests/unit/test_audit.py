"""Tests for mutation audit trail queries."""

from __future__ import annotations

from pathlib import Path

import pytest

from codetree.graph.audit import format_mutations, mutation_summary, query_mutations
from codetree.graph.sqlite_store import SqliteTreeStore
from codetree.service import TreeService


@pytest.fixture
def audited_db(tmp_path: Path) -> tuple[Path, str, str]:
    """A database with one tree, two nodes and a move. Returns (path, tree_id, node_id)."""
    path = tmp_path / "audit.db"
    store = SqliteTreeStore(path)
    service = TreeService(store)
    tree = service.create_tree("T", principal="alice")
    a = service.create_node(tree.id, "a", principal="alice").node
    b = service.create_node(tree.id, "b", principal="alice").node
    service.share_tree(tree.id, "bob", "editor", principal="alice")
    service.move_node(tree.id, b.id, a.id, principal="bob")
    store.close()
    return path, tree.id, b.id


class TestQueryMutations:
    def test_most_recent_first(self, audited_db: tuple[Path, str, str]) -> None:
        path, _, _ = audited_db
        ops = [m["operation"] for m in query_mutations(path)]
        assert ops == ["move_node", "share_tree", "create_node", "create_node", "create_tree"]

    def test_filters(self, audited_db: tuple[Path, str, str]) -> None:
        path, tree_id, node_id = audited_db
        moves = query_mutations(path, tree_id=tree_id, operation="move_node")
        assert len(moves) == 1
        assert moves[0]["target_id"] == node_id
        assert moves[0]["principal"] == "bob"
        assert moves[0]["delta"]["parent_ids"]

        assert query_mutations(path, principal="bob") == moves
        assert len(query_mutations(path, target=node_id[:8])) == 2
        assert len(query_mutations(path, limit=2)) == 2

    def test_summary(self, audited_db: tuple[Path, str, str]) -> None:
        path, tree_id, _ = audited_db
        summary = mutation_summary(path, tree_id)
        assert summary["create_node"] == 2
        assert list(summary)[0] == "create_node"


class TestFormatMutations:
    def test_empty(self) -> None:
        assert format_mutations([]) == "No mutations recorded."

    def test_lines(self, audited_db: tuple[Path, str, str]) -> None:
        path, _, _ = audited_db
        text = format_mutations(query_mutations(path, limit=1))
        assert "move_node" in text
        assert "by bob" in text
