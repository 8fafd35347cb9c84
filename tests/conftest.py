"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from codetree.graph.mutations import TreeState, attach_new_node
from codetree.graph.parents import ParentLinks
from codetree.graph.sqlite_store import SqliteTreeStore
from codetree.graph.store import DictTreeStore, TreeStore
from codetree.graph.structure import TreeStructure
from codetree.models import Node, Tree
from codetree.service import TreeService

AddNode = Callable[..., Node]

OWNER = "alice"


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def state() -> TreeState:
    """An empty in-memory tree state with id ``t1``."""
    tree = Tree(id="t1", name="Lineage", created_by=OWNER)
    return TreeState(tree, TreeStructure.empty(), {}, ParentLinks())


@pytest.fixture
def add_node(state: TreeState) -> AddNode:
    """Attach a node whose id and nickname are *node_id* to ``state``.

    Usage: ``add_node("x", "a", "b")`` creates ``x`` with primary parent
    ``a`` and secondary parent ``b``.
    """

    def _add(node_id: str, *parent_ids: str) -> Node:
        node = Node(id=node_id, tree_id=state.tree_id, nickname=node_id)
        return attach_new_node(state, node, list(parent_ids)).node

    return _add


@pytest.fixture(params=["dict", "sqlite"])
def store(request: pytest.FixtureRequest) -> Iterator[TreeStore]:
    """Each storage backend in turn."""
    if request.param == "dict":
        yield DictTreeStore()
        return
    sqlite_store = SqliteTreeStore(":memory:")
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def service(store: TreeStore) -> TreeService:
    return TreeService(store)


@pytest.fixture
def tree(service: TreeService) -> Tree:
    """A tree owned by ``alice``."""
    return service.create_tree("Lineage", principal=OWNER)
