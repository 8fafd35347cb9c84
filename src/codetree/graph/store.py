"""Tree storage backend protocol and dict-based implementation.

The TreeStore protocol defines the low-level persistence operations the
service layer delegates to. Implementations handle raw reads and writes;
the mutation protocol provides validation and business rules on top.

Every write made inside ``unit_of_work`` commits or rolls back as one unit.
Writes outside a unit of work commit immediately.

DictTreeStore is the in-memory backend. SqliteTreeStore provides
SQLite-backed storage with a mutation audit trail.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from codetree.graph.parents import ParentLinks
from codetree.graph.structure import TreeStructure
from codetree.models import Node, ShareRole, Tree, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterator


@runtime_checkable
class TreeStore(Protocol):
    """Storage backend protocol for trees, nodes, structure and links.

    Methods raise no taxonomy errors; missing records come back as None and
    storage failures propagate as-is. The service layer translates them.
    """

    # -- Units of work ---------------------------------------------------------

    def unit_of_work(self, tree_id: str, *, readonly: bool = False) -> Any:
        """Context manager: commit on normal exit, roll back on any exception."""
        ...

    # -- Trees -----------------------------------------------------------------

    def get_tree(self, tree_id: str) -> Tree | None:
        """Get a tree by id, or None if not found."""
        ...

    def save_tree(self, tree: Tree) -> None:
        """Create or overwrite a tree record."""
        ...

    def delete_tree(self, tree_id: str) -> None:
        """Delete a tree and everything it owns (nodes, structure, links, shares)."""
        ...

    def list_trees(self, created_by: str | None = None) -> list[Tree]:
        """Return trees, newest first, optionally filtered by creator."""
        ...

    # -- Structure and links ---------------------------------------------------

    def load_structure(self, tree_id: str) -> TreeStructure:
        """Load a tree's structure (empty if none saved)."""
        ...

    def save_structure(self, tree_id: str, structure: TreeStructure) -> None:
        """Replace a tree's structure."""
        ...

    def load_links(self, tree_id: str) -> ParentLinks:
        """Load a tree's parent relation (empty if none saved)."""
        ...

    def save_links(self, tree_id: str, links: ParentLinks) -> None:
        """Replace a tree's parent relation."""
        ...

    # -- Nodes -----------------------------------------------------------------

    def load_node(self, node_id: str) -> Node | None:
        """Get a node by id, or None if not found."""
        ...

    def save_node(self, node: Node) -> None:
        """Create or overwrite a node record."""
        ...

    def delete_node(self, node_id: str) -> None:
        """Delete a node record. No cascade; callers handle structure."""
        ...

    def list_nodes(self, tree_id: str) -> list[Node]:
        """Return a tree's nodes ordered by creation time."""
        ...

    def node_tree(self, node_id: str) -> str | None:
        """Return the tree id owning *node_id*, or None."""
        ...

    # -- Shares ----------------------------------------------------------------

    def get_role(self, tree_id: str, user_id: str) -> ShareRole | None:
        """Return the role *user_id* holds on *tree_id*, or None."""
        ...

    def set_role(self, tree_id: str, user_id: str, role: ShareRole) -> None:
        """Grant or change a role."""
        ...

    def remove_role(self, tree_id: str, user_id: str) -> bool:
        """Revoke a role. Return True if one was removed."""
        ...

    def list_roles(self, tree_id: str) -> dict[str, ShareRole]:
        """Return every share of a tree, by user id."""
        ...

    def list_shared_trees(self, user_id: str) -> dict[str, ShareRole]:
        """Return the role *user_id* holds on each tree shared with them, by tree id."""
        ...

    # -- Audit -----------------------------------------------------------------

    def record_mutation(
        self,
        operation: str,
        tree_id: str,
        target_id: str,
        principal: str = "",
        delta: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit record for a committed operation."""
        ...


_DELETED = object()
_TABLES = ("trees", "structures", "links", "nodes", "shares")


class DictTreeStore:
    """In-memory dict-based tree store.

    Committed state lives in plain dicts of serialized records. A unit of
    work stages its writes in a thread-local overlay that is swapped into
    the committed state in one step, so concurrent readers see either all
    of a mutation or none of it. Different trees never wait on each other
    beyond that swap.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[Any, Any]] = {name: {} for name in _TABLES}
        self._mutations: list[dict[str, Any]] = []
        self._lock = threading.RLock()
        self._local = threading.local()

    # -- Units of work ---------------------------------------------------------

    def _pending(self) -> dict[str, dict[Any, Any]] | None:
        return getattr(self._local, "pending", None)

    @contextmanager
    def unit_of_work(self, tree_id: str, *, readonly: bool = False) -> Iterator[None]:
        """Stage writes and apply them atomically on success.

        Nested units of work on the same thread join the outer one. A
        readonly unit of work holds the commit lock so its reads form one
        consistent snapshot.
        """
        if self._pending() is not None:
            yield
            return
        if readonly:
            with self._lock:
                yield
            return

        self._local.pending = {name: {} for name in _TABLES}
        self._local.pending_mutations = []
        try:
            yield
        except BaseException:
            self._local.pending = None
            self._local.pending_mutations = []
            raise
        pending = self._local.pending
        mutations = self._local.pending_mutations
        self._local.pending = None
        self._local.pending_mutations = []
        with self._lock:
            for name, rows in pending.items():
                table = self._data[name]
                for key, value in rows.items():
                    if value is _DELETED:
                        table.pop(key, None)
                    else:
                        table[key] = value
            self._mutations.extend(mutations)

    def _read(self, table: str, key: Any) -> Any:
        pending = self._pending()
        if pending is not None and key in pending[table]:
            value = pending[table][key]
            return None if value is _DELETED else copy.deepcopy(value)
        with self._lock:
            return copy.deepcopy(self._data[table].get(key))

    def _write(self, table: str, key: Any, value: Any) -> None:
        pending = self._pending()
        if pending is not None:
            pending[table][key] = value
            return
        with self._lock:
            if value is _DELETED:
                self._data[table].pop(key, None)
            else:
                self._data[table][key] = value

    def _scan(self, table: str) -> dict[Any, Any]:
        with self._lock:
            rows = copy.deepcopy(self._data[table])
        pending = self._pending()
        if pending is not None:
            for key, value in pending[table].items():
                if value is _DELETED:
                    rows.pop(key, None)
                else:
                    rows[key] = copy.deepcopy(value)
        return rows

    # -- Trees -----------------------------------------------------------------

    def get_tree(self, tree_id: str) -> Tree | None:
        data = self._read("trees", tree_id)
        return Tree.model_validate(data) if data is not None else None

    def save_tree(self, tree: Tree) -> None:
        self._write("trees", tree.id, tree.model_dump(mode="json"))

    def delete_tree(self, tree_id: str) -> None:
        self._write("trees", tree_id, _DELETED)
        self._write("structures", tree_id, _DELETED)
        self._write("links", tree_id, _DELETED)
        for node_id, data in self._scan("nodes").items():
            if data["tree_id"] == tree_id:
                self._write("nodes", node_id, _DELETED)
        for key in self._scan("shares"):
            if key[0] == tree_id:
                self._write("shares", key, _DELETED)

    def list_trees(self, created_by: str | None = None) -> list[Tree]:
        trees = [Tree.model_validate(d) for d in self._scan("trees").values()]
        if created_by is not None:
            trees = [t for t in trees if t.created_by == created_by]
        return sorted(trees, key=lambda t: t.created_at, reverse=True)

    # -- Structure and links ---------------------------------------------------

    def load_structure(self, tree_id: str) -> TreeStructure:
        return TreeStructure.from_dict(self._read("structures", tree_id))

    def save_structure(self, tree_id: str, structure: TreeStructure) -> None:
        self._write("structures", tree_id, structure.to_dict())

    def load_links(self, tree_id: str) -> ParentLinks:
        data = self._read("links", tree_id) or {}
        return ParentLinks.from_list(data.get("links", []), next_seq=data.get("next_seq", 0))

    def save_links(self, tree_id: str, links: ParentLinks) -> None:
        self._write("links", tree_id, {"links": links.to_list(), "next_seq": links.next_seq})

    # -- Nodes -----------------------------------------------------------------

    def load_node(self, node_id: str) -> Node | None:
        data = self._read("nodes", node_id)
        return Node.model_validate(data) if data is not None else None

    def save_node(self, node: Node) -> None:
        self._write("nodes", node.id, node.model_dump(mode="json"))

    def delete_node(self, node_id: str) -> None:
        self._write("nodes", node_id, _DELETED)

    def list_nodes(self, tree_id: str) -> list[Node]:
        nodes = [
            Node.model_validate(d) for d in self._scan("nodes").values() if d["tree_id"] == tree_id
        ]
        return sorted(nodes, key=lambda n: (n.created_at, n.id))

    def node_tree(self, node_id: str) -> str | None:
        data = self._read("nodes", node_id)
        return data["tree_id"] if data is not None else None

    # -- Shares ----------------------------------------------------------------

    def get_role(self, tree_id: str, user_id: str) -> ShareRole | None:
        data = self._read("shares", (tree_id, user_id))
        return ShareRole(data["role"]) if data is not None else None

    def set_role(self, tree_id: str, user_id: str, role: ShareRole) -> None:
        self._write(
            "shares",
            (tree_id, user_id),
            {"role": role.value, "updated_at": utcnow().isoformat()},
        )

    def remove_role(self, tree_id: str, user_id: str) -> bool:
        if self._read("shares", (tree_id, user_id)) is None:
            return False
        self._write("shares", (tree_id, user_id), _DELETED)
        return True

    def list_roles(self, tree_id: str) -> dict[str, ShareRole]:
        return {
            key[1]: ShareRole(data["role"])
            for key, data in sorted(self._scan("shares").items())
            if key[0] == tree_id
        }

    def list_shared_trees(self, user_id: str) -> dict[str, ShareRole]:
        return {
            key[0]: ShareRole(data["role"])
            for key, data in sorted(self._scan("shares").items())
            if key[1] == user_id
        }

    # -- Audit -----------------------------------------------------------------

    def record_mutation(
        self,
        operation: str,
        tree_id: str,
        target_id: str,
        principal: str = "",
        delta: dict[str, Any] | None = None,
    ) -> None:
        entry = {
            "timestamp": utcnow().isoformat(),
            "operation": operation,
            "tree_id": tree_id,
            "target_id": target_id,
            "principal": principal,
            "delta": copy.deepcopy(delta),
        }
        if self._pending() is not None:
            self._local.pending_mutations.append(entry)
        else:
            with self._lock:
                self._mutations.append(entry)

    def mutations(self) -> list[dict[str, Any]]:
        """Return committed audit records, oldest first."""
        with self._lock:
            return copy.deepcopy(self._mutations)
