"""SQLite-backed tree storage with mutation audit trail.

SqliteTreeStore implements the TreeStore protocol using stdlib sqlite3.
Each committed service operation is recorded in the ``mutations`` table
for auditing.

Each thread gets its own connection, so a reader on one thread sees the
last committed snapshot while another thread holds a write transaction
(WAL mode). A unit of work runs inside ``BEGIN IMMEDIATE`` while holding
the store's write lock, so writers of one process queue in order rather than
racing for SQLite's busy timeout. ``":memory:"`` is backed by a scratch file
for the same reason.
"""

from __future__ import annotations

import json
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from codetree.graph.parents import ParentLinks
from codetree.graph.structure import TreeStructure
from codetree.models import Node, ShareRole, Tree, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS trees (
    tree_id    TEXT PRIMARY KEY,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    data       JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trees_owner ON trees(created_by);

CREATE TABLE IF NOT EXISTS tree_structures (
    tree_id       TEXT PRIMARY KEY REFERENCES trees(tree_id) ON DELETE CASCADE,
    structure     JSON NOT NULL,
    next_link_seq INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS nodes (
    node_id    TEXT PRIMARY KEY,
    tree_id    TEXT NOT NULL REFERENCES trees(tree_id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    data       JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_nodes_tree ON nodes(tree_id);

CREATE TABLE IF NOT EXISTS node_parents (
    node_id   TEXT NOT NULL,
    parent_id TEXT NOT NULL,
    tree_id   TEXT NOT NULL REFERENCES trees(tree_id) ON DELETE CASCADE,
    seq       INTEGER NOT NULL,
    linked_at TEXT NOT NULL,
    PRIMARY KEY (node_id, parent_id),
    CHECK (node_id <> parent_id)
);
CREATE INDEX IF NOT EXISTS idx_node_parents_tree   ON node_parents(tree_id);
CREATE INDEX IF NOT EXISTS idx_node_parents_parent ON node_parents(parent_id);

CREATE TABLE IF NOT EXISTS tree_shares (
    tree_id    TEXT NOT NULL REFERENCES trees(tree_id) ON DELETE CASCADE,
    user_id    TEXT NOT NULL,
    role       TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (tree_id, user_id)
);

CREATE TABLE IF NOT EXISTS mutations (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    tree_id   TEXT NOT NULL,
    operation TEXT NOT NULL,
    target_id TEXT NOT NULL,
    principal TEXT NOT NULL DEFAULT '',
    delta     JSON
);
CREATE INDEX IF NOT EXISTS idx_mutations_tree   ON mutations(tree_id);
CREATE INDEX IF NOT EXISTS idx_mutations_target ON mutations(target_id);
"""


class SqliteTreeStore:
    """SQLite-backed tree store with mutation recording.

    Tree, node and share records are stored as JSON documents next to the
    columns used for lookups. The parent relation is a junction table whose
    ``seq`` column preserves link order.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Open or create a SQLite tree database.

        Args:
            db_path: Path to ``.db`` file, or ``":memory:"`` for in-memory.
                An in-memory store keeps its data in a private scratch file
                that every thread of this store shares and :meth:`close`
                removes, so it gets the same WAL concurrency as a file store.
        """
        db_path = str(db_path) if isinstance(db_path, Path) else db_path
        self._scratch_dir: Path | None = None
        if db_path == ":memory:":
            self._scratch_dir = Path(tempfile.mkdtemp(prefix="codetree-"))
            file_path = self._scratch_dir / "scratch.db"
        else:
            file_path = Path(db_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
        self._uri = file_path.resolve().as_uri()
        self._db_path = db_path
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        # Writers of this process queue here instead of on SQLite's busy timeout.
        self._write_lock = threading.RLock()
        self._conn().executescript(_SCHEMA)

    @property
    def db_path(self) -> str:
        """Path the store was opened with."""
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._uri,
                uri=True,
                isolation_level=None,  # autocommit; we manage transactions
                check_same_thread=False,
                timeout=5.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            self._local.depth = 0
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close every connection opened by this store.

        An in-memory store's data is discarded.
        """
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self._scratch_dir = None

    def backup_to(self, dest_path: Path) -> None:
        """Copy the live database to a destination file.

        Uses SQLite's online backup API for a consistent copy, even while
        other threads are writing.
        """
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        dest = sqlite3.connect(str(dest_path))
        try:
            self._conn().backup(dest)
        except Exception:
            dest.close()
            if dest_path.exists():
                dest_path.unlink()
            raise
        else:
            dest.close()

    # -- Units of work ---------------------------------------------------------

    @contextmanager
    def unit_of_work(self, tree_id: str, *, readonly: bool = False) -> Iterator[None]:
        """Run the enclosed reads and writes in one transaction.

        Nested units of work on the same thread join the outer transaction.
        Readonly units use a deferred transaction, which gives a consistent
        read snapshot without taking the write lock. Write units hold the
        store's write lock for the whole ``BEGIN IMMEDIATE`` ... ``COMMIT``.
        """
        conn = self._conn()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        if readonly:
            with self._transaction(conn, "BEGIN"):
                yield
            return
        with self._write_lock, self._transaction(conn, "BEGIN IMMEDIATE"):
            yield

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection, begin: str) -> Iterator[None]:
        conn.execute(begin)
        self._local.depth = 1
        try:
            yield
        except BaseException:
            self._local.depth = 0
            conn.execute("ROLLBACK")
            raise
        self._local.depth = 0
        conn.execute("COMMIT")

    # -- Trees -----------------------------------------------------------------

    def get_tree(self, tree_id: str) -> Tree | None:
        row = self._conn().execute("SELECT data FROM trees WHERE tree_id = ?", (tree_id,)).fetchone()
        return Tree.model_validate_json(row["data"]) if row else None

    def save_tree(self, tree: Tree) -> None:
        self._conn().execute(
            "INSERT INTO trees (tree_id, created_by, created_at, data) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(tree_id) DO UPDATE SET "
            "created_by = excluded.created_by, data = excluded.data",
            (tree.id, tree.created_by, tree.created_at.isoformat(), tree.model_dump_json()),
        )

    def delete_tree(self, tree_id: str) -> None:
        conn = self._conn()
        # Nodes, structure, links and shares go with the tree row.
        conn.execute("DELETE FROM trees WHERE tree_id = ?", (tree_id,))

    def list_trees(self, created_by: str | None = None) -> list[Tree]:
        if created_by is None:
            rows = self._conn().execute(
                "SELECT data FROM trees ORDER BY created_at DESC, tree_id"
            ).fetchall()
        else:
            rows = self._conn().execute(
                "SELECT data FROM trees WHERE created_by = ? ORDER BY created_at DESC, tree_id",
                (created_by,),
            ).fetchall()
        return [Tree.model_validate_json(row["data"]) for row in rows]

    # -- Structure and links ---------------------------------------------------

    def load_structure(self, tree_id: str) -> TreeStructure:
        row = (
            self._conn()
            .execute("SELECT structure FROM tree_structures WHERE tree_id = ?", (tree_id,))
            .fetchone()
        )
        return TreeStructure.from_dict(json.loads(row["structure"]) if row else None)

    def save_structure(self, tree_id: str, structure: TreeStructure) -> None:
        self._conn().execute(
            "INSERT INTO tree_structures (tree_id, structure) VALUES (?, ?) "
            "ON CONFLICT(tree_id) DO UPDATE SET structure = excluded.structure",
            (tree_id, json.dumps(structure.to_dict())),
        )

    def load_links(self, tree_id: str) -> ParentLinks:
        conn = self._conn()
        rows = conn.execute(
            "SELECT node_id, parent_id, seq, linked_at FROM node_parents "
            "WHERE tree_id = ? ORDER BY seq",
            (tree_id,),
        ).fetchall()
        seq_row = conn.execute(
            "SELECT next_link_seq FROM tree_structures WHERE tree_id = ?", (tree_id,)
        ).fetchone()
        return ParentLinks.from_list(
            [dict(row) for row in rows],
            next_seq=seq_row["next_link_seq"] if seq_row else 0,
        )

    def save_links(self, tree_id: str, links: ParentLinks) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM node_parents WHERE tree_id = ?", (tree_id,))
        conn.executemany(
            "INSERT INTO node_parents (node_id, parent_id, tree_id, seq, linked_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (link.node_id, link.parent_id, tree_id, link.seq, link.linked_at.isoformat())
                for link in links.links()
            ],
        )
        conn.execute(
            "INSERT INTO tree_structures (tree_id, structure, next_link_seq) VALUES (?, ?, ?) "
            "ON CONFLICT(tree_id) DO UPDATE SET next_link_seq = excluded.next_link_seq",
            (tree_id, json.dumps(TreeStructure.empty().to_dict()), links.next_seq),
        )

    # -- Nodes -----------------------------------------------------------------

    def load_node(self, node_id: str) -> Node | None:
        row = self._conn().execute("SELECT data FROM nodes WHERE node_id = ?", (node_id,)).fetchone()
        return Node.model_validate_json(row["data"]) if row else None

    def save_node(self, node: Node) -> None:
        self._conn().execute(
            "INSERT INTO nodes (node_id, tree_id, created_at, data) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(node_id) DO UPDATE SET tree_id = excluded.tree_id, data = excluded.data",
            (node.id, node.tree_id, node.created_at.isoformat(), node.model_dump_json()),
        )

    def delete_node(self, node_id: str) -> None:
        self._conn().execute("DELETE FROM nodes WHERE node_id = ?", (node_id,))

    def list_nodes(self, tree_id: str) -> list[Node]:
        rows = self._conn().execute(
            "SELECT data FROM nodes WHERE tree_id = ? ORDER BY created_at, node_id", (tree_id,)
        ).fetchall()
        return [Node.model_validate_json(row["data"]) for row in rows]

    def node_tree(self, node_id: str) -> str | None:
        row = self._conn().execute(
            "SELECT tree_id FROM nodes WHERE node_id = ?", (node_id,)
        ).fetchone()
        return row["tree_id"] if row else None

    # -- Shares ----------------------------------------------------------------

    def get_role(self, tree_id: str, user_id: str) -> ShareRole | None:
        row = self._conn().execute(
            "SELECT role FROM tree_shares WHERE tree_id = ? AND user_id = ?", (tree_id, user_id)
        ).fetchone()
        return ShareRole(row["role"]) if row else None

    def set_role(self, tree_id: str, user_id: str, role: ShareRole) -> None:
        self._conn().execute(
            "INSERT INTO tree_shares (tree_id, user_id, role, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(tree_id, user_id) DO UPDATE SET "
            "role = excluded.role, updated_at = excluded.updated_at",
            (tree_id, user_id, role.value, utcnow().isoformat()),
        )

    def remove_role(self, tree_id: str, user_id: str) -> bool:
        cursor = self._conn().execute(
            "DELETE FROM tree_shares WHERE tree_id = ? AND user_id = ?", (tree_id, user_id)
        )
        return cursor.rowcount > 0

    def list_roles(self, tree_id: str) -> dict[str, ShareRole]:
        rows = self._conn().execute(
            "SELECT user_id, role FROM tree_shares WHERE tree_id = ? ORDER BY user_id", (tree_id,)
        ).fetchall()
        return {row["user_id"]: ShareRole(row["role"]) for row in rows}

    def list_shared_trees(self, user_id: str) -> dict[str, ShareRole]:
        rows = self._conn().execute(
            "SELECT tree_id, role FROM tree_shares WHERE user_id = ? ORDER BY tree_id", (user_id,)
        ).fetchall()
        return {row["tree_id"]: ShareRole(row["role"]) for row in rows}

    # -- Audit -----------------------------------------------------------------

    def record_mutation(
        self,
        operation: str,
        tree_id: str,
        target_id: str,
        principal: str = "",
        delta: dict[str, Any] | None = None,
    ) -> None:
        """Append a mutation record.

        Args:
            operation: Service operation name (create_node, move_node, ...).
            tree_id: Tree the operation ran against.
            target_id: Affected node or tree ID.
            principal: Caller the operation ran on behalf of.
            delta: Operation-specific summary (new parents, regenerated ids).
        """
        self._conn().execute(
            "INSERT INTO mutations (tree_id, operation, target_id, principal, delta) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                tree_id,
                operation,
                target_id,
                principal,
                json.dumps(delta) if delta is not None else None,
            ),
        )

    def mutation_count(self) -> int:
        """Return the number of recorded mutations."""
        row = self._conn().execute("SELECT COUNT(*) FROM mutations").fetchone()
        return int(row[0])
