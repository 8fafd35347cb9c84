"""Mutation audit trail queries.

Provides functions to query and format the mutations table of a
SqliteTreeStore database for debugging and inspection.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@contextmanager
def _open_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a read-only connection to the audit database.

    Raises:
        sqlite3.Error: If the database cannot be opened or is corrupted.
    """
    conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def query_mutations(
    db_path: Path,
    *,
    tree_id: str | None = None,
    operation: str | None = None,
    target: str | None = None,
    principal: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Query mutations from a SQLite tree database.

    Args:
        db_path: Path to the ``.db`` file.
        tree_id: Filter by tree.
        operation: Filter by operation type (e.g., "move_node").
        target: Filter by target ID (substring match).
        principal: Filter by the caller that ran the operation.
        limit: Maximum number of results.

    Returns:
        List of mutation dicts, most recent first.

    Raises:
        sqlite3.Error: If the database cannot be read.
    """
    with _open_db(db_path) as conn:
        clauses: list[str] = []
        params: list[Any] = []

        if tree_id is not None:
            clauses.append("tree_id = ?")
            params.append(tree_id)
        if operation is not None:
            clauses.append("operation = ?")
            params.append(operation)
        if target is not None:
            clauses.append("target_id LIKE ?")
            params.append(f"%{target}%")
        if principal is not None:
            clauses.append("principal = ?")
            params.append(principal)

        # Column names are fixed; every value goes through a ? parameter.
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(limit)

        rows = conn.execute(
            f"SELECT id, timestamp, tree_id, operation, target_id, principal, delta "
            f"FROM mutations{where} ORDER BY id DESC LIMIT ?",
            params,
        ).fetchall()

        return [
            {
                "id": row["id"],
                "timestamp": row["timestamp"],
                "tree_id": row["tree_id"],
                "operation": row["operation"],
                "target_id": row["target_id"],
                "principal": row["principal"],
                "delta": json.loads(row["delta"]) if row["delta"] else None,
            }
            for row in rows
        ]


def mutation_summary(db_path: Path, tree_id: str | None = None) -> dict[str, int]:
    """Count mutations per operation type.

    Returns:
        Mapping of operation name to count, most frequent first.
    """
    with _open_db(db_path) as conn:
        if tree_id is None:
            rows = conn.execute(
                "SELECT operation, COUNT(*) AS n FROM mutations "
                "GROUP BY operation ORDER BY n DESC, operation"
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT operation, COUNT(*) AS n FROM mutations WHERE tree_id = ? "
                "GROUP BY operation ORDER BY n DESC, operation",
                (tree_id,),
            ).fetchall()
        return {row["operation"]: row["n"] for row in rows}


def format_mutations(mutations: list[dict[str, Any]]) -> str:
    """Render mutation rows as aligned plain-text lines."""
    if not mutations:
        return "No mutations recorded."
    lines = []
    for m in mutations:
        who = f" by {m['principal']}" if m.get("principal") else ""
        lines.append(
            f"#{m['id']:<5} {m['timestamp']}  {m['operation']:<14} {m['target_id']}{who}"
        )
    return "\n".join(lines)
