"""codetree CLI - typer application entry point."""

from __future__ import annotations

import atexit
from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree as RichTree

from codetree.config import (
    CONFIG_FILENAME,
    AppConfig,
    ConfigError,
    load_config,
    resolve_db_path,
    write_config,
)
from codetree.graph.errors import TreeEngineError
from codetree.models import NodeStatus, ShareRole
from codetree.observability import close_file_logging, configure_logging

if TYPE_CHECKING:
    from codetree.graph.mutations import TreeState
    from codetree.models import MutationResult, Node
    from codetree.service import TreeService

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="codetree",
    help="codetree: lineage trees with multi-parent links and generations.",
    no_args_is_help=True,
)
tree_app = typer.Typer(help="Create, inspect and export trees.", no_args_is_help=True)
node_app = typer.Typer(help="Add, move, link and delete nodes.", no_args_is_help=True)
share_app = typer.Typer(help="Grant and revoke access to a tree.", no_args_is_help=True)
app.add_typer(tree_app, name="tree")
app.add_typer(node_app, name="node")
app.add_typer(share_app, name="share")

console = Console()

# Global state for flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False
_db_override: Path | None = None
_principal_override: str | None = None


class ExportFormat(StrEnum):
    DOT = "dot"
    MERMAID = "mermaid"
    JSON = "json"


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_: Annotated[
        bool,
        typer.Option("--log", help="Enable file logging to logs/codetree.jsonl next to the db."),
    ] = False,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="SQLite database file (overrides codetree.yaml)."),
    ] = None,
    as_principal: Annotated[
        str | None,
        typer.Option("--as", help="Act as this principal (overrides default_principal)."),
    ] = None,
) -> None:
    """codetree: lineage trees with multi-parent links and generations."""
    global _verbose, _log_enabled, _db_override, _principal_override
    _verbose = verbose
    _log_enabled = log_
    _db_override = db
    _principal_override = as_principal

    # Console logging now; file logging once the database location is known
    configure_logging(verbosity=verbose)


# =============================================================================
# Helpers
# =============================================================================


def _load_app_config() -> AppConfig:
    try:
        return load_config(Path.cwd())
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def _db_path(config: AppConfig) -> Path:
    return _db_override or resolve_db_path(Path.cwd(), config)


def _principal(config: AppConfig) -> str:
    return _principal_override or config.default_principal


@contextmanager
def _service() -> Iterator[tuple[TreeService, str]]:
    """Open the configured store and yield ``(service, principal)``.

    Taxonomy errors raised inside are printed as ``Error [code]: message``
    and turned into exit code 1.
    """
    from codetree.graph.sqlite_store import SqliteTreeStore
    from codetree.service import TreeService

    config = _load_app_config()
    db_path = _db_path(config)
    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, log_dir=db_path.parent / "logs")
        atexit.register(close_file_logging)

    store = SqliteTreeStore(db_path)
    try:
        yield TreeService(store, verify_invariants=config.verify_invariants), _principal(config)
    except TreeEngineError as e:
        console.print(f"[red]Error {escape(f'[{e.code.value}]')}:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None
    finally:
        store.close()


def _node_label(node: Node) -> str:
    status = "" if node.status == NodeStatus.STUDYING else f" [dim]{node.status.value}[/dim]"
    return (
        f"[bold]{escape(node.display_name)}[/bold] "
        f"[cyan]gen {node.generation}[/cyan]{status} [dim]{node.id}[/dim]"
    )


def _print_result(verb: str, result: MutationResult) -> None:
    console.print(f"[green]✓[/green] {verb} {_node_label(result.node)}")
    if result.parent_ids:
        console.print(f"  Parents: {', '.join(result.parent_ids)}")
    if len(result.regenerated) > 1:
        console.print(f"  Regenerated: {len(result.regenerated)} node(s)")
    if result.deleted:
        console.print(f"  Deleted: {len(result.deleted)} node(s)")


def _add_branch(branch: RichTree, state: TreeState, node_id: str, seen: set[str]) -> None:
    for child_id in state.structure.children_of(node_id):
        child = state.nodes.get(child_id)
        if child is None:
            continue
        if child.parent_id != node_id:
            branch.add(f"[dim]↳ {escape(child.display_name)} (secondary link)[/dim]")
            continue
        if child_id in seen:
            continue
        seen.add(child_id)
        _add_branch(branch.add(_node_label(child)), state, child_id, seen)


def _node_attributes(**options: Any) -> dict[str, Any]:
    return {key: value for key, value in options.items() if value is not None}


# =============================================================================
# Top-level commands
# =============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from codetree import __version__

    console.print(f"codetree v{__version__}")


@app.command()
def init(
    db: Annotated[str, typer.Option("--db-path", help="Database file to record.")] = "codetree.db",
    principal: Annotated[
        str, typer.Option("--principal", help="Default identity for CLI commands.")
    ] = "local",
    no_verify: Annotated[
        bool, typer.Option("--no-verify", help="Skip invariant checks after mutations.")
    ] = False,
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing config.")] = False,
) -> None:
    """Write codetree.yaml in the current directory."""
    config_file = Path.cwd() / CONFIG_FILENAME
    if config_file.exists() and not force:
        console.print(f"[red]Error:[/red] '{config_file}' already exists (use --force)")
        raise typer.Exit(1)

    config = AppConfig(db_path=db, verify_invariants=not no_verify, default_principal=principal)
    path = write_config(Path.cwd(), config)
    console.print(f"[green]✓[/green] Wrote {path}")


@app.command()
def audit(
    tree_id: Annotated[str | None, typer.Option("--tree", "-t", help="Filter by tree.")] = None,
    operation: Annotated[
        str | None, typer.Option("--operation", "-o", help="Filter by operation.")
    ] = None,
    target: Annotated[
        str | None, typer.Option("--target", help="Filter by target id (substring).")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows.")] = 50,
) -> None:
    """Show the mutation audit trail, most recent first."""
    import sqlite3

    from codetree.graph.audit import query_mutations

    db_path = _db_path(_load_app_config())
    if not db_path.exists():
        console.print(f"[red]Error:[/red] Database '{db_path}' not found")
        raise typer.Exit(1)
    try:
        rows = query_mutations(
            db_path, tree_id=tree_id, operation=operation, target=target, limit=limit
        )
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/red] Cannot read audit trail: {escape(str(e))}")
        raise typer.Exit(1) from None

    if not rows:
        console.print("[dim]No mutations recorded.[/dim]")
        return

    table = Table(title="Mutations")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Time", style="dim")
    table.add_column("Operation", style="cyan")
    table.add_column("Target")
    table.add_column("By")
    for row in rows:
        table.add_row(
            str(row["id"]), row["timestamp"], row["operation"], row["target_id"], row["principal"]
        )
    console.print(table)


# =============================================================================
# tree
# =============================================================================


@tree_app.command("create")
def tree_create(
    name: Annotated[str, typer.Argument(help="Tree name.")],
    description: Annotated[str, typer.Option("--description", help="Free text.")] = "",
    faculty: Annotated[str, typer.Option("--faculty")] = "",
    department: Annotated[str, typer.Option("--department")] = "",
) -> None:
    """Create an empty tree."""
    with _service() as (service, principal):
        tree = service.create_tree(
            name,
            principal=principal,
            description=description,
            faculty=faculty,
            department=department,
        )
    console.print(f"[green]✓[/green] Created tree [bold]{escape(tree.name)}[/bold]")
    console.print(f"  ID: {tree.id}")


@tree_app.command("list")
def tree_list(
    show_all: Annotated[
        bool, typer.Option("--all", help="List every tree, not only your own.")
    ] = False,
) -> None:
    """List trees, newest first."""
    with _service() as (service, principal):
        trees = service.list_trees(None if show_all else principal)

    if not trees:
        console.print("[dim]No trees.[/dim]")
        return

    table = Table(title="Trees")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Created by")
    table.add_column("Created", style="dim")
    for tree in trees:
        table.add_row(
            tree.id, tree.name, tree.created_by, tree.created_at.strftime("%Y-%m-%d %H:%M")
        )
    console.print(table)


@tree_app.command("show")
def tree_show(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """Print the tree hierarchy with generations."""
    with _service() as (service, _):
        state = service.load_state(tree_id)

    root = RichTree(f"[bold]{escape(state.tree.name)}[/bold] [dim]{state.tree.id}[/dim]")
    seen: set[str] = set()
    for root_id in state.structure.roots():
        node = state.nodes.get(root_id)
        if node is None or root_id in seen:
            continue
        seen.add(root_id)
        _add_branch(root.add(_node_label(node)), state, root_id, seen)
    console.print(root)
    console.print(f"[dim]{len(state.nodes)} node(s), {len(state.links)} parent link(s)[/dim]")


_CHECK_ICONS = {
    "pass": "[green]✓[/green]",
    "warn": "[yellow]![/yellow]",
    "fail": "[red]✗[/red]",
}


@tree_app.command("check")
def tree_check(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """Run every structural invariant check."""
    with _service() as (service, _):
        report = service.check_tree(tree_id)

    for check in report.checks:
        icon = _CHECK_ICONS[check.severity]
        console.print(f"{icon} {check.name}: {escape(check.message)}")
        for violation in check.violations:
            console.print(f"    - {escape(violation)}")
    if report.has_failures:
        raise typer.Exit(1)


@tree_app.command("delete")
def tree_delete(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation.")] = False,
) -> None:
    """Delete a tree and all of its nodes."""
    if not yes:
        typer.confirm(f"Delete tree {tree_id} and all its nodes?", abort=True)
    with _service() as (service, principal):
        service.delete_tree(tree_id, principal=principal)
    console.print(f"[green]✓[/green] Deleted tree {tree_id}")


@tree_app.command("export")
def tree_export(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    fmt: Annotated[
        ExportFormat, typer.Option("--format", "-f", help="Output format.")
    ] = ExportFormat.JSON,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write to file instead of stdout.")
    ] = None,
) -> None:
    """Export a tree as JSON, DOT or Mermaid."""
    from codetree.visualization import (
        build_lineage_graph,
        render_dot,
        render_json,
        render_mermaid,
    )

    with _service() as (service, _):
        state = service.load_state(tree_id)

    if fmt == ExportFormat.JSON:
        text = render_json(state)
    elif fmt == ExportFormat.DOT:
        text = render_dot(build_lineage_graph(state))
    else:
        text = render_mermaid(build_lineage_graph(state))

    if output is None:
        typer.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text + "\n", encoding="utf-8")
    console.print(f"[green]✓[/green] Wrote {output}")


# =============================================================================
# node
# =============================================================================


@node_app.command("add")
def node_add(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    nickname: Annotated[str, typer.Argument(help="Display nickname.")],
    parents: Annotated[
        list[str] | None,
        typer.Option("--parent", "-p", help="Parent node ID; repeat for more (first is primary)."),
    ] = None,
    first_name: Annotated[str | None, typer.Option("--first-name")] = None,
    last_name: Annotated[str | None, typer.Option("--last-name")] = None,
    student_id: Annotated[str | None, typer.Option("--student-id")] = None,
    status: Annotated[NodeStatus | None, typer.Option("--status")] = None,
) -> None:
    """Add a node as a root or under one or more parents."""
    attributes = _node_attributes(
        first_name=first_name, last_name=last_name, student_id=student_id, status=status
    )
    with _service() as (service, principal):
        result = service.create_node(
            tree_id, nickname, parents or [], principal=principal, **attributes
        )
    _print_result("Added", result)


@node_app.command("update")
def node_update(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
    nickname: Annotated[str | None, typer.Option("--nickname")] = None,
    first_name: Annotated[str | None, typer.Option("--first-name")] = None,
    last_name: Annotated[str | None, typer.Option("--last-name")] = None,
    student_id: Annotated[str | None, typer.Option("--student-id")] = None,
    photo_url: Annotated[str | None, typer.Option("--photo-url")] = None,
    status: Annotated[NodeStatus | None, typer.Option("--status")] = None,
) -> None:
    """Change a node's details. Structure is never changed this way."""
    attributes = _node_attributes(
        nickname=nickname,
        first_name=first_name,
        last_name=last_name,
        student_id=student_id,
        photo_url=photo_url,
        status=status,
    )
    if not attributes:
        console.print("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(1)
    with _service() as (service, principal):
        result = service.update_node(tree_id, node_id, principal=principal, **attributes)
    _print_result("Updated", result)


@node_app.command("move")
def node_move(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
    new_parent_id: Annotated[str, typer.Argument(help="New primary parent ID.")],
) -> None:
    """Make another node the primary parent."""
    with _service() as (service, principal):
        result = service.move_node(tree_id, node_id, new_parent_id, principal=principal)
    _print_result("Moved", result)


@node_app.command("link")
def node_link(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
    parent_id: Annotated[str, typer.Argument(help="Additional parent ID.")],
) -> None:
    """Link an additional parent."""
    with _service() as (service, principal):
        result = service.add_parent(tree_id, node_id, parent_id, principal=principal)
    _print_result("Linked", result)


@node_app.command("unlink-parent")
def node_unlink_parent(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
    parent_id: Annotated[str, typer.Argument(help="Parent ID to drop.")],
) -> None:
    """Drop one parent link."""
    with _service() as (service, principal):
        result = service.remove_parent(tree_id, node_id, parent_id, principal=principal)
    _print_result("Unlinked", result)


@node_app.command("unlink")
def node_unlink(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
) -> None:
    """Detach a node from all parents, making it a root."""
    with _service() as (service, principal):
        result = service.unlink_node(tree_id, node_id, principal=principal)
    _print_result("Detached", result)


@node_app.command("delete")
def node_delete(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    node_id: Annotated[str, typer.Argument(help="Node ID.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation.")] = False,
) -> None:
    """Delete a node and everything below it."""
    if not yes:
        typer.confirm(f"Delete node {node_id} and all its descendants?", abort=True)
    with _service() as (service, principal):
        result = service.delete_node(tree_id, node_id, principal=principal)
    _print_result("Deleted", result)


@node_app.command("list")
def node_list(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """List a tree's nodes with generations and parents."""
    with _service() as (service, _):
        views = service.list_nodes(tree_id)

    if not views:
        console.print("[dim]No nodes.[/dim]")
        return

    table = Table(title="Nodes")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Gen", justify="right", style="cyan")
    table.add_column("Status")
    table.add_column("Parents", style="dim")
    for view in views:
        node = view.node
        table.add_row(
            node.id,
            node.display_name,
            str(node.generation),
            node.status.value,
            ", ".join(view.parent_ids) or "-",
        )
    console.print(table)


# =============================================================================
# share
# =============================================================================


@share_app.command("grant")
def share_grant(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    user_id: Annotated[str, typer.Argument(help="User to share with.")],
    role: Annotated[ShareRole, typer.Argument(help="viewer, editor or owner.")],
) -> None:
    """Grant a user a role on a tree."""
    with _service() as (service, principal):
        granted = service.share_tree(tree_id, user_id, role, principal=principal)
    console.print(f"[green]✓[/green] {escape(user_id)} is now {granted.value} of {tree_id}")


@share_app.command("revoke")
def share_revoke(
    tree_id: Annotated[str, typer.Argument(help="Tree ID.")],
    user_id: Annotated[str, typer.Argument(help="User to remove.")],
) -> None:
    """Revoke a user's access to a tree."""
    with _service() as (service, principal):
        removed = service.revoke_share(tree_id, user_id, principal=principal)
    if removed:
        console.print(f"[green]✓[/green] Revoked {escape(user_id)}")
    else:
        console.print(f"[yellow]{escape(user_id)} had no access[/yellow]")


@share_app.command("leave")
def share_leave(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """Give up your own share on a tree."""
    with _service() as (service, principal):
        removed = service.revoke_share(tree_id, principal, principal=principal)
    if removed:
        console.print(f"[green]✓[/green] Left {tree_id}")
    else:
        console.print(f"[yellow]{tree_id} was not shared with you[/yellow]")


@share_app.command("list")
def share_list(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """List who a tree is shared with."""
    with _service() as (service, principal):
        roles = service.list_shares(tree_id, principal=principal)
    if not roles:
        console.print("[dim]Not shared.[/dim]")
        return
    for user_id, role in roles.items():
        console.print(f"  {escape(user_id)}: {role.value}")


@share_app.command("mine")
def share_mine() -> None:
    """List trees other users shared with you."""
    with _service() as (service, principal):
        shared = service.list_shared_with(principal)
    if not shared:
        console.print("[dim]Nothing shared with you.[/dim]")
        return
    table = Table(title=f"Shared with {escape(principal)}")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Owner")
    table.add_column("Role")
    for tree, role in shared:
        table.add_row(tree.id, escape(tree.name), escape(tree.created_by), role.value)
    console.print(table)


@share_app.command("role")
def share_role(tree_id: Annotated[str, typer.Argument(help="Tree ID.")]) -> None:
    """Show the role you hold on a tree."""
    with _service() as (service, principal):
        role = service.my_role(tree_id, principal=principal)
    console.print(role.value if role else "none")


if __name__ == "__main__":
    app()
