"""Tree service: the entry point for every structural operation.

A mutation runs as one unit:

1. Look up the tree and ask the authorizer, once, whether the principal may
   edit it. Both happen before the protocol starts.
2. Take the tree's lock, open a unit of work and load the tree state.
3. Run the transition from :mod:`codetree.graph.mutations`.
4. Optionally re-check every invariant, then save and commit.

Any exception rolls the unit of work back, so a failed operation leaves no
trace. Exceptions outside the error taxonomy are reported as
``InternalError``.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from codetree.graph.errors import (
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    TreeEngineError,
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
from codetree.graph.parents import ParentLinks
from codetree.graph.structure import TreeStructure
from codetree.graph.validation import run_all_checks, verify_state
from codetree.models import MutationResult, Node, NodeView, ShareRole, Tree, utcnow
from codetree.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from codetree.graph.store import TreeStore
    from codetree.graph.validation import ValidationReport

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@runtime_checkable
class Authorizer(Protocol):
    """Decides what a principal may do to a tree."""

    def may_edit(self, tree: Tree, principal: str) -> bool: ...

    def may_manage(self, tree: Tree, principal: str) -> bool: ...


class RoleAuthorizer:
    """Creator or a share with an editing role may edit."""

    def __init__(self, store: TreeStore) -> None:
        self._store = store

    def may_edit(self, tree: Tree, principal: str) -> bool:
        if not principal:
            return False
        if tree.created_by == principal:
            return True
        role = self._store.get_role(tree.id, principal)
        return role is not None and role.can_edit

    def may_manage(self, tree: Tree, principal: str) -> bool:
        """Creator or an owner share may grant and revoke access."""
        if tree.created_by == principal:
            return True
        return self._store.get_role(tree.id, principal) == ShareRole.OWNER


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class TreeLockRegistry:
    """One lock per tree; mutations of different trees never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, tree_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tree_id)
            if lock is None:
                lock = self._locks[tree_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, tree_id: str) -> Iterator[None]:
        with self.lock_for(tree_id):
            yield

    def discard(self, tree_id: str) -> None:
        with self._guard:
            self._locks.pop(tree_id, None)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TreeService:
    """Tree, node and share operations on top of a :class:`TreeStore`.

    Every mutating method takes the acting ``principal`` as a keyword
    argument and returns the committed result.
    """

    def __init__(
        self,
        store: TreeStore,
        authorizer: Authorizer | None = None,
        *,
        verify_invariants: bool = True,
        locks: TreeLockRegistry | None = None,
    ) -> None:
        self._store = store
        self._authorizer = authorizer or RoleAuthorizer(store)
        self._verify = verify_invariants
        self._locks = locks or TreeLockRegistry()

    @property
    def store(self) -> TreeStore:
        return self._store

    # -- Internals -------------------------------------------------------------

    def _require_tree(self, tree_id: str) -> Tree:
        if not tree_id:
            raise InvalidArgumentError("is required", argument="tree_id")
        tree = self._store.get_tree(tree_id)
        if tree is None:
            available = [t.id for t in self._store.list_trees()]
            raise NotFoundError("tree", tree_id, available=available)
        return tree

    def _load_state(self, tree: Tree) -> TreeState:
        return TreeState(
            tree=tree,
            structure=self._store.load_structure(tree.id),
            nodes={n.id: n for n in self._store.list_nodes(tree.id)},
            links=self._store.load_links(tree.id),
            locate=self._store.node_tree,
        )

    def _save_state(self, state: TreeState) -> None:
        for node_id in sorted(state.deleted):
            self._store.delete_node(node_id)
        for node_id in sorted(state.dirty):
            self._store.save_node(state.nodes[node_id])
        self._store.save_links(state.tree_id, state.links)
        self._store.save_structure(state.tree_id, state.structure)
        state.tree.updated_at = utcnow()
        self._store.save_tree(state.tree)

    @contextmanager
    def _guarded(self, operation: str, tree_id: str) -> Iterator[None]:
        """Log taxonomy errors and wrap everything else as InternalError."""
        try:
            yield
        except InternalError as e:
            log.error(f"{operation}_failed", tree_id=tree_id, error=str(e))
            raise
        except TreeEngineError as e:
            log.debug(f"{operation}_rejected", tree_id=tree_id, code=e.code.value, error=str(e))
            raise
        except Exception as e:
            log.error(f"{operation}_failed", tree_id=tree_id, error=str(e), exc_info=True)
            raise InternalError(str(e), operation=operation) from e

    @contextmanager
    def _mutation(self, operation: str, tree_id: str, principal: str) -> Iterator[TreeState]:
        """Run one authorized, locked, all-or-nothing mutation of a tree."""
        with self._guarded(operation, tree_id):
            tree = self._require_tree(tree_id)
            if not self._authorizer.may_edit(tree, principal):
                raise PermissionDeniedError(tree_id, principal)
            with self._locks.hold(tree_id), self._store.unit_of_work(tree_id):
                # Re-read under the lock; the tree may have been deleted meanwhile.
                state = self._load_state(self._require_tree(tree_id))
                yield state
                if self._verify:
                    verify_state(state)
                self._save_state(state)

    def _commit(
        self, operation: str, state: TreeState, principal: str, result: MutationResult
    ) -> MutationResult:
        delta: dict[str, Any] = {"parent_ids": result.parent_ids}
        if result.regenerated:
            delta["regenerated"] = result.regenerated
        if result.deleted:
            delta["deleted"] = result.deleted
        self._store.record_mutation(operation, state.tree_id, result.node.id, principal, delta)
        return result

    def _log_committed(self, operation: str, tree_id: str, result: MutationResult) -> None:
        log.info(
            operation,
            tree_id=tree_id,
            node_id=result.node.id,
            generation=result.node.generation,
            regenerated=len(result.regenerated),
            deleted=len(result.deleted),
        )

    # -- Trees -----------------------------------------------------------------

    def create_tree(
        self,
        name: str,
        *,
        principal: str,
        description: str = "",
        faculty: str = "",
        department: str = "",
    ) -> Tree:
        """Create an empty tree owned by *principal*."""
        with self._guarded("create_tree", ""):
            if not principal:
                raise InvalidArgumentError("is required", argument="principal")
            if not name or not name.strip():
                raise InvalidArgumentError("is required", argument="name")
            tree = Tree(
                name=name.strip(),
                description=description,
                faculty=faculty,
                department=department,
                created_by=principal,
            )
            with self._store.unit_of_work(tree.id):
                self._store.save_tree(tree)
                self._store.save_structure(tree.id, TreeStructure.empty())
                self._store.save_links(tree.id, ParentLinks())
                self._store.record_mutation("create_tree", tree.id, tree.id, principal)
        log.info("tree_created", tree_id=tree.id, name=tree.name, created_by=principal)
        return tree

    def get_tree(self, tree_id: str) -> Tree:
        with self._guarded("get_tree", tree_id):
            return self._require_tree(tree_id)

    def list_trees(self, principal: str | None = None) -> list[Tree]:
        """List trees, newest first; with *principal*, only the ones they created."""
        with self._guarded("list_trees", ""):
            return self._store.list_trees(created_by=principal)

    def delete_tree(self, tree_id: str, *, principal: str) -> None:
        """Delete a tree with all its nodes. Only the creator may do this."""
        with self._guarded("delete_tree", tree_id):
            tree = self._require_tree(tree_id)
            if tree.created_by != principal:
                raise PermissionDeniedError(tree_id, principal, action="delete")
            with self._locks.hold(tree_id), self._store.unit_of_work(tree_id):
                self._store.delete_tree(tree_id)
                self._store.record_mutation("delete_tree", tree_id, tree_id, principal)
        self._locks.discard(tree_id)
        log.info("tree_deleted", tree_id=tree_id)

    def check_tree(self, tree_id: str) -> ValidationReport:
        """Run every structural invariant check against the committed tree."""
        with self._guarded("check_tree", tree_id):
            with self._store.unit_of_work(tree_id, readonly=True):
                state = self._load_state(self._require_tree(tree_id))
            return run_all_checks(state)

    def load_state(self, tree_id: str) -> TreeState:
        """Load a consistent read-only snapshot of a tree."""
        with self._guarded("load_state", tree_id):
            with self._store.unit_of_work(tree_id, readonly=True):
                return self._load_state(self._require_tree(tree_id))

    # -- Sharing ---------------------------------------------------------------

    def _require_manager(self, tree_id: str, principal: str) -> Tree:
        tree = self._require_tree(tree_id)
        if not self._authorizer.may_manage(tree, principal):
            raise PermissionDeniedError(tree_id, principal, action="share")
        return tree

    def share_tree(
        self, tree_id: str, user_id: str, role: ShareRole | str, *, principal: str
    ) -> ShareRole:
        """Grant *user_id* a role on the tree, replacing any earlier one."""
        with self._guarded("share_tree", tree_id):
            if not user_id:
                raise InvalidArgumentError("is required", argument="user_id")
            try:
                share_role = ShareRole(role)
            except ValueError as e:
                raise InvalidArgumentError(str(e), argument="role") from e
            tree = self._require_manager(tree_id, principal)
            if user_id == tree.created_by:
                raise InvalidArgumentError("the creator already owns the tree", argument="user_id")
            with self._store.unit_of_work(tree_id):
                self._store.set_role(tree_id, user_id, share_role)
                self._store.record_mutation(
                    "share_tree", tree_id, user_id, principal, {"role": share_role.value}
                )
        log.info("tree_shared", tree_id=tree_id, user_id=user_id, role=share_role.value)
        return share_role

    def revoke_share(self, tree_id: str, user_id: str, *, principal: str) -> bool:
        """Remove *user_id*'s role. Returns False if they had none.

        A manager may revoke anyone; any holder may drop their own share.
        """
        with self._guarded("revoke_share", tree_id):
            if principal != user_id or not principal:
                self._require_manager(tree_id, principal)
            else:
                self._require_tree(tree_id)
            with self._store.unit_of_work(tree_id):
                removed = self._store.remove_role(tree_id, user_id)
                if removed:
                    self._store.record_mutation("revoke_share", tree_id, user_id, principal)
        log.info("share_revoked", tree_id=tree_id, user_id=user_id, removed=removed)
        return removed

    def my_role(self, tree_id: str, *, principal: str) -> ShareRole | None:
        """Role *principal* holds on the tree; the creator is always an owner."""
        with self._guarded("my_role", tree_id):
            tree = self._require_tree(tree_id)
            if principal and tree.created_by == principal:
                return ShareRole.OWNER
            return self._store.get_role(tree_id, principal)

    def list_shares(self, tree_id: str, *, principal: str) -> dict[str, ShareRole]:
        """Every share on the tree. Visible to the creator and share holders."""
        with self._guarded("list_shares", tree_id):
            tree = self._require_tree(tree_id)
            if tree.created_by != principal and self._store.get_role(tree_id, principal) is None:
                raise PermissionDeniedError(tree_id, principal, action="view")
            return self._store.list_roles(tree_id)

    def list_shared_with(self, principal: str) -> list[tuple[Tree, ShareRole]]:
        """Trees other users shared with *principal*, with the role held on each."""
        with self._guarded("list_shared_with", ""):
            shared = []
            for tree_id, role in self._store.list_shared_trees(principal).items():
                tree = self._store.get_tree(tree_id)
                if tree is not None:
                    shared.append((tree, role))
            return shared

    # -- Node reads ------------------------------------------------------------

    def list_nodes(self, tree_id: str) -> list[NodeView]:
        """Return every node of a tree with its parents, by creation time."""
        state = self.load_state(tree_id)
        return [
            NodeView(node=node, parent_ids=state.parent_ids(node.id))
            for node in sorted(state.nodes.values(), key=lambda n: (n.created_at, n.id))
        ]

    def get_node(self, tree_id: str, node_id: str) -> NodeView:
        state = self.load_state(tree_id)
        with self._guarded("get_node", tree_id):
            node = state.get_node(node_id)
            return NodeView(node=node, parent_ids=state.parent_ids(node_id))

    # -- Node mutations --------------------------------------------------------

    def create_node(
        self,
        tree_id: str,
        nickname: str,
        parent_ids: list[str] | None = None,
        *,
        principal: str,
        **attributes: Any,
    ) -> MutationResult:
        """Create a node as a root, or under *parent_ids* (first is primary)."""
        with self._mutation("create_node", tree_id, principal) as state:
            if not nickname:
                raise InvalidArgumentError("is required", argument="nickname")
            unknown = sorted(set(attributes) - _CREATE_FIELDS)
            if unknown:
                raise InvalidArgumentError(
                    f"unknown field(s) {', '.join(unknown)}", argument="attributes"
                )
            try:
                node = Node(tree_id=tree_id, nickname=nickname, **attributes)
            except ValueError as e:
                raise InvalidArgumentError(str(e), argument="attributes") from e
            result = attach_new_node(state, node, list(parent_ids or []))
            self._commit("create_node", state, principal, result)
        self._log_committed("node_created", tree_id, result)
        return result

    def update_node(
        self, tree_id: str, node_id: str, *, principal: str, **attributes: Any
    ) -> MutationResult:
        """Change passthrough attributes of a node."""
        with self._mutation("update_node", tree_id, principal) as state:
            result = update_node_attributes(state, node_id, attributes)
            self._commit("update_node", state, principal, result)
        self._log_committed("node_updated", tree_id, result)
        return result

    def move_node(
        self, tree_id: str, node_id: str, new_parent_id: str, *, principal: str
    ) -> MutationResult:
        """Make *new_parent_id* the node's primary parent."""
        with self._mutation("move_node", tree_id, principal) as state:
            result = move_node(state, node_id, new_parent_id)
            self._commit("move_node", state, principal, result)
        self._log_committed("node_moved", tree_id, result)
        return result

    def unlink_node(self, tree_id: str, node_id: str, *, principal: str) -> MutationResult:
        """Detach a node from all parents; it becomes a root."""
        with self._mutation("unlink_node", tree_id, principal) as state:
            result = unlink_node(state, node_id)
            self._commit("unlink_node", state, principal, result)
        self._log_committed("node_unlinked", tree_id, result)
        return result

    def add_parent(
        self, tree_id: str, node_id: str, parent_id: str, *, principal: str
    ) -> MutationResult:
        """Link another parent to a node."""
        with self._mutation("add_parent", tree_id, principal) as state:
            result = link_parent(state, node_id, parent_id)
            self._commit("add_parent", state, principal, result)
        self._log_committed("parent_added", tree_id, result)
        return result

    def remove_parent(
        self, tree_id: str, node_id: str, parent_id: str, *, principal: str
    ) -> MutationResult:
        """Drop one parent link of a node."""
        with self._mutation("remove_parent", tree_id, principal) as state:
            result = unlink_parent(state, node_id, parent_id)
            self._commit("remove_parent", state, principal, result)
        self._log_committed("parent_removed", tree_id, result)
        return result

    def delete_node(self, tree_id: str, node_id: str, *, principal: str) -> MutationResult:
        """Delete a node and everything below it."""
        with self._mutation("delete_node", tree_id, principal) as state:
            result = delete_node(state, node_id)
            self._commit("delete_node", state, principal, result)
        self._log_committed("node_deleted", tree_id, result)
        return result


_CREATE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "student_id",
        "photo_url",
        "status",
        "position_x",
        "position_y",
        "contact",
    }
)

