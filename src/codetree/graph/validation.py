"""Post-mutation invariant checks.

These catch code bugs and damaged stored data, not bad requests: a request
that would break an invariant is rejected by the mutation protocol before
anything changes. Run after a mutation (and before commit) to refuse to
persist a corrupted tree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from codetree.graph.algorithms import find_cycle
from codetree.graph.errors import TreeCorruptionError
from codetree.graph.generations import expected_generation
from codetree.graph.parents import primary_violations

if TYPE_CHECKING:
    from codetree.graph.mutations import TreeState


@dataclass
class ValidationCheck:
    """Result of a single validation check.

    Attributes:
        name: Identifier for the check.
        severity: "pass", "warn", or "fail".
        message: Human-readable description of the result.
        violations: Individual problems found (empty on pass).
    """

    name: str
    severity: Literal["pass", "warn", "fail"]
    message: str = ""
    violations: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Aggregated results of validation checks."""

    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        """True if any check has severity 'fail'."""
        return any(c.severity == "fail" for c in self.checks)

    @property
    def violations(self) -> list[str]:
        return [v for c in self.checks for v in c.violations]

    @property
    def summary(self) -> str:
        """Human-readable summary of all checks."""
        fails = sum(1 for c in self.checks if c.severity == "fail")
        warns = sum(1 for c in self.checks if c.severity == "warn")
        passes = sum(1 for c in self.checks if c.severity == "pass")

        parts: list[str] = []
        if fails:
            parts.append(f"{fails} failed")
        if warns:
            parts.append(f"{warns} warnings")
        if passes:
            parts.append(f"{passes} passed")
        return ", ".join(parts)


def _result(name: str, violations: list[str], ok_message: str) -> ValidationCheck:
    if violations:
        return ValidationCheck(
            name=name,
            severity="fail",
            message=f"{len(violations)} violation(s)",
            violations=violations,
        )
    return ValidationCheck(name=name, severity="pass", message=ok_message)


def check_acyclic(state: TreeState) -> ValidationCheck:
    """Verify no node is its own ancestor."""
    cycle = find_cycle(state.structure)
    violations = [f"Cycle: {' -> '.join([*cycle, cycle[0]])}"] if cycle else []
    return _result("acyclic", violations, "Structure is acyclic")


def check_references(state: TreeState) -> ValidationCheck:
    """Verify the structure references only nodes of this tree, and places every node."""
    violations: list[str] = []
    referenced = state.structure.node_ids()
    for node_id in sorted(referenced - set(state.nodes)):
        violations.append(f"Structure references unknown node '{node_id}'")
    for node_id in sorted(set(state.nodes) - referenced):
        violations.append(f"Node '{node_id}' is not placed in the structure")
    for node_id, node in sorted(state.nodes.items()):
        if node.tree_id != state.tree_id:
            violations.append(f"Node '{node_id}' belongs to tree '{node.tree_id}'")
    return _result("references", violations, f"{len(state.nodes)} nodes placed")


def check_roots(state: TreeState) -> ValidationCheck:
    """Verify the root list is exactly the set of nodes without a primary parent."""
    violations: list[str] = []
    roots = state.structure.roots()
    if len(roots) != len(set(roots)):
        violations.append("Root list contains duplicates")
    for node_id, node in sorted(state.nodes.items()):
        is_root = state.structure.is_root(node_id)
        if node.parent_id is None and not is_root:
            violations.append(f"Node '{node_id}' has no primary parent but is not a root")
        if node.parent_id is not None and is_root:
            violations.append(f"Node '{node_id}' has primary parent but is listed as a root")
    return _result("roots", violations, f"{len(roots)} roots")


def check_parent_links(state: TreeState) -> ValidationCheck:
    """Verify the parent relation matches the structure and holds each primary."""
    violations: list[str] = []
    for node_id, node in sorted(state.nodes.items()):
        violations.extend(primary_violations(node_id, node.parent_id, state.links))
        in_structure = set(state.structure.parents_of(node_id))
        in_links = set(state.links.parents_of(node_id))
        if in_structure != in_links:
            violations.append(
                f"Node '{node_id}' edges {sorted(in_structure)} disagree with "
                f"links {sorted(in_links)}"
            )
    return _result("parent_links", violations, f"{len(state.links)} links consistent")


def check_generations(state: TreeState) -> ValidationCheck:
    """Verify generation == primary parent's generation + 1, or 1 for roots."""
    violations: list[str] = []
    for node_id, node in sorted(state.nodes.items()):
        expected = expected_generation(node, state.nodes)
        if expected is None:
            violations.append(f"Node '{node_id}' primary parent '{node.parent_id}' is missing")
        elif node.generation != expected:
            violations.append(
                f"Node '{node_id}' generation {node.generation}, expected {expected}"
            )
    return _result("generations", violations, "Generations consistent")


def run_all_checks(state: TreeState) -> ValidationReport:
    """Run every invariant check against *state*."""
    return ValidationReport(
        checks=[
            check_acyclic(state),
            check_references(state),
            check_roots(state),
            check_parent_links(state),
            check_generations(state),
        ]
    )


def verify_state(state: TreeState) -> None:
    """Raise if *state* violates any invariant.

    Raises:
        TreeCorruptionError: With every violation found.
    """
    report = run_all_checks(state)
    if report.has_failures:
        raise TreeCorruptionError(report.violations, tree_id=state.tree_id)
