"""Lineage tree visualization.

Extracts nodes and parent edges from a loaded tree and renders them as
DOT (Graphviz), Mermaid or JSON. Primary-parent edges are drawn solid;
secondary-parent edges are dashed. Nodes of the same generation share a
rank.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from codetree.graph.algorithms import downward_closure
from codetree.models import NodeStatus
from codetree.observability.logging import get_logger

if TYPE_CHECKING:
    from codetree.graph.mutations import TreeState

log = get_logger(__name__)

_STATUS_COLORS = {
    NodeStatus.STUDYING: "#ADD8E6",  # light blue
    NodeStatus.GRADUATED: "#98FB98",  # pale green
    NodeStatus.RETIRED: "#D3D3D3",  # light grey
}
_ROOT_BORDER = "#FF4500"  # orange-red border for roots
_SECONDARY_COLOR = "grey"


@dataclass
class VizNode:
    """A person node in the visualization."""

    id: str
    label: str
    generation: int
    status: NodeStatus = NodeStatus.STUDYING
    is_root: bool = False


@dataclass
class VizEdge:
    """A parent -> child edge in the visualization."""

    from_id: str
    to_id: str
    is_primary: bool = True


@dataclass
class LineageGraph:
    """Complete visualization data extracted from a tree."""

    name: str
    nodes: list[VizNode]
    edges: list[VizEdge] = field(default_factory=list)

    def generations(self) -> dict[int, list[str]]:
        """Group node ids by generation, in display order."""
        ranks: dict[int, list[str]] = {}
        for node in self.nodes:
            ranks.setdefault(node.generation, []).append(node.id)
        return dict(sorted(ranks.items()))


def build_lineage_graph(state: TreeState, *, max_label: int = 40) -> LineageGraph:
    """Extract visualization data from a tree state.

    Nodes are listed in display order: roots in root order, each followed by
    its subtree in child order. Nodes reachable from several parents appear
    once, at their first position.
    """
    structure = state.structure
    order: list[str] = []
    seen: set[str] = set()
    for root_id in structure.roots():
        for node_id in downward_closure(structure, root_id):
            if node_id not in seen:
                seen.add(node_id)
                order.append(node_id)

    nodes: list[VizNode] = []
    edges: list[VizEdge] = []
    for node_id in order:
        node = state.nodes.get(node_id)
        if node is None:
            log.warning("viz_missing_record", tree_id=state.tree_id, node_id=node_id)
            continue
        nodes.append(
            VizNode(
                id=node_id,
                label=_truncate(node.display_name, max_label),
                generation=node.generation,
                status=node.status,
                is_root=node.parent_id is None,
            )
        )
        for child_id in structure.children_of(node_id):
            child = state.nodes.get(child_id)
            edges.append(
                VizEdge(
                    from_id=node_id,
                    to_id=child_id,
                    is_primary=child is not None and child.parent_id == node_id,
                )
            )

    log.debug("viz_built", tree_id=state.tree_id, nodes=len(nodes), edges=len(edges))
    return LineageGraph(name=state.tree.name, nodes=nodes, edges=edges)


def render_dot(lg: LineageGraph) -> str:
    """Render a LineageGraph as DOT (Graphviz) markup."""
    lines = [
        f'digraph "{_dot_escape(lg.name)}" {{',
        "  rankdir=TB;",
        '  node [fontname="Helvetica" fontsize=10 shape=box style="filled,rounded"];',
        "",
    ]

    for node in lg.nodes:
        attrs = {
            "label": f'"{_dot_escape(node.label)}\\ngen {node.generation}"',
            "fillcolor": f'"{_STATUS_COLORS[node.status]}"',
        }
        if node.is_root:
            attrs["color"] = f'"{_ROOT_BORDER}"'
            attrs["penwidth"] = '"2"'
        attr_str = " ".join(f"{k}={v}" for k, v in attrs.items())
        lines.append(f'  "{node.id}" [{attr_str}];')

    lines.append("")
    for ids in lg.generations().values():
        members = " ".join(f'"{node_id}";' for node_id in ids)
        lines.append(f"  {{ rank=same; {members} }}")

    lines.append("")
    for edge in lg.edges:
        suffix = "" if edge.is_primary else f' [style="dashed" color="{_SECONDARY_COLOR}"]'
        lines.append(f'  "{edge.from_id}" -> "{edge.to_id}"{suffix};')

    lines.append("}")
    return "\n".join(lines)


def render_mermaid(lg: LineageGraph) -> str:
    """Render a LineageGraph as Mermaid markup."""
    lines = ["graph TD"]

    for node in lg.nodes:
        safe_id = _mermaid_id(node.id)
        label = _mermaid_escape(f"{node.label} (gen {node.generation})")
        lines.append(f'  {safe_id}["{label}"]:::{node.status.value}')

    lines.append("")
    for edge in lg.edges:
        arrow = "-->" if edge.is_primary else "-.->"
        lines.append(f"  {_mermaid_id(edge.from_id)} {arrow} {_mermaid_id(edge.to_id)}")

    lines.append("")
    for status, color in _STATUS_COLORS.items():
        lines.append(f"  classDef {status.value} fill:{color},stroke:#333")
    roots = [_mermaid_id(n.id) for n in lg.nodes if n.is_root]
    if roots:
        lines.append(f"  style {','.join(roots)} stroke:{_ROOT_BORDER},stroke-width:2px")

    return "\n".join(lines)


def export_tree(state: TreeState) -> dict[str, Any]:
    """Serialize a tree with its nodes, structure and parent links."""
    return {
        "tree": state.tree.model_dump(mode="json"),
        "nodes": [
            node.model_dump(mode="json")
            for node in sorted(state.nodes.values(), key=lambda n: (n.created_at, n.id))
        ],
        "structure": state.structure.to_dict(),
        "parents": state.links.to_list(),
    }


def render_json(state: TreeState) -> str:
    return json.dumps(export_tree(state), indent=2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_len: int) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _dot_escape(text: str) -> str:
    """Escape special characters for DOT labels."""
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _mermaid_id(node_id: str) -> str:
    """Convert a node ID to a Mermaid-safe identifier."""
    return "n_" + node_id.replace("-", "_").replace(" ", "_")


def _mermaid_escape(text: str) -> str:
    """Escape special characters for Mermaid labels."""
    return text.replace('"', "&quot;").replace("\n", " ")
