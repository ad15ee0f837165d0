"""Plain-text renderings of a dependency graph."""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Set

from .storage import GraphStore

BRANCH = "├── "
LAST = "└── "
PIPE = "│   "
SPACE = "    "


def _format_list(items: Sequence[str]) -> str:
    return "[" + ", ".join(f"'{item}'" for item in items) + "]"


def _format_dict(values: Mapping[str, str]) -> str:
    return "{" + ", ".join(f"'{k}': '{v}'" for k, v in values.items()) + "}"


def node_summary(graph: GraphStore, node_id: str) -> str:
    """One-line description of a node."""
    node = graph.get_node(node_id)
    if node is None:
        return f"[unknown] [node_id: {node_id}]"
    parts = [
        f"[{node.kind.value}]",
        f"[node_id: {node_id}]",
        f"[dynamic_parts: {_format_list(node.dynamic_parts)}]",
        f"[extracted_parts: {_format_list(node.extracted_parts)}]",
    ]
    if node.input_variables:
        parts.append(f"[input_variables: {_format_dict(node.input_variables)}]")
    parts.append(f"[{node.label}]")
    return " ".join(parts)


def render_tree(graph: GraphStore, root_id: str, max_depth: Optional[int] = None) -> str:
    """Master-first tree: each node followed by the nodes it depends on.

    A node reached a second time (shared dependency or cycle) is printed
    as an ``(already visited)`` stub instead of being expanded again.
    """
    lines: List[str] = []
    visited: Set[str] = set()

    def visit(node_id: str, prefix: str, is_last: bool, depth: int) -> None:
        connector = LAST if is_last else BRANCH
        child_prefix = prefix + (SPACE if is_last else PIPE)
        node = graph.get_node(node_id)
        if node is None:
            lines.append(f"{prefix}{connector}[unknown node_id: {node_id}]")
            return

        lines.append(f"{prefix}{connector}[{node.kind.value}] [node_id: {node_id}]")
        detail = child_prefix + SPACE
        if node.input_variables:
            lines.append(f"{detail}[input_variables: {_format_dict(node.input_variables)}]")
        lines.append(f"{detail}[dynamic_parts: {_format_list(node.dynamic_parts)}]")
        lines.append(f"{detail}[extracted_parts: {_format_list(node.extracted_parts)}]")
        lines.append(f"{detail}[{node.label}]")
        visited.add(node_id)

        if max_depth is not None and depth >= max_depth:
            return
        children = graph.successors(node_id)
        for index, child in enumerate(children):
            last_child = index == len(children) - 1
            if child in visited:
                lines.append(f"{child_prefix}{LAST if last_child else BRANCH}(already visited) [node_id: {child}]")
            else:
                visit(child, child_prefix, last_child, depth + 1)

    visit(root_id, "", True, 0)
    return "\n".join(lines)


def render_reverse(graph: GraphStore) -> str:
    """Source-first listing where every dependency is printed before its dependents.

    Reading top to bottom gives an order in which the requests can be
    replayed. Each node is printed once.
    """
    lines: List[str] = []
    done: Set[str] = set()

    def visit(node_id: str, prefix: str, is_last: bool, path: Set[str]) -> None:
        if node_id in done or node_id in path:
            return
        path.add(node_id)
        children = graph.successors(node_id)
        child_prefix = prefix + (SPACE if is_last else PIPE)
        for index, child in enumerate(children):
            visit(child, child_prefix, index == len(children) - 1, path)
        lines.append(f"{prefix}{LAST if is_last else BRANCH}{node_summary(graph, node_id)}")
        done.add(node_id)
        path.discard(node_id)

    sources = graph.source_nodes()
    for index, source in enumerate(sources):
        visit(source.node_id, "", index == len(sources) - 1, set())
    # Nodes that only sit on cycles have no source to start from
    for node in graph.nodes():
        if node.node_id not in done:
            visit(node.node_id, "", True, set())
    return "\n".join(lines)
