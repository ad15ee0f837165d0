"""Graph export helpers for JSON, DOT, and simple standalone HTML outputs."""

from __future__ import annotations

import html
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import NodeKind, RunResult
from .storage import GraphStore

NODE_COLORS = {
    NodeKind.MASTER: "#f4a261",
    NodeKind.REQUEST: "#8ecae6",
    NodeKind.COOKIE: "#b7e4c7",
    NodeKind.UNRESOLVED: "#e63946",
}

DOT_LABEL_CHARS = 80


def result_payload(result: RunResult) -> Dict[str, Any]:
    """JSON-ready view of a run: status fields plus the full graph."""
    return {
        "status": result.status_text,
        "target_url": result.target_url,
        "master_node": result.master_node,
        "steps_used": result.steps_used,
        "iterations": result.iterations,
        "cycle": [list(edge) for edge in result.cycle] if result.cycle else None,
        # suppliers first: the order the requests have to be replayed in
        "replay_order": result.graph.topological_order(sink_first=True),
        **result.graph.to_dict(),
    }


def export_json(result: RunResult, output_file: Path) -> None:
    output_file.write_text(json.dumps(result_payload(result), indent=2, ensure_ascii=False), encoding="utf-8")


def export_dot(store: GraphStore, output_file: Path, focus: str = "") -> None:
    selected = _focused_subgraph(store, focus)

    lines = ["digraph RequestGraph {"]
    lines.append("  rankdir=LR;")
    lines.append("  node [shape=box, style=filled];")

    for node_id in selected["nodes"]:
        node = store.require_node(node_id)
        label = f"{node.kind.value}\\n{_esc(_shorten(node.label))}"
        color = NODE_COLORS[node.kind]
        lines.append(f'  "{node_id}" [label="{label}", fillcolor="{color}"];')

    for src, dst in selected["edges"]:
        extracted = store.require_node(dst).extracted_parts
        edge_label = _shorten(", ".join(extracted)) if extracted else ""
        lines.append(f'  "{src}" -> "{dst}" [label="{_esc(edge_label)}"];')

    lines.append("}")
    output_file.write_text("\n".join(lines), encoding="utf-8")


def export_html(store: GraphStore, output_file: Path, focus: str = "", title: str = "Request dependency graph") -> None:
    """Export graph to a standalone HTML page listing nodes and edges."""
    selected = _focused_subgraph(store, focus)
    graph_payload = {
        "nodes": [
            {
                "id": node_id,
                "kind": store.require_node(node_id).kind.value,
                "label": store.require_node(node_id).label,
                "extracted": store.require_node(node_id).extracted_parts,
            }
            for node_id in selected["nodes"]
        ],
        "edges": [{"src": src, "dst": dst} for src, dst in selected["edges"]],
    }
    output_file.write_text(_basic_html_export(graph_payload, title), encoding="utf-8")


def _basic_html_export(graph_payload: dict, title: str) -> str:
    # Escape "</" so labels can't close the script block
    data = json.dumps(graph_payload).replace("</", "<\\/")
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>{html.escape(title)}</title>
  <style>
    body {{ font-family: ui-monospace, SFMono-Regular, Menlo, monospace; margin: 20px; }}
    #container {{ display: grid; grid-template-columns: 1fr 1fr; gap: 18px; }}
    .panel {{ border: 1px solid #ddd; border-radius: 8px; padding: 10px; }}
    ul {{ list-style: none; padding: 0; margin: 0; }}
    li {{ margin: 4px 0; word-break: break-all; }}
    .unresolved {{ color: #e63946; }}
    .cookie {{ color: #2d6a4f; }}
    .master {{ font-weight: bold; }}
  </style>
</head>
<body>
  <h1>{html.escape(title)}</h1>
  <div id="container">
    <div class="panel">
      <h2>Nodes</h2>
      <ul id="nodes"></ul>
    </div>
    <div class="panel">
      <h2>Edges</h2>
      <ul id="edges"></ul>
    </div>
  </div>
  <script>
    const graph = {data};
    const nodesEl = document.getElementById('nodes');
    const edgesEl = document.getElementById('edges');
    graph.nodes.forEach(n => {{
      const li = document.createElement('li');
      li.className = n.kind;
      li.textContent = `[${{n.kind}}] ${{n.id}}: ${{n.label}}`;
      nodesEl.appendChild(li);
    }});
    graph.edges.forEach(e => {{
      const li = document.createElement('li');
      li.textContent = `${{e.src}} --depends on--> ${{e.dst}}`;
      edgesEl.appendChild(li);
    }});
  </script>
</body>
</html>
"""


def _focused_subgraph(store: GraphStore, focus: str) -> Dict[str, List]:
    """All nodes, or only the nodes whose label contains ``focus`` plus their neighbours."""
    all_nodes = [node.node_id for node in store.nodes()]
    edges = store.edges()
    if not focus:
        return {"nodes": all_nodes, "edges": edges}

    focus_ids = {node.node_id for node in store.nodes() if focus in node.node_id or focus in node.label}
    if not focus_ids:
        return {"nodes": all_nodes, "edges": edges}

    edge_subset = [(src, dst) for src, dst in edges if src in focus_ids or dst in focus_ids]
    keep = set(focus_ids)
    for src, dst in edge_subset:
        keep.add(src)
        keep.add(dst)
    return {"nodes": [nid for nid in all_nodes if nid in keep], "edges": edge_subset}


def _shorten(text: str, limit: Optional[int] = DOT_LABEL_CHARS) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _esc(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')
