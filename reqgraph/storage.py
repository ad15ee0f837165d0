"""In-memory dependency graph: nodes, directed edges, cycle detection, traversal.

The store is a plain labelled digraph. It does not deduplicate nodes on
its own; the identity rule differs per node kind, so the pipeline keeps the
dedup maps (canonical request -> id, cookie name -> id) in its run state
and checks them before calling :meth:`GraphStore.add_node`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import NodeNotFound
from .models import GraphNode, NodeKind, NodePayload

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class GraphStore:
    """Adjacency-set graph keyed by opaque node ids.

    Forward edges point from a dependent node to the node that supplies one
    of its dynamic values. Iteration order is insertion order everywhere so
    traversals are deterministic.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, GraphNode] = {}
        # dicts used as ordered sets
        self._forward: Dict[str, Dict[str, None]] = {}
        self._reverse: Dict[str, Dict[str, None]] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(
        self,
        kind: NodeKind,
        payload: NodePayload,
        dynamic_parts: Optional[List[str]] = None,
        extracted_parts: Optional[List[str]] = None,
        input_variables: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a node and return its new id. Never deduplicates."""
        node_id = uuid.uuid4().hex
        self._nodes[node_id] = GraphNode(
            node_id=node_id,
            kind=kind,
            payload=payload,
            dynamic_parts=list(dynamic_parts or []),
            extracted_parts=list(extracted_parts or []),
            input_variables=dict(input_variables or {}),
        )
        self._forward[node_id] = {}
        self._reverse[node_id] = {}
        logger.debug("Added %s node %s", kind.value, node_id)
        return node_id

    def update_node(
        self,
        node_id: str,
        *,
        kind: Optional[NodeKind] = None,
        payload: Any = _UNSET,
        dynamic_parts: Optional[List[str]] = None,
        extracted_parts: Optional[List[str]] = None,
        input_variables: Optional[Dict[str, str]] = None,
    ) -> GraphNode:
        """Overwrite only the fields that are provided."""
        node = self.require_node(node_id)
        if kind is not None or payload is not _UNSET:
            # Rebuild so the kind/payload pairing is re-validated
            node = GraphNode(
                node_id=node.node_id,
                kind=kind if kind is not None else node.kind,
                payload=payload if payload is not _UNSET else node.payload,
                dynamic_parts=node.dynamic_parts,
                extracted_parts=node.extracted_parts,
                input_variables=node.input_variables,
            )
            self._nodes[node_id] = node
        if dynamic_parts is not None:
            node.dynamic_parts = list(dynamic_parts)
        if extracted_parts is not None:
            node.extracted_parts = list(extracted_parts)
        if input_variables is not None:
            node.input_variables = dict(input_variables)
        return node

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> GraphNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        return node

    def nodes(self) -> List[GraphNode]:
        return list(self._nodes.values())

    def nodes_of_kind(self, kind: NodeKind) -> List[GraphNode]:
        return [n for n in self._nodes.values() if n.kind is kind]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Add ``from_id -> to_id``. Adding an existing edge is a no-op."""
        if from_id not in self._nodes:
            raise NodeNotFound(from_id, role="Source node")
        if to_id not in self._nodes:
            raise NodeNotFound(to_id, role="Target node")
        self._forward[from_id][to_id] = None
        self._reverse[to_id][from_id] = None

    def edges(self) -> List[Tuple[str, str]]:
        return [(src, dst) for src, targets in self._forward.items() for dst in targets]

    def successors(self, node_id: str) -> List[str]:
        if node_id not in self._forward:
            raise NodeNotFound(node_id)
        return list(self._forward[node_id])

    def predecessors(self, node_id: str) -> List[str]:
        if node_id not in self._reverse:
            raise NodeNotFound(node_id)
        return list(self._reverse[node_id])

    def in_degree(self, node_id: str) -> int:
        return len(self.predecessors(node_id))

    def source_nodes(self) -> List[GraphNode]:
        """Nodes without incoming edges."""
        return [self._nodes[nid] for nid, preds in self._reverse.items() if not preds]

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def detect_cycle(self) -> Optional[List[Tuple[str, str]]]:
        """Return the first back edge found by a full-graph DFS, or ``None``.

        Uses an explicit stack so deep chains can't hit the recursion
        limit. The graph is not modified.
        """
        visited: set = set()
        on_stack: set = set()

        for root in self._nodes:
            if root in visited:
                continue
            visited.add(root)
            on_stack.add(root)
            stack: List[Tuple[str, Iterator[str]]] = [(root, iter(self._forward[root]))]
            while stack:
                node_id, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in visited:
                        visited.add(child)
                        on_stack.add(child)
                        stack.append((child, iter(self._forward[child])))
                        advanced = True
                        break
                    if child in on_stack:
                        return [(node_id, child)]
                if not advanced:
                    stack.pop()
                    on_stack.discard(node_id)
        return None

    def topological_order(self, sink_first: bool = False) -> List[str]:
        """Order nodes so every node precedes the nodes it depends on.

        ``sink_first=True`` reverses this: suppliers come before their
        dependents, which is the order requests must be replayed in.
        Nodes on a cycle are emitted in DFS finish order rather than
        dropped.
        """
        finished: List[str] = []
        visited: set = set()
        roots = [n.node_id for n in self.source_nodes()] + list(self._nodes)
        for root in roots:
            if root in visited:
                continue
            visited.add(root)
            stack: List[Tuple[str, Iterator[str]]] = [(root, iter(self._forward[root]))]
            while stack:
                node_id, children = stack[-1]
                for child in children:
                    if child not in visited:
                        visited.add(child)
                        stack.append((child, iter(self._forward[child])))
                        break
                else:
                    stack.pop()
                    finished.append(node_id)
        # DFS finish order already lists suppliers before dependents
        return finished if sink_first else list(reversed(finished))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [{"src": src, "dst": dst} for src, dst in self.edges()],
        }

    def __repr__(self) -> str:
        return f"GraphStore(nodes={len(self._nodes)}, edges={len(self.edges())})"
