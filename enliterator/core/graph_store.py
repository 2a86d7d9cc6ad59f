"""
Enliterator Pipeline - Graph Store
==================================

Minimal write/query boundary to the knowledge graph. Only the graph,
literacy, deliverables and fine-tune workers talk to it; the orchestration
core never does.

InMemoryGraphStore is the bundled implementation. It understands two query
shapes, enough for the workers:

    MATCH (n:Label) RETURN n
    MATCH ()-[r:TYPE]->() RETURN r

where ``:Label`` / ``:TYPE`` are optional and ``params`` filter on
properties (e.g. ``{"batch_id": "..."}``).
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


class GraphStoreError(Exception):
    """The graph store is unavailable or rejected a request."""


@dataclass
class GraphNode:
    id: str
    label: str
    properties: dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, **self.properties}


@dataclass
class GraphEdge:
    source_id: str
    target_id: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "type": self.type,
            **self.properties,
        }


@runtime_checkable
class GraphStore(Protocol):
    """What stage workers need from a graph database."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def create_nodes(self, nodes: list[GraphNode]) -> int: ...

    async def create_edges(self, edges: list[GraphEdge]) -> int: ...

    async def query(self, statement: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]: ...


_NODE_QUERY = re.compile(r"^\s*MATCH\s+\(\s*n(?::(\w+))?\s*\)\s+RETURN\s+n\s*$", re.IGNORECASE)
_EDGE_QUERY = re.compile(
    r"^\s*MATCH\s+\(\s*\)\s*-\[\s*r(?::(\w+))?\s*\]->\s*\(\s*\)\s+RETURN\s+r\s*$",
    re.IGNORECASE,
)


class InMemoryGraphStore:
    """
    Process-local graph store.

    Nodes are deduplicated by id (later properties are merged in); edges by
    (source, type, target).
    """

    def __init__(self):
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[tuple[str, str, str], GraphEdge] = {}
        self._open = False
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def create_nodes(self, nodes: list[GraphNode]) -> int:
        """Upsert nodes. Returns how many were new."""
        self._require_open()
        created = 0
        async with self._lock:
            for node in nodes:
                existing = self._nodes.get(node.id)
                if existing is None:
                    self._nodes[node.id] = GraphNode(node.id, node.label, dict(node.properties))
                    created += 1
                else:
                    existing.properties.update(node.properties)
        return created

    async def create_edges(self, edges: list[GraphEdge]) -> int:
        """Upsert edges between existing nodes. Returns how many were new."""
        self._require_open()
        created = 0
        async with self._lock:
            for edge in edges:
                if edge.source_id not in self._nodes or edge.target_id not in self._nodes:
                    raise GraphStoreError(
                        f"Edge {edge.type} references unknown node "
                        f"({edge.source_id} -> {edge.target_id})"
                    )
                key = (edge.source_id, edge.type, edge.target_id)
                if key in self._edges:
                    self._edges[key].properties.update(edge.properties)
                else:
                    self._edges[key] = GraphEdge(
                        edge.source_id, edge.target_id, edge.type, dict(edge.properties)
                    )
                    created += 1
        return created

    async def query(self, statement: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        self._require_open()
        params = params or {}

        match = _NODE_QUERY.match(statement)
        if match:
            label = match.group(1)
            return [
                node.as_row()
                for node in self._nodes.values()
                if (label is None or node.label == label) and _matches(node.properties, params)
            ]

        match = _EDGE_QUERY.match(statement)
        if match:
            edge_type = match.group(1)
            return [
                edge.as_row()
                for edge in self._edges.values()
                if (edge_type is None or edge.type == edge_type) and _matches(edge.properties, params)
            ]

        raise GraphStoreError(f"Unsupported query: {statement}")

    def _require_open(self) -> None:
        if not self._open:
            raise GraphStoreError("Graph store is not open")


def _matches(properties: dict[str, Any], params: dict[str, Any]) -> bool:
    return all(properties.get(key) == value for key, value in params.items())
