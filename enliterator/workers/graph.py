"""
Stage 5: Graph assembly.

Writes each item's document node, its pool entities and their relations to
the Graph Store. Entities are shared across items of the same batch through
their canonical name. An unreachable store fails the whole stage.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from enliterator.core.exceptions import StageFatalError
from enliterator.core.graph_store import GraphEdge, GraphNode, GraphStore, GraphStoreError
from enliterator.core.models import Item
from enliterator.core.pipeline.worker import ItemStageWorker, StageContext, StageResult

logger = logging.getLogger(__name__)


def document_node_id(item_id: UUID) -> str:
    return f"item:{item_id}"


def entity_node_id(batch_id: UUID, pool: str, canonical: str) -> str:
    return f"{batch_id}:{pool}:{canonical}"


class GraphWorker(ItemStageWorker):
    """Knowledge graph construction."""

    def __init__(self, graph_store: Optional[GraphStore] = None, concurrency: Optional[int] = None):
        super().__init__(concurrency)
        self.graph_store = graph_store

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        if self.graph_store is None:
            raise StageFatalError("No graph store configured")
        try:
            await self.graph_store.query("MATCH (n) RETURN n", {"batch_id": "__ping__"})
        except GraphStoreError as e:
            raise StageFatalError(f"Graph store unreachable: {e}") from e
        return await super().process(ctx, batch_id)

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        batch_key = str(ctx.batch_id)
        pools = item.pool_metadata or {}
        entities = pools.get("entities", [])

        doc_id = document_node_id(item.id)
        nodes = [
            GraphNode(
                doc_id,
                "Document",
                {"batch_id": batch_key, "file_path": item.file_path, "media_type": item.media_type},
            )
        ]
        ids_by_canonical: dict[str, str] = {}
        for entity in entities:
            node_id = entity_node_id(ctx.batch_id, entity["pool"], entity["canonical"])
            ids_by_canonical[entity["canonical"]] = node_id
            nodes.append(
                GraphNode(
                    node_id,
                    entity["pool"].capitalize(),
                    {
                        "batch_id": batch_key,
                        "name": entity.get("name", entity["canonical"]),
                        "canonical": entity["canonical"],
                        "pool": entity["pool"],
                    },
                )
            )

        edges = [
            GraphEdge(doc_id, node_id, "MENTIONS", {"batch_id": batch_key})
            for node_id in ids_by_canonical.values()
        ]
        for relation in pools.get("relations", []):
            source = ids_by_canonical.get(relation.get("source"))
            target = ids_by_canonical.get(relation.get("target"))
            if source and target:
                edges.append(
                    GraphEdge(source, target, relation.get("type", "RELATES_TO"), {"batch_id": batch_key})
                )

        try:
            nodes_created = await self.graph_store.create_nodes(nodes)
            edges_created = await self.graph_store.create_edges(edges)
        except GraphStoreError as e:
            raise StageFatalError(f"Graph store write failed: {e}") from e

        return {"nodes_created": nodes_created, "edges_created": edges_created}

    async def finalize(self, ctx: StageContext, result: StageResult) -> StageResult:
        items = await ctx.ledger.get_items(ctx.batch_id)
        result.counters["nodes_created"] = sum(
            (item.graph_metadata or {}).get("nodes_created", 0) for item in items
        )
        result.counters["edges_created"] = sum(
            (item.graph_metadata or {}).get("edges_created", 0) for item in items
        )
        logger.info(
            f"Graph assembly complete: {result.counters['nodes_created']} nodes, "
            f"{result.counters['edges_created']} edges"
        )
        return result
