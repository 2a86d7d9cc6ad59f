"""
Stage 8: Deliverables.

Exports the batch's graph snapshot, statistics and literacy report as JSON
under ``DELIVERABLES_DIR/<run_id>/``.
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional
from uuid import UUID

from enliterator.core.exceptions import StageFatalError
from enliterator.core.graph_store import GraphStore, GraphStoreError
from enliterator.core.models import utcnow
from enliterator.core.pipeline.worker import StageContext, StageResult, StageWorker

logger = logging.getLogger(__name__)


def run_output_dir(base_dir: str, run_id: UUID) -> str:
    return os.path.join(base_dir, str(run_id))


def write_json(path: str, payload: Any) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)


async def export_graph(graph_store: Optional[GraphStore], batch_id: UUID) -> dict[str, list]:
    """Nodes and edges of one batch, or empty lists without a store."""
    if graph_store is None:
        return {"nodes": [], "edges": []}
    params = {"batch_id": str(batch_id)}
    try:
        nodes = await graph_store.query("MATCH (n) RETURN n", params)
        edges = await graph_store.query("MATCH ()-[r]->() RETURN r", params)
    except GraphStoreError as e:
        raise StageFatalError(f"Graph export failed: {e}") from e
    return {"nodes": nodes, "edges": edges}


class DeliverablesWorker(StageWorker):
    """Generate export artifacts."""

    def __init__(self, graph_store: Optional[GraphStore] = None):
        self.graph_store = graph_store

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        batch = await ctx.ledger.get_batch(batch_id)
        if batch is None:
            raise StageFatalError(f"Batch {batch_id} not found")

        graph = await export_graph(self.graph_store, batch_id)
        output_dir = run_output_dir(ctx.settings.DELIVERABLES_DIR, ctx.run_id)
        files = {
            "graph.json": graph,
            "statistics.json": batch.statistics,
            "literacy.json": {"score": batch.literacy_score, "gaps": batch.literacy_gaps or []},
            "manifest.json": {
                "run_id": str(ctx.run_id),
                "batch_id": str(batch_id),
                "batch_name": batch.name,
                "source_type": batch.source_type,
                "generated_at": utcnow().isoformat(),
                "files": ["graph.json", "statistics.json", "literacy.json"],
            },
        }

        try:
            for name, payload in files.items():
                await asyncio.to_thread(write_json, os.path.join(output_dir, name), payload)
        except OSError as e:
            raise StageFatalError(f"Could not write deliverables to {output_dir}: {e}") from e

        await ctx.ledger.update_batch(batch_id, deliverables_path=output_dir)
        logger.info(f"Deliverables written to {output_dir}")

        return StageResult(
            counters={
                "files_written": len(files),
                "nodes_exported": len(graph["nodes"]),
                "edges_exported": len(graph["edges"]),
                "output_dir": output_dir,
            },
        )
