"""
Stage 9: Fine-tune dataset.

Builds chat-format JSONL examples from the batch's graph: canonical term
mapping from entity nodes and gap awareness from the literacy report.
Examples are split 80/10/10 into train, validation and test files.
"""

import asyncio
import json
import logging
import os
import random
from typing import Any, Optional
from uuid import UUID

from enliterator.core.exceptions import StageFatalError
from enliterator.core.graph_store import GraphStore
from enliterator.core.models import utcnow
from enliterator.core.pipeline.worker import StageContext, StageResult, StageWorker
from enliterator.workers.deliverables import export_graph, run_output_dir, write_json

logger = logging.getLogger(__name__)

SPLIT = (0.8, 0.1, 0.1)

SYSTEM_PROMPTS = {
    "canon_map": "You map user phrases to canonical terms and pools from the knowledge graph.",
    "gap_awareness": "You identify gaps and coverage issues in the knowledge graph.",
}


def canon_map_examples(nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    examples = []
    for node in nodes:
        if "canonical" not in node:
            continue
        examples.append({
            "task": "canon_map",
            "input": node.get("name", node["canonical"]),
            "output": json.dumps({"canonical": node["canonical"], "pool": node.get("pool")}),
        })
    return examples


def gap_examples(gaps: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "task": "gap_awareness",
            "input": f"Is the knowledge graph missing anything about {gap['type']}?",
            "output": f"Yes ({gap['severity']} severity): {gap['message']}.",
        }
        for gap in gaps
    ]


def to_chat(example: dict[str, Any]) -> dict[str, Any]:
    return {
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPTS[example["task"]]},
            {"role": "user", "content": example["input"]},
            {"role": "assistant", "content": example["output"]},
        ]
    }


def split_examples(examples: list[dict[str, Any]], seed: str) -> dict[str, list[dict[str, Any]]]:
    """Deterministic shuffle then 80/10/10 split."""
    shuffled = list(examples)
    random.Random(seed).shuffle(shuffled)
    train_size = int(len(shuffled) * SPLIT[0])
    validation_size = int(len(shuffled) * SPLIT[1])
    return {
        "train": shuffled[:train_size],
        "validation": shuffled[train_size:train_size + validation_size],
        "test": shuffled[train_size + validation_size:],
    }


def write_jsonl(path: str, examples: list[dict[str, Any]]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for example in examples:
            f.write(json.dumps(to_chat(example)) + "\n")


class FineTuneDatasetWorker(StageWorker):
    """Build fine-tuning dataset."""

    def __init__(self, graph_store: Optional[GraphStore] = None):
        self.graph_store = graph_store

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        batch = await ctx.ledger.get_batch(batch_id)
        if batch is None:
            raise StageFatalError(f"Batch {batch_id} not found")

        graph = await export_graph(self.graph_store, batch_id)
        examples = canon_map_examples(graph["nodes"]) + gap_examples(batch.literacy_gaps or [])
        splits = split_examples(examples, seed=str(batch_id))

        output_dir = os.path.join(run_output_dir(ctx.settings.DELIVERABLES_DIR, ctx.run_id), "fine_tune")
        try:
            for name, subset in splits.items():
                await asyncio.to_thread(write_jsonl, os.path.join(output_dir, f"{name}.jsonl"), subset)
            await asyncio.to_thread(
                write_json,
                os.path.join(output_dir, "metadata.json"),
                {
                    "batch_id": str(batch_id),
                    "generated_at": utcnow().isoformat(),
                    "example_counts": {
                        "total": len(examples),
                        **{name: len(subset) for name, subset in splits.items()},
                    },
                },
            )
        except OSError as e:
            raise StageFatalError(f"Could not write dataset to {output_dir}: {e}") from e

        await ctx.ledger.update_batch(batch_id, fine_tune_dataset_path=output_dir)
        if not examples:
            logger.warning(f"Fine-tune dataset for batch {batch_id} is empty")

        return StageResult(
            items_processed=len(examples),
            counters={
                "examples": len(examples),
                **{f"{name}_examples": len(subset) for name, subset in splits.items()},
            },
        )
