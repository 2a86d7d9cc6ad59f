"""
Stage 7: Literacy scoring and gaps.

Scores the batch from what the earlier stages recorded in the ledger and
gates advancement on LITERACY_THRESHOLD. A score below the threshold holds
the run at this stage instead of failing it.
"""

import logging
from typing import Any
from uuid import UUID

from enliterator.core.models import Item, ItemStatus
from enliterator.core.pipeline.worker import StageContext, StageResult, StageWorker
from enliterator.workers.extraction import POOLS

logger = logging.getLogger(__name__)

WEIGHTS: dict[str, float] = {
    "coverage": 0.3,
    "completeness": 0.3,
    "density": 0.2,
    "quality": 0.2,
}

_DONE = (ItemStatus.COMPLETED.value, ItemStatus.EXTRACTED.value)


def calculate_scores(items: list[Item]) -> dict[str, float]:
    """Component scores, each 0-100."""
    total = len(items)
    if total == 0:
        return {name: 0.0 for name in WEIGHTS}

    pools_seen = set()
    entity_count = 0
    relation_count = 0
    for item in items:
        metadata = item.pool_metadata or {}
        pools_seen.update(pool for pool, count in metadata.get("pools", {}).items() if count)
        entity_count += len(metadata.get("entities", []))
        relation_count += len(metadata.get("relations", []))

    coverage = len(pools_seen & set(POOLS)) / len(POOLS) * 100
    completeness = sum(1 for item in items if item.triage_status in _DONE) / total * 100
    # One relation per two entities counts as fully dense
    density = min(100.0, relation_count / entity_count * 50) if entity_count else 0.0
    quality = sum(1 for item in items if item.embedding_status in _DONE) / total * 100

    return {
        "coverage": round(coverage, 1),
        "completeness": round(completeness, 1),
        "density": round(density, 1),
        "quality": round(quality, 1),
    }


def enliteracy_score(scores: dict[str, float]) -> float:
    """Weighted average of the component scores."""
    return round(sum(scores[name] * weight for name, weight in WEIGHTS.items()), 1)


def identify_gaps(scores: dict[str, float]) -> list[dict[str, Any]]:
    gaps = []
    if scores["coverage"] < 60:
        gaps.append({"type": "coverage", "severity": "high", "message": "Low pool coverage"})
    if scores["completeness"] < 70:
        gaps.append({"type": "completeness", "severity": "medium", "message": "Missing rights data"})
    if scores["density"] < 50:
        gaps.append({"type": "density", "severity": "low", "message": "Sparse relationships"})
    if scores["quality"] < 50:
        gaps.append({"type": "quality", "severity": "low", "message": "Few items embedded"})
    return gaps


class LiteracyWorker(StageWorker):
    """Calculate literacy score and gaps."""

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        items = await ctx.ledger.get_items(batch_id)
        scores = calculate_scores(items)
        score = enliteracy_score(scores)
        gaps = identify_gaps(scores)

        await ctx.ledger.update_batch(batch_id, literacy_score=score, literacy_gaps=gaps)

        threshold = ctx.settings.LITERACY_THRESHOLD
        advance = score >= threshold
        logger.info(f"Literacy scoring complete for batch {batch_id}: score={score}")

        return StageResult(
            items_processed=len(items),
            counters={
                "enliteracy_score": score,
                **{f"{name}_score": value for name, value in scores.items()},
                "gaps_identified": len(gaps),
                "threshold": threshold,
            },
            advance=advance,
            message=None if advance else f"Literacy score {score} below threshold {threshold}",
        )
