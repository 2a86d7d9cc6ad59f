"""
Stages 3 and 4: Lexicon and pool extraction.

Both stages delegate to an injected Extractor. Without one, items are
skipped so downstream stages can still run over the batch.
"""

import logging
import re
from collections import Counter
from typing import Any, Optional, Protocol, runtime_checkable

from enliterator.core.exceptions import ItemSkipped
from enliterator.core.models import Item, ItemStatus
from enliterator.core.pipeline.worker import ItemStageWorker, StageContext, StageResult

logger = logging.getLogger(__name__)

# Main pools of the pool canon
POOLS: tuple[str, ...] = (
    "idea",
    "manifest",
    "experience",
    "relational",
    "evolutionary",
    "practical",
    "emanation",
)


def canonical_form(term: str) -> str:
    """Lowercase, underscore-separated form used to merge surface variants."""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", term.strip())
    return re.sub(r"[\s_\-]+", "_", spaced).lower().strip("_")


@runtime_checkable
class Extractor(Protocol):
    """LLM or rule-based extraction backend."""

    async def extract_terms(self, text: str) -> list[dict[str, Any]]:
        """Return ``[{"term": str, "canonical": str, "frequency": int}, ...]``."""
        ...

    async def extract_entities(
        self,
        text: str,
        terms: list[dict[str, Any]],
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Return ``{"entities": [{"name", "canonical", "pool"}],
        "relations": [{"source", "target", "type"}]}`` using canonical names.
        """
        ...


class HeuristicExtractor:
    """
    Dependency-free extractor: identifiers and capitalised phrases become
    terms, terms appearing on the same line are related.
    """

    _TOKEN = re.compile(r"\b(?:[A-Z][a-z]+(?:[A-Z][a-z0-9]+)+|[a-z]+(?:_[a-z0-9]+)+|[A-Z][a-z]{3,})\b")
    _STOPWORDS = frozenset({
        "this", "that", "with", "from", "have", "will", "when", "then", "there", "their",
        "what", "which", "where", "these", "those", "some", "into", "only", "also", "none",
        "true", "false", "self", "return", "import", "class", "todo", "note",
    })

    def __init__(self, min_frequency: int = 1, max_terms: int = 50):
        self.min_frequency = min_frequency
        self.max_terms = max_terms

    async def extract_terms(self, text: str) -> list[dict[str, Any]]:
        counts = Counter(
            match for match in self._TOKEN.findall(text)
            if match.lower() not in self._STOPWORDS
        )
        terms = []
        for term, frequency in counts.most_common(self.max_terms):
            if frequency < self.min_frequency:
                break
            terms.append({"term": term, "canonical": canonical_form(term), "frequency": frequency})
        return terms

    async def extract_entities(
        self,
        text: str,
        terms: list[dict[str, Any]],
    ) -> dict[str, list[dict[str, Any]]]:
        by_surface = {term["term"]: term["canonical"] for term in terms}
        entities = {
            canonical: {"name": surface, "canonical": canonical, "pool": self._pool_for(surface)}
            for surface, canonical in by_surface.items()
        }

        relations = set()
        for line in text.splitlines():
            present = sorted({by_surface[m] for m in self._TOKEN.findall(line) if m in by_surface})
            for i, source in enumerate(present):
                for target in present[i + 1:]:
                    relations.add((source, target))

        return {
            "entities": list(entities.values()),
            "relations": [
                {"source": source, "target": target, "type": "RELATES_TO"}
                for source, target in sorted(relations)
            ],
        }

    @staticmethod
    def _pool_for(surface: str) -> str:
        if "_" in surface:
            return "practical"   # function-like identifiers
        if re.match(r"[A-Z][a-z]+[A-Z]", surface):
            return "manifest"    # concrete named artifacts
        return "idea"


class _ExtractorWorker(ItemStageWorker):
    success_status = ItemStatus.EXTRACTED

    def __init__(self, extractor: Optional[Extractor] = None, concurrency: Optional[int] = None):
        super().__init__(concurrency)
        self.extractor = extractor

    async def process(self, ctx: StageContext, batch_id) -> StageResult:
        if self.extractor is None:
            logger.warning(f"No extractor configured, skipping {ctx.stage.name} items")
        return await super().process(ctx, batch_id)

    def _require_input(self, item: Item) -> str:
        if self.extractor is None:
            raise ItemSkipped("No extractor configured")
        if not item.content_sample:
            raise ItemSkipped("No text content")
        return item.content_sample


class LexiconWorker(_ExtractorWorker):
    """Term extraction and canonical forms."""

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        text = self._require_input(item)
        terms = await self.extractor.extract_terms(text)
        return {"terms": terms, "term_count": len(terms)}

    async def finalize(self, ctx: StageContext, result: StageResult) -> StageResult:
        items = await ctx.ledger.get_items(ctx.batch_id)
        lexicon = {
            term["canonical"]
            for item in items
            for term in (item.lexicon_metadata or {}).get("terms", [])
        }
        result.counters["lexicon_size"] = len(lexicon)
        return result


class PoolsWorker(_ExtractorWorker):
    """Entity and relation extraction into pools."""

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        text = self._require_input(item)
        terms = (item.lexicon_metadata or {}).get("terms", [])
        extracted = await self.extractor.extract_entities(text, terms)
        entities = [e for e in extracted.get("entities", []) if e.get("pool") in POOLS]
        relations = extracted.get("relations", [])
        return {
            "entities": entities,
            "relations": relations,
            "pools": dict(Counter(e["pool"] for e in entities)),
        }

    async def finalize(self, ctx: StageContext, result: StageResult) -> StageResult:
        items = await ctx.ledger.get_items(ctx.batch_id)
        pools: Counter = Counter()
        relation_count = 0
        for item in items:
            metadata = item.pool_metadata or {}
            pools.update(metadata.get("pools", {}))
            relation_count += len(metadata.get("relations", []))
        result.counters["entities_by_pool"] = dict(pools)
        result.counters["relations"] = relation_count
        return result
