"""
Stage 6: Embeddings.

Embeds each item's text through an injected Embedder. Without one, items
are skipped.
"""

import hashlib
import logging
import math
import re
from typing import Any, Optional, Protocol, runtime_checkable

from enliterator.core.exceptions import ItemSkipped
from enliterator.core.models import Item
from enliterator.core.pipeline.worker import ItemStageWorker, StageContext, StageResult

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    model_name: str

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class HashingEmbedder:
    """Feature-hashing bag of words. Deterministic and offline."""

    model_name = "hashing-bow"

    def __init__(self, dimensions: int = 64):
        self.dimensions = dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimensions
            vector[index] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm:
            vector = [round(v / norm, 6) for v in vector]
        return vector


class EmbeddingsWorker(ItemStageWorker):
    """Generate vector embeddings."""

    def __init__(self, embedder: Optional[Embedder] = None, concurrency: Optional[int] = None):
        super().__init__(concurrency)
        self.embedder = embedder

    async def process(self, ctx: StageContext, batch_id) -> StageResult:
        if self.embedder is None:
            logger.warning("No embedder configured, skipping embedding items")
        return await super().process(ctx, batch_id)

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        if self.embedder is None:
            raise ItemSkipped("No embedder configured")
        if not item.content_sample:
            raise ItemSkipped("No text content")

        [vector] = await self.embedder.embed([item.content_sample])
        return {
            "model": self.embedder.model_name,
            "dimensions": len(vector),
            "vector": vector,
        }
