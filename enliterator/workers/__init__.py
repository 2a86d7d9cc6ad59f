"""
Enliterator Pipeline - Stage Workers
====================================

Concrete workers for the nine stages and the registry that binds them.
"""

from typing import Optional

from enliterator.core.graph_store import GraphStore
from enliterator.core.pipeline.registry import StageRegistry
from enliterator.workers.deliverables import DeliverablesWorker
from enliterator.workers.embeddings import Embedder, EmbeddingsWorker, HashingEmbedder
from enliterator.workers.extraction import Extractor, HeuristicExtractor, LexiconWorker, PoolsWorker
from enliterator.workers.fine_tune import FineTuneDatasetWorker
from enliterator.workers.graph import GraphWorker
from enliterator.workers.intake import IntakeWorker
from enliterator.workers.literacy import LiteracyWorker
from enliterator.workers.rights import RightsWorker


def build_default_registry(
    graph_store: Optional[GraphStore] = None,
    extractor: Optional[Extractor] = None,
    embedder: Optional[Embedder] = None,
) -> StageRegistry:
    """Bind every stage to its worker. Missing collaborators degrade the stages that use them."""
    return StageRegistry({
        "intake": IntakeWorker(),
        "rights": RightsWorker(),
        "lexicon": LexiconWorker(extractor),
        "pools": PoolsWorker(extractor),
        "graph": GraphWorker(graph_store),
        "embeddings": EmbeddingsWorker(embedder),
        "literacy": LiteracyWorker(),
        "deliverables": DeliverablesWorker(graph_store),
        "fine_tune_dataset": FineTuneDatasetWorker(graph_store),
    })


__all__ = [
    "DeliverablesWorker",
    "EmbeddingsWorker",
    "FineTuneDatasetWorker",
    "GraphWorker",
    "HashingEmbedder",
    "HeuristicExtractor",
    "IntakeWorker",
    "LexiconWorker",
    "LiteracyWorker",
    "PoolsWorker",
    "RightsWorker",
    "build_default_registry",
]
