"""
Stage Registry - the fixed, ordered list of pipeline stages.

Stage definitions are static. Worker bindings are supplied once when the
registry is built at process start and cannot be changed afterwards.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping, Optional

if TYPE_CHECKING:
    from enliterator.core.pipeline.worker import StageWorker


@dataclass(frozen=True)
class StageDefinition:
    """One pipeline stage."""
    number: int
    name: str
    description: str
    item_field: Optional[str] = None  # Item column prefix for item-level stages

    @property
    def is_item_level(self) -> bool:
        return self.item_field is not None

    @property
    def status_column(self) -> str:
        return f"{self.item_field}_status"

    @property
    def metadata_column(self) -> str:
        return f"{self.item_field}_metadata"


STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(1, "intake", "Bundle discovery and file processing", "intake"),
    StageDefinition(2, "rights", "Rights assignment and quarantine", "triage"),
    StageDefinition(3, "lexicon", "Term extraction and canonical forms", "lexicon"),
    StageDefinition(4, "pools", "Entity and relation extraction into pools", "pool"),
    StageDefinition(5, "graph", "Knowledge graph construction", "graph"),
    StageDefinition(6, "embeddings", "Generate vector embeddings", "embedding"),
    StageDefinition(7, "literacy", "Calculate literacy score and gaps"),
    StageDefinition(8, "deliverables", "Generate export artifacts"),
    StageDefinition(9, "fine_tune_dataset", "Build fine-tuning dataset"),
)

STAGE_COUNT = len(STAGES)
STAGE_NAMES: tuple[str, ...] = tuple(stage.name for stage in STAGES)
ITEM_STAGES: tuple[StageDefinition, ...] = tuple(s for s in STAGES if s.is_item_level)

_BY_NUMBER = {stage.number: stage for stage in STAGES}
_BY_NAME = {stage.name: stage for stage in STAGES}


def get_stage(number: int) -> StageDefinition:
    try:
        return _BY_NUMBER[number]
    except KeyError:
        raise ValueError(f"Invalid stage number: {number}. Valid: 1-{STAGE_COUNT}") from None


def stage_by_name(name: str) -> StageDefinition:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise ValueError(f"Invalid stage: {name}. Valid: {list(STAGE_NAMES)}") from None


def previous_item_stage(stage: StageDefinition) -> Optional[StageDefinition]:
    """The item-level stage an item must have completed before ``stage``."""
    previous = None
    for candidate in ITEM_STAGES:
        if candidate.number >= stage.number:
            break
        previous = candidate
    return previous


class StageRegistry:
    """
    Ordered stage list with worker bindings.

    Usage:
        registry = StageRegistry({"intake": IntakeWorker(), ...})
        stage = registry.first_stage()
        worker = registry.worker_for(stage)
    """

    def __init__(self, workers: Mapping[str, "StageWorker"]):
        unknown = set(workers) - set(STAGE_NAMES)
        if unknown:
            raise ValueError(f"Workers bound to unknown stages: {sorted(unknown)}")
        missing = set(STAGE_NAMES) - set(workers)
        if missing:
            raise ValueError(f"No worker bound for stages: {sorted(missing)}")
        self._workers = MappingProxyType(dict(workers))

    @property
    def stages(self) -> tuple[StageDefinition, ...]:
        return STAGES

    @property
    def workers(self) -> Mapping[str, "StageWorker"]:
        return self._workers

    def first_stage(self) -> StageDefinition:
        return STAGES[0]

    def last_stage(self) -> StageDefinition:
        return STAGES[-1]

    def next_stage(self, number: int) -> Optional[StageDefinition]:
        """Stage after ``number``, or None past the final stage."""
        if number < 0:
            raise ValueError(f"Invalid stage number: {number}")
        return _BY_NUMBER.get(number + 1)

    def get(self, number: int) -> StageDefinition:
        return get_stage(number)

    def by_name(self, name: str) -> StageDefinition:
        return stage_by_name(name)

    def worker_for(self, stage: StageDefinition) -> "StageWorker":
        return self._workers[stage.name]
