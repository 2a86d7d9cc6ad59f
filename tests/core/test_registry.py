"""Stage registry tests."""

import pytest

from enliterator.core.pipeline.registry import (
    ITEM_STAGES,
    STAGE_COUNT,
    STAGE_NAMES,
    StageRegistry,
    get_stage,
    previous_item_stage,
    stage_by_name,
)
from tests.conftest import ScriptedWorker


class TestStageDefinitions:
    """The fixed, ordered stage list."""

    def test_nine_stages_in_order(self):
        assert STAGE_COUNT == 9
        assert STAGE_NAMES == (
            "intake",
            "rights",
            "lexicon",
            "pools",
            "graph",
            "embeddings",
            "literacy",
            "deliverables",
            "fine_tune_dataset",
        )
        assert [get_stage(n).number for n in range(1, 10)] == list(range(1, 10))

    def test_item_level_stages(self):
        """Stages 1-6 track items; 7-9 work on the whole batch."""
        assert [stage.number for stage in ITEM_STAGES] == [1, 2, 3, 4, 5, 6]
        assert stage_by_name("rights").status_column == "triage_status"
        assert stage_by_name("pools").metadata_column == "pool_metadata"
        assert not stage_by_name("literacy").is_item_level

    def test_previous_item_stage(self):
        assert previous_item_stage(stage_by_name("intake")) is None
        assert previous_item_stage(stage_by_name("lexicon")).name == "rights"
        assert previous_item_stage(stage_by_name("literacy")).name == "embeddings"

    @pytest.mark.parametrize("number", [0, 10, -1])
    def test_invalid_stage_number(self, number: int):
        with pytest.raises(ValueError):
            get_stage(number)

    def test_invalid_stage_name(self):
        with pytest.raises(ValueError):
            stage_by_name("publishing")


class TestStageRegistry:
    """Worker bindings."""

    def test_next_stage(self, registry: StageRegistry):
        assert registry.first_stage().name == "intake"
        assert registry.next_stage(0).name == "intake"
        assert registry.next_stage(4).name == "graph"
        assert registry.next_stage(9) is None
        assert registry.last_stage().name == "fine_tune_dataset"

    def test_worker_for(self, registry: StageRegistry, workers):
        stage = registry.by_name("graph")
        assert registry.worker_for(stage) is workers["graph"]

    def test_requires_every_stage(self):
        workers = {name: ScriptedWorker() for name in STAGE_NAMES if name != "graph"}
        with pytest.raises(ValueError, match="graph"):
            StageRegistry(workers)

    def test_rejects_unknown_stage(self):
        workers = {name: ScriptedWorker() for name in STAGE_NAMES}
        workers["publishing"] = ScriptedWorker()
        with pytest.raises(ValueError, match="publishing"):
            StageRegistry(workers)

    def test_bindings_are_read_only(self, registry: StageRegistry):
        with pytest.raises(TypeError):
            registry.workers["graph"] = ScriptedWorker()  # type: ignore[index]
