"""Deliverables and fine-tune dataset tests, plus a full run over real files."""

import json
import os

from enliterator.core.graph_store import GraphNode, InMemoryGraphStore
from enliterator.core.models import RunStatus
from enliterator.core.pipeline import PipelineOrchestrator
from enliterator.workers import HashingEmbedder, HeuristicExtractor, build_default_registry
from enliterator.workers.deliverables import DeliverablesWorker
from enliterator.workers.fine_tune import (
    FineTuneDatasetWorker,
    canon_map_examples,
    gap_examples,
    split_examples,
    to_chat,
)
from tests.conftest import RecordingQueue, drain


class TestDatasetHelpers:
    """Example building and splitting."""

    def test_canon_map_examples(self):
        nodes = [
            {"id": "doc", "label": "Document"},
            {"id": "e1", "name": "UserAccount", "canonical": "user_account", "pool": "manifest"},
        ]

        (example,) = canon_map_examples(nodes)

        assert example["input"] == "UserAccount"
        assert json.loads(example["output"]) == {"canonical": "user_account", "pool": "manifest"}

    def test_to_chat(self):
        (example,) = gap_examples([{"type": "coverage", "severity": "high", "message": "Low pool coverage"}])

        chat = to_chat(example)

        assert [message["role"] for message in chat["messages"]] == ["system", "user", "assistant"]
        assert "coverage" in chat["messages"][1]["content"]

    def test_split_is_deterministic(self):
        examples = [{"task": "canon_map", "input": str(n), "output": str(n)} for n in range(10)]

        first = split_examples(examples, seed="batch")
        second = split_examples(examples, seed="batch")

        assert first == second
        assert [len(first[name]) for name in ("train", "validation", "test")] == [8, 1, 1]


class TestArtifactWorkers:
    """Stages 8 and 9 write files under the run directory."""

    async def test_deliverables_written(self, orchestrator, ledger, context_for):
        run = await orchestrator.create_run("docs", ["/data/a.md"])
        store = InMemoryGraphStore()
        await store.open()
        await store.create_nodes([GraphNode("n1", "Idea", {"batch_id": str(run.batch_id)})])

        result = await DeliverablesWorker(store).process(context_for(run, "deliverables"), run.batch_id)

        output_dir = result.counters["output_dir"]
        assert sorted(os.listdir(output_dir)) == [
            "graph.json",
            "literacy.json",
            "manifest.json",
            "statistics.json",
        ]
        with open(os.path.join(output_dir, "graph.json"), encoding="utf-8") as f:
            assert len(json.load(f)["nodes"]) == 1
        batch = await ledger.get_batch(run.batch_id)
        assert batch.deliverables_path == output_dir

    async def test_fine_tune_dataset_written(self, orchestrator, ledger, context_for):
        run = await orchestrator.create_run("docs", ["/data/a.md"])
        await ledger.update_batch(
            run.batch_id,
            literacy_gaps=[{"type": "density", "severity": "low", "message": "Sparse relationships"}],
        )

        result = await FineTuneDatasetWorker().process(
            context_for(run, "fine_tune_dataset"), run.batch_id
        )

        assert result.counters["examples"] == 1
        batch = await ledger.get_batch(run.batch_id)
        files = sorted(os.listdir(batch.fine_tune_dataset_path))
        assert files == ["metadata.json", "test.jsonl", "train.jsonl", "validation.jsonl"]


class TestFullRun:
    """All nine default workers through the orchestrator."""

    async def test_end_to_end(self, session_factory, ledger, test_settings, make_files):
        settings = test_settings.model_copy(
            update={"RIGHTS_DEFAULT_LICENSE": "cc_by", "LITERACY_THRESHOLD": 10.0}
        )
        store = InMemoryGraphStore()
        await store.open()
        queue = RecordingQueue()
        orchestrator = PipelineOrchestrator(
            session_factory=session_factory,
            registry=build_default_registry(
                graph_store=store,
                extractor=HeuristicExtractor(),
                embedder=HashingEmbedder(),
            ),
            ledger=ledger,
            queue=queue,
            settings=settings,
        )
        paths = make_files({
            "billing.md": "The BillingPlan belongs to a UserAccount.\nCall charge_card on renewal.\n",
            "accounts.py": "class UserAccount:\n    def close_account(self):\n        pass\n",
        })

        run = await orchestrator.create_run("billing docs", paths)
        await orchestrator.start(run.id)
        await drain(orchestrator, queue)

        status = await orchestrator.monitor(run.id)
        assert status.status == RunStatus.COMPLETED
        assert status.progress_percentage == 100.0
        assert status.literacy_score >= 10.0
        assert status.stages[0].item_counts == {"completed": 2}

        batch = await ledger.get_batch(run.batch_id)
        assert os.path.isfile(os.path.join(batch.deliverables_path, "manifest.json"))
        assert os.path.isfile(os.path.join(batch.fine_tune_dataset_path, "train.jsonl"))
        assert await store.query("MATCH (n:Document) RETURN n", {"batch_id": str(run.batch_id)})
