"""Lexicon, pools and graph stage tests."""

import pytest

from enliterator.core.exceptions import StageFatalError
from enliterator.core.graph_store import InMemoryGraphStore
from enliterator.core.models import ItemStatus
from enliterator.workers.extraction import HeuristicExtractor, LexiconWorker, PoolsWorker, canonical_form
from enliterator.workers.graph import GraphWorker, document_node_id
from enliterator.workers.intake import IntakeWorker
from enliterator.workers.rights import RightsWorker

TEXT = "UserAccount owns the BillingPlan.\nBillingPlan uses charge_card.\n"


@pytest.mark.parametrize(
    "term,expected",
    [
        ("UserAccount", "user_account"),
        ("user-account", "user_account"),
        ("  Billing Plan ", "billing_plan"),
        ("charge_card", "charge_card"),
    ],
)
def test_canonical_form(term: str, expected: str):
    assert canonical_form(term) == expected


class TestHeuristicExtractor:
    """Rule-based terms, entities and relations."""

    async def test_extract_terms(self):
        terms = await HeuristicExtractor().extract_terms(TEXT)

        by_canonical = {term["canonical"]: term for term in terms}
        assert set(by_canonical) == {"user_account", "billing_plan", "charge_card"}
        assert by_canonical["billing_plan"]["frequency"] == 2

    async def test_extract_entities(self):
        extractor = HeuristicExtractor()
        terms = await extractor.extract_terms(TEXT)

        extracted = await extractor.extract_entities(TEXT, terms)

        pools = {entity["canonical"]: entity["pool"] for entity in extracted["entities"]}
        assert pools == {
            "user_account": "manifest",
            "billing_plan": "manifest",
            "charge_card": "practical",
        }
        pairs = {(r["source"], r["target"]) for r in extracted["relations"]}
        assert pairs == {("billing_plan", "user_account"), ("billing_plan", "charge_card")}


async def triaged_run(orchestrator, context_for, make_files, files: dict[str, str]):
    run = await orchestrator.create_run("extraction", make_files(files))
    await IntakeWorker().process(context_for(run, "intake"), run.batch_id)
    await RightsWorker().process(
        context_for(run, "rights", RIGHTS_DEFAULT_LICENSE="cc_by"), run.batch_id
    )
    return run


class TestExtractionWorkers:
    """Stages 3 and 4 over ingested items."""

    async def test_lexicon_and_pools(self, orchestrator, ledger, context_for, make_files):
        run = await triaged_run(orchestrator, context_for, make_files, {"model.md": TEXT})
        extractor = HeuristicExtractor()

        lexicon = await LexiconWorker(extractor).process(context_for(run, "lexicon"), run.batch_id)
        pools = await PoolsWorker(extractor).process(context_for(run, "pools"), run.batch_id)

        assert lexicon.items_processed == 1
        assert lexicon.counters["lexicon_size"] == 3
        assert pools.counters["entities_by_pool"] == {"manifest": 2, "practical": 1}
        assert pools.counters["relations"] == 2

        (item,) = await ledger.get_items(run.batch_id)
        assert item.lexicon_status == ItemStatus.EXTRACTED.value
        assert item.pool_status == ItemStatus.EXTRACTED.value

    async def test_without_extractor_items_are_skipped(self, orchestrator, ledger, context_for, make_files):
        run = await triaged_run(orchestrator, context_for, make_files, {"model.md": TEXT})

        result = await LexiconWorker().process(context_for(run, "lexicon"), run.batch_id)

        assert result.counters["items_skipped"] == 1
        (item,) = await ledger.get_items(run.batch_id)
        assert item.lexicon_status == ItemStatus.SKIPPED.value
        # Skipped still lets the item reach the next stage
        pools = orchestrator.registry.by_name("pools")
        assert await ledger.items_pending_for(run.batch_id, pools) == [item.id]


class TestGraphWorker:
    """Stage 5 writes to the graph store."""

    async def test_builds_graph(self, orchestrator, ledger, context_for, make_files):
        run = await triaged_run(orchestrator, context_for, make_files, {"model.md": TEXT})
        extractor = HeuristicExtractor()
        await LexiconWorker(extractor).process(context_for(run, "lexicon"), run.batch_id)
        await PoolsWorker(extractor).process(context_for(run, "pools"), run.batch_id)
        store = InMemoryGraphStore()
        await store.open()

        result = await GraphWorker(store).process(context_for(run, "graph"), run.batch_id)

        # One document node plus three entities; three MENTIONS plus two relations
        assert result.counters["nodes_created"] == 4
        assert result.counters["edges_created"] == 5

        (item,) = await ledger.get_items(run.batch_id)
        nodes = await store.query("MATCH (n:Document) RETURN n", {"batch_id": str(run.batch_id)})
        assert [node["id"] for node in nodes] == [document_node_id(item.id)]
        manifest = await store.query("MATCH (n:Manifest) RETURN n")
        assert sorted(node["canonical"] for node in manifest) == ["billing_plan", "user_account"]

    async def test_missing_store_is_fatal(self, orchestrator, context_for):
        run = await orchestrator.create_run("graph", ["/data/a.md"])

        with pytest.raises(StageFatalError):
            await GraphWorker().process(context_for(run, "graph"), run.batch_id)

    async def test_unreachable_store_is_fatal(self, orchestrator, context_for):
        run = await orchestrator.create_run("graph", ["/data/a.md"])
        closed = InMemoryGraphStore()

        with pytest.raises(StageFatalError, match="unreachable"):
            await GraphWorker(closed).process(context_for(run, "graph"), run.batch_id)
