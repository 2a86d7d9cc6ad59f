"""Fixtures for running stage workers directly, without the orchestrator loop."""

from collections.abc import Callable
from typing import Any
from uuid import uuid4

import pytest

from enliterator.core.config import Settings
from enliterator.core.models import PipelineRun
from enliterator.core.pipeline import ItemLedger, StageContext
from enliterator.core.pipeline.registry import stage_by_name


@pytest.fixture
def context_for(ledger: ItemLedger, test_settings: Settings) -> Callable[..., StageContext]:
    """Build a StageContext for one stage of ``run`` with optional setting overrides."""

    def _context(run: PipelineRun, stage_name: str, **overrides: Any) -> StageContext:
        return StageContext(
            run_id=run.id,
            batch_id=run.batch_id,
            stage=stage_by_name(stage_name),
            dispatch_id=uuid4(),
            ledger=ledger,
            settings=test_settings.model_copy(update=overrides) if overrides else test_settings,
        )

    return _context
