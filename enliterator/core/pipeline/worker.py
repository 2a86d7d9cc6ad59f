"""
Stage Worker Interface.

Every stage binds one StageWorker. The orchestrator treats them uniformly:

    result = await worker.process(ctx, batch_id)

- Raising (StageFatalError or anything else) means the stage failed as a
  whole and the run moves to ``failed``.
- Item-level failures are recorded in the ledger and counted in the result.
- ``StageResult(success=True, advance=False)`` holds the run at the stage
  (quality gate not met) without failing it.

Workers must be safe to invoke repeatedly on the same batch.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from enliterator.core.config import Settings, settings as default_settings
from enliterator.core.exceptions import (
    ItemError,
    ItemOrderError,
    ItemQuarantined,
    ItemSkipped,
    StageFatalError,
)
from enliterator.core.models import Item, ItemStatus
from enliterator.core.pipeline.ledger import ItemLedger
from enliterator.core.pipeline.registry import StageDefinition

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    """Outcome of one stage invocation."""
    items_processed: int = 0
    items_failed: int = 0
    counters: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    advance: bool = True
    message: Optional[str] = None

    def as_metrics(self) -> dict[str, Any]:
        return {
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            **self.counters,
        }


@dataclass
class StageContext:
    """What a worker gets to know about the dispatch it is serving."""
    run_id: UUID
    batch_id: UUID
    stage: StageDefinition
    dispatch_id: UUID
    ledger: ItemLedger
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    settings: Settings = field(default_factory=lambda: default_settings)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class StageWorker(ABC):
    """Base class for all stage workers."""

    @abstractmethod
    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        """Run the stage over ``batch_id`` and report the outcome."""


class ItemStageWorker(StageWorker):
    """
    Worker for stages that process items one by one.

    Subclasses implement ``process_item``; this class handles pending
    selection, bounded concurrency, cancellation between items and the
    ledger bookkeeping. Items already finished for the stage are never
    selected again.

    ``process_item`` may raise:
    - ItemQuarantined: item is held back from downstream stages
    - ItemSkipped: item intentionally not processed
    - ItemError (or any other exception): item failed
    - StageFatalError: abort the whole stage
    """

    success_status: ItemStatus = ItemStatus.COMPLETED

    def __init__(self, concurrency: Optional[int] = None):
        self.concurrency = concurrency

    @abstractmethod
    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        """Process one item; return metadata to record on success."""

    async def finalize(self, ctx: StageContext, result: StageResult) -> StageResult:
        """Hook for batch-level work after all items ran."""
        return result

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        stage = ctx.stage
        ledger = ctx.ledger

        await ledger.release_interrupted(batch_id, stage)
        pending = await ledger.items_pending_for(batch_id, stage)
        logger.info(f"Stage {stage.name}: {len(pending)} items pending")

        outcomes: dict[str, int] = {status.value: 0 for status in ItemStatus}
        semaphore = asyncio.Semaphore(self.concurrency or ctx.settings.ITEM_CONCURRENCY)

        async def run_one(item_id: UUID) -> None:
            async with semaphore:
                if ctx.cancelled:
                    return
                outcome = await self._process_one(ctx, item_id)
                outcomes[outcome.value] += 1

        tasks = [asyncio.create_task(run_one(item_id)) for item_id in pending]
        if tasks:
            try:
                done, not_done = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            except asyncio.CancelledError:
                # Stage timeout or shutdown: no item may outlive the stage
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

        finished = sum(outcomes.values())
        result = StageResult(
            items_processed=outcomes[ItemStatus.COMPLETED.value] + outcomes[ItemStatus.EXTRACTED.value],
            items_failed=outcomes[ItemStatus.FAILED.value],
            counters={
                "items_pending": len(pending),
                "items_quarantined": outcomes[ItemStatus.QUARANTINED.value],
                "items_skipped": outcomes[ItemStatus.SKIPPED.value],
            },
        )
        if ctx.cancelled:
            result.counters["items_unprocessed"] = len(pending) - finished
            result.message = "Cancelled before all items were processed"
            return result

        return await self.finalize(ctx, result)

    async def _process_one(self, ctx: StageContext, item_id: UUID) -> ItemStatus:
        stage = ctx.stage
        ledger = ctx.ledger

        try:
            await ledger.mark_running(item_id, stage)
        except ItemOrderError as e:
            logger.warning(f"Item {item_id} no longer runnable in {stage.name}: {e}")
            return ItemStatus.SKIPPED
        item = await ledger.get_item(item_id)

        try:
            metadata = await self.process_item(ctx, item)
        except StageFatalError:
            raise
        except ItemQuarantined as e:
            await ledger.mark_done(
                item_id, stage, ItemStatus.QUARANTINED,
                {"quarantine_reason": str(e), **e.metadata},
            )
            return ItemStatus.QUARANTINED
        except ItemSkipped as e:
            await ledger.mark_done(
                item_id, stage, ItemStatus.SKIPPED,
                {"skip_reason": str(e), **e.metadata},
            )
            return ItemStatus.SKIPPED
        except ItemError as e:
            logger.warning(f"Item {item_id} failed in {stage.name}: {e}")
            await ledger.mark_done(
                item_id, stage, ItemStatus.FAILED,
                {"error": str(e), **e.metadata},
            )
            return ItemStatus.FAILED
        except Exception as e:
            logger.exception(f"Unexpected error processing item {item_id} in {stage.name}")
            await ledger.mark_done(
                item_id, stage, ItemStatus.FAILED,
                {"error": f"{type(e).__name__}: {e}"},
            )
            return ItemStatus.FAILED

        await ledger.mark_done(item_id, stage, self.success_status, metadata or {})
        return self.success_status
