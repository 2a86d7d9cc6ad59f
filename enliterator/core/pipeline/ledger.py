"""
Item Ledger - per-item, per-stage status records.

The ledger is the source of truth for "is this item done for stage N".
Pending selection only returns items whose prior item-level stage reached a
completing status, which is what lets a stage worker be re-invoked on a
partially processed batch without touching finished items.

Every call runs in its own short transaction, so workers may update
different items concurrently.
"""

import logging
import os
from collections.abc import Iterable, Sequence
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enliterator.core.database import get_db_session
from enliterator.core.exceptions import ItemOrderError
from enliterator.core.models import (
    COMPLETING_ITEM_STATUSES,
    Item,
    ItemBatch,
    ItemStatus,
    utcnow,
)
from enliterator.core.pipeline.registry import (
    ITEM_STAGES,
    StageDefinition,
    get_stage,
    previous_item_stage,
)

logger = logging.getLogger(__name__)

_COMPLETING = [status.value for status in COMPLETING_ITEM_STATUSES]
_DONE = [ItemStatus.COMPLETED.value, ItemStatus.EXTRACTED.value]
_FINAL_OUTCOMES = frozenset(
    {
        ItemStatus.COMPLETED,
        ItemStatus.EXTRACTED,
        ItemStatus.FAILED,
        ItemStatus.SKIPPED,
        ItemStatus.QUARANTINED,
    }
)

_CODE_EXTENSIONS = {".rb", ".py", ".js", ".ts", ".java", ".go", ".rs"}
_DOC_EXTENSIONS = {".md", ".txt", ".rst"}
_CONFIG_EXTENSIONS = {".yml", ".yaml", ".json", ".xml", ".toml"}


def detect_source_type(file_paths: Sequence[str]) -> str:
    """Classify a batch by the extensions of its files."""
    extensions = {os.path.splitext(path)[1].lower() for path in file_paths}
    if not extensions:
        return "mixed"
    if extensions <= _CODE_EXTENSIONS:
        return "codebase"
    if extensions <= _DOC_EXTENSIONS:
        return "documentation"
    if extensions <= _CONFIG_EXTENSIONS:
        return "configuration"
    return "mixed"


class ItemLedger:
    """
    Item and batch record access for stage workers and the orchestrator.

    Only stage workers (through ``mark_running``/``mark_done``) change item
    statuses; only the orchestrator creates batches.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ======================================================================
    # Batches
    # ======================================================================

    def add_batch(
        self,
        session: AsyncSession,
        name: str,
        file_paths: Sequence[str],
        source_type: Optional[str] = None,
    ) -> ItemBatch:
        """
        Stage a new batch and its items on ``session``.

        The caller owns the transaction so the batch can be committed
        together with the run that owns it.
        """
        batch = ItemBatch(
            name=name,
            source_type=source_type or detect_source_type(file_paths),
            statistics={"file_count": len(file_paths)},
        )
        session.add(batch)
        for position, path in enumerate(file_paths):
            batch.items.append(
                Item(
                    position=position,
                    file_path=path,
                    intake_metadata={},
                    triage_metadata={},
                    lexicon_metadata={},
                    pool_metadata={},
                    graph_metadata={},
                    embedding_metadata={},
                )
            )
        return batch

    async def get_batch(self, batch_id: UUID) -> Optional[ItemBatch]:
        async with get_db_session(self._session_factory) as session:
            return await session.get(ItemBatch, batch_id)

    async def update_batch(self, batch_id: UUID, **fields: Any) -> None:
        """Write batch-level stage outputs (score, paths, statistics)."""
        async with get_db_session(self._session_factory) as session:
            await session.execute(
                update(ItemBatch).where(ItemBatch.id == batch_id).values(**fields)
            )

    async def count_items(self, batch_id: UUID) -> int:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(func.count()).select_from(Item).where(Item.batch_id == batch_id)
            )
            return result.scalar_one()

    # ======================================================================
    # Items
    # ======================================================================

    async def get_item(self, item_id: UUID) -> Optional[Item]:
        async with get_db_session(self._session_factory) as session:
            return await session.get(Item, item_id)

    async def get_items(
        self,
        batch_id: UUID,
        item_ids: Optional[Iterable[UUID]] = None,
    ) -> list[Item]:
        """Items of a batch in insertion order, optionally filtered by id."""
        query = select(Item).where(Item.batch_id == batch_id).order_by(Item.position)
        if item_ids is not None:
            query = query.where(Item.id.in_(list(item_ids)))
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_item(self, item_id: UUID, **fields: Any) -> None:
        """Write stage-independent item attributes (hash, media type, sample)."""
        forbidden = {f"{stage.item_field}_status" for stage in ITEM_STAGES}
        if forbidden & set(fields):
            raise ValueError("Item statuses change only through mark_running/mark_done")
        async with get_db_session(self._session_factory) as session:
            await session.execute(update(Item).where(Item.id == item_id).values(**fields))

    async def mark_running(self, item_id: UUID, stage: StageDefinition) -> None:
        """
        Move an item to running for ``stage``.

        Raises:
            ItemOrderError: If the prior item-level stage has not completed
                or the item is not pending for this stage
        """
        self._require_item_stage(stage)
        prior = previous_item_stage(stage)

        async with get_db_session(self._session_factory) as session:
            item = await session.get(Item, item_id, with_for_update=True)
            if item is None:
                raise ValueError(f"Item {item_id} not found")

            if prior is not None:
                prior_status = getattr(item, prior.status_column)
                if prior_status not in _COMPLETING:
                    raise ItemOrderError(item_id, stage.name, prior_status)

            current = getattr(item, stage.status_column)
            if current not in (ItemStatus.PENDING.value, ItemStatus.RUNNING.value):
                raise ItemOrderError(item_id, stage.name, f"already {current}")

            setattr(item, stage.status_column, ItemStatus.RUNNING.value)

    async def mark_done(
        self,
        item_id: UUID,
        stage: StageDefinition,
        outcome: ItemStatus,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record the final outcome of ``stage`` for one item."""
        self._require_item_stage(stage)
        if outcome not in _FINAL_OUTCOMES:
            raise ValueError(f"{outcome.value} is not a final item outcome")

        async with get_db_session(self._session_factory) as session:
            item = await session.get(Item, item_id, with_for_update=True)
            if item is None:
                raise ValueError(f"Item {item_id} not found")

            existing = getattr(item, stage.metadata_column) or {}
            setattr(item, stage.status_column, outcome.value)
            setattr(
                item,
                stage.metadata_column,
                {**existing, **(metadata or {}), "finished_at": utcnow().isoformat()},
            )

    async def release_interrupted(self, batch_id: UUID, stage: StageDefinition) -> int:
        """
        Return items left ``running`` by a crashed or cancelled worker to
        ``pending`` so the next invocation picks them up.
        """
        self._require_item_stage(stage)
        column = getattr(Item, stage.status_column)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                update(Item)
                .where(Item.batch_id == batch_id)
                .where(column == ItemStatus.RUNNING.value)
                .values({stage.status_column: ItemStatus.PENDING.value})
            )
            released = result.rowcount or 0
        if released:
            logger.warning(f"Released {released} interrupted items for stage {stage.name}")
        return released

    # ======================================================================
    # Selection
    # ======================================================================

    async def items_pending_for(self, batch_id: UUID, stage: StageDefinition) -> list[UUID]:
        """
        Items still to process for ``stage``: pending here and completed
        (or skipped) in the prior item-level stage.
        """
        self._require_item_stage(stage)
        query = (
            select(Item.id)
            .where(Item.batch_id == batch_id)
            .where(getattr(Item, stage.status_column) == ItemStatus.PENDING.value)
            .order_by(Item.position)
        )
        prior = previous_item_stage(stage)
        if prior is not None:
            query = query.where(getattr(Item, prior.status_column).in_(_COMPLETING))

        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def items_completed_for(self, batch_id: UUID, stage: StageDefinition) -> list[UUID]:
        """Items that finished ``stage`` successfully."""
        self._require_item_stage(stage)
        query = (
            select(Item.id)
            .where(Item.batch_id == batch_id)
            .where(getattr(Item, stage.status_column).in_(_DONE))
            .order_by(Item.position)
        )
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stage_counts(self, batch_id: UUID) -> dict[str, dict[str, int]]:
        """Per item-level stage, a count of items by status."""
        counts: dict[str, dict[str, int]] = {}
        async with get_db_session(self._session_factory) as session:
            for stage in ITEM_STAGES:
                column = getattr(Item, stage.status_column)
                result = await session.execute(
                    select(column, func.count())
                    .where(Item.batch_id == batch_id)
                    .group_by(column)
                )
                counts[stage.name] = {status: count for status, count in result.all()}
        return counts

    async def first_incomplete_stage(self, batch_id: UUID) -> Optional[StageDefinition]:
        """
        Where a fresh run over an already touched batch should resume.

        Returns None when no item has left ``pending`` in any stage. Otherwise
        the first item-level stage with eligible pending items, or the first
        batch-level stage when every item-level stage is exhausted.
        """
        counts = await self.stage_counts(batch_id)
        touched = any(
            status != ItemStatus.PENDING.value
            for per_stage in counts.values()
            for status in per_stage
        )
        if not touched:
            return None

        for stage in ITEM_STAGES:
            if await self.items_pending_for(batch_id, stage):
                return stage

        return get_stage(ITEM_STAGES[-1].number + 1)

    @staticmethod
    def _require_item_stage(stage: StageDefinition) -> None:
        if not stage.is_item_level:
            raise ValueError(f"Stage {stage.name} does not track items")
