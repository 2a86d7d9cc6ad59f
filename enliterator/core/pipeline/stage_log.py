"""
Metrics & Stage Log.

Append-only history of stage events per run. Entries are written inside the
orchestrator's transaction so a status change and its log entry commit
together; reads open their own session.
"""

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enliterator.core.database import get_db_session
from enliterator.core.models import PipelineRun, StageLogEntry, StageLogEvent, utcnow
from enliterator.core.pipeline.registry import StageDefinition
from enliterator.core.pipeline.worker import StageResult


class StageLog:
    """Writer and reader for StageLogEntry rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def append(
        self,
        session: AsyncSession,
        run: PipelineRun,
        stage: StageDefinition,
        event: StageLogEvent,
        result: Optional[StageResult] = None,
        duration: Optional[float] = None,
        message: Optional[str] = None,
        counters: Optional[dict[str, Any]] = None,
    ) -> StageLogEntry:
        """
        Stage one entry on ``session``; the caller commits.

        ``run.status`` is captured as it is at call time, so append after
        applying the transition.
        """
        entry = StageLogEntry(
            pipeline_run_id=run.id,
            stage_number=stage.number,
            stage_name=stage.name,
            event=event.value,
            run_status=run.status.value,
            items_processed=result.items_processed if result else 0,
            items_failed=result.items_failed if result else 0,
            counters={**(result.counters if result else {}), **(counters or {})},
            duration_seconds=duration,
            message=message if message is not None else (result.message if result else None),
            recorded_at=utcnow(),
        )
        session.add(entry)
        return entry

    async def history_for(self, run_id: UUID) -> list[StageLogEntry]:
        """All entries for a run in append order."""
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(StageLogEntry)
                .where(StageLogEntry.pipeline_run_id == run_id)
                .order_by(StageLogEntry.id)
            )
            return list(result.scalars().all())
