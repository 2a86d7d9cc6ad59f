"""
Run Watchdog - recovers runs whose stage worker was lost.

At startup every running or retrying run lost its in-flight worker with the
previous process, so its current stage is dispatched again. While the
application runs, the watchdog also re-dispatches runs whose dispatch has
been pending longer than the stage timeout without a worker picking it up.

Failed runs are never retried automatically.
"""

import asyncio
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select

from enliterator.core.database import get_db_session
from enliterator.core.models import ACTIVE_RUN_STATUSES, PipelineRun, ensure_utc, utcnow
from enliterator.core.pipeline.orchestrator import PipelineOrchestrator

logger = structlog.get_logger()


async def recover_orphaned_runs(orchestrator: PipelineOrchestrator) -> list[UUID]:
    """Re-dispatch the current stage of every active run. Returns recovered run ids."""
    async with get_db_session(orchestrator.session_factory) as session:
        result = await session.execute(
            select(PipelineRun.id).where(PipelineRun.status.in_(list(ACTIVE_RUN_STATUSES)))
        )
        run_ids = list(result.scalars().all())

    recovered = []
    for run_id in run_ids:
        if await orchestrator.recover_run(run_id):
            recovered.append(run_id)

    if recovered:
        logger.warning("Recovered orphaned pipeline runs", count=len(recovered))
    return recovered


class RunWatchdog:
    """
    Periodic check for stalled dispatches.

    Usage:
        watchdog = RunWatchdog(orchestrator)
        await watchdog.start()
        ...
        await watchdog.stop()
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        interval_seconds: float = 30.0,
        stall_after_seconds: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.stall_after_seconds = (
            stall_after_seconds
            if stall_after_seconds is not None
            else orchestrator.settings.STAGE_TIMEOUT_SECONDS * 2
        )
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Watchdog started", interval=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Watchdog stopped")

    async def check_stalled(self) -> list[UUID]:
        """Re-dispatch active runs whose dispatch was never picked up."""
        cutoff = utcnow() - timedelta(seconds=self.stall_after_seconds)
        async with get_db_session(self.orchestrator.session_factory) as session:
            result = await session.execute(
                select(PipelineRun).where(
                    PipelineRun.status.in_(list(ACTIVE_RUN_STATUSES)),
                    PipelineRun.active_dispatch_id.is_not(None),
                )
            )
            runs = list(result.scalars().all())

        stalled = [
            run.id
            for run in runs
            if not self.orchestrator.is_in_flight(run.id)
            and run.stage_started_at is not None
            and ensure_utc(run.stage_started_at) < cutoff
        ]

        recovered = []
        for run_id in stalled:
            logger.warning("Pipeline run stalled", run_id=str(run_id))
            if await self.orchestrator.recover_run(run_id):
                recovered.append(run_id)
        return recovered

    async def _loop(self) -> None:
        while True:
            try:
                await self.check_stalled()
            except Exception as e:
                logger.error("Watchdog error", error=str(e))
            await asyncio.sleep(self.interval_seconds)
