"""
Pipeline Orchestrator - drives runs through the nine stages.

Manages the flow of a batch through the registry's stages:
intake → rights → lexicon → pools → graph → embeddings → literacy →
deliverables → fine_tune_dataset

Every operation that changes a run:
- holds the run's asyncio.Lock (single writer per run in this process)
- reloads the run with SELECT ... FOR UPDATE where the backend supports it
- asks the state machine for the next status
- writes the status, stage bookkeeping and a stage log entry in one commit
- enqueues the next stage task only after that commit

Workers never run inside an orchestrator transaction. A dispatch is
identified by ``active_dispatch_id``; tasks and completions carrying any
other id are stale and ignored.
"""

import asyncio
import time
import weakref
from typing import Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enliterator.core.config import Settings, settings as default_settings
from enliterator.core.database import get_db_session
from enliterator.core.exceptions import (
    InvalidTransitionError,
    PipelineError,
    RetryLimitExceededError,
    RunNotFoundError,
    StaleCompletionError,
    StageTimeoutError,
)
from enliterator.core.models import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    Item,
    ItemBatch,
    PipelineRun,
    RunStatus,
    StageLogEntry,
    StageLogEvent,
    StageStatus,
    ensure_utc,
    utcnow,
)
from enliterator.core.pipeline.ledger import ItemLedger
from enliterator.core.pipeline.registry import STAGE_COUNT, StageDefinition, StageRegistry
from enliterator.core.pipeline.stage_log import StageLog
from enliterator.core.pipeline.state_machine import RunEvent, transition
from enliterator.core.pipeline.task_queue import StageTask, TaskQueue
from enliterator.core.pipeline.worker import StageContext, StageResult
from enliterator.core.schemas import DetailedStatus, StageDetail

logger = structlog.get_logger()

_FINISHED_STAGE_STATUSES = (StageStatus.COMPLETED, StageStatus.SKIPPED)


class PipelineOrchestrator:
    """
    Main pipeline execution engine.

    Usage:
        orchestrator = PipelineOrchestrator(session_factory, registry, ledger, queue)
        queue.set_handler(orchestrator.execute_task)
        run = await orchestrator.create_run("docs", ["README.md"])
        await orchestrator.start(run.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: StageRegistry,
        ledger: ItemLedger,
        queue: TaskQueue,
        stage_log: Optional[StageLog] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.queue = queue
        self.stage_log = stage_log or StageLog(session_factory)
        self.settings = settings or default_settings

        # Entries live only while a caller or an in-flight worker holds them
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()
        self._cancel_events: weakref.WeakValueDictionary[UUID, asyncio.Event] = weakref.WeakValueDictionary()
        self._in_flight: dict[UUID, UUID] = {}  # run_id -> executing dispatch_id

    # ======================================================================
    # Queries
    # ======================================================================

    async def get_run(self, run_id: UUID) -> PipelineRun:
        async with get_db_session(self.session_factory) as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            return run

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        query = select(PipelineRun).order_by(PipelineRun.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(PipelineRun.status == status)
        async with get_db_session(self.session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def history(self, run_id: UUID) -> list[StageLogEntry]:
        """Stage log of a run in append order."""
        await self.get_run(run_id)
        return await self.stage_log.history_for(run_id)

    def is_in_flight(self, run_id: UUID) -> bool:
        return run_id in self._in_flight

    # ======================================================================
    # Lifecycle Operations
    # ======================================================================

    async def create_run(
        self,
        name: str,
        file_paths: list[str],
        auto_advance: Optional[bool] = None,
        max_retries: Optional[int] = None,
        source_type: Optional[str] = None,
    ) -> PipelineRun:
        """
        Create a run and its batch in ``initialized`` status.

        Args:
            name: Human-readable run name, also used for the batch
            file_paths: Files to ingest, one item each, in order
            auto_advance: Dispatch the next stage automatically
            max_retries: Operator retries allowed before force is required
            source_type: Override the extension-based source type

        Returns:
            Created PipelineRun instance
        """
        async with get_db_session(self.session_factory) as session:
            batch = self.ledger.add_batch(session, name, file_paths, source_type)
            run = PipelineRun(
                id=uuid4(),
                name=name,
                batch=batch,
                status=RunStatus.INITIALIZED,
                current_stage_number=0,
                stage_statuses={stage.name: StageStatus.PENDING.value for stage in self.registry.stages},
                stage_metrics={},
                auto_advance=(
                    self.settings.DEFAULT_AUTO_ADVANCE if auto_advance is None else auto_advance
                ),
                retry_count=0,
                max_retries=(
                    self.settings.MAX_STAGE_RETRIES if max_retries is None else max_retries
                ),
            )
            session.add(run)
            self.stage_log.append(
                session, run, self.registry.first_stage(), StageLogEvent.CREATED,
                counters={"item_count": len(file_paths)},
            )

        logger.info("Pipeline run created", run_id=str(run.id), items=len(file_paths))
        return run

    async def start(self, run_id: UUID) -> PipelineRun:
        """
        Start an initialized run or resume a paused one.

        A fresh run over a batch that was already partly processed starts at
        the first stage that still has work instead of stage 1.
        """
        async with self._lock(run_id):
            snapshot = await self.get_run(run_id)
            resume_at = None
            if snapshot.status == RunStatus.INITIALIZED:
                resume_at = await self.ledger.first_incomplete_stage(snapshot.batch_id)

            task = None
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                previous = run.status
                run.status = transition(run.status, RunEvent.START)

                if previous == RunStatus.INITIALIZED:
                    run.started_at = utcnow()
                    stage = resume_at or self.registry.first_stage()
                    if stage.number > 1:
                        for earlier in self.registry.stages[: stage.number - 1]:
                            run.set_stage_status(earlier.name, StageStatus.COMPLETED)
                        self.stage_log.append(
                            session, run, stage, StageLogEvent.RESUMED,
                            message=f"Batch already processed through stage {stage.number - 1}",
                        )
                    task = self._prepare_dispatch(session, run, stage)
                else:
                    stage = self.registry.get(run.current_stage_number)
                    self.stage_log.append(session, run, stage, StageLogEvent.RESUMED)
                    if self._needs_dispatch(run, stage):
                        task = self._prepare_dispatch(session, run, stage)

        logger.info(
            "Pipeline run started",
            run_id=str(run_id),
            stage=stage.name,
            resumed_from=previous.value,
        )
        await self._enqueue(task)
        return run

    async def pause(self, run_id: UUID) -> PipelineRun:
        """
        Pause a running run.

        An in-flight worker is not interrupted; its completion is still
        recorded but the next stage is not dispatched until resume.
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                run.status = transition(run.status, RunEvent.PAUSE)
                stage = self._current_stage(run)
                self.stage_log.append(session, run, stage, StageLogEvent.PAUSED)

        logger.info("Pipeline run paused", run_id=str(run_id), stage=stage.name)
        return run

    async def cancel(self, run_id: UUID, reason: Optional[str] = None) -> PipelineRun:
        """
        Cancel a run immediately.

        Workers in flight see the cancel event between items; their
        completion callbacks are ignored.
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                run.status = transition(run.status, RunEvent.CANCEL)
                run.active_dispatch_id = None
                run.completed_at = utcnow()
                stage = self._current_stage(run)
                self.stage_log.append(
                    session, run, stage, StageLogEvent.CANCELLED, message=reason,
                )

            self._cancel_event(run_id).set()

        logger.info("Pipeline run cancelled", run_id=str(run_id), reason=reason)
        return run

    async def retry_failed_stage(self, run_id: UUID, force: bool = False) -> PipelineRun:
        """
        Re-dispatch the failed (or held) stage.

        Items already finished for the stage are not reprocessed.

        Raises:
            InvalidTransitionError: If there is no failed or held stage
            RetryLimitExceededError: If retries are used up and not forced
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                stage = self._recoverable_stage(run, "retry")

                if not force and run.retry_count >= run.max_retries:
                    raise RetryLimitExceededError(
                        f"Max retries ({run.max_retries}) reached. Use force to override.",
                        current_status=run.status.value,
                        event=RunEvent.RETRY.value,
                    )

                run.status = transition(run.status, RunEvent.RETRY)
                run.retry_count += 1
                run.failed_stage = None
                run.error_message = None
                self.stage_log.append(
                    session, run, stage, StageLogEvent.RETRIED,
                    counters={"attempt": run.retry_count, "forced": force},
                )
                task = self._prepare_dispatch(session, run, stage)

        logger.info(
            "Retrying stage",
            run_id=str(run_id),
            stage=stage.name,
            attempt=run.retry_count,
        )
        await self._enqueue(task)
        return run

    async def skip_failed_stage(self, run_id: UUID, reason: Optional[str] = None) -> PipelineRun:
        """
        Mark the failed (or held) stage skipped and move to the next stage.

        Raises:
            InvalidTransitionError: If there is no failed or held stage
        """
        async with self._lock(run_id):
            task = None
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                stage = self._recoverable_stage(run, "skip")

                run.status = transition(run.status, RunEvent.SKIP)
                run.failed_stage = None
                run.error_message = None
                run.set_stage_status(stage.name, StageStatus.SKIPPED)
                self.stage_log.append(session, run, stage, StageLogEvent.SKIPPED, message=reason)
                task = self._move_past(session, run, stage)

        logger.warning("Stage skipped", run_id=str(run_id), stage=stage.name, reason=reason)
        await self._enqueue(task)
        return run

    async def advance_stage(
        self,
        run_id: UUID,
        expected_stage: Optional[int] = None,
    ) -> PipelineRun:
        """
        Advance a run that finished its stage with auto_advance disabled.

        The current stage must be completed and nothing may be in flight;
        ``expected_stage`` guards against advancing from a stale read.
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                if run.status != RunStatus.RUNNING:
                    raise InvalidTransitionError(
                        f"Cannot advance a pipeline run in {run.status.value} status",
                        current_status=run.status.value,
                        event=RunEvent.ADVANCE.value,
                    )
                if expected_stage is not None and expected_stage != run.current_stage_number:
                    raise InvalidTransitionError(
                        f"Run is at stage {run.current_stage_number}, not {expected_stage}",
                        current_status=run.status.value,
                        event=RunEvent.ADVANCE.value,
                    )
                stage = self._current_stage(run)
                if run.stage_status(stage.name) != StageStatus.COMPLETED or run.active_dispatch_id:
                    raise InvalidTransitionError(
                        f"Stage {stage.name} is {run.stage_status(stage.name).value}, not completed",
                        current_status=run.status.value,
                        event=RunEvent.ADVANCE.value,
                    )

                task = self._move_past(session, run, stage)

        logger.info("Stage advanced manually", run_id=str(run_id), stage=stage.name)
        await self._enqueue(task)
        return run

    async def force_advance(self, run_id: UUID, justification: str) -> PipelineRun:
        """
        Operator override: accept a held stage as completed and move on.

        Raises:
            ValueError: If no justification is given
            InvalidTransitionError: If the current stage is not held
        """
        if not justification or not justification.strip():
            raise ValueError("force_advance requires a justification")

        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                stage = self._current_stage(run)
                if run.status != RunStatus.RUNNING or run.stage_status(stage.name) != StageStatus.HELD:
                    raise InvalidTransitionError(
                        f"Cannot force advance: stage {stage.name} is "
                        f"{run.stage_status(stage.name).value}, run is {run.status.value}",
                        current_status=run.status.value,
                        event=RunEvent.ADVANCE.value,
                    )

                run.set_stage_status(stage.name, StageStatus.COMPLETED)
                self.stage_log.append(
                    session, run, stage, StageLogEvent.FORCED, message=justification,
                )
                task = self._move_past(session, run, stage)

        logger.warning(
            "Stage force advanced",
            run_id=str(run_id),
            stage=stage.name,
            justification=justification,
        )
        await self._enqueue(task)
        return run

    async def fail_run(self, run_id: UUID, message: str) -> PipelineRun:
        """
        Mark a run failed at its current stage from outside a worker.

        Failing an already failed run only replaces the error message.
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                previous = run.status
                run.status = transition(run.status, RunEvent.FAIL)
                run.error_message = message
                if previous != RunStatus.FAILED:
                    stage = self._current_stage(run)
                    run.active_dispatch_id = None
                    run.failed_stage = stage.name
                    run.set_stage_status(stage.name, StageStatus.FAILED)
                    self.stage_log.append(session, run, stage, StageLogEvent.FAILED, message=message)

        logger.error("Pipeline run failed", run_id=str(run_id), error=message)
        return run

    async def delete_run(self, run_id: UUID) -> None:
        """
        Delete a run with its batch, items and stage log.

        Raises:
            InvalidTransitionError: If the run is active or has a worker in flight
        """
        async with self._lock(run_id):
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                if run.status in ACTIVE_RUN_STATUSES or run_id in self._in_flight:
                    raise InvalidTransitionError(
                        f"Cannot delete a pipeline run in {run.status.value} status",
                        current_status=run.status.value,
                    )
                batch_id = run.batch_id
                await session.execute(
                    delete(StageLogEntry).where(StageLogEntry.pipeline_run_id == run_id)
                )
                await session.execute(delete(PipelineRun).where(PipelineRun.id == run_id))
                await session.execute(delete(Item).where(Item.batch_id == batch_id))
                await session.execute(delete(ItemBatch).where(ItemBatch.id == batch_id))

        logger.info("Pipeline run deleted", run_id=str(run_id))

    # ======================================================================
    # Dispatch & Completion
    # ======================================================================

    async def execute_task(self, task: StageTask) -> None:
        """
        Queue consumer entry point: run the stage worker for ``task`` and
        apply its outcome.
        """
        log = logger.bind(
            run_id=str(task.run_id),
            stage_number=task.stage_number,
            dispatch_id=str(task.dispatch_id),
        )

        try:
            run = await self.get_run(task.run_id)
        except RunNotFoundError:
            log.warning("Ignoring stage task for deleted run")
            return

        if (
            run.status not in ACTIVE_RUN_STATUSES
            or run.active_dispatch_id != task.dispatch_id
            or run.current_stage_number != task.stage_number
            or self._in_flight.get(task.run_id) == task.dispatch_id
        ):
            log.info("Ignoring stale stage task", status=run.status.value)
            return

        stage = self.registry.get(task.stage_number)
        worker = self.registry.worker_for(stage)
        ctx = StageContext(
            run_id=run.id,
            batch_id=run.batch_id,
            stage=stage,
            dispatch_id=task.dispatch_id,
            ledger=self.ledger,
            cancel_event=self._cancel_event(run.id),
            settings=self.settings,
        )

        self._in_flight[run.id] = task.dispatch_id
        try:
            log.info("Stage worker started", stage=stage.name)
            started = time.monotonic()
            result: Optional[StageResult] = None
            error: Optional[BaseException] = None
            deadline = asyncio.timeout(self.settings.STAGE_TIMEOUT_SECONDS)
            try:
                async with deadline:
                    result = await worker.process(ctx, run.batch_id)
            except TimeoutError as e:
                if deadline.expired():
                    error = StageTimeoutError(
                        f"Stage {stage.name} exceeded {self.settings.STAGE_TIMEOUT_SECONDS}s"
                    )
                else:
                    log.exception("Stage worker raised", stage=stage.name)
                    error = e
            except Exception as e:
                log.exception("Stage worker raised", stage=stage.name)
                error = e
            duration = round(time.monotonic() - started, 3)

            await self.handle_stage_completion(
                run.id, task.stage_number, task.dispatch_id,
                result=result, error=error, duration=duration,
            )
        finally:
            if self._in_flight.get(run.id) == task.dispatch_id:
                del self._in_flight[run.id]

    async def handle_stage_completion(
        self,
        run_id: UUID,
        stage_number: int,
        dispatch_id: UUID,
        result: Optional[StageResult] = None,
        error: Optional[BaseException] = None,
        duration: Optional[float] = None,
    ) -> PipelineRun:
        """
        Apply a worker outcome to the run.

        - error or ``success=False`` fails the run
        - ``advance=False`` holds the run at the stage
        - otherwise the stage completes and, unless paused or auto_advance
          is off, the next stage is dispatched

        A completion whose ``dispatch_id`` is not the run's active dispatch,
        or that arrives after the run became terminal, is logged and ignored;
        the run is returned unchanged.
        """
        if result is None and error is None:
            raise ValueError("Either result or error is required")

        async with self._lock(run_id):
            task = None
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                try:
                    self._check_active(run, stage_number, dispatch_id)
                except StaleCompletionError as e:
                    logger.info("Ignoring stale stage completion", run_id=str(run_id), reason=str(e))
                else:
                    task = self._apply_outcome(
                        session, run, self.registry.get(stage_number), result, error, duration
                    )

        await self._enqueue(task)
        return run

    def _check_active(self, run: PipelineRun, stage_number: int, dispatch_id: UUID) -> None:
        if run.status in TERMINAL_RUN_STATUSES:
            raise StaleCompletionError(f"Run {run.id} is {run.status.value}")
        if run.active_dispatch_id != dispatch_id or run.current_stage_number != stage_number:
            raise StaleCompletionError(
                f"Dispatch {dispatch_id} for stage {stage_number} is not active"
            )

    def _apply_outcome(
        self,
        session: AsyncSession,
        run: PipelineRun,
        stage: StageDefinition,
        result: Optional[StageResult],
        error: Optional[BaseException],
        duration: Optional[float],
    ) -> Optional[StageTask]:
        """Record a worker outcome on the locked run. Returns the next task, if any."""
        run.active_dispatch_id = None
        run.stage_metrics = {
            **run.stage_metrics,
            stage.name: {
                **(result.as_metrics() if result else {}),
                "duration_seconds": duration,
            },
        }

        if error is not None or not result.success:
            message = str(error) if error is not None else (result.message or "Stage reported failure")
            run.status = transition(run.status, RunEvent.FAIL)
            run.failed_stage = stage.name
            run.error_message = message
            run.set_stage_status(stage.name, StageStatus.FAILED)
            self.stage_log.append(
                session, run, stage, StageLogEvent.FAILED,
                result=result, duration=duration, message=message,
            )
            logger.error("Stage failed", run_id=str(run.id), stage=stage.name, error=message)
            return None

        if not result.advance:
            run.status = transition(run.status, RunEvent.HOLD)
            run.set_stage_status(stage.name, StageStatus.HELD)
            self.stage_log.append(
                session, run, stage, StageLogEvent.HELD,
                result=result, duration=duration,
            )
            logger.warning(
                "Stage held at gate",
                run_id=str(run.id),
                stage=stage.name,
                message=result.message,
            )
            return None

        run.set_stage_status(stage.name, StageStatus.COMPLETED)
        self.stage_log.append(
            session, run, stage, StageLogEvent.COMPLETED,
            result=result, duration=duration,
        )
        logger.info(
            "Stage completed",
            run_id=str(run.id),
            stage=stage.name,
            items_processed=result.items_processed,
            items_failed=result.items_failed,
            duration=duration,
        )
        if self.registry.next_stage(stage.number) is not None and not run.auto_advance:
            run.status = transition(run.status, RunEvent.ADVANCE)
            self.stage_log.append(session, run, stage, StageLogEvent.AWAITING_ADVANCE)
            return None
        return self._move_past(session, run, stage)

    async def recover_run(self, run_id: UUID) -> bool:
        """
        Re-dispatch the current stage of an active run whose worker was lost
        (process restart). Returns True when a task was enqueued.
        """
        async with self._lock(run_id):
            task = None
            async with get_db_session(self.session_factory) as session:
                run = await self._load_for_update(session, run_id)
                if run.status not in ACTIVE_RUN_STATUSES or run.current_stage_number == 0:
                    return False
                stage = self._current_stage(run)
                if self._needs_dispatch(run, stage):
                    self.stage_log.append(
                        session, run, stage, StageLogEvent.RESUMED,
                        message="Recovered orphaned dispatch",
                    )
                    task = self._prepare_dispatch(session, run, stage)

        await self._enqueue(task)
        return task is not None

    # ======================================================================
    # Monitoring
    # ======================================================================

    async def monitor(self, run_id: UUID) -> DetailedStatus:
        """Read-only projection of a run; performs no writes."""
        run = await self.get_run(run_id)
        batch = await self.ledger.get_batch(run.batch_id)
        item_counts = await self.ledger.stage_counts(run.batch_id)
        item_total = await self.ledger.count_items(run.batch_id)

        stages = [
            StageDetail(
                number=stage.number,
                name=stage.name,
                description=stage.description,
                status=run.stage_status(stage.name),
                item_counts=item_counts.get(stage.name, {}),
                metrics=run.stage_metrics.get(stage.name, {}),
            )
            for stage in self.registry.stages
        ]
        finished = sum(1 for detail in stages if detail.status in _FINISHED_STAGE_STATUSES)

        now = utcnow()
        started_at = ensure_utc(run.started_at)
        completed_at = ensure_utc(run.completed_at)
        stage_started_at = ensure_utc(run.stage_started_at)
        duration = round(((completed_at or now) - started_at).total_seconds(), 2) if started_at else None
        stage_duration = (
            round((now - stage_started_at).total_seconds(), 2)
            if stage_started_at and run.status in ACTIVE_RUN_STATUSES
            else None
        )

        current = self._current_stage(run) if run.current_stage_number else None
        return DetailedStatus(
            run_id=run.id,
            name=run.name,
            status=run.status,
            current_stage_number=run.current_stage_number,
            current_stage=current.name if current else None,
            progress_percentage=round(finished / STAGE_COUNT * 100, 1),
            auto_advance=run.auto_advance,
            stages=stages,
            item_count=item_total,
            failed_stage=run.failed_stage,
            error_message=run.error_message,
            retry_count=run.retry_count,
            max_retries=run.max_retries,
            can_retry=self._can_retry(run),
            next_action=self._suggested_next_action(run),
            literacy_score=batch.literacy_score if batch else None,
            duration_seconds=duration,
            stage_duration_seconds=stage_duration,
            started_at=started_at,
            completed_at=completed_at,
        )

    def _can_retry(self, run: PipelineRun) -> bool:
        if run.retry_count >= run.max_retries:
            return False
        if run.status == RunStatus.FAILED:
            return True
        return (
            run.status == RunStatus.RUNNING
            and run.current_stage_number > 0
            and run.stage_status(self._current_stage(run).name) == StageStatus.HELD
        )

    def _suggested_next_action(self, run: PipelineRun) -> str:
        stage = self._current_stage(run) if run.current_stage_number else None
        status = run.status
        if status == RunStatus.INITIALIZED:
            return "start"
        if status == RunStatus.PAUSED:
            return "resume with start"
        if status == RunStatus.FAILED:
            if self._can_retry(run):
                return f"retry or skip stage {run.failed_stage}"
            return "Max retries reached. Skip the stage or retry with force."
        if status in ACTIVE_RUN_STATUSES and stage is not None:
            stage_status = run.stage_status(stage.name)
            if stage_status == StageStatus.HELD:
                return f"stage {stage.name} held: retry, skip or force advance"
            if stage_status == StageStatus.COMPLETED and run.active_dispatch_id is None:
                return f"advance past stage {stage.name}"
            return f"monitoring stage {stage.name}"
        if status == RunStatus.COMPLETED:
            return "none: pipeline complete"
        return "none: pipeline cancelled"

    # ======================================================================
    # Internals
    # ======================================================================

    def _lock(self, run_id: UUID) -> asyncio.Lock:
        return self._locks.setdefault(run_id, asyncio.Lock())

    def _cancel_event(self, run_id: UUID) -> asyncio.Event:
        return self._cancel_events.setdefault(run_id, asyncio.Event())

    async def _load_for_update(self, session: AsyncSession, run_id: UUID) -> PipelineRun:
        result = await session.execute(
            select(PipelineRun).where(PipelineRun.id == run_id).with_for_update()
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _current_stage(self, run: PipelineRun) -> StageDefinition:
        return self.registry.get(max(run.current_stage_number, 1))

    def _recoverable_stage(self, run: PipelineRun, action: str) -> StageDefinition:
        """The stage an operator retry/skip applies to: failed, or held while running."""
        event = RunEvent.RETRY if action == "retry" else RunEvent.SKIP
        if run.status == RunStatus.FAILED:
            return self._current_stage(run)
        if run.status == RunStatus.RUNNING and run.current_stage_number > 0:
            stage = self._current_stage(run)
            if run.stage_status(stage.name) == StageStatus.HELD:
                return stage
        raise InvalidTransitionError(
            f"Cannot {action} a pipeline run in {run.status.value} status without a failed or held stage",
            current_status=run.status.value,
            event=event.value,
        )

    def _needs_dispatch(self, run: PipelineRun, stage: StageDefinition) -> bool:
        """True when the current stage has work to do and no worker is executing it."""
        if run.id in self._in_flight:
            return False
        return run.stage_status(stage.name) in (StageStatus.PENDING, StageStatus.RUNNING)

    def _prepare_dispatch(
        self,
        session: AsyncSession,
        run: PipelineRun,
        stage: StageDefinition,
    ) -> StageTask:
        """Mark ``stage`` running under a new dispatch id. Enqueue after commit."""
        if stage.number < run.current_stage_number:
            raise PipelineError(
                f"Stage number may not decrease ({run.current_stage_number} -> {stage.number})"
            )
        dispatch_id = uuid4()
        run.current_stage_number = stage.number
        run.active_dispatch_id = dispatch_id
        run.stage_started_at = utcnow()
        run.set_stage_status(stage.name, StageStatus.RUNNING)
        self.stage_log.append(
            session, run, stage, StageLogEvent.DISPATCHED,
            counters={"dispatch_id": str(dispatch_id)},
        )
        return StageTask(run_id=run.id, stage_number=stage.number, dispatch_id=dispatch_id)

    def _move_past(
        self,
        session: AsyncSession,
        run: PipelineRun,
        stage: StageDefinition,
    ) -> Optional[StageTask]:
        """
        Leave a finished stage: complete the run after the last stage,
        otherwise step to the next stage and dispatch it unless paused.
        """
        next_stage = self.registry.next_stage(stage.number)
        if next_stage is None:
            run.status = transition(run.status, RunEvent.COMPLETE)
            self._check_completed(run)
            run.completed_at = utcnow()
            run.active_dispatch_id = None
            self.stage_log.append(session, run, stage, StageLogEvent.RUN_COMPLETED)
            logger.info("Pipeline run completed", run_id=str(run.id))
            return None

        run.status = transition(run.status, RunEvent.ADVANCE)
        self.stage_log.append(
            session, run, next_stage, StageLogEvent.ADVANCED,
            counters={"from_stage": stage.number},
        )
        if run.status == RunStatus.PAUSED:
            run.current_stage_number = next_stage.number
            return None
        return self._prepare_dispatch(session, run, next_stage)

    def _check_completed(self, run: PipelineRun) -> None:
        unfinished = [
            stage.name
            for stage in self.registry.stages
            if run.stage_status(stage.name) not in _FINISHED_STAGE_STATUSES
        ]
        if unfinished:
            raise PipelineError(f"Cannot complete run {run.id}: unfinished stages {unfinished}")

    async def _enqueue(self, task: Optional[StageTask]) -> None:
        if task is None:
            return
        await self.queue.enqueue(task)
        logger.info(
            "Stage dispatched",
            run_id=str(task.run_id),
            stage_number=task.stage_number,
            dispatch_id=str(task.dispatch_id),
        )
