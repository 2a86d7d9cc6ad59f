"""
Async Task Queue.

Fire-and-forget dispatch of stage tasks. Delivery is at-least-once; the
orchestrator detects duplicates through the dispatch id carried by each task.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID, uuid4

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class StageTask:
    """One request to run a stage of a run."""
    run_id: UUID
    stage_number: int
    dispatch_id: UUID
    task_id: UUID = field(default_factory=uuid4)


TaskHandler = Callable[[StageTask], Awaitable[None]]


class TaskQueue(ABC):
    """Queue the orchestrator dispatches stage tasks into."""

    @abstractmethod
    async def enqueue(self, task: StageTask) -> UUID:
        """Schedule ``task`` and return its task id without waiting for it."""


class InProcessTaskQueue(TaskQueue):
    """
    asyncio.Queue drained by a fixed number of consumer tasks.

    Usage:
        queue = InProcessTaskQueue(workers=4)
        queue.set_handler(orchestrator.execute_task)
        await queue.start()
        ...
        await queue.stop()
    """

    def __init__(self, workers: int = 4, handler: Optional[TaskHandler] = None):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers
        self._handler = handler
        self._queue: asyncio.Queue[StageTask] = asyncio.Queue()
        self._consumers: list[asyncio.Task] = []

    def set_handler(self, handler: TaskHandler) -> None:
        self._handler = handler

    @property
    def running(self) -> bool:
        return bool(self._consumers)

    @property
    def size(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, task: StageTask) -> UUID:
        await self._queue.put(task)
        logger.debug(
            "Stage task enqueued",
            task_id=str(task.task_id),
            run_id=str(task.run_id),
            stage_number=task.stage_number,
        )
        return task.task_id

    async def start(self) -> None:
        if self._handler is None:
            raise RuntimeError("No task handler configured")
        if self._consumers:
            return
        self._consumers = [
            asyncio.create_task(self._consume(index), name=f"stage-queue-{index}")
            for index in range(self.workers)
        ]
        logger.info("Task queue started", workers=self.workers)

    async def join(self) -> None:
        """Wait until every enqueued task has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        for consumer in self._consumers:
            consumer.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        logger.info("Task queue stopped")

    async def _consume(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._handler(task)
            except Exception as e:
                logger.error(
                    "Stage task handler error",
                    consumer=index,
                    task_id=str(task.task_id),
                    run_id=str(task.run_id),
                    error=str(e),
                )
            finally:
                self._queue.task_done()
