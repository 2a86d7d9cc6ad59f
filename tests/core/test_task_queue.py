"""In-process task queue tests."""

import asyncio
from uuid import uuid4

import pytest

from enliterator.core.pipeline import InProcessTaskQueue, StageTask


def make_task(stage_number: int = 1) -> StageTask:
    return StageTask(run_id=uuid4(), stage_number=stage_number, dispatch_id=uuid4())


class TestInProcessTaskQueue:
    """Consumers drain the queue through the handler."""

    async def test_enqueue_returns_task_id(self):
        queue = InProcessTaskQueue(workers=1)
        task = make_task()

        assert await queue.enqueue(task) == task.task_id
        assert queue.size == 1

    async def test_consumers_handle_tasks(self):
        handled: list[StageTask] = []

        async def handler(task: StageTask) -> None:
            handled.append(task)

        queue = InProcessTaskQueue(workers=2, handler=handler)
        await queue.start()
        tasks = [make_task(n) for n in range(1, 4)]
        for task in tasks:
            await queue.enqueue(task)

        await asyncio.wait_for(queue.join(), timeout=1)
        await queue.stop()

        assert sorted(t.stage_number for t in handled) == [1, 2, 3]
        assert not queue.running

    async def test_handler_error_does_not_stop_consumer(self):
        handled: list[int] = []

        async def handler(task: StageTask) -> None:
            if task.stage_number == 1:
                raise RuntimeError("boom")
            handled.append(task.stage_number)

        queue = InProcessTaskQueue(workers=1, handler=handler)
        await queue.start()
        await queue.enqueue(make_task(1))
        await queue.enqueue(make_task(2))

        await asyncio.wait_for(queue.join(), timeout=1)
        assert queue.running
        await queue.stop()

        assert handled == [2]

    async def test_start_requires_handler(self):
        queue = InProcessTaskQueue()

        with pytest.raises(RuntimeError):
            await queue.start()

    def test_requires_a_worker(self):
        with pytest.raises(ValueError):
            InProcessTaskQueue(workers=0)

    def test_tasks_are_distinct(self):
        run_id, dispatch_id = uuid4(), uuid4()
        first = StageTask(run_id=run_id, stage_number=1, dispatch_id=dispatch_id)
        second = StageTask(run_id=run_id, stage_number=1, dispatch_id=dispatch_id)

        assert first.task_id != second.task_id
