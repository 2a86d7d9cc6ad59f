"""
Enliterator Pipeline - Test Fixtures
====================================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, Optional, Union
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from enliterator.core import models  # noqa: F401
from enliterator.core.config import Settings
from enliterator.core.database import Base
from enliterator.core.models import Item
from enliterator.core.pipeline import (
    ItemLedger,
    ItemStageWorker,
    PipelineOrchestrator,
    StageContext,
    StageRegistry,
    StageResult,
    StageTask,
    StageWorker,
    TaskQueue,
)
from enliterator.core.pipeline.registry import STAGE_NAMES


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh in-memory database per test.

    Creates all tables before the test, drops them after.
    """
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        ITEM_CONCURRENCY=1,
        STAGE_TIMEOUT_SECONDS=5.0,
        MAX_STAGE_RETRIES=3,
        DEFAULT_AUTO_ADVANCE=True,
        RIGHTS_CONFIDENCE_THRESHOLD=0.7,
        RIGHTS_DEFAULT_LICENSE=None,
        LITERACY_THRESHOLD=70.0,
        DELIVERABLES_DIR=str(tmp_path / "deliverables"),
    )


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> ItemLedger:
    return ItemLedger(session_factory)


# ==========================================================================
# Queue & Worker Doubles
# ==========================================================================

class RecordingQueue(TaskQueue):
    """Queue that only records tasks; tests deliver them explicitly."""

    def __init__(self):
        self.tasks: list[StageTask] = []

    async def enqueue(self, task: StageTask) -> UUID:
        self.tasks.append(task)
        return task.task_id

    def pop(self) -> StageTask:
        return self.tasks.pop(0)


Outcome = Union[StageResult, BaseException, Callable[[StageContext], Awaitable[StageResult]]]


class ScriptedWorker(StageWorker):
    """
    Batch-level worker that plays back a list of outcomes, one per call.

    Once the script runs out every call succeeds.
    """

    def __init__(self, outcomes: Optional[list[Outcome]] = None):
        self.outcomes = list(outcomes or [])
        self.calls = 0

    def script(self, *outcomes: Outcome) -> None:
        self.outcomes.extend(outcomes)

    async def process(self, ctx: StageContext, batch_id: UUID) -> StageResult:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else StageResult()
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(ctx)
        return outcome


class PassThroughItemWorker(ItemStageWorker):
    """Item worker that completes every item it is given."""

    def __init__(self, concurrency: Optional[int] = None):
        super().__init__(concurrency)
        self.seen: list[str] = []

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        self.seen.append(item.file_path)
        return {"seen": True}


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def workers() -> dict[str, StageWorker]:
    """Scripted batch-level worker bound to every stage."""
    return {name: ScriptedWorker() for name in STAGE_NAMES}


@pytest.fixture
def registry(workers: dict[str, StageWorker]) -> StageRegistry:
    return StageRegistry(workers)


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    registry: StageRegistry,
    ledger: ItemLedger,
    queue: RecordingQueue,
    test_settings: Settings,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        queue=queue,
        settings=test_settings,
    )


@pytest.fixture
def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: ItemLedger,
    queue: RecordingQueue,
    test_settings: Settings,
    workers: dict[str, StageWorker],
) -> Callable[..., PipelineOrchestrator]:
    """Orchestrator whose registry replaces some scripted workers."""

    def _build(**overrides: StageWorker) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            session_factory=session_factory,
            registry=StageRegistry({**workers, **overrides}),
            ledger=ledger,
            queue=queue,
            settings=test_settings,
        )

    return _build


# ==========================================================================
# Helper Functions
# ==========================================================================

async def deliver_next(orchestrator: PipelineOrchestrator, queue: RecordingQueue) -> StageTask:
    """Run the oldest queued task through the orchestrator."""
    task = queue.pop()
    await orchestrator.execute_task(task)
    return task


async def drain(orchestrator: PipelineOrchestrator, queue: RecordingQueue, limit: int = 50) -> int:
    """Deliver queued tasks until the queue is empty. Returns how many ran."""
    delivered = 0
    while queue.tasks:
        if delivered >= limit:
            raise AssertionError("Queue did not drain")
        await deliver_next(orchestrator, queue)
        delivered += 1
    return delivered


def file_paths(count: int, prefix: str = "doc") -> list[str]:
    return [f"/data/{prefix}_{index}.md" for index in range(count)]


@pytest.fixture
def make_files(tmp_path) -> Callable[..., list[str]]:
    """Write text files under tmp_path and return their paths."""

    def _make(contents: dict[str, str]) -> list[str]:
        paths = []
        for name, content in contents.items():
            path = tmp_path / "input" / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            paths.append(str(path))
        return paths

    return _make
