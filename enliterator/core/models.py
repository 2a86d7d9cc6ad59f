"""
Enliterator Pipeline - Database Models
======================================

SQLAlchemy models for pipeline runs, item batches, items and the stage log.

Only the orchestration core writes ``PipelineRun.status`` and
``PipelineRun.current_stage_number``; item status columns are written
through the Item Ledger.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from enliterator.core.database import Base


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ==========================================================================
# Enums
# ==========================================================================

class RunStatus(str, enum.Enum):
    """Overall pipeline run status."""
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    RETRYING = "retrying"    # Failed stage re-dispatched by an operator
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class StageStatus(str, enum.Enum):
    """Status of one stage within a run."""
    PENDING = "pending"
    RUNNING = "running"
    HELD = "held"            # Worker succeeded but declined to advance
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ItemStatus(str, enum.Enum):
    """Per-item, per-stage processing status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    EXTRACTED = "extracted"
    FAILED = "failed"
    SKIPPED = "skipped"
    QUARANTINED = "quarantined"


class StageLogEvent(str, enum.Enum):
    """What happened to a stage, as recorded in the stage log."""
    CREATED = "created"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    HELD = "held"
    AWAITING_ADVANCE = "awaiting_advance"
    ADVANCED = "advanced"
    FORCED = "forced"
    FAILED = "failed"
    RETRIED = "retried"
    SKIPPED = "skipped"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    RUN_COMPLETED = "run_completed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.CANCELLED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.RETRYING})
COMPLETING_ITEM_STATUSES = frozenset(
    {ItemStatus.COMPLETED, ItemStatus.EXTRACTED, ItemStatus.SKIPPED}
)


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Batches & Items
# ==========================================================================

class ItemBatch(Base, TimestampMixin):
    """
    The fixed set of work items owned by one pipeline run.

    Aggregate progress is derived from the items; the batch only carries
    batch-level stage outputs (literacy score, deliverable paths).
    """

    __tablename__ = "item_batches"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    source_type: Mapped[str] = mapped_column(
        String(50),
        default="mixed",
        nullable=False,
    )  # codebase, documentation, configuration, mixed

    # Batch-level stage outputs
    statistics: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    literacy_score: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )
    literacy_gaps: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
    )
    deliverables_path: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )
    fine_tune_dataset_path: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )

    # Relationships
    items: Mapped[list["Item"]] = relationship(
        back_populates="batch",
        passive_deletes=True,
        order_by="Item.position",
    )

    def __repr__(self) -> str:
        return f"<ItemBatch {self.name}>"


class Item(Base, TimestampMixin):
    """
    One unit of ingested work (typically a file).

    Each item-level stage has a ``<field>_status`` and ``<field>_metadata``
    column. Metadata is diagnostic only; orchestration reads statuses.
    """

    __tablename__ = "items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("item_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # Insertion order within the batch

    file_path: Mapped[str] = mapped_column(
        String(1000),
        nullable=False,
    )
    media_type: Mapped[str] = mapped_column(
        String(20),
        default="unknown",
        nullable=False,
    )
    source_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    size_bytes: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    content_sample: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Stage 1: intake
    intake_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    intake_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Stage 2: rights triage
    triage_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    triage_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Stage 3: lexicon
    lexicon_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    lexicon_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Stage 4: pools
    pool_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    pool_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Stage 5: graph
    graph_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    graph_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Stage 6: embeddings
    embedding_status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING.value, nullable=False, index=True,
    )
    embedding_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Relationships
    batch: Mapped["ItemBatch"] = relationship(
        back_populates="items",
    )

    def __repr__(self) -> str:
        return f"<Item {self.file_path} [{self.intake_status}]>"


# ==========================================================================
# Pipeline Runs
# ==========================================================================

class PipelineRun(Base, TimestampMixin):
    """
    One execution of the 9-stage pipeline over a single item batch.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("item_batches.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # Pipeline state
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="runstatus", values_callable=_enum_values),
        default=RunStatus.INITIALIZED,
        nullable=False,
        index=True,
    )
    current_stage_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # 0 = not started, 9 = final stage
    stage_statuses: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )  # {stage_name: StageStatus value}
    stage_metrics: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )  # {stage_name: {items_processed, items_failed, duration_seconds, ...}}
    auto_advance: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Failure & retry
    failed_stage: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )

    # Dispatch tracking
    active_dispatch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    stage_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    batch: Mapped["ItemBatch"] = relationship()
    log_entries: Mapped[list["StageLogEntry"]] = relationship(
        back_populates="pipeline_run",
        passive_deletes=True,
        order_by="StageLogEntry.id",
    )

    def stage_status(self, stage_name: str) -> StageStatus:
        return StageStatus(self.stage_statuses.get(stage_name, StageStatus.PENDING.value))

    def set_stage_status(self, stage_name: str, status: StageStatus) -> None:
        # Reassign so the JSON column is flagged dirty
        self.stage_statuses = {**self.stage_statuses, stage_name: status.value}

    def __repr__(self) -> str:
        return f"<PipelineRun {self.name} [{self.status.value} @ {self.current_stage_number}/9]>"


class StageLogEntry(Base):
    """
    Append-only record of one stage event within a run.

    Entries are never updated or deleted while the run exists; ordering is
    by the autoincrement id.
    """

    __tablename__ = "stage_log_entries"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    pipeline_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    stage_name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    event: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )
    run_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # Results
    items_processed: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    items_failed: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    counters: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    duration_seconds: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )
    message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    # Relationships
    pipeline_run: Mapped["PipelineRun"] = relationship(
        back_populates="log_entries",
    )

    def __repr__(self) -> str:
        return f"<StageLogEntry {self.stage_name} {self.event}>"
