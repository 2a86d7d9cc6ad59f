"""
Enliterator Pipeline - Pydantic Schemas
=======================================

Request and response schemas for the administrative API, plus the
DetailedStatus projection returned by the orchestrator's monitor.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from enliterator.core.models import RunStatus, StageStatus


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Pipeline Run Requests
# ==========================================================================

class PipelineRunCreate(BaseSchema):
    """Request to create a pipeline run over a new batch of files."""

    name: str = Field(min_length=1, max_length=255)
    file_paths: list[str] = Field(min_length=1, description="Files to ingest, in order")
    source_type: Optional[str] = Field(None, description="Override detected source type")
    auto_advance: Optional[bool] = Field(None, description="Defaults to DEFAULT_AUTO_ADVANCE")
    max_retries: Optional[int] = Field(None, ge=0, le=20)

    @field_validator("file_paths")
    @classmethod
    def validate_file_paths(cls, v: list[str]) -> list[str]:
        """Reject blank entries."""
        paths = [path.strip() for path in v]
        if any(not path for path in paths):
            raise ValueError("File paths must not be blank")
        return paths


class RetryRequest(BaseSchema):
    """Request to retry the failed or held stage."""

    force: bool = Field(False, description="Retry even if max retries reached")


class SkipRequest(BaseSchema):
    """Request to skip the failed or held stage."""

    reason: Optional[str] = Field(None, max_length=1000)


class AdvanceRequest(BaseSchema):
    """Request to advance a run waiting between stages."""

    expected_stage: Optional[int] = Field(
        None, ge=1, le=9, description="Refuse if the run is no longer at this stage"
    )


class ForceAdvanceRequest(BaseSchema):
    """Operator override past a held stage."""

    justification: str = Field(min_length=1, max_length=1000)


class CancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)


# ==========================================================================
# Pipeline Run Responses
# ==========================================================================

class PipelineRunResponse(TimestampSchema):
    """Pipeline run as stored."""

    id: UUID
    name: str
    batch_id: UUID
    status: RunStatus
    current_stage_number: int
    stage_statuses: dict[str, str]
    auto_advance: bool
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    max_retries: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StageLogEntryResponse(BaseSchema):
    """One stage log entry."""

    id: int
    stage_number: int
    stage_name: str
    event: str
    run_status: str
    items_processed: int
    items_failed: int
    counters: dict[str, Any]
    duration_seconds: Optional[float] = None
    message: Optional[str] = None
    recorded_at: datetime


class StageDetail(BaseSchema):
    """Per-stage part of DetailedStatus."""

    number: int
    name: str
    description: str
    status: StageStatus
    item_counts: dict[str, int] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)


class DetailedStatus(BaseSchema):
    """
    Read-only projection of a run for operators.

    Progress counts stages that are completed or skipped out of nine.
    """

    run_id: UUID
    name: str
    status: RunStatus
    current_stage_number: int
    current_stage: Optional[str] = None
    progress_percentage: float
    auto_advance: bool
    stages: list[StageDetail]
    item_count: int
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    max_retries: int
    can_retry: bool
    next_action: str
    literacy_score: Optional[float] = None
    duration_seconds: Optional[float] = None
    stage_duration_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class MessageResponse(BaseSchema):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    task_queue: str
