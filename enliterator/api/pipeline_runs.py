"""
Pipeline Run API Routes.

Thin administrative surface over the orchestrator. Invalid transitions map
to 409, unknown runs to 404.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from enliterator.api.deps import OrchestratorDep
from enliterator.core.exceptions import InvalidTransitionError, RunNotFoundError
from enliterator.core.models import PipelineRun, RunStatus
from enliterator.core.schemas import (
    AdvanceRequest,
    CancelRequest,
    DetailedStatus,
    ForceAdvanceRequest,
    PipelineRunCreate,
    PipelineRunResponse,
    RetryRequest,
    SkipRequest,
    StageLogEntryResponse,
)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _run_to_response(run: PipelineRun) -> PipelineRunResponse:
    return PipelineRunResponse.model_validate(run)


# ==========================================================================
# Runs
# ==========================================================================

@router.post("/runs", response_model=PipelineRunResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline_run(request: PipelineRunCreate, orchestrator: OrchestratorDep):
    """
    Create a pipeline run over a new batch of files.

    The run starts in ``initialized``; call ``/start`` to dispatch stage 1.
    """
    run = await orchestrator.create_run(
        name=request.name,
        file_paths=request.file_paths,
        auto_advance=request.auto_advance,
        max_retries=request.max_retries,
        source_type=request.source_type,
    )
    return _run_to_response(run)


@router.get("/runs", response_model=list[PipelineRunResponse])
async def list_pipeline_runs(
    orchestrator: OrchestratorDep,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = 50,
):
    """
    List pipeline runs, newest first.

    Args:
        status_filter: Only runs in this status
        limit: Maximum number of results
    """
    run_status = None
    if status_filter:
        try:
            run_status = RunStatus(status_filter)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}",
            )
    runs = await orchestrator.list_runs(status=run_status, limit=limit)
    return [_run_to_response(run) for run in runs]


@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_pipeline_run(run_id: UUID, orchestrator: OrchestratorDep):
    with _translate_errors():
        run = await orchestrator.get_run(run_id)
    return _run_to_response(run)


@router.get("/runs/{run_id}/status", response_model=DetailedStatus)
async def get_pipeline_run_status(run_id: UUID, orchestrator: OrchestratorDep):
    """Progress, per-stage item counts, metrics and the suggested next action."""
    with _translate_errors():
        return await orchestrator.monitor(run_id)


@router.get("/runs/{run_id}/history", response_model=list[StageLogEntryResponse])
async def get_pipeline_run_history(run_id: UUID, orchestrator: OrchestratorDep):
    """Stage log in append order."""
    with _translate_errors():
        entries = await orchestrator.history(run_id)
    return [StageLogEntryResponse.model_validate(entry) for entry in entries]


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pipeline_run(run_id: UUID, orchestrator: OrchestratorDep):
    """Delete a run that is not running, with its batch and history."""
    with _translate_errors():
        await orchestrator.delete_run(run_id)


# ==========================================================================
# Lifecycle
# ==========================================================================

@router.post("/runs/{run_id}/start", response_model=PipelineRunResponse)
async def start_pipeline_run(run_id: UUID, orchestrator: OrchestratorDep):
    """Start an initialized run or resume a paused one."""
    with _translate_errors():
        run = await orchestrator.start(run_id)
    return _run_to_response(run)


@router.post("/runs/{run_id}/pause", response_model=PipelineRunResponse)
async def pause_pipeline_run(run_id: UUID, orchestrator: OrchestratorDep):
    with _translate_errors():
        run = await orchestrator.pause(run_id)
    return _run_to_response(run)


@router.post("/runs/{run_id}/cancel", response_model=PipelineRunResponse)
async def cancel_pipeline_run(
    run_id: UUID,
    orchestrator: OrchestratorDep,
    request: Optional[CancelRequest] = None,
):
    with _translate_errors():
        run = await orchestrator.cancel(run_id, reason=request.reason if request else None)
    return _run_to_response(run)


@router.post("/runs/{run_id}/retry", response_model=PipelineRunResponse)
async def retry_pipeline_stage(
    run_id: UUID,
    orchestrator: OrchestratorDep,
    request: Optional[RetryRequest] = None,
):
    """
    Re-dispatch the failed or held stage.

    Refused with 409 once max retries is reached unless ``force`` is set.
    """
    with _translate_errors():
        run = await orchestrator.retry_failed_stage(run_id, force=request.force if request else False)
    return _run_to_response(run)


@router.post("/runs/{run_id}/skip", response_model=PipelineRunResponse)
async def skip_pipeline_stage(
    run_id: UUID,
    orchestrator: OrchestratorDep,
    request: Optional[SkipRequest] = None,
):
    with _translate_errors():
        run = await orchestrator.skip_failed_stage(run_id, reason=request.reason if request else None)
    return _run_to_response(run)


@router.post("/runs/{run_id}/advance", response_model=PipelineRunResponse)
async def advance_pipeline_stage(
    run_id: UUID,
    orchestrator: OrchestratorDep,
    request: Optional[AdvanceRequest] = None,
):
    """Advance a run with auto_advance disabled past its completed stage."""
    with _translate_errors():
        run = await orchestrator.advance_stage(
            run_id, expected_stage=request.expected_stage if request else None
        )
    return _run_to_response(run)


@router.post("/runs/{run_id}/force-advance", response_model=PipelineRunResponse)
async def force_advance_pipeline_stage(
    run_id: UUID,
    request: ForceAdvanceRequest,
    orchestrator: OrchestratorDep,
):
    """Accept a held stage as completed. The justification is kept in the stage log."""
    with _translate_errors():
        run = await orchestrator.force_advance(run_id, request.justification)
    return _run_to_response(run)
