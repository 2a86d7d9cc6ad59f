"""
Enliterator Pipeline - API Dependencies
=======================================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from enliterator.core.pipeline.orchestrator import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """
    The orchestrator built at startup.

    Usage:
        @router.post("/runs/{run_id}/start")
        async def start(run_id: UUID, orchestrator: OrchestratorDep):
            ...
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline orchestrator is not running",
        )
    return orchestrator


OrchestratorDep = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
