"""
Enliterator Pipeline - Exceptions
=================================

Error taxonomy for the orchestration core.

- Item-level errors are absorbed by stage workers and show up as counts.
- StageFatalError fails the run.
- InvalidTransitionError is returned to whoever asked for the transition.
- StaleCompletionError is logged and swallowed by the orchestrator.
"""

from typing import Any, Optional
from uuid import UUID


class PipelineError(Exception):
    """Base class for all pipeline errors."""


# ==========================================================================
# Item-level (recoverable, local)
# ==========================================================================

class ItemError(PipelineError):
    """A single item failed in a stage. Recorded on the item, never fatal."""

    def __init__(self, message: str, metadata: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.metadata = metadata or {}


class ItemQuarantined(ItemError):
    """The item is held back from downstream stages pending review."""


class ItemSkipped(ItemError):
    """The item was intentionally not processed by this stage."""


class ItemOrderError(PipelineError):
    """An item was asked to run a stage before its prior stage completed."""

    def __init__(self, item_id: UUID, stage: str, prior_status: str):
        super().__init__(
            f"Item {item_id} cannot start {stage}: prior stage is {prior_status}"
        )
        self.item_id = item_id
        self.stage = stage
        self.prior_status = prior_status


# ==========================================================================
# Stage-level (fatal)
# ==========================================================================

class StageFatalError(PipelineError):
    """Worker-level failure: dependency down, quota exhausted, worker bug."""


class StageTimeoutError(StageFatalError):
    """A stage dispatch exceeded its maximum duration."""


# ==========================================================================
# Run-level
# ==========================================================================

class RunNotFoundError(PipelineError):
    """No pipeline run with the given id."""

    def __init__(self, run_id: UUID):
        super().__init__(f"Pipeline run {run_id} not found")
        self.run_id = run_id


class InvalidTransitionError(PipelineError):
    """The requested operation is not allowed from the run's current state."""

    def __init__(self, message: str, current_status: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
        self.event = event


class RetryLimitExceededError(InvalidTransitionError):
    """Operator retry refused because the run used up its retries."""


class StaleCompletionError(PipelineError):
    """A completion or task no longer matches the run's current dispatch."""
