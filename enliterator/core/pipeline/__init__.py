"""
Enliterator Pipeline - Orchestration Core
=========================================

Runs a batch through nine ordered stages with per-item tracking,
idempotent resume and stage-level retry/skip.

Components:
- StageRegistry: Fixed ordered stage list with worker bindings
- state_machine: Pure run status transition table
- ItemLedger: Per-item, per-stage status records
- StageWorker / ItemStageWorker: Worker interface and item loop
- StageLog: Append-only stage history
- InProcessTaskQueue: asyncio dispatch queue
- PipelineOrchestrator: Lifecycle operations and completion handling
- RunWatchdog: Recovery of lost dispatches
"""

from enliterator.core.pipeline.ledger import ItemLedger
from enliterator.core.pipeline.orchestrator import PipelineOrchestrator
from enliterator.core.pipeline.registry import STAGES, StageDefinition, StageRegistry
from enliterator.core.pipeline.stage_log import StageLog
from enliterator.core.pipeline.state_machine import RunEvent, transition
from enliterator.core.pipeline.task_queue import InProcessTaskQueue, StageTask, TaskQueue
from enliterator.core.pipeline.watchdog import RunWatchdog, recover_orphaned_runs
from enliterator.core.pipeline.worker import (
    ItemStageWorker,
    StageContext,
    StageResult,
    StageWorker,
)

__all__ = [
    "STAGES",
    "InProcessTaskQueue",
    "ItemLedger",
    "ItemStageWorker",
    "PipelineOrchestrator",
    "RunEvent",
    "RunWatchdog",
    "StageContext",
    "StageDefinition",
    "StageLog",
    "StageRegistry",
    "StageResult",
    "StageTask",
    "StageWorker",
    "TaskQueue",
    "recover_orphaned_runs",
    "transition",
]
