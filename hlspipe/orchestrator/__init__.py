"""Pipeline orchestrator module.

Provides the resumable transcoding pipeline:
- State machine stage sequence and transition rules
- Durable JSON progress store with atomic writes
- Batch orchestrator with per-item failure isolation
"""

from hlspipe.orchestrator.pipeline import (
    BatchResult,
    FatalPipelineError,
    ItemOutcome,
    PipelineOrchestrator,
)
from hlspipe.orchestrator.progress import CorruptStateError, derive_name, ProgressStore
from hlspipe.orchestrator.state import InvalidTransitionError, stage_sequence

__all__ = [
    "BatchResult",
    "CorruptStateError",
    "derive_name",
    "FatalPipelineError",
    "InvalidTransitionError",
    "ItemOutcome",
    "PipelineOrchestrator",
    "ProgressStore",
    "stage_sequence",
]
