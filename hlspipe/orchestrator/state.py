"""State machine constants and transition logic for the transcoding pipeline.

Defines the fixed stage sequence for an item and the legal status
transitions for a single stage and for the item as a whole. The stage
sequence is built from a quality ladder, so the batch pipeline (four tiers)
and the single-asset ingest pipeline (three tiers) share one definition.
"""

from typing import Iterable, Mapping, Optional, Sequence

# Statuses shared by stages and items
STATUSES = {
    "pending": "Not attempted yet",
    "processing": "Attempt in flight",
    "completed": "Finished successfully",
    "failed": "Attempt failed; error recorded on the item",
}

TERMINAL_STATUSES = {"completed", "failed"}

DOWNLOAD_STAGE = "download"
HLS_STAGE = "hls_generation"
UPLOAD_STAGE = "upload"
CLEANUP_STAGE = "cleanup"
COMPRESS_PREFIX = "compress_"

# failed -> processing is a re-attempt of the same stage within one run
STAGE_TRANSITIONS = {
    "pending": {"processing"},
    "processing": {"completed", "failed"},
    "failed": {"processing"},
    "completed": set(),
}

# Leaving a terminal item state goes through ProgressStore.reset_item
ITEM_TRANSITIONS = {
    "pending": {"processing"},
    "processing": {"completed", "failed"},
    "failed": set(),
    "completed": set(),
}


class InvalidTransitionError(ValueError):
    """Raised when a status change skips or reverses the state machine."""


def compress_stage(label: str) -> str:
    """Stage name for one rendition, e.g. compress_480p."""
    return f"{COMPRESS_PREFIX}{label}"


def stage_sequence(labels: Iterable[str]) -> list[str]:
    """Build the ordered stage list for a quality ladder.

    Args:
        labels: Quality labels in encode order (e.g. ["240p", "360p"])

    Returns:
        download, one compress stage per label, hls_generation, upload, cleanup

    Examples:
        >>> stage_sequence(["240p", "360p"])
        ['download', 'compress_240p', 'compress_360p', 'hls_generation', 'upload', 'cleanup']
    """
    return [
        DOWNLOAD_STAGE,
        *(compress_stage(label) for label in labels),
        HLS_STAGE,
        UPLOAD_STAGE,
        CLEANUP_STAGE,
    ]


def can_transition_stage(current: str, new: str) -> bool:
    return new in STAGE_TRANSITIONS.get(current, set())


def can_transition_item(current: str, new: str) -> bool:
    return new in ITEM_TRANSITIONS.get(current, set())


def check_stage_transition(step: str, current: str, new: str) -> None:
    """Raise InvalidTransitionError unless current -> new is a legal stage move."""
    if not can_transition_stage(current, new):
        raise InvalidTransitionError(f"stage {step}: illegal transition {current} -> {new}")


def check_item_transition(name: str, current: str, new: str) -> None:
    """Raise InvalidTransitionError unless current -> new is a legal item move."""
    if not can_transition_item(current, new):
        raise InvalidTransitionError(f"item {name}: illegal transition {current} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def all_completed(steps: Mapping[str, str]) -> bool:
    """True if every stage is completed; an empty mapping never counts as done."""
    return bool(steps) and all(s == "completed" for s in steps.values())


def last_completed_step(steps: Mapping[str, str]) -> Optional[str]:
    """Return the last stage in sequence order whose status is completed.

    Cleanup runs on the failure path too, so it is skipped when an earlier
    stage failed; the answer should point at where real work stopped.
    """
    failed = any(s == "failed" for name, s in steps.items() if name != CLEANUP_STAGE)
    last = None
    for name, status in steps.items():
        if status != "completed":
            continue
        if failed and name == CLEANUP_STAGE:
            continue
        last = name
    return last


def current_step(steps: Mapping[str, str]) -> Optional[str]:
    """Return the stage currently marked processing, if any."""
    for name, status in steps.items():
        if status == "processing":
            return name
    return None


def pending_steps(stages: Sequence[str]) -> dict[str, str]:
    """Fresh step mapping with every stage pending, in sequence order."""
    return {stage: "pending" for stage in stages}
