"""Durable, crash-tolerant progress store backed by a single JSON file.

Every mutation is applied to a copy of the batch record, written to a
temporary file beside the target, fsynced and renamed into place. Only after
the rename succeeds does the copy become the in-memory state, so memory and
disk never disagree by more than the transition in flight and a crash can
never leave a half-written file behind.
"""

import contextlib
import hashlib
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Sequence
from urllib.parse import urlsplit

from pydantic import ValidationError

from hlspipe.orchestrator.state import (
    check_item_transition,
    check_stage_transition,
    InvalidTransitionError,
    is_terminal,
    pending_steps,
)
from hlspipe.schemas.progress import BatchRecord, BatchStats, ItemRecord, Status

logger = logging.getLogger(__name__)


class CorruptStateError(Exception):
    """Raised when the progress file exists but cannot be parsed.

    The file is left untouched; an operator has to repair or move it.
    """

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Progress file {path} is corrupt: {reason}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_name(key: str) -> str:
    """Derive the short item name from a source key.

    Object keys and URLs both reduce to the stem of their last path
    component, so "latent-videos/ep1.mp4" and "https://host/ep1.mp4?x=1"
    both become "ep1".
    """
    path = urlsplit(key).path if "://" in key else key
    stem = PurePosixPath(PurePosixPath(path).name).stem
    if not stem:
        return hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return stem


class ProgressStore:
    """File-backed key-value store of item records.

    Safe for several worker threads in one process (writes serialize on a
    lock) and for a concurrent reader process (the file is only ever
    replaced atomically).
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] = _utcnow):
        self.path = Path(path)
        self._clock = clock
        self._data: Optional[BatchRecord] = None
        self._lock = threading.RLock()

    # -- reading ---------------------------------------------------------

    @staticmethod
    def _read(path: Path) -> Optional[BatchRecord]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return BatchRecord.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptStateError(path, str(e)) from e

    @classmethod
    def read_snapshot(cls, path: str | Path) -> Optional[BatchRecord]:
        """Read a progress file without holding or mutating a store.

        Returns:
            The batch record, or None if the file does not exist

        Raises:
            CorruptStateError: If the file exists but does not parse
        """
        return cls._read(Path(path))

    def load(self) -> BatchRecord:
        """Load persisted state, or start from an empty batch record.

        Raises:
            CorruptStateError: If the file exists but does not parse. The
                store stays unloaded, so no later call can overwrite it.
        """
        with self._lock:
            data = self._read(self.path)
            if data is None:
                logger.info(f"No progress file at {self.path}, starting fresh")
                data = BatchRecord()
            else:
                logger.info(f"Loaded progress for {len(data.items)} items from {self.path}")
            self._data = data
            return data.model_copy(deep=True)

    def _require(self) -> BatchRecord:
        if self._data is None:
            raise RuntimeError("ProgressStore.load() must succeed before use")
        return self._data

    def snapshot(self) -> BatchRecord:
        with self._lock:
            return self._require().model_copy(deep=True)

    def get_item(self, name: str) -> Optional[ItemRecord]:
        with self._lock:
            item = self._require().items.get(name)
            return item.model_copy(deep=True) if item else None

    def get_incomplete(self) -> list[str]:
        """Keys of every item not yet completed (pending, processing or failed)."""
        with self._lock:
            return [
                item.key
                for item in self._require().items.values()
                if item.status != "completed"
            ]

    def get_summary(self) -> dict[str, int]:
        with self._lock:
            items = list(self._require().items.values())
        summary = {"total": len(items)}
        for status in ("completed", "failed", "processing", "pending"):
            summary[status] = sum(1 for item in items if item.status == status)
        return summary

    # -- writing ---------------------------------------------------------

    def _write(self, record: BatchRecord) -> None:
        """Atomically replace the progress file with record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

    def _commit(self, mutate: Callable[[BatchRecord], None]) -> None:
        candidate = self._require().model_copy(deep=True)
        mutate(candidate)
        self._write(candidate)
        self._data = candidate

    def _mutate_item(self, name: str, mutate: Callable[[ItemRecord], None]) -> bool:
        with self._lock:
            if name not in self._require().items:
                logger.warning(f"Ignoring update for unknown item {name!r}")
                return False
            self._commit(lambda data: mutate(data.items[name]))
            return True

    def _name_for(self, data: BatchRecord, key: str) -> str:
        name = derive_name(key)
        existing = data.items.get(name)
        if existing is None or existing.key == key:
            return name
        # Same stem, different source: disambiguate with a stable key hash
        return f"{name}-{hashlib.sha1(key.encode('utf-8')).hexdigest()[:8]}"

    def init_item(self, key: str, stages: Sequence[str]) -> str:
        """Create the record for key if it does not exist yet.

        Args:
            key: Source key (object-store path or URL)
            stages: Stage sequence for a new record

        Returns:
            The item name. Calling again with the same key returns the same
            name and leaves the record untouched.
        """
        with self._lock:
            data = self._require()
            name = self._name_for(data, key)
            if name in data.items:
                return name

            def apply(d: BatchRecord) -> None:
                d.items[name] = ItemRecord(key=key, steps=pending_steps(stages))

            self._commit(apply)
            logger.debug(f"Registered item {name} for {key}")
            return name

    def update_step(self, name: str, step: str, status: Status, error: Optional[str] = None) -> None:
        """Set one stage's status, overwriting the item error if given.

        Raises:
            InvalidTransitionError: If the stage is unknown or the move is illegal
        """
        def apply(item: ItemRecord) -> None:
            if step not in item.steps:
                raise InvalidTransitionError(f"item {name}: unknown stage {step}")
            check_stage_transition(step, item.steps[step], status)
            item.steps[step] = status
            if error:
                item.error = error

        self._mutate_item(name, apply)

    def update_status(self, name: str, status: Status, error: Optional[str] = None) -> None:
        """Set the item status, stamping startTime/endTime as it goes.

        startTime is set once, on the first move into processing. endTime is
        stamped on every move into a terminal status.
        """
        def apply(item: ItemRecord) -> None:
            check_item_transition(name, item.status, status)
            item.status = status
            now = self._clock()
            if status == "processing" and item.start_time is None:
                item.start_time = now
            if is_terminal(status):
                item.end_time = now
            if error:
                item.error = error

        self._mutate_item(name, apply)

    def increment_retry(self, name: str) -> None:
        def apply(item: ItemRecord) -> None:
            item.retry_count += 1

        self._mutate_item(name, apply)

    def reset_item(self, name: str, stages: Sequence[str]) -> None:
        """Return an item to pending for a fresh attempt.

        Timestamps and retryCount are history and survive the reset.
        """
        def apply(item: ItemRecord) -> None:
            item.status = "pending"
            item.steps = pending_steps(stages)
            item.error = None
            item.work_dir = None

        self._mutate_item(name, apply)

    def set_work_dir(self, name: str, work_dir: Optional[str]) -> None:
        def apply(item: ItemRecord) -> None:
            item.work_dir = work_dir

        self._mutate_item(name, apply)

    def finalize_run(self) -> BatchStats:
        """Stamp lastRun and refresh the aggregate stats snapshot."""
        with self._lock:
            def apply(d: BatchRecord) -> None:
                items = d.items.values()
                d.last_run = self._clock()
                d.stats = BatchStats(
                    total=len(d.items),
                    completed=sum(1 for i in items if i.status == "completed"),
                    failed=sum(1 for i in items if i.status == "failed"),
                )

            self._commit(apply)
            return self._require().stats.model_copy()
