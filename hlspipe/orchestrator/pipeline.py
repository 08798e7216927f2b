"""Batch orchestrator with checkpointed stage execution and failure isolation.

Drives each source video through the fixed stage sequence:
- download from the source store into a private working directory
- one compress stage per quality tier
- HLS segmentation plus master playlist
- upload of every playlist and segment to the destination store
- cleanup of the working directory, on success and failure alike

Progress is persisted after every stage transition, so a restarted run
resumes from the store: completed items are skipped, anything else is
re-attempted from a clean slate. A failing item never stops the batch; only
fatal conditions (encoder missing, source listing failed) abort it.
"""

import logging
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Sequence
from urllib.parse import urlsplit

from pydantic import BaseModel, Field
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from hlspipe.config import PipelineConfig, QualityProfile
from hlspipe.orchestrator.progress import ProgressStore
from hlspipe.orchestrator.state import (
    all_completed,
    CLEANUP_STAGE,
    compress_stage,
    DOWNLOAD_STAGE,
    HLS_STAGE,
    stage_sequence,
    UPLOAD_STAGE,
)
from hlspipe.pipeline.hls import collect_hls_files, MASTER_PLAYLIST, write_master_playlist
from hlspipe.schemas.progress import BatchRecord, BatchStats
from hlspipe.services.file_manager import WorkspaceManager
from hlspipe.services.object_store import content_type_for, join_key, ObjectStore, ObjectStoreError
from hlspipe.services.transcoder import (
    CompressResult,
    SegmentResult,
    Transcoder,
    TranscoderUnavailableError,
)

logger = logging.getLogger(__name__)


class FatalPipelineError(Exception):
    """Raised when a prerequisite for the whole batch is missing."""


class ItemOutcome(BaseModel):
    """Result of one process_item call, as reported back to the batch."""

    name: str
    key: str
    success: bool
    skipped: bool = False
    qualities: list[str] = Field(default_factory=list)
    artifact_count: int = 0
    error: Optional[str] = None


class BatchResult(BaseModel):
    """Outcomes of one process_batch pass plus the refreshed stats."""

    outcomes: list[ItemOutcome]
    stats: BatchStats

    @property
    def succeeded(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.success and not o.skipped]

    @property
    def failed(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def skipped(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.skipped]


class _StageFailed(Exception):
    """Internal: a stage exhausted its attempts. Never leaves process_item."""

    def __init__(self, stage: str, message: str, cause: BaseException):
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.cause = cause


class _ItemContext:
    """Working state of one attempt, handed from stage to stage."""

    def __init__(self) -> None:
        self.work_dir: Optional[Path] = None
        self.source_path: Optional[Path] = None
        self.renditions: dict[str, CompressResult] = {}
        self.segments: list[SegmentResult] = []
        self.uploaded = 0


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class PipelineOrchestrator:
    """Process source keys end-to-end, checkpointing every stage in a ProgressStore.

    All collaborators are injected, so tests can swap the object stores and
    the transcoder for in-process fakes.

    Args:
        store: Loaded ProgressStore shared by every worker
        source: Store the originals are read from
        destination: Store the HLS output is published to
        transcoder: Encoder used for compress and segment stages
        workspace: Allocates and removes per-item working directories
        config: Pipeline execution parameters
        output_prefix: Destination key prefix; files land under <prefix>/<name>/
        source_prefix: Listing prefix used when process_batch gets no keys
        qualities: Quality ladder, defaults to config.qualities
        progress_callback: Optional callback for status updates (e.g., CLI spinner)
        report_callback: Called with the final snapshot at the end of every batch,
            including aborted ones
    """

    def __init__(
        self,
        store: ProgressStore,
        source: ObjectStore,
        destination: ObjectStore,
        transcoder: Transcoder,
        workspace: WorkspaceManager,
        config: PipelineConfig,
        output_prefix: str,
        source_prefix: str = "",
        qualities: Optional[Sequence[QualityProfile]] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
        report_callback: Optional[Callable[[BatchRecord], None]] = None,
    ):
        self.store = store
        self.source = source
        self.destination = destination
        self.transcoder = transcoder
        self.workspace = workspace
        self.config = config
        self.output_prefix = output_prefix
        self.source_prefix = source_prefix
        self.qualities = list(qualities or config.qualities)
        self.stages = stage_sequence(q.label for q in self.qualities)
        self.progress_callback = progress_callback
        self.report_callback = report_callback

        self._handlers = {
            DOWNLOAD_STAGE: self._download,
            HLS_STAGE: self._segment,
            UPLOAD_STAGE: self._upload,
        }
        for profile in self.qualities:
            self._handlers[compress_stage(profile.label)] = self._compressor(profile)

        # Names already attempted in this run; terminal items are not reopened
        self._handled: set[str] = set()
        self._handled_lock = threading.Lock()
        self._abort = threading.Event()

    def _notify(self, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(message)

    # -- batch level -----------------------------------------------------

    def list_source_keys(self) -> list[str]:
        """List candidate videos under the source prefix.

        Raises:
            FatalPipelineError: If the listing itself fails
        """
        prefix = f"{self.source_prefix}/" if self.source_prefix else ""
        logger.info(f"Listing videos in {prefix or '/'}...")
        try:
            keys = self.source.list(prefix)
        except ObjectStoreError as e:
            raise FatalPipelineError(f"Listing source videos failed: {e}") from e

        extensions = tuple(ext.lower() for ext in self.config.source_extensions)
        videos = [k for k in keys if k.lower().endswith(extensions)]
        logger.info(f"Found {len(videos)} videos")
        return videos

    def process_batch(
        self,
        keys: Optional[Sequence[str]] = None,
        force: bool = False,
        workers: Optional[int] = None,
    ) -> BatchResult:
        """Process every key, isolating per-item failures.

        Args:
            keys: Source keys; listed from the source store when None
            force: Redo items that are already completed
            workers: Parallel items, defaults to config.workers (1 = sequential)

        Returns:
            BatchResult with one outcome per distinct key attempted

        Raises:
            FatalPipelineError: If the encoder is unavailable, the listing
                fails or finds nothing. lastRun/stats are still refreshed and
                the report callback still fires before this propagates.
        """
        workers = workers or self.config.workers
        pipeline_start = time.monotonic()
        self._abort.clear()
        with self._handled_lock:
            self._handled.clear()
        outcomes: list[ItemOutcome] = []

        try:
            try:
                self.transcoder.check_available()
            except TranscoderUnavailableError as e:
                raise FatalPipelineError(str(e)) from e
            logger.info("Transcoder available")

            if keys is None:
                keys = self.list_source_keys()
                if not keys:
                    raise FatalPipelineError(f"No videos found in {self.source_prefix or 'source'}/")

            incomplete = self.store.get_incomplete()
            logger.info(f"Found {len(incomplete)} incomplete videos from previous runs")

            unique_keys = list(dict.fromkeys(keys))
            outcomes = self._run_items(unique_keys, force, workers)

        except FatalPipelineError as e:
            logger.error(f"Fatal error, aborting batch: {e}")
            raise

        finally:
            stats = self.store.finalize_run()
            logger.info(
                f"Batch finished in {time.monotonic() - pipeline_start:.2f}s: "
                f"{stats.completed}/{stats.total} completed, {stats.failed} failed"
            )
            if self.report_callback:
                self.report_callback(self.store.snapshot())

        return BatchResult(outcomes=outcomes, stats=stats)

    def _run_items(self, keys: list[str], force: bool, workers: int) -> list[ItemOutcome]:
        if workers <= 1:
            outcomes = []
            for i, key in enumerate(keys, start=1):
                logger.info(f"Progress: {i}/{len(keys)}")
                self._notify(f"[{i}/{len(keys)}] {key}")
                outcomes.append(self.process_item(key, force=force))
            return outcomes

        results: dict[str, ItemOutcome] = {}
        fatal: Optional[FatalPipelineError] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hlspipe") as pool:
            futures = {pool.submit(self._process_unless_aborted, key, force): key for key in keys}
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                try:
                    outcome = future.result()
                except FatalPipelineError as e:
                    if fatal is None:
                        fatal = e
                        self._abort.set()
                        for pending in futures:
                            pending.cancel()
                    continue
                if outcome is not None:
                    results[futures[future]] = outcome
                    self._notify(f"[{len(results)}/{len(keys)}] {outcome.name} done")
        if fatal is not None:
            raise fatal
        return [results[key] for key in keys if key in results]

    def _process_unless_aborted(self, key: str, force: bool) -> Optional[ItemOutcome]:
        if self._abort.is_set():
            return None
        return self.process_item(key, force=force)

    # -- item level ------------------------------------------------------

    def process_item(self, key: str, force: bool = False) -> ItemOutcome:
        """Run one source key through every stage.

        Stage errors are converted into item state and an unsuccessful
        outcome; they never propagate.

        Raises:
            FatalPipelineError: Only if the encoder disappears mid-item. The
                failure is recorded and cleanup has run before it propagates.
        """
        name = self.store.init_item(key, self.stages)

        with self._handled_lock:
            if name in self._handled:
                item = self.store.get_item(name)
                logger.warning(f"{name} was already handled in this run, skipping {key}")
                return ItemOutcome(
                    name=name,
                    key=key,
                    success=item.status == "completed",
                    skipped=True,
                    error=item.error,
                )
            self._handled.add(name)

        record = self.store.get_item(name)
        if record.status == "completed" and not force:
            logger.info(f"Skipping {name}: already completed")
            return ItemOutcome(name=name, key=key, success=True, skipped=True)

        if record.status != "pending" or list(record.steps) != self.stages:
            logger.info(f"Restarting {name} (previous status: {record.status})")
            self._discard_stale_workspace(name, record.work_dir)
            self.store.reset_item(name, self.stages)

        logger.info(f"Processing: {name}")
        self.store.update_status(name, "processing")
        item_start = time.monotonic()
        ctx = _ItemContext()
        failure: Optional[_StageFailed] = None

        try:
            for stage in self.stages:
                if stage == CLEANUP_STAGE:
                    continue
                self._run_stage(name, key, stage, ctx)
        except _StageFailed as e:
            failure = e
            logger.error(f"Failed to process {name} at {e.stage}: {e.message}")
            self.store.update_status(name, "failed", error=e.message)

        cleanup_error = self._run_cleanup(name, ctx, record_error=failure is None)
        duration = time.monotonic() - item_start

        if failure is not None:
            if isinstance(failure.cause, TranscoderUnavailableError):
                raise FatalPipelineError(failure.message) from failure.cause
            return ItemOutcome(name=name, key=key, success=False, error=failure.message)

        if cleanup_error is not None:
            self.store.update_status(name, "failed", error=cleanup_error)
            return ItemOutcome(name=name, key=key, success=False, error=cleanup_error)

        item = self.store.get_item(name)
        if not all_completed(item.steps):
            # Only reachable if a stage was skipped
            message = "stage sequence finished with incomplete steps"
            self.store.update_status(name, "failed", error=message)
            return ItemOutcome(name=name, key=key, success=False, error=message)

        self.store.update_status(name, "completed")
        logger.info(f"Successfully processed {name} in {duration:.2f}s")
        return ItemOutcome(
            name=name,
            key=key,
            success=True,
            qualities=[q.label for q in self.qualities if q.label in ctx.renditions],
            artifact_count=ctx.uploaded,
        )

    def _run_stage(self, name: str, key: str, stage: str, ctx: _ItemContext) -> None:
        """Run one stage with bounded retries, checkpointing each transition."""
        handler = self._handlers[stage]
        attempts = self.config.retry_max_attempts

        def _before_retry(retry_state) -> None:
            message = _describe(retry_state.outcome.exception())
            logger.warning(
                f"{name}: {stage} attempt {retry_state.attempt_number}/{attempts} failed: {message}"
            )
            self.store.update_step(name, stage, "failed", error=message)
            self.store.increment_retry(name)
            self.store.update_step(name, stage, "processing")

        @retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.config.retry_base_delay, max=30),
            retry=retry_if_not_exception_type(TranscoderUnavailableError),
            before_sleep=_before_retry,
            reraise=True,
        )
        def _attempt() -> None:
            handler(name, key, ctx)

        self.store.update_step(name, stage, "processing")
        self._notify(f"{name}: {stage}")
        step_start = time.monotonic()
        try:
            _attempt()
        except Exception as e:
            message = _describe(e)
            self.store.update_step(name, stage, "failed", error=message)
            raise _StageFailed(stage, message, e) from e

        self.store.update_step(name, stage, "completed")
        logger.info(f"{name}: {stage} completed in {time.monotonic() - step_start:.2f}s")

    def _run_cleanup(self, name: str, ctx: _ItemContext, record_error: bool) -> Optional[str]:
        """Remove the working directory; runs on every path out of an attempt.

        Args:
            record_error: Whether a cleanup failure may overwrite the item error.
                False when an earlier stage already failed, so the real cause
                stays visible.

        Returns:
            The cleanup error message, or None on success
        """
        self.store.update_step(name, CLEANUP_STAGE, "processing")
        try:
            if ctx.work_dir is not None:
                self.workspace.cleanup(ctx.work_dir)
        except (OSError, ValueError) as e:
            message = f"cleanup failed: {_describe(e)}"
            logger.warning(f"{name}: {message}")
            self.store.update_step(
                name, CLEANUP_STAGE, "failed", error=message if record_error else None
            )
            return message

        self.store.update_step(name, CLEANUP_STAGE, "completed")
        self.store.set_work_dir(name, None)
        return None

    def _discard_stale_workspace(self, name: str, work_dir: Optional[str]) -> None:
        """Remove the working directory left behind by an interrupted attempt."""
        if not work_dir:
            return
        try:
            if self.workspace.cleanup(work_dir):
                logger.info(f"Removed stale working directory for {name}: {work_dir}")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not remove stale working directory {work_dir}: {e}")

    # -- stage work ------------------------------------------------------

    def _download(self, name: str, key: str, ctx: _ItemContext) -> None:
        if ctx.work_dir is None:
            ctx.work_dir = self.workspace.create(name)
            self.store.set_work_dir(name, str(ctx.work_dir))

        suffix = PurePosixPath(urlsplit(key).path).suffix or ".mp4"
        destination = ctx.work_dir / f"original{suffix}"
        timeout = self.config.download_timeout_seconds
        deadline = time.monotonic() + timeout

        logger.info(f"Downloading: {key}")
        with open(destination, "wb") as f:
            for chunk in self.source.get(key):
                f.write(chunk)
                if time.monotonic() > deadline:
                    raise TimeoutError(f"download of {key} timed out after {timeout:.0f}s")

        size = destination.stat().st_size
        if size == 0:
            raise ObjectStoreError(f"{key} is empty")
        ctx.source_path = destination
        logger.info(f"Downloaded: {destination} ({size / 1e6:.2f} MB)")

    def _compressor(self, profile: QualityProfile) -> Callable[[str, str, _ItemContext], None]:
        def _compress(name: str, key: str, ctx: _ItemContext) -> None:
            output_path = ctx.work_dir / f"{profile.label}.mp4"
            ctx.renditions[profile.label] = self.transcoder.compress(
                ctx.source_path, profile, output_path
            )

        return _compress

    def _segment(self, name: str, key: str, ctx: _ItemContext) -> None:
        hls_dir = self.workspace.hls_dir(ctx.work_dir)
        # A retried attempt starts from an empty directory
        if hls_dir.exists():
            shutil.rmtree(hls_dir)

        results = []
        for profile in self.qualities:
            rendition = ctx.renditions[profile.label]
            results.append(
                self.transcoder.segment(
                    rendition.path,
                    profile.label,
                    hls_dir,
                    self.config.segment_duration,
                )
            )
        write_master_playlist(results, hls_dir, self.config.bandwidth_for)
        ctx.segments = results

    def _upload(self, name: str, key: str, ctx: _ItemContext) -> None:
        files = collect_hls_files(self.workspace.hls_dir(ctx.work_dir))
        # Master goes last so it never references a playlist not yet published
        files.sort(key=lambda p: p.name == MASTER_PLAYLIST)

        uploaded = 0
        for path in files:
            object_key = join_key(self.output_prefix, name, path.name)
            with open(path, "rb") as stream:
                self.destination.put(object_key, stream, content_type_for(path.name))
            uploaded += 1
            logger.debug(f"Uploaded: {object_key}")
        ctx.uploaded = uploaded
        logger.info(f"Uploaded {uploaded} files to {join_key(self.output_prefix, name)}/")
