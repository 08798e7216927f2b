"""Shared fixtures: temporary progress store, local object store, fake encoder.

No ffmpeg, network or cloud credentials are needed; every collaborator of the
orchestrator is replaced by an in-process fake working under tmp_path.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from hlspipe.config import PipelineConfig, QualityProfile
from hlspipe.orchestrator.pipeline import PipelineOrchestrator
from hlspipe.orchestrator.progress import ProgressStore
from hlspipe.services.file_manager import WorkspaceManager
from hlspipe.services.object_store import LocalObjectStore
from hlspipe.services.transcoder import (
    CompressResult,
    SegmentResult,
    TranscodeError,
    Transcoder,
    TranscoderUnavailableError,
)


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


class FakeTranscoder(Transcoder):
    """Writes placeholder renditions and segments; failures are scripted.

    fail(name, stage_label, error, times) makes the next `times` calls for
    that item and label raise error. stage_label is a quality label for
    compress calls, or "segment" for segmentation.
    """

    def __init__(self, resolution: Optional[str] = "426x240", segments_per_rendition: int = 2):
        self.resolution = resolution
        self.segments_per_rendition = segments_per_rendition
        self.unavailable = False
        self.calls: list[tuple[str, str, str]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}

    def fail(self, name: str, stage_label: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault((name, stage_label), []).extend([error] * times)

    @staticmethod
    def _item_name(path: Path) -> str:
        # Working directories are named {name}_{epoch_ms}_{random}
        return path.parent.name.rsplit("_", 2)[0]

    def _maybe_fail(self, name: str, stage_label: str) -> None:
        pending = self._failures.get((name, stage_label))
        if pending:
            raise pending.pop(0)

    def check_available(self) -> None:
        if self.unavailable:
            raise TranscoderUnavailableError("ffmpeg not found on PATH")

    def compress(self, input_path: Path, profile: QualityProfile, output_path: Path) -> CompressResult:
        name = self._item_name(input_path)
        self.calls.append(("compress", name, profile.label))
        self._maybe_fail(name, profile.label)
        output_path.write_bytes(f"{profile.label} rendition of {input_path.name}".encode())
        return CompressResult(
            quality=profile.label,
            path=output_path,
            size_bytes=output_path.stat().st_size,
        )

    def segment(
        self,
        input_path: Path,
        label: str,
        output_dir: Path,
        segment_duration: int,
    ) -> SegmentResult:
        name = self._item_name(input_path)
        self.calls.append(("segment", name, label))
        self._maybe_fail(name, "segment")
        output_dir.mkdir(parents=True, exist_ok=True)
        segments = []
        for i in range(self.segments_per_rendition):
            segment = output_dir / f"{label}_{i:03d}.ts"
            segment.write_bytes(b"\x47" * 188)
            segments.append(segment)
        playlist = output_dir / f"{label}.m3u8"
        playlist.write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
        return SegmentResult(
            quality=label,
            playlist_path=playlist,
            segments=segments,
            resolution=self.resolution,
        )

    def probe_resolution(self, path: Path) -> Optional[str]:
        return self.resolution


# === FIXTURES ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def progress_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "processing-progress.json"


@pytest.fixture
def store(progress_path: Path, clock: FakeClock) -> ProgressStore:
    """Loaded, empty ProgressStore backed by a temporary file."""
    progress_store = ProgressStore(progress_path, clock=clock)
    progress_store.load()
    return progress_store


@pytest.fixture
def source_store(tmp_path: Path) -> LocalObjectStore:
    """Source bucket holding two small videos under latent-videos/."""
    bucket = LocalObjectStore(tmp_path / "bucket")
    for filename in ("a.mp4", "b.mp4"):
        path = bucket.root / "latent-videos" / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + filename.encode() * 64)
    return bucket


@pytest.fixture
def destination_store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "published")


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(tmp_path / "temp")


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Default ladder with retry backoff disabled so tests never sleep."""
    return PipelineConfig(retry_base_delay=0)


@pytest.fixture
def make_orchestrator(store, source_store, destination_store, transcoder, workspace, pipeline_config):
    """Factory so tests can override single collaborators."""

    def _make(**overrides) -> PipelineOrchestrator:
        kwargs = dict(
            store=store,
            source=source_store,
            destination=destination_store,
            transcoder=transcoder,
            workspace=workspace,
            config=pipeline_config,
            output_prefix="processed-videos",
            source_prefix="latent-videos",
        )
        kwargs.update(overrides)
        return PipelineOrchestrator(**kwargs)

    return _make


@pytest.fixture
def transcode_error() -> TranscodeError:
    return TranscodeError("compress 480p failed (exit 1): Conversion failed!", returncode=1)
