"""Transcoder capability: rendition encoding and HLS segmentation via ffmpeg.

Every ffmpeg/ffprobe invocation is a blocking subprocess call bounded by a
timeout. Results are typed; failures raise TranscodeError carrying the exit
code and the tail of stderr, and partial outputs are removed so a failed
stage never leaves a plausible-looking file behind.
"""

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from hlspipe import validate_dependencies
from hlspipe.config import PipelineConfig, QualityProfile

logger = logging.getLogger(__name__)

_RESOLUTION_RE = re.compile(r"^\d+x\d+$")
_STDERR_TAIL = 500


class TranscodeError(Exception):
    """Raised when an encode, segment or probe call fails or times out."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class TranscoderUnavailableError(Exception):
    """Raised when the encoder binaries cannot be found at all."""


class CompressResult(BaseModel):
    """One encoded rendition on local disk."""

    quality: str
    path: Path
    size_bytes: int

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / (1024 * 1024), 2)


class SegmentResult(BaseModel):
    """HLS output for one rendition: its playlist, ordered segments and probed size."""

    quality: str
    playlist_path: Path
    segments: list[Path]
    resolution: Optional[str] = None


class Transcoder(ABC):
    """Abstract encoder used by the orchestrator.

    Implementations must be safe to call from several worker threads, each
    working on its own files.
    """

    @abstractmethod
    def check_available(self) -> None:
        """Raise TranscoderUnavailableError if the encoder cannot run at all."""
        ...

    @abstractmethod
    def compress(self, input_path: Path, profile: QualityProfile, output_path: Path) -> CompressResult:
        """Encode input_path to one rendition of the quality ladder."""
        ...

    @abstractmethod
    def segment(
        self,
        input_path: Path,
        label: str,
        output_dir: Path,
        segment_duration: int,
    ) -> SegmentResult:
        """Split an encoded rendition into an HLS playlist plus segments."""
        ...

    @abstractmethod
    def probe_resolution(self, path: Path) -> Optional[str]:
        """Return "WIDTHxHEIGHT" of the first video stream, or None if unknown."""
        ...


class FFmpegTranscoder(Transcoder):
    """ffmpeg/ffprobe implementation of the Transcoder capability."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        preset: str = "medium",
        audio_bitrate: str = "128k",
        encode_timeout: float = 3600.0,
        probe_timeout: float = 60.0,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.preset = preset
        self.audio_bitrate = audio_bitrate
        self.encode_timeout = encode_timeout
        self.probe_timeout = probe_timeout

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "FFmpegTranscoder":
        return cls(
            ffmpeg_path=config.ffmpeg_path,
            ffprobe_path=config.ffprobe_path,
            preset=config.preset,
            audio_bitrate=config.audio_bitrate,
            encode_timeout=config.encode_timeout_seconds,
            probe_timeout=config.probe_timeout_seconds,
        )

    def check_available(self) -> None:
        try:
            validate_dependencies(self.ffmpeg_path, self.ffprobe_path)
        except RuntimeError as e:
            raise TranscoderUnavailableError(str(e)) from e

    def _run(self, cmd: list[str], timeout: float, what: str) -> subprocess.CompletedProcess:
        """Run one encoder command, mapping every failure to a typed error."""
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise TranscoderUnavailableError(f"{cmd[0]} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise TranscodeError(f"{what} timed out after {timeout:.0f}s") from e
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
            raise TranscodeError(
                f"{what} failed (exit {e.returncode}): {stderr.strip()[-_STDERR_TAIL:]}",
                returncode=e.returncode,
                stderr=stderr,
            ) from e

    def build_compress_command(
        self, input_path: Path, profile: QualityProfile, output_path: Path
    ) -> list[str]:
        # scale=-2 keeps the source aspect ratio with an even width
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-c:v", "libx264",
            "-crf", str(profile.crf),
            "-preset", self.preset,
            "-c:a", "aac",
            "-b:a", self.audio_bitrate,
            "-vf", f"scale=-2:{profile.height}",
            "-movflags", "+faststart",
            str(output_path),
        ]

    def build_segment_command(
        self, input_path: Path, label: str, output_dir: Path, segment_duration: int
    ) -> list[str]:
        # Stream copy: the rendition is already encoded
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-c:v", "copy",
            "-c:a", "copy",
            "-hls_time", str(segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", str(output_dir / f"{label}_%03d.ts"),
            "-f", "hls",
            str(output_dir / f"{label}.m3u8"),
        ]

    def compress(self, input_path: Path, profile: QualityProfile, output_path: Path) -> CompressResult:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Compressing {input_path.name} to {profile.label} (crf={profile.crf})")
        try:
            self._run(
                self.build_compress_command(input_path, profile, output_path),
                self.encode_timeout,
                f"compress {profile.label}",
            )
            if not output_path.exists() or output_path.stat().st_size == 0:
                raise TranscodeError(f"compress {profile.label} produced no output")
        except (TranscodeError, TranscoderUnavailableError):
            output_path.unlink(missing_ok=True)
            raise

        result = CompressResult(
            quality=profile.label,
            path=output_path,
            size_bytes=output_path.stat().st_size,
        )
        logger.info(f"{profile.label} compression complete - Size: {result.size_mb}MB")
        return result

    def segment(
        self,
        input_path: Path,
        label: str,
        output_dir: Path,
        segment_duration: int,
    ) -> SegmentResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        playlist_path = output_dir / f"{label}.m3u8"
        logger.info(f"Generating HLS chunks for {label}...")
        try:
            self._run(
                self.build_segment_command(input_path, label, output_dir, segment_duration),
                self.encode_timeout,
                f"segment {label}",
            )
            segments = sorted(output_dir.glob(f"{label}_*.ts"))
            if not playlist_path.exists() or not segments:
                raise TranscodeError(f"segment {label} produced no playlist or segments")
        except (TranscodeError, TranscoderUnavailableError):
            playlist_path.unlink(missing_ok=True)
            for partial in output_dir.glob(f"{label}_*.ts"):
                partial.unlink(missing_ok=True)
            raise

        resolution = self.probe_resolution(input_path)
        logger.info(f"HLS chunks created for {label}: {len(segments)} segments ({resolution or 'unknown size'})")
        return SegmentResult(
            quality=label,
            playlist_path=playlist_path,
            segments=segments,
            resolution=resolution,
        )

    def probe_resolution(self, path: Path) -> Optional[str]:
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=s=x:p=0",
            str(path),
        ]
        try:
            result = self._run(cmd, self.probe_timeout, f"probe {path.name}")
        except TranscodeError as e:
            logger.warning(f"Failed to get resolution for {path}: {e}")
            return None

        output = result.stdout.decode(errors="replace").strip()
        if not _RESOLUTION_RE.match(output):
            logger.warning(f"Unexpected ffprobe output for {path}: {output!r}")
            return None
        return output
