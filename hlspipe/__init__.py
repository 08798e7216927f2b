"""HLS Pipeline - resumable batch transcoding of object-store videos to HLS.

This module provides startup validation and logging setup shared by the
CLI entry points. Call validate_dependencies() before running a batch.
"""

import logging
import subprocess

from rich.logging import RichHandler

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies(ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe") -> None:
    """Validate required system dependencies are available.

    Fails fast with installation instructions if ffmpeg or ffprobe is
    missing, before any item is touched.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    for binary in (ffmpeg_path, ffprobe_path):
        try:
            result = subprocess.run(
                [binary, '-version'],
                capture_output=True,
                check=True,
                text=True,
                timeout=30,
            )
            version_line = result.stdout.split('\n')[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} not found on PATH. Install ffmpeg to use the HLS pipeline.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e


def setup_logging(verbose: bool = False) -> None:
    """Route all log records through rich so they interleave with console output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # boto's wire logging is noise at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
