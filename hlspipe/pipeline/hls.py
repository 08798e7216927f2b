"""HLS master playlist writing and upload file collection.

The master playlist references one media playlist per rendition. Each entry
carries the configured bandwidth estimate and the resolution probed from the
encoded file; the nominal ladder height is not used because scale=-2 picks
the width from the source aspect ratio.
"""

import logging
from pathlib import Path
from typing import Callable, Sequence

from hlspipe.services.transcoder import SegmentResult

logger = logging.getLogger(__name__)

MASTER_PLAYLIST = "master.m3u8"


def render_master_playlist(
    results: Sequence[SegmentResult],
    bandwidth_for: Callable[[str], int],
) -> str:
    """Build master playlist text for the given renditions.

    Args:
        results: Segmentation results in ladder order
        bandwidth_for: Maps a quality label to its BANDWIDTH value in bits/s

    Returns:
        Playlist text. RESOLUTION is omitted for a rendition whose probe
        failed rather than guessed.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for result in results:
        attributes = f"BANDWIDTH={bandwidth_for(result.quality)}"
        if result.resolution:
            attributes += f",RESOLUTION={result.resolution}"
        lines.append(f"#EXT-X-STREAM-INF:{attributes}")
        lines.append(result.playlist_path.name)
    return "\n".join(lines) + "\n"


def write_master_playlist(
    results: Sequence[SegmentResult],
    hls_dir: Path,
    bandwidth_for: Callable[[str], int],
) -> Path:
    """Write master.m3u8 into hls_dir and return its path."""
    if not results:
        raise ValueError("Cannot write a master playlist without renditions")
    master_path = hls_dir / MASTER_PLAYLIST
    master_path.write_text(render_master_playlist(results, bandwidth_for))
    logger.info(f"Master playlist created: {master_path}")
    return master_path


def collect_hls_files(hls_dir: Path) -> list[Path]:
    """List every file to publish from an HLS output directory, sorted by name.

    Raises:
        FileNotFoundError: If hls_dir does not exist
    """
    if not hls_dir.is_dir():
        raise FileNotFoundError(f"HLS directory not found: {hls_dir}")
    files = sorted(p for p in hls_dir.iterdir() if p.is_file())
    logger.info(f"Found {len(files)} HLS files for upload")
    return files
