"""
Working directory management for hlspipe.

Each processing attempt of an item gets its own directory under the base
temp dir, named from the item name plus a millisecond timestamp and a random
suffix so overlapping runs never share or reuse a directory. Implements path
traversal protection so a hostile source key cannot escape the base dir.
"""
import logging
import shutil
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """
    Manage per-item working directories.

    Layout of one attempt:
    - {base_dir}/{name}_{epoch_ms}_{random}/original.<ext> - Downloaded source
    - {base_dir}/{name}_{epoch_ms}_{random}/<label>.mp4 - Encoded renditions
    - {base_dir}/{name}_{epoch_ms}_{random}/hls/ - Playlists and segments
    """

    def __init__(self, base_dir: str | Path = "temp"):
        """
        Initialize WorkspaceManager with base directory.

        Args:
            base_dir: Root directory for all working directories.
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def create(self, name: str) -> Path:
        """
        Create a fresh, exclusively owned working directory for an item.

        Args:
            name: Item name

        Returns:
            Resolved Path to the new directory

        Raises:
            ValueError: If name creates a path outside base_dir (traversal attack)
        """
        dirname = f"{name}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        work_dir = self._checked(self.base_dir / dirname)
        work_dir.mkdir(parents=True, exist_ok=False)
        logger.debug(f"Created working directory {work_dir}")
        return work_dir

    def hls_dir(self, work_dir: Path) -> Path:
        """Directory holding playlists and segments for upload."""
        return work_dir / "hls"

    def cleanup(self, work_dir: str | Path) -> bool:
        """
        Remove a working directory and everything in it.

        Returns:
            True if something was removed, False if it was already gone

        Raises:
            ValueError: If work_dir is not inside base_dir
            OSError: If removal fails
        """
        path = self._checked(Path(work_dir))
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info(f"Cleaned up temp directory: {path}")
        return True

    def _checked(self, path: Path) -> Path:
        resolved = path.resolve()
        # Path traversal protection
        if not resolved.is_relative_to(self.base_dir) or resolved == self.base_dir:
            raise ValueError(f"Invalid working directory path: {path}")
        return resolved
