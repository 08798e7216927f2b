"""External capabilities used by the orchestrator.

- object_store: blob storage (S3-compatible, local directory, HTTP source)
- transcoder: ffmpeg encoding, HLS segmentation and probing
- file_manager: per-item working directories
"""

from hlspipe.services.file_manager import WorkspaceManager
from hlspipe.services.object_store import build_object_store, ObjectStore, ObjectStoreError
from hlspipe.services.transcoder import Transcoder, TranscodeError, TranscoderUnavailableError

__all__ = [
    "build_object_store",
    "ObjectStore",
    "ObjectStoreError",
    "TranscodeError",
    "Transcoder",
    "TranscoderUnavailableError",
    "WorkspaceManager",
]
