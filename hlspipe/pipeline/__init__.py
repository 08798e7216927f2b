"""HLS output assembly: master playlist and upload file collection."""

from hlspipe.pipeline.hls import collect_hls_files, MASTER_PLAYLIST, write_master_playlist

__all__ = ["collect_hls_files", "MASTER_PLAYLIST", "write_master_playlist"]
