"""Pydantic schemas for persisted pipeline state."""

from hlspipe.schemas.progress import BatchRecord, BatchStats, ItemRecord, Status

__all__ = ["BatchRecord", "BatchStats", "ItemRecord", "Status"]
