"""Pydantic schemas for the persisted progress file.

Field aliases keep the on-disk JSON compatible with progress files written by
the earlier Node tooling (``videos``, ``videoKey``, ``startTime``...). Unknown
fields are ignored on read so newer files stay readable by older builds.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Status = Literal["pending", "processing", "completed", "failed"]


class ItemRecord(BaseModel):
    """Progress of one source video through the stage sequence."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str = Field(alias="videoKey")
    status: Status = "pending"
    steps: dict[str, Status] = Field(default_factory=dict)
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    end_time: Optional[datetime] = Field(default=None, alias="endTime")
    error: Optional[str] = None
    retry_count: int = Field(default=0, alias="retryCount")
    work_dir: Optional[str] = Field(default=None, alias="workDir")


class BatchStats(BaseModel):
    """Aggregate counts refreshed at the end of each batch pass."""

    model_config = ConfigDict(extra="ignore")

    total: int = 0
    completed: int = 0
    failed: int = 0


class BatchRecord(BaseModel):
    """Whole progress file: every item ever observed, keyed by item name."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: dict[str, ItemRecord] = Field(default_factory=dict, alias="videos")
    last_run: Optional[datetime] = Field(default=None, alias="lastRun")
    stats: BatchStats = Field(default_factory=BatchStats)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
