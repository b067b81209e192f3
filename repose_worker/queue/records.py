"""Persisted record shapes for batches, runs, outputs and pipeline jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


class BatchStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class OutputStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class PipelineJobStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    PAUSED = "PAUSED"


# Both spellings exist in pipeline_jobs rows written by different callers.
HALT_STATUSES = {"CANCELED", "CANCELLED", "PAUSED"}

OPEN_OUTPUT_STATUSES = [OutputStatus.QUEUED.value, OutputStatus.RUNNING.value]


class ShotType(str, Enum):
    FRONT_FULL = "FRONT_FULL"
    FRONT_CROPPED = "FRONT_CROPPED"
    BACK_FULL = "BACK_FULL"
    DETAIL = "DETAIL"


def _new_id() -> str:
    return str(uuid.uuid4())


class RunRecord(BaseModel):
    """One look's worth of work within a batch."""
    id: str = Field(default_factory=_new_id)
    batch_id: str
    look_id: Optional[str] = None
    brand_id: Optional[str] = None
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.QUEUED
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    output_count: int = 0
    error_message: Optional[str] = None

    @property
    def effective_brand_id(self) -> Optional[str]:
        return self.config_snapshot.get("brand_id") or self.brand_id

    @property
    def poses_per_shot_type(self) -> int:
        value = self.config_snapshot.get("posesPerShotType")
        return int(value) if value else 2


class OutputRecord(BaseModel):
    """One concrete pose + shot type + attempt generation unit."""
    id: str = Field(default_factory=_new_id)
    batch_id: str
    batch_item_id: Optional[str] = None
    run_id: Optional[str] = None
    pose_id: Optional[str] = None
    pose_url: Optional[str] = None
    shot_type: Optional[ShotType] = None
    attempt_index: int = 0
    status: OutputStatus = OutputStatus.QUEUED
    error_message: Optional[str] = None
    result_url: Optional[str] = None
    created_at: Optional[datetime] = None
    started_running_at: Optional[datetime] = None


class BatchItem(BaseModel):
    """A source product shot attached to a batch."""
    id: str = Field(default_factory=_new_id)
    batch_id: str
    look_id: Optional[str] = None
    view: Optional[str] = None
    source_url: Optional[str] = None
    source_output_id: Optional[str] = None


class ClayImage(BaseModel):
    id: str
    stored_url: str


class LibraryPose(BaseModel):
    """A curated clay pose in a brand's pose library."""
    id: str = Field(default_factory=_new_id)
    slot: Optional[str] = None
    product_type: Optional[str] = None
    curation_status: str = "pending"
    clay_image: Optional[ClayImage] = None


class PipelineJob(BaseModel):
    """Aggregate progress record surfaced to the UI."""
    id: str = Field(default_factory=_new_id)
    type: Optional[str] = None
    status: str = PipelineJobStatus.RUNNING.value
    progress_done: int = 0
    progress_failed: int = 0
    progress_total: int = 0
    progress_message: Optional[str] = None
    origin_context: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusCounts(BaseModel):
    """Status tally over a set of runs or outputs."""
    queued: int = 0
    running: int = 0
    complete: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.complete + self.failed

    @property
    def pending(self) -> int:
        return self.queued + self.running

    @classmethod
    def from_statuses(cls, statuses: List[str]) -> "StatusCounts":
        counts = cls()
        for status in statuses:
            if status in ("queued", "running", "complete", "failed"):
                setattr(counts, status, getattr(counts, status) + 1)
        return counts
