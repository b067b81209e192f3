"""Invocation request and record models for queue processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys the web app sends."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResumeContext(CamelModel):
    processed_run_ids: List[str] = Field(default_factory=list)


class ProcessRequest(CamelModel):
    """Everything one invocation of the processor needs."""
    batch_id: str
    pipeline_job_id: str
    model: str
    resume_context: Optional[ResumeContext] = None
    # Targeted re-render of specific outputs (skips run dispatch)
    output_ids: List[str] = Field(default_factory=list)
    image_size: Optional[str] = None
    # Follow-up check: the dispatcher holds the invocation back this long
    delay_seconds: Optional[float] = None

    def processed_run_ids(self) -> List[str]:
        return list(self.resume_context.processed_run_ids) if self.resume_context else []


class InvocationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class InvocationRecord(BaseModel):
    """Tracks one queued invocation in the local dispatcher."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request: ProcessRequest
    status: InvocationStatus = InvocationStatus.PENDING
    outcome: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
