"""Repose queue API: start processing, resume jobs, poll progress."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from typing import List, Optional

from repose_worker.auth.supabase_auth import verify_jwt
from repose_worker.config import settings
from repose_worker.jobs.models import CamelModel, ProcessRequest, ResumeContext
from repose_worker.queue.resume import JobNotFoundError, ResumeError, prepare_resume

router = APIRouter(prefix="/repose")

# These will be set by main.py during lifespan
_dispatcher = None
_store = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_store(store):
    global _store
    _store = store


class ProcessBody(CamelModel):
    batch_id: Optional[str] = None
    pipeline_job_id: Optional[str] = None
    model: Optional[str] = None
    resume_context: Optional[ResumeContext] = None
    output_ids: List[str] = Field(default_factory=list)
    image_size: Optional[str] = None
    delay_seconds: Optional[float] = None


class ResumeBody(CamelModel):
    model: Optional[str] = None


class ProcessResponse(CamelModel):
    success: bool
    pipeline_job_id: str
    invocation_id: str
    message: str


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")


def _require_store():
    if _store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")


@router.post("/process", response_model=ProcessResponse, response_model_by_alias=True)
async def process_queue(body: ProcessBody, principal=Depends(verify_jwt)):
    """Start (or continue) background processing of a batch.

    Returns immediately; progress is reported on the pipeline job.
    """
    _require_dispatcher()
    if not body.batch_id or not body.pipeline_job_id:
        raise HTTPException(status_code=400, detail="batchId and pipelineJobId are required")

    request = ProcessRequest(
        batch_id=body.batch_id,
        pipeline_job_id=body.pipeline_job_id,
        model=body.model or settings.default_model,
        resume_context=body.resume_context,
        output_ids=body.output_ids,
        image_size=body.image_size,
        delay_seconds=body.delay_seconds,
    )
    invocation_id = await _dispatcher.submit(request)
    return ProcessResponse(
        success=True,
        pipeline_job_id=request.pipeline_job_id,
        invocation_id=invocation_id,
        message="Queue processing started in background",
    )


@router.post("/jobs/{job_id}/resume", response_model=ProcessResponse, response_model_by_alias=True)
async def resume_job(job_id: str, body: Optional[ResumeBody] = None, principal=Depends(verify_jwt)):
    """Reset a stopped or failed repose job and process it again."""
    _require_dispatcher()
    _require_store()
    try:
        request = await prepare_resume(
            _store, job_id, settings.default_model, model=body.model if body else None
        )
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ResumeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    invocation_id = await _dispatcher.submit(request)
    return ProcessResponse(
        success=True,
        pipeline_job_id=job_id,
        invocation_id=invocation_id,
        message="Job resume started in background",
    )


@router.get("/jobs/{job_id}")
async def get_job_progress(job_id: str, principal=Depends(verify_jwt)):
    """Current status and progress counts of a pipeline job."""
    _require_store()
    job = await _store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return {
        "job_id": job.id,
        "status": job.status,
        "progress": {
            "done": job.progress_done,
            "failed": job.progress_failed,
            "total": job.progress_total,
            "message": job.progress_message,
        },
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.get("/invocations/{invocation_id}")
async def get_invocation(invocation_id: str, principal=Depends(verify_jwt)):
    """Status of an invocation queued on this instance."""
    _require_dispatcher()
    record = await _dispatcher.get_status(invocation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Invocation not found")

    response = {
        "invocation_id": record.id,
        "batch_id": record.request.batch_id,
        "pipeline_job_id": record.request.pipeline_job_id,
        "status": record.status.value,
        "outcome": record.outcome,
        "created_at": record.created_at.isoformat(),
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }
    if record.error:
        response["error"] = record.error
    return response
