"""Operator-triggered resume of a stopped, paused or failed repose job."""

import logging
from typing import Optional

from repose_worker.jobs.models import ProcessRequest
from repose_worker.queue.records import BatchStatus, PipelineJobStatus
from repose_worker.queue.store import ReposeStore
from repose_worker.queue.sweeper import utcnow

logger = logging.getLogger(__name__)

REPOSE_JOB_TYPE = "REPOSE_GENERATION"


class JobNotFoundError(Exception):
    """Raised when the pipeline job does not exist."""


class ResumeError(Exception):
    """Raised when a job cannot be resumed by this worker."""


async def prepare_resume(
    store: ReposeStore, job_id: str, default_model: str, model: Optional[str] = None
) -> ProcessRequest:
    """Reset a job's batch so that a fresh invocation picks everything up.

    Work marked running is reset unconditionally (the operator has decided
    nothing is alive), failed runs are requeued to be expanded again, and
    the job and batch are put back into RUNNING.
    """
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    if job.type != REPOSE_JOB_TYPE:
        raise ResumeError(f"Only {REPOSE_JOB_TYPE} jobs can be resumed by this worker")

    batch_id = job.origin_context.get("batchId")
    if not batch_id:
        raise ResumeError("Job context missing batchId")
    model = model or job.origin_context.get("model") or default_model

    outputs = await store.reset_running_outputs(batch_id)
    runs = await store.reset_running_runs(batch_id)
    failed_runs = await store.requeue_failed_runs(batch_id)
    logger.info(
        "resume job %s: reset %d outputs and %d runs, requeued %d failed runs",
        job_id, len(outputs), len(runs), len(failed_runs),
    )

    await store.set_batch_status(batch_id, BatchStatus.RUNNING)
    await store.update_job(job_id, {
        "status": PipelineJobStatus.RUNNING.value,
        "started_at": utcnow(),
        "completed_at": None,
        "progress_message": "Resuming...",
    })
    return ProcessRequest(batch_id=batch_id, pipeline_job_id=job_id, model=model)
