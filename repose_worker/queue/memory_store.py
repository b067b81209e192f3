"""In-process ReposeStore for local development and tests.

Mirrors the Supabase tables with plain dicts. No external dependencies
(Postgres, Supabase) needed. Each method completes without awaiting, so a
conditional update is atomic with respect to the event loop.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from repose_worker.queue.records import (
    BatchItem,
    BatchStatus,
    LibraryPose,
    OutputRecord,
    OutputStatus,
    PipelineJob,
    RunRecord,
    RunStatus,
    StatusCounts,
)
from repose_worker.queue.store import ReposeStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryReposeStore(ReposeStore):
    """Dict-backed store. Records are copied in and out."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now
        self.jobs: Dict[str, PipelineJob] = {}
        self.batches: Dict[str, BatchStatus] = {}
        self.runs: Dict[str, RunRecord] = {}
        self.outputs: Dict[str, OutputRecord] = {}
        self.batch_items: Dict[str, BatchItem] = {}
        self.source_output_looks: Dict[str, str] = {}
        self.look_product_types: Dict[str, str] = {}
        self.libraries: Dict[str, str] = {}  # brand_id -> library_id
        self.library_poses: Dict[str, List[LibraryPose]] = {}

    # Seeding

    def add_job(self, job: PipelineJob) -> PipelineJob:
        self.jobs[job.id] = job.model_copy(deep=True)
        return job

    def add_batch(self, batch_id: str, status: BatchStatus = BatchStatus.RUNNING) -> str:
        self.batches[batch_id] = status
        return batch_id

    def add_run(self, run: RunRecord) -> RunRecord:
        if run.created_at is None:
            run = run.model_copy(update={"created_at": self._now()})
        self.runs[run.id] = run.model_copy(deep=True)
        return run

    def add_batch_item(self, item: BatchItem) -> BatchItem:
        self.batch_items[item.id] = item.model_copy(deep=True)
        return item

    def add_source_output(self, output_id: str, look_id: str) -> None:
        self.source_output_looks[output_id] = look_id

    def add_look(self, look_id: str, product_type: Optional[str]) -> None:
        if product_type is not None:
            self.look_product_types[look_id] = product_type

    def add_library(self, brand_id: str, poses: List[LibraryPose], library_id: Optional[str] = None) -> str:
        library_id = library_id or f"library-{brand_id}"
        self.libraries[brand_id] = library_id
        self.library_poses[library_id] = [p.model_copy(deep=True) for p in poses]
        return library_id

    def add_output(self, output: OutputRecord) -> OutputRecord:
        if output.created_at is None:
            output = output.model_copy(update={"created_at": self._now()})
        self.outputs[output.id] = output.model_copy(deep=True)
        return output

    # Pipeline jobs

    async def get_job(self, job_id: str) -> Optional[PipelineJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        self.jobs[job_id] = job.model_copy(update=fields)

    # Batches

    async def set_batch_status(self, batch_id: str, status: BatchStatus) -> None:
        self.batches[batch_id] = status

    # Runs

    def _batch_runs(self, batch_id: str) -> List[RunRecord]:
        return [r for r in self.runs.values() if r.batch_id == batch_id]

    async def reclaim_stale_runs(self, batch_id: str, threshold: datetime) -> List[str]:
        reclaimed = []
        for run in self._batch_runs(batch_id):
            if run.status != RunStatus.RUNNING:
                continue
            if run.heartbeat_at is None or run.heartbeat_at < threshold:
                run.status = RunStatus.QUEUED
                run.started_at = None
                run.heartbeat_at = None
                reclaimed.append(run.id)
        return reclaimed

    async def fetch_queued_runs(
        self, batch_id: str, limit: int, exclude_ids: Iterable[str] = ()
    ) -> List[RunRecord]:
        excluded = set(exclude_ids)
        queued = [
            r for r in self._batch_runs(batch_id)
            if r.status == RunStatus.QUEUED and r.id not in excluded
        ]
        queued.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return [r.model_copy(deep=True) for r in queued[:limit]]

    async def claim_run(self, run_id: str, now: datetime) -> bool:
        run = self.runs.get(run_id)
        if run is None or run.status != RunStatus.QUEUED:
            return False
        run.status = RunStatus.RUNNING
        run.started_at = now
        run.heartbeat_at = now
        return True

    async def touch_run(self, run_id: str, now: datetime) -> None:
        run = self.runs.get(run_id)
        if run is not None:
            run.heartbeat_at = now

    async def release_run(self, run_id: str) -> None:
        run = self.runs.get(run_id)
        if run is not None and run.status == RunStatus.RUNNING:
            run.status = RunStatus.QUEUED
            run.started_at = None
            run.heartbeat_at = None

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output_count: int,
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        run = self.runs.get(run_id)
        if run is None or run.status not in (RunStatus.QUEUED, RunStatus.RUNNING):
            return
        run.status = status
        run.output_count = output_count
        run.error_message = error_message
        run.completed_at = now

    async def list_runs(self, batch_id: str, statuses: List[str]) -> List[RunRecord]:
        return [
            r.model_copy(deep=True) for r in self._batch_runs(batch_id)
            if r.status.value in statuses
        ]

    async def count_runs(self, batch_id: str) -> StatusCounts:
        return StatusCounts.from_statuses([r.status.value for r in self._batch_runs(batch_id)])

    async def requeue_failed_runs(self, batch_id: str) -> List[str]:
        requeued = []
        for run in self._batch_runs(batch_id):
            if run.status == RunStatus.FAILED:
                run.status = RunStatus.QUEUED
                run.error_message = None
                run.started_at = None
                run.completed_at = None
                run.heartbeat_at = None
                requeued.append(run.id)
        return requeued

    async def reset_running_runs(self, batch_id: str) -> List[str]:
        reset = []
        for run in self._batch_runs(batch_id):
            if run.status == RunStatus.RUNNING:
                run.status = RunStatus.QUEUED
                run.started_at = None
                run.heartbeat_at = None
                reset.append(run.id)
        return reset

    # Expansion inputs

    async def list_batch_items(self, batch_id: str) -> List[BatchItem]:
        return [i.model_copy(deep=True) for i in self.batch_items.values() if i.batch_id == batch_id]

    async def map_source_outputs_to_looks(self, output_ids: List[str]) -> Dict[str, str]:
        return {oid: self.source_output_looks[oid] for oid in output_ids if oid in self.source_output_looks}

    async def get_look_product_type(self, look_id: str) -> Optional[str]:
        return self.look_product_types.get(look_id)

    async def get_library_id(self, brand_id: str) -> Optional[str]:
        return self.libraries.get(brand_id)

    async def list_usable_poses(self, library_id: str) -> List[LibraryPose]:
        return [
            p.model_copy(deep=True)
            for p in self.library_poses.get(library_id, [])
            if p.curation_status in ("approved", "pending") and p.clay_image is not None
        ]

    # Outputs

    def _batch_outputs(self, batch_id: str) -> List[OutputRecord]:
        return [o for o in self.outputs.values() if o.batch_id == batch_id]

    async def insert_outputs(self, outputs: List[OutputRecord]) -> List[OutputRecord]:
        created = []
        for output in outputs:
            stored = output.model_copy(update={"created_at": output.created_at or self._now()})
            self.outputs[stored.id] = stored
            created.append(stored.model_copy(deep=True))
        return created

    async def list_run_outputs(self, run_id: str) -> List[OutputRecord]:
        return [o.model_copy(deep=True) for o in self.outputs.values() if o.run_id == run_id]

    async def fetch_queued_outputs(
        self, batch_id: str, limit: int, output_ids: Optional[List[str]] = None
    ) -> List[OutputRecord]:
        wanted = set(output_ids) if output_ids else None
        queued = [
            o for o in self._batch_outputs(batch_id)
            if o.status == OutputStatus.QUEUED and (wanted is None or o.id in wanted)
        ]
        queued.sort(key=lambda o: o.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return [o.model_copy(deep=True) for o in queued[:limit]]

    async def claim_output(self, output_id: str, now: datetime) -> bool:
        output = self.outputs.get(output_id)
        if output is None or output.status != OutputStatus.QUEUED:
            return False
        output.status = OutputStatus.RUNNING
        output.started_running_at = now
        return True

    async def complete_output(self, output_id: str, result_url: Optional[str]) -> None:
        output = self.outputs.get(output_id)
        if output is None or output.status not in (OutputStatus.QUEUED, OutputStatus.RUNNING):
            return
        output.status = OutputStatus.COMPLETE
        output.error_message = None
        if result_url:
            output.result_url = result_url

    async def fail_output(self, output_id: str, error_message: str) -> None:
        output = self.outputs.get(output_id)
        if output is None or output.status not in (OutputStatus.QUEUED, OutputStatus.RUNNING):
            return
        output.status = OutputStatus.FAILED
        output.error_message = error_message

    async def reclaim_stale_outputs(self, batch_id: str, threshold: datetime) -> List[str]:
        reclaimed = []
        for output in self._batch_outputs(batch_id):
            if output.status != OutputStatus.RUNNING:
                continue
            last_activity = output.started_running_at or output.created_at
            if last_activity is not None and last_activity < threshold:
                output.status = OutputStatus.QUEUED
                output.started_running_at = None
                reclaimed.append(output.id)
        return reclaimed

    async def reset_running_outputs(self, batch_id: str) -> List[str]:
        reset = []
        for output in self._batch_outputs(batch_id):
            if output.status == OutputStatus.RUNNING:
                output.status = OutputStatus.QUEUED
                output.started_running_at = None
                reset.append(output.id)
        return reset

    async def count_outputs(
        self,
        batch_id: str,
        output_ids: Optional[List[str]] = None,
        run_id: Optional[str] = None,
    ) -> StatusCounts:
        wanted = set(output_ids) if output_ids else None
        statuses = [
            o.status.value for o in self._batch_outputs(batch_id)
            if (wanted is None or o.id in wanted) and (run_id is None or o.run_id == run_id)
        ]
        return StatusCounts.from_statuses(statuses)
