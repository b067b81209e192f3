"""Persistence interface for the batch run processor.

Every read and write the queue core performs goes through this interface.
Status writes are conditional on the current status; a write that loses a
race against another invocation changes nothing.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from repose_worker.queue.records import (
    BatchItem,
    BatchStatus,
    LibraryPose,
    OutputRecord,
    PipelineJob,
    RunRecord,
    RunStatus,
    StatusCounts,
)


class ReposeStore(ABC):
    """Abstract storage for batches, runs, outputs and pipeline jobs."""

    # Pipeline jobs

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[PipelineJob]:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        ...

    # Batches

    @abstractmethod
    async def set_batch_status(self, batch_id: str, status: BatchStatus) -> None:
        ...

    # Runs

    @abstractmethod
    async def reclaim_stale_runs(self, batch_id: str, threshold: datetime) -> List[str]:
        """Reset running runs whose heartbeat is older than *threshold* or null.

        Returns the ids of the runs that were reset to queued.
        """
        ...

    @abstractmethod
    async def fetch_queued_runs(
        self, batch_id: str, limit: int, exclude_ids: Iterable[str] = ()
    ) -> List[RunRecord]:
        """Oldest-first queued runs of a batch, skipping *exclude_ids*."""
        ...

    @abstractmethod
    async def claim_run(self, run_id: str, now: datetime) -> bool:
        """Move a run from queued to running. False if it was not queued."""
        ...

    @abstractmethod
    async def touch_run(self, run_id: str, now: datetime) -> None:
        ...

    @abstractmethod
    async def release_run(self, run_id: str) -> None:
        """Hand a running run back to the queue without finishing it."""
        ...

    @abstractmethod
    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output_count: int,
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        ...

    @abstractmethod
    async def list_runs(self, batch_id: str, statuses: List[str]) -> List[RunRecord]:
        ...

    @abstractmethod
    async def count_runs(self, batch_id: str) -> StatusCounts:
        ...

    @abstractmethod
    async def requeue_failed_runs(self, batch_id: str) -> List[str]:
        ...

    @abstractmethod
    async def reset_running_runs(self, batch_id: str) -> List[str]:
        """Unconditionally reset running runs to queued."""
        ...

    # Expansion inputs

    @abstractmethod
    async def list_batch_items(self, batch_id: str) -> List[BatchItem]:
        ...

    @abstractmethod
    async def map_source_outputs_to_looks(self, output_ids: List[str]) -> Dict[str, str]:
        """Resolve job output ids to the look id of the job that produced them."""
        ...

    @abstractmethod
    async def get_look_product_type(self, look_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_library_id(self, brand_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def list_usable_poses(self, library_id: str) -> List[LibraryPose]:
        """Approved or pending poses that have a clay image."""
        ...

    # Outputs

    @abstractmethod
    async def insert_outputs(self, outputs: List[OutputRecord]) -> List[OutputRecord]:
        ...

    @abstractmethod
    async def list_run_outputs(self, run_id: str) -> List[OutputRecord]:
        ...

    @abstractmethod
    async def fetch_queued_outputs(
        self, batch_id: str, limit: int, output_ids: Optional[List[str]] = None
    ) -> List[OutputRecord]:
        ...

    @abstractmethod
    async def claim_output(self, output_id: str, now: datetime) -> bool:
        """Move an output from queued to running. False if it was not queued."""
        ...

    @abstractmethod
    async def complete_output(self, output_id: str, result_url: Optional[str]) -> None:
        ...

    @abstractmethod
    async def fail_output(self, output_id: str, error_message: str) -> None:
        ...

    @abstractmethod
    async def reclaim_stale_outputs(self, batch_id: str, threshold: datetime) -> List[str]:
        """Reset running outputs with no activity since *threshold* to queued."""
        ...

    @abstractmethod
    async def reset_running_outputs(self, batch_id: str) -> List[str]:
        """Unconditionally reset running outputs to queued."""
        ...

    @abstractmethod
    async def count_outputs(
        self,
        batch_id: str,
        output_ids: Optional[List[str]] = None,
        run_id: Optional[str] = None,
    ) -> StatusCounts:
        ...
