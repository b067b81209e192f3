"""ReposeStore backed by the Supabase tables the web app writes.

supabase-py is synchronous, so each query runs in the default thread
executor to keep the event loop free while the HTTP round trip is in flight.
Conditional updates (``.eq("status", ...)``) stand in for row locks.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from repose_worker.queue.records import (
    BatchItem,
    BatchStatus,
    ClayImage,
    LibraryPose,
    OPEN_OUTPUT_STATUSES,
    OutputRecord,
    PipelineJob,
    RunRecord,
    RunStatus,
    StatusCounts,
)
from repose_worker.queue.store import ReposeStore


def _iso(value: datetime) -> str:
    return value.isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseReposeStore(ReposeStore):
    """Service-role access to repose_* and pipeline_jobs tables."""

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseReposeStore":
        """Store on a service-role client; the queue touches every user's batches."""
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_service_role_key))

    def _table(self, name: str):
        return self._client.table(name)

    async def _execute(self, query) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, query.execute)
        data = response.data
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    @staticmethod
    def _ids(rows: List[Dict[str, Any]]) -> List[str]:
        return [row["id"] for row in rows]

    # Pipeline jobs

    async def get_job(self, job_id: str) -> Optional[PipelineJob]:
        rows = await self._execute(
            self._table("pipeline_jobs").select("*").eq("id", job_id).limit(1)
        )
        if not rows:
            return None
        row = dict(rows[0])
        row["origin_context"] = row.get("origin_context") or {}
        return PipelineJob.model_validate(row)

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        payload = {
            key: _iso(value) if isinstance(value, datetime) else value
            for key, value in fields.items()
        }
        payload.setdefault("updated_at", _now_iso())
        await self._execute(self._table("pipeline_jobs").update(payload).eq("id", job_id))

    # Batches

    async def set_batch_status(self, batch_id: str, status: BatchStatus) -> None:
        await self._execute(
            self._table("repose_batches").update({"status": status.value}).eq("id", batch_id)
        )

    # Runs

    async def reclaim_stale_runs(self, batch_id: str, threshold: datetime) -> List[str]:
        stale = await self._execute(
            self._table("repose_runs")
            .update({"status": "queued", "started_at": None, "heartbeat_at": None})
            .eq("batch_id", batch_id)
            .eq("status", "running")
            .lt("heartbeat_at", _iso(threshold))
        )
        # Crashed before the first heartbeat.
        no_heartbeat = await self._execute(
            self._table("repose_runs")
            .update({"status": "queued", "started_at": None})
            .eq("batch_id", batch_id)
            .eq("status", "running")
            .is_("heartbeat_at", "null")
        )
        return self._ids(stale) + self._ids(no_heartbeat)

    async def fetch_queued_runs(
        self, batch_id: str, limit: int, exclude_ids: Iterable[str] = ()
    ) -> List[RunRecord]:
        # The processed set stays out of the request URL. Over-fetch by its
        # size so the limit still fills after filtering.
        excluded = set(exclude_ids)
        rows = await self._execute(
            self._table("repose_runs")
            .select("*")
            .eq("batch_id", batch_id)
            .eq("status", "queued")
            .order("created_at", desc=False)
            .limit(limit + len(excluded))
        )
        runs = [self._run(row) for row in rows if row["id"] not in excluded]
        return runs[:limit]

    @staticmethod
    def _run(row: Dict[str, Any]) -> RunRecord:
        row = dict(row)
        row["config_snapshot"] = row.get("config_snapshot") or {}
        row["output_count"] = row.get("output_count") or 0
        return RunRecord.model_validate(row)

    async def claim_run(self, run_id: str, now: datetime) -> bool:
        rows = await self._execute(
            self._table("repose_runs")
            .update({"status": "running", "started_at": _iso(now), "heartbeat_at": _iso(now)})
            .eq("id", run_id)
            .eq("status", "queued")
        )
        return bool(rows)

    async def touch_run(self, run_id: str, now: datetime) -> None:
        await self._execute(
            self._table("repose_runs").update({"heartbeat_at": _iso(now)}).eq("id", run_id)
        )

    async def release_run(self, run_id: str) -> None:
        await self._execute(
            self._table("repose_runs")
            .update({"status": "queued", "started_at": None, "heartbeat_at": None})
            .eq("id", run_id)
            .eq("status", "running")
        )

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output_count: int,
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        await self._execute(
            self._table("repose_runs")
            .update({
                "status": status.value,
                "completed_at": _iso(now),
                "output_count": output_count,
                "error_message": error_message,
            })
            .eq("id", run_id)
            .in_("status", ["queued", "running"])
        )

    async def list_runs(self, batch_id: str, statuses: List[str]) -> List[RunRecord]:
        rows = await self._execute(
            self._table("repose_runs")
            .select("*")
            .eq("batch_id", batch_id)
            .in_("status", statuses)
            .order("created_at", desc=False)
        )
        return [self._run(row) for row in rows]

    async def count_runs(self, batch_id: str) -> StatusCounts:
        rows = await self._execute(
            self._table("repose_runs").select("status").eq("batch_id", batch_id)
        )
        return StatusCounts.from_statuses([row["status"] for row in rows])

    async def requeue_failed_runs(self, batch_id: str) -> List[str]:
        rows = await self._execute(
            self._table("repose_runs")
            .update({
                "status": "queued",
                "error_message": None,
                "started_at": None,
                "completed_at": None,
                "heartbeat_at": None,
            })
            .eq("batch_id", batch_id)
            .eq("status", "failed")
        )
        return self._ids(rows)

    async def reset_running_runs(self, batch_id: str) -> List[str]:
        rows = await self._execute(
            self._table("repose_runs")
            .update({"status": "queued", "started_at": None, "heartbeat_at": None})
            .eq("batch_id", batch_id)
            .eq("status", "running")
        )
        return self._ids(rows)

    # Expansion inputs

    async def list_batch_items(self, batch_id: str) -> List[BatchItem]:
        rows = await self._execute(
            self._table("repose_batch_items").select("*").eq("batch_id", batch_id)
        )
        return [BatchItem.model_validate(row) for row in rows]

    async def map_source_outputs_to_looks(self, output_ids: List[str]) -> Dict[str, str]:
        if not output_ids:
            return {}
        rows = await self._execute(
            self._table("job_outputs")
            .select("id, job:unified_jobs(look_id)")
            .in_("id", output_ids)
        )
        mapping = {}
        for row in rows:
            job = row.get("job") or {}
            if job.get("look_id"):
                mapping[row["id"]] = job["look_id"]
        return mapping

    async def get_look_product_type(self, look_id: str) -> Optional[str]:
        rows = await self._execute(
            self._table("talent_looks").select("product_type").eq("id", look_id).limit(1)
        )
        return rows[0].get("product_type") if rows else None

    async def get_library_id(self, brand_id: str) -> Optional[str]:
        rows = await self._execute(
            self._table("brand_pose_libraries").select("id").eq("brand_id", brand_id).limit(1)
        )
        return rows[0]["id"] if rows else None

    async def list_usable_poses(self, library_id: str) -> List[LibraryPose]:
        rows = await self._execute(
            self._table("library_poses")
            .select("id, slot, product_type, curation_status, clay_images (id, stored_url)")
            .eq("library_id", library_id)
            .in_("curation_status", ["approved", "pending"])
            .not_.is_("clay_images", "null")
        )
        poses = []
        for row in rows:
            clay = row.get("clay_images")
            if isinstance(clay, list):
                clay = clay[0] if clay else None
            clay_image = None
            if clay and clay.get("id") and clay.get("stored_url"):
                clay_image = ClayImage(id=clay["id"], stored_url=clay["stored_url"])
            poses.append(LibraryPose(
                id=row["id"],
                slot=row.get("slot"),
                product_type=row.get("product_type"),
                curation_status=row.get("curation_status") or "pending",
                clay_image=clay_image,
            ))
        return poses

    # Outputs

    async def insert_outputs(self, outputs: List[OutputRecord]) -> List[OutputRecord]:
        payload = [
            output.model_dump(
                mode="json",
                exclude={"id", "created_at", "started_running_at", "error_message", "result_url"},
            )
            for output in outputs
        ]
        rows = await self._execute(self._table("repose_outputs").insert(payload))
        return [OutputRecord.model_validate(row) for row in rows]

    async def list_run_outputs(self, run_id: str) -> List[OutputRecord]:
        rows = await self._execute(
            self._table("repose_outputs")
            .select("*")
            .eq("run_id", run_id)
            .order("created_at", desc=False)
        )
        return [OutputRecord.model_validate(row) for row in rows]

    async def fetch_queued_outputs(
        self, batch_id: str, limit: int, output_ids: Optional[List[str]] = None
    ) -> List[OutputRecord]:
        query = (
            self._table("repose_outputs")
            .select("*")
            .eq("batch_id", batch_id)
            .eq("status", "queued")
        )
        if output_ids:
            query = query.in_("id", output_ids)
        rows = await self._execute(query.order("created_at", desc=False).limit(limit))
        return [OutputRecord.model_validate(row) for row in rows]

    async def claim_output(self, output_id: str, now: datetime) -> bool:
        rows = await self._execute(
            self._table("repose_outputs")
            .update({"status": "running", "started_running_at": _iso(now)})
            .eq("id", output_id)
            .eq("status", "queued")
        )
        return bool(rows)

    async def complete_output(self, output_id: str, result_url: Optional[str]) -> None:
        payload: Dict[str, Any] = {"status": "complete", "error_message": None}
        if result_url:
            payload["result_url"] = result_url
        await self._execute(
            self._table("repose_outputs")
            .update(payload)
            .eq("id", output_id)
            .in_("status", OPEN_OUTPUT_STATUSES)
        )

    async def fail_output(self, output_id: str, error_message: str) -> None:
        await self._execute(
            self._table("repose_outputs")
            .update({"status": "failed", "error_message": error_message})
            .eq("id", output_id)
            .in_("status", OPEN_OUTPUT_STATUSES)
        )

    async def reclaim_stale_outputs(self, batch_id: str, threshold: datetime) -> List[str]:
        started = await self._execute(
            self._table("repose_outputs")
            .update({"status": "queued", "started_running_at": None})
            .eq("batch_id", batch_id)
            .eq("status", "running")
            .lt("started_running_at", _iso(threshold))
        )
        never_started = await self._execute(
            self._table("repose_outputs")
            .update({"status": "queued"})
            .eq("batch_id", batch_id)
            .eq("status", "running")
            .is_("started_running_at", "null")
            .lt("created_at", _iso(threshold))
        )
        return self._ids(started) + self._ids(never_started)

    async def reset_running_outputs(self, batch_id: str) -> List[str]:
        rows = await self._execute(
            self._table("repose_outputs")
            .update({"status": "queued", "started_running_at": None})
            .eq("batch_id", batch_id)
            .eq("status", "running")
        )
        return self._ids(rows)

    async def count_outputs(
        self,
        batch_id: str,
        output_ids: Optional[List[str]] = None,
        run_id: Optional[str] = None,
    ) -> StatusCounts:
        query = self._table("repose_outputs").select("status").eq("batch_id", batch_id)
        if output_ids:
            query = query.in_("id", output_ids)
        if run_id:
            query = query.eq("run_id", run_id)
        rows = await self._execute(query)
        return StatusCounts.from_statuses([row["status"] for row in rows])
